"""
Vdev layout selection for new pools.
"""

from typing import Union

from .exceptions import TrueNASValidationError
from .models import VDevType


def parse_vdev_type(value: Union[str, VDevType]) -> VDevType:
    if isinstance(value, VDevType):
        return value
    try:
        return VDevType(str(value).strip().upper())
    except ValueError:
        allowed = ", ".join(v.value for v in VDevType)
        raise TrueNASValidationError(f"Invalid vdev type {value!r} (expected one of: {allowed})")


def select_vdev_type(
    requested: Union[str, VDevType],
    disk_count: int,
    min_disks_for_mirror: int = 2,
) -> VDevType:
    """
    Pick the vdev layout a new pool can actually use.

    The requested layout is downgraded when there are not enough disks for
    it. Rules apply in order:

    - 1 disk, or fewer than ``min_disks_for_mirror`` disks: STRIPE
    - RAIDZ1 with fewer than 3 disks: MIRROR
    - RAIDZ2 with fewer than 4 disks: RAIDZ1 if 3 disks, else MIRROR
    - RAIDZ3 with fewer than 5 disks: RAIDZ2 if 4, RAIDZ1 if 3, else MIRROR
    - otherwise the requested layout

    Args:
        requested: Requested vdev type (case-insensitive string or VDevType)
        disk_count: Number of unused disks going into the vdev
        min_disks_for_mirror: Minimum disks before any redundancy is used

    Returns:
        Effective vdev type

    Raises:
        TrueNASValidationError: Unknown layout or a disk count below 1
    """
    vdev_type = parse_vdev_type(requested)
    if disk_count < 1:
        raise TrueNASValidationError(f"Disk count must be at least 1, got {disk_count}")

    if disk_count == 1 or disk_count < min_disks_for_mirror:
        return VDevType.STRIPE
    if vdev_type == VDevType.RAIDZ1 and disk_count < 3:
        return VDevType.MIRROR
    if vdev_type == VDevType.RAIDZ2 and disk_count < 4:
        return VDevType.RAIDZ1 if disk_count >= 3 else VDevType.MIRROR
    if vdev_type == VDevType.RAIDZ3 and disk_count < 5:
        if disk_count >= 4:
            return VDevType.RAIDZ2
        if disk_count >= 3:
            return VDevType.RAIDZ1
        return VDevType.MIRROR
    return vdev_type
