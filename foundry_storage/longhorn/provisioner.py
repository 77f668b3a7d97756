"""
Format and mount raw disks on a cluster node for Longhorn.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .exceptions import DiskSelectionError, DiskSetupError, RemoteCommandError
from .inventory import BlockDevice, DiskInventory, find_device

LOG = logging.getLogger(__name__)


@dataclass
class PreparedDisk:
    disk: BlockDevice
    partition: str
    uuid: str
    mount_point: str
    fstab_added: bool


@dataclass
class ProvisionResult:
    prepared: List[PreparedDisk] = field(default_factory=list)

    @property
    def mount_paths(self) -> List[str]:
        return [p.mount_point for p in self.prepared]


def parse_selection(value: str, disks: Sequence[BlockDevice]) -> List[BlockDevice]:
    """
    Resolve interactive input: ``all`` or comma-separated 1-based indices.

    Empty input selects nothing.

    Raises:
        DiskSelectionError: An entry is not a valid index
    """
    value = value.strip().lower()
    if not value:
        return []
    if value == "all":
        return list(disks)

    selected = []
    for part in value.split(","):
        part = part.strip()
        try:
            index = int(part)
        except ValueError:
            raise DiskSelectionError(f"Invalid selection: {part}")
        if index < 1 or index > len(disks):
            raise DiskSelectionError(f"Invalid selection: {part}")
        selected.append(disks[index - 1])
    return selected


def plan_steps(disks: Sequence[BlockDevice]) -> List[str]:
    """Human-readable actions a run would take, for dry-run output."""
    steps = []
    for disk in disks:
        steps.extend(
            [
                f"Create GPT partition table and partition {disk.partition_path} on {disk.device_path}",
                f"Format {disk.partition_path} with ext4",
                f"Create mount point {disk.mount_point}",
                f"Add fstab entry for {disk.mount_point}",
                f"Mount {disk.partition_path} at {disk.mount_point}",
            ]
        )
    steps.append("Update Longhorn node configuration with new disk paths")
    return steps


class DiskProvisioner:
    """Discovers free disks through a DiskInventory and prepares them."""

    def __init__(self, inventory: DiskInventory):
        self.inventory = inventory

    def discover(self) -> List[BlockDevice]:
        return self.inventory.available_disks()

    def select_by_name(self, available: Sequence[BlockDevice], names: Sequence[str]) -> List[BlockDevice]:
        """
        Pick disks named by the operator.

        Raises:
            DiskSelectionError: A name is not among the available disks
        """
        selected = []
        for name in names:
            device = find_device(list(available), name)
            if device is None:
                raise DiskSelectionError(f"Disk {name} not found or already mounted")
            if device not in selected:
                selected.append(device)
        return selected

    def prepare_disk(self, disk: BlockDevice) -> PreparedDisk:
        """
        Partition, format and mount a single disk.

        Raises:
            DiskSetupError: A step failed; earlier steps are not undone
        """
        mount_point = disk.mount_point
        step = "partition"
        try:
            LOG.info("Partitioning %s", disk.device_path)
            partition = self.inventory.create_partition(disk)
            step = "detect partition on"
            self.inventory.wait_for_partition(partition)

            step = "format"
            LOG.info("Formatting %s with ext4", partition)
            self.inventory.format_ext4(partition)

            step = "create mount point for"
            self.inventory.create_mount_point(mount_point)

            step = "read filesystem UUID of"
            uuid = self.inventory.filesystem_uuid(partition)

            step = "add fstab entry for"
            fstab_added = self.inventory.ensure_fstab_entry(uuid, mount_point)

            step = "mount"
            LOG.info("Mounting %s at %s", partition, mount_point)
            self.inventory.mount(mount_point)

            step = "set permissions on"
            self.inventory.set_permissions(mount_point)
        except RemoteCommandError as e:
            raise DiskSetupError(disk.name, step, e.message) from e

        return PreparedDisk(
            disk=disk,
            partition=partition,
            uuid=uuid,
            mount_point=mount_point,
            fstab_added=fstab_added,
        )

    def prepare_disks(self, disks: Sequence[BlockDevice], result: Optional[ProvisionResult] = None) -> ProvisionResult:
        """
        Prepare disks one after another, stopping at the first failure.

        Disks completed before a failure stay mounted. Pass ``result`` to see
        them after a DiskSetupError.
        """
        if result is None:
            result = ProvisionResult()
        for disk in disks:
            result.prepared.append(self.prepare_disk(disk))
        return result
