"""
Block device inventory and disk preparation on a cluster node.

RemoteDiskInventory issues fixed shell pipelines through a CommandRunner
(normally an SSH session) and parses their output.
"""

import abc
import logging
import shlex
from dataclasses import dataclass
from typing import List, Optional, Protocol

from .exceptions import RemoteCommandError

LOG = logging.getLogger(__name__)

MOUNT_PREFIX = "/mnt/longhorn-"
FSTAB_PATH = "/etc/fstab"
FSTAB_OPTIONS = "ext4 defaults,nofail 0 2"

LSBLK_COMMAND = "lsblk -ndro NAME,SIZE,TYPE,MOUNTPOINT,FSTYPE 2>/dev/null"
# fdisk keystrokes for one whole-disk partition on a fresh GPT label, fed via printf.
FDISK_SCRIPT = "g\\nn\\n1\\n\\n\\nw\\n"
FDISK_ALTERED = "The partition table has been altered"


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    def execute(self, command: str) -> CommandResult: ...


@dataclass
class BlockDevice:
    name: str
    size: str = ""
    type: str = ""
    mountpoint: str = ""
    fstype: str = ""

    @property
    def device_path(self) -> str:
        return f"/dev/{self.name}"

    @property
    def partition_path(self) -> str:
        """First partition: sdb -> /dev/sdb1, nvme0n1 -> /dev/nvme0n1p1."""
        if self.name[-1:].isdigit():
            return f"{self.device_path}p1"
        return f"{self.device_path}1"

    @property
    def mount_point(self) -> str:
        return f"{MOUNT_PREFIX}{self.name}"


def _unescape(value: str) -> str:
    # lsblk raw mode hex-escapes unsafe characters, e.g. spaces as \x20
    if "\\x" not in value:
        return value
    return value.encode("latin-1", "backslashreplace").decode("unicode_escape")


def parse_lsblk_output(output: str) -> List[BlockDevice]:
    """
    Parse ``lsblk -ndro NAME,SIZE,TYPE,MOUNTPOINT,FSTYPE`` output.

    Raw mode separates columns with exactly one space and keeps empty
    columns, so fields are read by position.
    """
    devices = []
    for line in output.splitlines():
        if not line.strip():
            continue
        fields = line.split(" ")
        if len(fields) < 3:
            continue
        fields += [""] * (5 - len(fields))
        devices.append(
            BlockDevice(
                name=_unescape(fields[0]),
                size=_unescape(fields[1]),
                type=_unescape(fields[2]),
                mountpoint=_unescape(fields[3]),
                fstype=_unescape(fields[4]),
            )
        )
    return devices


def fstab_entry(uuid: str, mount_point: str) -> str:
    return f"UUID={uuid} {mount_point} {FSTAB_OPTIONS}"


class DiskInventory(abc.ABC):
    """Lists block devices on a node and prepares them for Longhorn."""

    @abc.abstractmethod
    def list_block_devices(self) -> List[BlockDevice]:
        pass

    @abc.abstractmethod
    def has_mounted_partitions(self, disk: BlockDevice) -> bool:
        """True when the disk or anything below it is mounted."""

    @abc.abstractmethod
    def create_partition(self, disk: BlockDevice) -> str:
        """Create one partition spanning the disk; returns the partition path."""

    @abc.abstractmethod
    def wait_for_partition(self, partition: str) -> None:
        pass

    @abc.abstractmethod
    def format_ext4(self, partition: str) -> None:
        pass

    @abc.abstractmethod
    def create_mount_point(self, mount_point: str) -> None:
        pass

    @abc.abstractmethod
    def filesystem_uuid(self, partition: str) -> str:
        pass

    @abc.abstractmethod
    def ensure_fstab_entry(self, uuid: str, mount_point: str) -> bool:
        """Add the fstab line unless the mount point is listed; True if added."""

    @abc.abstractmethod
    def mount(self, mount_point: str) -> None:
        pass

    @abc.abstractmethod
    def set_permissions(self, mount_point: str) -> None:
        pass

    def available_disks(self) -> List[BlockDevice]:
        """
        Whole disks that are safe to format.

        A disk qualifies when it has no mountpoint of its own and no mounted
        partition underneath. Disks whose partition check fails are skipped.
        """
        available = []
        for device in self.list_block_devices():
            if device.type != "disk" or device.mountpoint:
                continue
            try:
                if self.has_mounted_partitions(device):
                    LOG.debug("Skipping %s: has mounted partitions", device.name)
                    continue
            except RemoteCommandError as e:
                LOG.warning("Skipping %s: partition check failed: %s", device.name, e.message)
                continue
            available.append(device)
        return available


class RemoteDiskInventory(DiskInventory):
    """DiskInventory backed by shell commands on the target host."""

    def __init__(self, runner: CommandRunner, sudo: str = "sudo"):
        self.runner = runner
        self.sudo = sudo

    def _sudo(self, command: str) -> str:
        return f"{self.sudo} {command}" if self.sudo else command

    def _run(self, command: str, check: bool = True) -> CommandResult:
        LOG.debug("Running: %s", command)
        result = self.runner.execute(command)
        if check and not result.ok:
            raise RemoteCommandError(command, result)
        return result

    def list_block_devices(self) -> List[BlockDevice]:
        return parse_lsblk_output(self._run(LSBLK_COMMAND).stdout)

    def has_mounted_partitions(self, disk: BlockDevice) -> bool:
        command = f"lsblk -nlo MOUNTPOINT {shlex.quote(disk.device_path)} 2>/dev/null | grep -v '^$' | head -1"
        return bool(self._run(command).stdout.strip())

    def create_partition(self, disk: BlockDevice) -> str:
        command = f"printf '{FDISK_SCRIPT}' | {self._sudo('fdisk ' + shlex.quote(disk.device_path))}"
        result = self._run(command, check=False)
        # fdisk can exit non-zero when the kernel re-read of the table fails
        if not result.ok and FDISK_ALTERED not in result.stdout:
            raise RemoteCommandError(command, result)
        return disk.partition_path

    def wait_for_partition(self, partition: str) -> None:
        command = f"{self._sudo('udevadm settle')} && sleep 1 && ls {shlex.quote(partition)}"
        result = self._run(command, check=False)
        if not result.ok:
            raise RemoteCommandError(command, result, f"Partition {partition} did not appear after fdisk")

    def format_ext4(self, partition: str) -> None:
        self._run(self._sudo(f"mkfs.ext4 -F {shlex.quote(partition)}"))

    def create_mount_point(self, mount_point: str) -> None:
        self._run(self._sudo(f"mkdir -p {shlex.quote(mount_point)}"))

    def filesystem_uuid(self, partition: str) -> str:
        command = self._sudo(f"blkid -s UUID -o value {shlex.quote(partition)}")
        result = self._run(command)
        uuid = result.stdout.strip()
        if not uuid:
            raise RemoteCommandError(command, result, f"No filesystem UUID found on {partition}")
        return uuid

    def fstab_mount_points(self) -> List[str]:
        """Mount points (second field) of the active /etc/fstab entries."""
        points = []
        for line in self._run(f"cat {FSTAB_PATH}").stdout.splitlines():
            fields = line.split()
            if len(fields) >= 2 and not fields[0].startswith("#"):
                points.append(fields[1])
        return points

    def ensure_fstab_entry(self, uuid: str, mount_point: str) -> bool:
        # Exact field match: /mnt/longhorn-sdb must not match /mnt/longhorn-sdba.
        if mount_point in self.fstab_mount_points():
            LOG.info("fstab already has an entry for %s", mount_point)
            return False
        entry = fstab_entry(uuid, mount_point)
        self._run(f"echo {shlex.quote(entry)} | {self._sudo('tee -a ' + FSTAB_PATH)}")
        return True

    def mount(self, mount_point: str) -> None:
        self._run(self._sudo(f"mount {shlex.quote(mount_point)}"))

    def set_permissions(self, mount_point: str) -> None:
        self._run(self._sudo(f"chmod 777 {shlex.quote(mount_point)}"))


def find_device(devices: List[BlockDevice], name: str) -> Optional[BlockDevice]:
    name = name[len("/dev/"):] if name.startswith("/dev/") else name
    for device in devices:
        if device.name == name:
            return device
    return None
