"""
Pydantic models for TrueNAS API requests and responses.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class VDevType(str, Enum):
    """Pool vdev layouts, from least to most redundant."""

    STRIPE = "STRIPE"
    MIRROR = "MIRROR"
    RAIDZ1 = "RAIDZ1"
    RAIDZ2 = "RAIDZ2"
    RAIDZ3 = "RAIDZ3"


class DatasetType(str, Enum):
    """Dataset types."""

    FILESYSTEM = "FILESYSTEM"
    VOLUME = "VOLUME"


class ServiceState(str, Enum):
    """Service states reported by TrueNAS."""

    RUNNING = "RUNNING"
    STOPPED = "STOPPED"


WILDCARD_IP = "0.0.0.0"


class TrueNASModel(BaseModel):
    """Base model: unknown fields are ignored, aliases and names both accepted."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def to_request(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _parsed_value(value: Any) -> Any:
    # Newer TrueNAS releases report properties as {"parsed": ..., "rawvalue": ...}
    if isinstance(value, dict):
        if "parsed" in value:
            return value["parsed"]
        return value.get("rawvalue")
    return value


# System


class SystemInfo(TrueNASModel):
    version: str = ""
    hostname: str = ""
    physical_memory: int = Field(0, alias="physmem")
    model: str = ""
    cores: int = 0
    loadavg: List[float] = Field(default_factory=list)
    uptime: str = ""
    uptime_seconds: float = 0
    system_product: Optional[str] = None
    license: Optional[Dict[str, Any]] = None


# Pools


class VDevStats(TrueNASModel):
    read_errors: int = 0
    write_errors: int = 0
    checksum_errors: int = 0


class TopologyDisk(TrueNASModel):
    type: str = ""
    path: Optional[str] = None
    status: str = ""
    stats: VDevStats = Field(default_factory=VDevStats)


class VDev(TrueNASModel):
    type: str = ""
    children: List[TopologyDisk] = Field(default_factory=list)
    status: str = ""
    stats: VDevStats = Field(default_factory=VDevStats)


class Topology(TrueNASModel):
    data: List[VDev] = Field(default_factory=list)
    cache: List[VDev] = Field(default_factory=list)
    log: List[VDev] = Field(default_factory=list)
    spare: List[VDev] = Field(default_factory=list)
    special: List[VDev] = Field(default_factory=list)


class ScanStats(TrueNASModel):
    function: Optional[str] = None
    state: Optional[str] = None
    start_time: Optional[Any] = None
    end_time: Optional[Any] = None
    percentage: Optional[float] = None
    bytes_issued: Optional[int] = None
    bytes_to_examine: Optional[int] = None


class Pool(TrueNASModel):
    id: int = 0
    name: str
    guid: str = ""
    status: str = ""
    healthy: bool = False
    size: Optional[int] = 0
    allocated: Optional[int] = 0
    free: Optional[int] = 0
    topology: Optional[Topology] = None
    scan: Optional[ScanStats] = None

    @property
    def free_gib(self) -> float:
        return float(self.free or 0) / (1024 ** 3)

    @property
    def size_gib(self) -> float:
        return float(self.size or 0) / (1024 ** 3)

    @property
    def allocated_gib(self) -> float:
        return float(self.allocated or 0) / (1024 ** 3)

    @property
    def used_percent(self) -> float:
        if not self.size:
            return 0.0
        return float(self.allocated or 0) / self.size * 100


class PoolCreateVDev(TrueNASModel):
    type: VDevType
    disks: List[str]


class PoolCreateTopology(TrueNASModel):
    data: List[PoolCreateVDev]
    cache: Optional[List[PoolCreateVDev]] = None
    log: Optional[List[PoolCreateVDev]] = None
    spare: Optional[List[PoolCreateVDev]] = None
    special: Optional[List[PoolCreateVDev]] = None


class PoolCreateConfig(TrueNASModel):
    name: str
    encryption: bool = False
    topology: PoolCreateTopology


# Datasets


class Dataset(TrueNASModel):
    id: str
    name: str = ""
    pool: str = ""
    type: str = ""
    mountpoint: Optional[str] = None
    available: Optional[int] = None
    used: Optional[int] = None
    comments: Optional[str] = None

    @field_validator("available", "used", "comments", mode="before")
    @classmethod
    def _unwrap_property(cls, v: Any) -> Any:
        return _parsed_value(v)


class DatasetConfig(TrueNASModel):
    name: str
    type: Optional[DatasetType] = None
    comments: Optional[str] = None
    properties: Optional[Dict[str, str]] = None


# NFS


class NFSShare(TrueNASModel):
    id: int
    path: str = ""
    comment: str = ""
    networks: List[str] = Field(default_factory=list)
    hosts: List[str] = Field(default_factory=list)
    enabled: bool = True
    read_only: bool = Field(False, alias="ro")
    mapall_user: Optional[str] = None
    mapall_group: Optional[str] = None


class NFSConfig(TrueNASModel):
    path: str
    comment: Optional[str] = None
    networks: Optional[List[str]] = None
    hosts: Optional[List[str]] = None
    read_only: bool = Field(False, alias="ro")
    mapall_user: Optional[str] = None
    mapall_group: Optional[str] = None


# Services


class Service(TrueNASModel):
    id: int = 0
    service: str
    enable: bool = False
    state: str = ""
    pids: List[int] = Field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.state == ServiceState.RUNNING.value


# Disks


class Disk(TrueNASModel):
    identifier: str = ""
    name: str
    subsystem: str = ""
    number: Optional[int] = None
    serial: str = ""
    size: Optional[int] = None
    description: str = ""
    model: Optional[str] = None
    rotationrate: Optional[int] = None
    type: Optional[str] = None
    pool: Optional[str] = None


# iSCSI


class ISCSIPortalListen(TrueNASModel):
    ip: str
    port: int = 3260

    def covers(self, ip: str, port: int) -> bool:
        """A wildcard listener covers every address on the same port."""
        return self.port == port and (self.ip == ip or self.ip == WILDCARD_IP)


class ISCSIPortal(TrueNASModel):
    id: int
    tag: int = 0
    comment: str = ""
    listen: List[ISCSIPortalListen] = Field(default_factory=list)


class ISCSIPortalConfig(TrueNASModel):
    comment: Optional[str] = None
    listen: List[ISCSIPortalListen]


class ISCSIInitiator(TrueNASModel):
    id: int
    tag: int = 0
    initiators: List[str] = Field(default_factory=list)
    comment: str = ""

    @property
    def allows_all(self) -> bool:
        return not self.initiators


class ISCSIInitiatorConfig(TrueNASModel):
    # An empty list allows every initiator.
    initiators: List[str] = Field(default_factory=list)
    comment: Optional[str] = None


class ISCSITargetGroup(TrueNASModel):
    portal: int
    initiator: Optional[int] = None
    auth: Optional[int] = None
    authmethod: str = "NONE"


class ISCSITarget(TrueNASModel):
    id: int
    name: str
    alias: Optional[str] = None
    mode: str = "ISCSI"
    groups: List[ISCSITargetGroup] = Field(default_factory=list)


class ISCSITargetConfig(TrueNASModel):
    name: str
    alias: Optional[str] = None
    mode: Optional[str] = None
    groups: Optional[List[ISCSITargetGroup]] = None


class ISCSIExtent(TrueNASModel):
    id: int
    name: str
    type: str = "DISK"
    disk: Optional[str] = None
    path: Optional[str] = None
    filesize: Optional[int] = None
    blocksize: int = 512
    rpm: str = "SSD"
    enabled: bool = True
    comment: Optional[str] = None


class ISCSIExtentConfig(TrueNASModel):
    name: str
    type: str = "DISK"
    disk: Optional[str] = None
    path: Optional[str] = None
    filesize: Optional[int] = None
    blocksize: Optional[int] = None
    rpm: Optional[str] = None
    comment: Optional[str] = None


class ISCSITargetExtent(TrueNASModel):
    id: int
    target: int
    extent: int
    lun_id: Optional[int] = Field(None, alias="lunid")


class ISCSITargetExtentConfig(TrueNASModel):
    target: int
    extent: int
    lun_id: Optional[int] = Field(None, alias="lunid")
