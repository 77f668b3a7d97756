"""
TrueNAS setup reconciliation for democratic-csi.

Brings a TrueNAS appliance into the state the CSI driver expects: a pool, a
parent dataset, running NFS/iSCSI services, an iSCSI portal and an "allow
all" initiator group. Every step reuses what already exists, so running setup
repeatedly converges on the same state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .client import TrueNASClient
from .csi import CSIConfig, project_csi_config
from .ensure import EnsureOutcome, ensure
from .exceptions import (
    RequirementNotMet,
    TrueNASConnectionError,
    TrueNASException,
    TrueNASSetupError,
)
from .models import (
    Dataset,
    DatasetConfig,
    DatasetType,
    ISCSIInitiator,
    ISCSIInitiatorConfig,
    ISCSIPortal,
    ISCSIPortalConfig,
    ISCSIPortalListen,
    Pool,
    PoolCreateConfig,
    PoolCreateTopology,
    PoolCreateVDev,
    Service,
    SystemInfo,
    VDevType,
)
from .topology import select_vdev_type

LOG = logging.getLogger(__name__)

NFS_SERVICE = "nfs"
ISCSI_SERVICE = "iscsitarget"

DATASET_COMMENT = "Foundry CSI parent dataset"
PORTAL_COMMENT = "Foundry iSCSI portal"
INITIATOR_COMMENT = "Foundry CSI - allow all initiators"


@dataclass
class SetupConfig:
    pool_name: str = "tank"
    dataset_name: str = "k8s"
    enable_nfs: bool = True
    enable_iscsi: bool = True
    iscsi_portal_ip: str = "0.0.0.0"
    iscsi_portal_port: int = 3260
    vdev_type: str = VDevType.MIRROR.value
    min_disks_for_mirror: int = 2

    @classmethod
    def from_config(cls, truenas_cfg) -> "SetupConfig":
        """Build setup settings from the [truenas] section of the config file."""
        return cls(
            pool_name=truenas_cfg.pool_name,
            dataset_name=truenas_cfg.dataset_name,
            enable_nfs=truenas_cfg.enable_nfs,
            enable_iscsi=truenas_cfg.enable_iscsi,
            iscsi_portal_ip=truenas_cfg.iscsi_portal_ip,
            iscsi_portal_port=truenas_cfg.iscsi_portal_port,
            vdev_type=truenas_cfg.vdev_type,
            min_disks_for_mirror=truenas_cfg.min_disks_for_mirror,
        )


@dataclass
class StepResult:
    name: str
    ok: bool
    created: bool = False
    message: str = ""


@dataclass
class SetupResult:
    system_info: Optional[SystemInfo] = None
    pool: Optional[Pool] = None
    pool_created: bool = False
    dataset: Optional[Dataset] = None
    dataset_created: bool = False
    nfs_enabled: bool = False
    nfs_started: bool = False
    iscsi_enabled: bool = False
    iscsi_started: bool = False
    iscsi_portal: Optional[ISCSIPortal] = None
    portal_created: bool = False
    iscsi_initiator: Optional[ISCSIInitiator] = None
    initiator_created: bool = False
    warnings: List[str] = field(default_factory=list)
    steps: List[StepResult] = field(default_factory=list)

    def record(self, name: str, ok: bool, created: bool = False, message: str = "") -> None:
        self.steps.append(StepResult(name=name, ok=ok, created=created, message=message))

    def warn(self, name: str, message: str) -> None:
        LOG.warning("%s", message)
        self.warnings.append(message)
        self.record(name, ok=False, message=message)


def dataset_full_name(pool_name: str, dataset_name: str) -> str:
    return f"{pool_name}/{dataset_name}"


def select_pool(pools: List[Pool], name: str) -> Optional[Pool]:
    """Pick the pool with the configured name, else the first pool listed."""
    for pool in pools:
        if pool.name == name:
            return pool
    if pools:
        # List order is defined by the appliance, so this can change between runs.
        LOG.warning("No pool named %s; falling back to first pool %s", name, pools[0].name)
        return pools[0]
    return None


class Reconciler:
    """Runs the TrueNAS setup steps against one appliance."""

    def __init__(self, client: TrueNASClient):
        self.client = client

    def validate_connection(self) -> SystemInfo:
        try:
            return self.client.get_system_info()
        except TrueNASException as e:
            raise TrueNASConnectionError(f"Failed to connect to TrueNAS: {e.message}") from e

    def setup(self, cfg: Optional[SetupConfig] = None) -> SetupResult:
        """
        Run the full setup pipeline.

        Connection, pool and dataset failures abort with an exception. NFS and
        iSCSI failures are recorded in ``SetupResult.warnings`` and the run
        continues.
        """
        if cfg is None:
            cfg = SetupConfig()

        result = SetupResult()

        info = self.validate_connection()
        result.system_info = info
        result.record("connect", ok=True, message=f"Connected to TrueNAS {info.version} ({info.hostname})")
        LOG.info("Connected to TrueNAS %s (%s)", info.version, info.hostname)

        try:
            pool_outcome = self.ensure_pool(cfg)
        except TrueNASException as e:
            raise TrueNASSetupError(f"Failed to ensure pool: {e.message}") from e
        result.pool = pool_outcome.resource
        result.pool_created = pool_outcome.created
        result.record(
            "pool",
            ok=True,
            created=pool_outcome.created,
            message=f"{'Created' if pool_outcome.created else 'Using existing'} pool {result.pool.name!r}",
        )

        try:
            dataset_outcome = self.ensure_dataset(result.pool.name, cfg.dataset_name)
        except TrueNASException as e:
            raise TrueNASSetupError(f"Failed to ensure dataset: {e.message}") from e
        result.dataset = dataset_outcome.resource
        result.dataset_created = dataset_outcome.created
        result.record(
            "dataset",
            ok=True,
            created=dataset_outcome.created,
            message=f"{'Created' if dataset_outcome.created else 'Using existing'} dataset {result.dataset.id!r}",
        )

        if cfg.enable_nfs:
            try:
                outcome = self.ensure_service_running(NFS_SERVICE)
            except TrueNASException as e:
                result.warn("nfs", f"Failed to enable NFS: {e.message}")
            else:
                result.nfs_enabled = True
                result.nfs_started = outcome.created
                result.record(
                    "nfs",
                    ok=True,
                    created=outcome.created,
                    message="NFS service enabled and started" if outcome.created else "NFS service already running",
                )

        if cfg.enable_iscsi:
            self._setup_iscsi(cfg, result)

        return result

    def _setup_iscsi(self, cfg: SetupConfig, result: SetupResult) -> None:
        try:
            outcome = self.ensure_service_running(ISCSI_SERVICE)
        except TrueNASException as e:
            result.warn("iscsi", f"Failed to enable iSCSI: {e.message}")
            return

        result.iscsi_enabled = True
        result.iscsi_started = outcome.created
        result.record(
            "iscsi",
            ok=True,
            created=outcome.created,
            message="iSCSI service enabled and started" if outcome.created else "iSCSI service already running",
        )

        try:
            portal = self.ensure_iscsi_portal(cfg.iscsi_portal_ip, cfg.iscsi_portal_port)
        except TrueNASException as e:
            result.warn("iscsi_portal", f"Failed to create iSCSI portal: {e.message}")
        else:
            result.iscsi_portal = portal.resource
            result.portal_created = portal.created
            result.record(
                "iscsi_portal",
                ok=True,
                created=portal.created,
                message=f"iSCSI portal configured on {cfg.iscsi_portal_ip}:{cfg.iscsi_portal_port}",
            )

        try:
            initiator = self.ensure_iscsi_initiator()
        except TrueNASException as e:
            result.warn("iscsi_initiator", f"Failed to create iSCSI initiator: {e.message}")
        else:
            result.iscsi_initiator = initiator.resource
            result.initiator_created = initiator.created
            result.record("iscsi_initiator", ok=True, created=initiator.created, message="iSCSI initiator group configured")

    def ensure_pool(self, cfg: SetupConfig) -> EnsureOutcome[Pool]:
        return ensure(
            lookup=self.client.list_pools,
            matcher=lambda pools: select_pool(pools, cfg.pool_name),
            create=lambda: self.create_pool(cfg),
            missing_ok=False,
        )

    def create_pool(self, cfg: SetupConfig) -> Pool:
        """Create a pool from every unused disk, in a single data vdev."""
        disks = self.client.get_unused_disks()
        if not disks:
            raise TrueNASSetupError("No unused disks available to create pool")

        vdev_type = select_vdev_type(cfg.vdev_type, len(disks), cfg.min_disks_for_mirror)
        disk_names = [disk.name for disk in disks]
        LOG.info("Creating pool %s with %d disks (%s)", cfg.pool_name, len(disks), vdev_type.value)

        config = PoolCreateConfig(
            name=cfg.pool_name,
            topology=PoolCreateTopology(data=[PoolCreateVDev(type=vdev_type, disks=disk_names)]),
        )
        return self.client.create_pool(config)

    def ensure_dataset(self, pool_name: str, dataset_name: str) -> EnsureOutcome[Dataset]:
        full_name = dataset_full_name(pool_name, dataset_name)
        return ensure(
            lookup=lambda: self.client.get_dataset(full_name),
            create=lambda: self.client.create_dataset(
                DatasetConfig(name=full_name, type=DatasetType.FILESYSTEM, comments=DATASET_COMMENT)
            ),
        )

    def ensure_service_running(self, name: str) -> EnsureOutcome[Service]:
        """Start a service unless it runs already; ``created`` means it was started."""

        def _start() -> Service:
            self.client.ensure_service_running(name)
            return self.client.get_service(name)

        return ensure(
            lookup=lambda: self.client.get_service(name),
            matcher=lambda svc: svc if svc.running else None,
            create=_start,
            missing_ok=False,
        )

    def ensure_iscsi_portal(self, ip: str, port: int) -> EnsureOutcome[ISCSIPortal]:
        def _match(portals: List[ISCSIPortal]) -> Optional[ISCSIPortal]:
            for portal in portals:
                if any(listen.covers(ip, port) for listen in portal.listen):
                    return portal
            return None

        return ensure(
            lookup=self.client.list_iscsi_portals,
            matcher=_match,
            create=lambda: self.client.create_iscsi_portal(
                ISCSIPortalConfig(listen=[ISCSIPortalListen(ip=ip, port=port)], comment=PORTAL_COMMENT)
            ),
            missing_ok=False,
        )

    def ensure_iscsi_initiator(self) -> EnsureOutcome[ISCSIInitiator]:
        return ensure(
            lookup=self.client.list_iscsi_initiators,
            matcher=lambda groups: next((g for g in groups if g.allows_all), None),
            create=lambda: self.client.create_iscsi_initiator(
                ISCSIInitiatorConfig(initiators=[], comment=INITIATOR_COMMENT)
            ),
            missing_ok=False,
        )

    def validate_requirements(self, cfg: Optional[SetupConfig] = None) -> SetupResult:
        """
        Check that setup has already been applied, without changing anything.

        Returns:
            SetupResult holding the pool and dataset that were checked; the
            pool may be the first-pool fallback rather than ``cfg.pool_name``

        Raises:
            TrueNASConnectionError: The appliance is unreachable
            RequirementNotMet: The first requirement found missing
        """
        if cfg is None:
            cfg = SetupConfig()

        result = SetupResult()
        result.system_info = self.validate_connection()

        try:
            pools = self.client.list_pools()
        except TrueNASException as e:
            raise RequirementNotMet("pool", f"Failed to list pools: {e.message}") from e
        pool = select_pool(pools, cfg.pool_name)
        if pool is None:
            raise RequirementNotMet("pool", "No storage pools found - run setup first")
        result.pool = pool

        full_name = dataset_full_name(pool.name, cfg.dataset_name)
        try:
            result.dataset = self.client.get_dataset(full_name)
        except TrueNASException as e:
            raise RequirementNotMet("dataset", f"CSI dataset {full_name!r} not found - run setup first") from e

        if cfg.enable_nfs:
            self._require_running(NFS_SERVICE, "NFS")

        if cfg.enable_iscsi:
            self._require_running(ISCSI_SERVICE, "iSCSI")

            try:
                portals = self.client.list_iscsi_portals()
            except TrueNASException as e:
                raise RequirementNotMet("iscsi_portal", f"Failed to list iSCSI portals: {e.message}") from e
            if not portals:
                raise RequirementNotMet("iscsi_portal", "No iSCSI portals configured")

            try:
                initiators = self.client.list_iscsi_initiators()
            except TrueNASException as e:
                raise RequirementNotMet("iscsi_initiator", f"Failed to list iSCSI initiators: {e.message}") from e
            if not initiators:
                raise RequirementNotMet("iscsi_initiator", "No iSCSI initiator groups configured")

        return result

    def _require_running(self, service_name: str, label: str) -> None:
        try:
            service = self.client.get_service(service_name)
        except TrueNASException as e:
            raise RequirementNotMet(service_name, f"{label} service not found: {e.message}") from e
        if not service.running:
            raise RequirementNotMet(service_name, f"{label} service is not running")

    def csi_config(self, result: SetupResult, api_url: str) -> CSIConfig:
        """Project the democratic-csi settings from a completed setup."""
        return project_csi_config(
            api_url=api_url,
            api_key=self.client.api_key,
            pool_name=result.pool.name if result.pool else "",
            dataset_parent=result.dataset.id if result.dataset else "",
            portal=result.iscsi_portal,
            initiator=result.iscsi_initiator,
        )
