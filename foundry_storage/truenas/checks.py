"""
Connectivity and permission check for a configured TrueNAS backend.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .client import TrueNASClient
from .exceptions import TrueNASConnectionError, TrueNASException, TrueNASSetupError
from .models import DatasetConfig, DatasetType, Pool

LOG = logging.getLogger(__name__)

TEST_DATASET_PREFIX = "foundry-test-"
TEST_DATASET_COMMENT = "Foundry connectivity test - safe to delete"


@dataclass
class BackendCheckResult:
    pools: List[Pool] = field(default_factory=list)
    test_pool: Optional[str] = None
    test_dataset: Optional[str] = None
    cleanup_warning: Optional[str] = None
    dataset_count: Optional[int] = None
    warnings: List[str] = field(default_factory=list)


def scratch_dataset_name(pool_name: str, timestamp: Optional[int] = None) -> str:
    if timestamp is None:
        timestamp = int(time.time())
    return f"{pool_name}/{TEST_DATASET_PREFIX}{timestamp}"


def run_backend_check(
    client: TrueNASClient,
    full_test: bool = False,
    pool_name: Optional[str] = None,
    clock: Callable[[], float] = time.time,
) -> BackendCheckResult:
    """
    Check that the backend is reachable and usable.

    Pings the API and lists pools. With ``full_test``, a throwaway dataset is
    created on ``pool_name`` (default: first pool), read back and deleted.
    A failed delete is reported in ``cleanup_warning`` and does not fail the
    check; neither does a failure to count datasets.

    Raises:
        TrueNASConnectionError: The API is unreachable
        TrueNASSetupError: No pools exist, the named pool is missing, or the
            test dataset could not be created or read back
    """
    result = BackendCheckResult()

    try:
        client.ping()
    except TrueNASException as e:
        raise TrueNASConnectionError(f"Connection failed: {e.message}") from e

    try:
        result.pools = client.list_pools()
    except TrueNASException as e:
        raise TrueNASSetupError(f"Failed to list pools: {e.message}") from e
    if not result.pools:
        raise TrueNASSetupError("No storage pools available")

    if full_test:
        if pool_name:
            if not any(pool.name == pool_name for pool in result.pools):
                raise TrueNASSetupError(f"Pool '{pool_name}' not found")
        else:
            pool_name = result.pools[0].name
        result.test_pool = pool_name

        name = scratch_dataset_name(pool_name, int(clock()))
        result.test_dataset = name
        LOG.info("Creating test dataset %s", name)
        try:
            client.create_dataset(DatasetConfig(name=name, type=DatasetType.FILESYSTEM, comments=TEST_DATASET_COMMENT))
        except TrueNASException as e:
            raise TrueNASSetupError(f"Failed to create test dataset: {e.message}") from e

        try:
            client.get_dataset(name)
        except TrueNASException as e:
            raise TrueNASSetupError(f"Failed to verify dataset: {e.message}") from e

        try:
            client.delete_dataset(name)
        except TrueNASException as e:
            result.cleanup_warning = f"Failed to delete test dataset {name}: {e.message}"
            LOG.warning("%s", result.cleanup_warning)
            result.warnings.append(result.cleanup_warning)

    try:
        result.dataset_count = len(client.list_datasets())
    except TrueNASException as e:
        message = f"Failed to list datasets: {e.message}"
        LOG.warning("%s", message)
        result.warnings.append(message)

    return result


STATUS_CONNECTED = "connected"
STATUS_UNREACHABLE = "unreachable"


@dataclass
class BackendStatus:
    status: str
    pools: List[Pool] = field(default_factory=list)

    @property
    def connected(self) -> bool:
        return self.status == STATUS_CONNECTED


def backend_status(client: TrueNASClient) -> BackendStatus:
    """
    Report whether the backend answers and which pools it has.

    Unlike run_backend_check this never raises for appliance errors: a failed
    ping gives ``unreachable`` and a failed pool listing leaves ``pools`` empty.
    """
    try:
        client.ping()
    except TrueNASException as e:
        LOG.debug("TrueNAS ping failed: %s", e.message)
        return BackendStatus(status=STATUS_UNREACHABLE)

    result = BackendStatus(status=STATUS_CONNECTED)
    try:
        result.pools = client.list_pools()
    except TrueNASException as e:
        LOG.warning("Failed to list pools: %s", e.message)
    return result
