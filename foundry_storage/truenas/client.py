"""REST API client for TrueNAS."""

import logging
from typing import Any, List, Optional, Type, TypeVar
from urllib.parse import quote

import requests
import urllib3
from pydantic import TypeAdapter, ValidationError

from .exceptions import (
    TrueNASAPIError,
    TrueNASConnectionError,
    TrueNASException,
    TrueNASNotFoundError,
    TrueNASResponseError,
    TrueNASTimeout,
    TrueNASValidationError,
)
from .models import (
    Dataset,
    DatasetConfig,
    DatasetType,
    Disk,
    ISCSIExtent,
    ISCSIExtentConfig,
    ISCSIInitiator,
    ISCSIInitiatorConfig,
    ISCSIPortal,
    ISCSIPortalConfig,
    ISCSITarget,
    ISCSITargetConfig,
    ISCSITargetExtent,
    ISCSITargetExtentConfig,
    NFSConfig,
    NFSShare,
    Pool,
    PoolCreateConfig,
    Service,
    SystemInfo,
)

LOG = logging.getLogger(__name__)

API_PREFIX = "/api/v2.0"

T = TypeVar("T")


class HTTPTransport:
    """Sends requests to TrueNAS and returns raw response bodies.

    One session is shared by every call; the bearer token and JSON headers
    are attached to the session. No retry adapter is mounted: a failed
    request surfaces immediately.
    """

    def __init__(self, base_url: str, api_key: str, timeout: int = 30, verify_ssl: bool = True):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.verify_ssl = verify_ssl

        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    def do(self, method: str, path: str, body: Optional[Any] = None) -> bytes:
        """Perform an HTTP request.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: API path including the /api/v2.0 prefix
            body: JSON-serialisable request body

        Returns:
            Raw response body

        Raises:
            TrueNASConnectionError: Connection failed
            TrueNASTimeout: Request timed out
            TrueNASAPIError: API returned status >= 400
        """
        url = self.base_url + path
        LOG.debug("%s %s", method, url)

        try:
            response = self.session.request(
                method=method,
                url=url,
                json=body,
                timeout=self.timeout,
                verify=self.verify_ssl,
            )
        except requests.exceptions.Timeout as e:
            raise TrueNASTimeout(f"API request timed out after {self.timeout}s: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise TrueNASConnectionError(f"Failed to connect to TrueNAS API: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TrueNASException(f"API request failed: {e}") from e

        if response.status_code >= 400:
            raise TrueNASAPIError.from_response(response.status_code, response.content)

        return response.content

    def close(self) -> None:
        if self.session:
            self.session.close()


def _require_name(value: Optional[str], what: str) -> str:
    if not value or not value.strip():
        raise TrueNASValidationError(f"{what} cannot be empty")
    return value


def _require_id(value: int, what: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise TrueNASValidationError(f"invalid {what} ID: {value}")
    return value


class TrueNASClient:
    """REST API client for TrueNAS.

    Wraps the pool, dataset, sharing, iSCSI, service, disk and system
    endpoints of the TrueNAS v2.0 API and decodes responses into the models
    in :mod:`foundry_storage.truenas.models`.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: int = 30,
        verify_ssl: bool = True,
        transport: Optional[Any] = None,
    ):
        """Initialize the TrueNAS API client.

        Args:
            api_url: TrueNAS URL (e.g., https://truenas.example.com)
            api_key: TrueNAS API key
            timeout: HTTP request timeout in seconds
            verify_ssl: Whether to verify SSL certificates
            transport: Object with ``do(method, path, body) -> bytes``;
                defaults to an HTTPTransport for ``api_url``

        Raises:
            TrueNASValidationError: URL or key is empty
        """
        if not api_url:
            raise TrueNASValidationError("API URL cannot be empty")
        if not api_key:
            raise TrueNASValidationError("API key cannot be empty")

        self.base_url = api_url.rstrip("/")
        self.api_key = api_key
        self.transport = transport or HTTPTransport(self.base_url, api_key, timeout=timeout, verify_ssl=verify_ssl)

    def _call(self, method: str, path: str, body: Optional[Any] = None) -> bytes:
        return self.transport.do(method, API_PREFIX + path, body)

    def _get(self, path: str, model: Type[T]) -> T:
        return self._decode(self._call("GET", path), model)

    def _post(self, path: str, body: Any, model: Type[T]) -> T:
        return self._decode(self._call("POST", path, body), model)

    @staticmethod
    def _decode(raw: bytes, model: Any) -> Any:
        try:
            return TypeAdapter(model).validate_json(raw or b"null")
        except ValidationError as e:
            raise TrueNASResponseError(f"Failed to parse response: {e}") from e

    # System

    def get_system_info(self) -> SystemInfo:
        return self._get("/system/info", SystemInfo)

    def ping(self) -> None:
        """Test connectivity to the TrueNAS API."""
        self._call("GET", "/system/info")

    # Pools

    def list_pools(self) -> List[Pool]:
        return self._get("/pool", List[Pool])

    def get_pool(self, pool_id: int) -> Pool:
        _require_id(pool_id, "pool")
        return self._get(f"/pool/id/{pool_id}", Pool)

    def create_pool(self, config: PoolCreateConfig) -> Pool:
        _require_name(config.name, "pool name")
        if not config.topology.data or not any(vdev.disks for vdev in config.topology.data):
            raise TrueNASValidationError("pool topology must contain at least one disk")
        return self._post("/pool", config.to_request(), Pool)

    # Datasets

    @staticmethod
    def _dataset_path(name: str) -> str:
        return f"/pool/dataset/id/{quote(name, safe='')}"

    def list_datasets(self) -> List[Dataset]:
        return self._get("/pool/dataset", List[Dataset])

    def get_dataset(self, name: str) -> Dataset:
        _require_name(name, "dataset name")
        return self._get(self._dataset_path(name), Dataset)

    def create_dataset(self, config: DatasetConfig) -> Dataset:
        _require_name(config.name, "dataset name")
        if config.type is None:
            config = config.model_copy(update={"type": DatasetType.FILESYSTEM})
        return self._post("/pool/dataset", config.to_request(), Dataset)

    def delete_dataset(self, name: str) -> None:
        _require_name(name, "dataset name")
        self._call("DELETE", self._dataset_path(name))

    # NFS shares

    def list_nfs_shares(self) -> List[NFSShare]:
        return self._get("/sharing/nfs", List[NFSShare])

    def get_nfs_share(self, share_id: int) -> NFSShare:
        _require_id(share_id, "NFS share")
        return self._get(f"/sharing/nfs/id/{share_id}", NFSShare)

    def create_nfs_share(self, config: NFSConfig) -> NFSShare:
        _require_name(config.path, "NFS share path")
        return self._post("/sharing/nfs", config.to_request(), NFSShare)

    def delete_nfs_share(self, share_id: int) -> None:
        _require_id(share_id, "NFS share")
        self._call("DELETE", f"/sharing/nfs/id/{share_id}")

    # iSCSI portals

    def list_iscsi_portals(self) -> List[ISCSIPortal]:
        return self._get("/iscsi/portal", List[ISCSIPortal])

    def create_iscsi_portal(self, config: ISCSIPortalConfig) -> ISCSIPortal:
        if not config.listen:
            raise TrueNASValidationError("iSCSI portal must listen on at least one address")
        for listen in config.listen:
            _require_name(listen.ip, "iSCSI portal listen IP")
            _require_id(listen.port, "iSCSI portal port")
        return self._post("/iscsi/portal", config.to_request(), ISCSIPortal)

    def delete_iscsi_portal(self, portal_id: int) -> None:
        _require_id(portal_id, "iSCSI portal")
        self._call("DELETE", f"/iscsi/portal/id/{portal_id}")

    # iSCSI initiator groups

    def list_iscsi_initiators(self) -> List[ISCSIInitiator]:
        return self._get("/iscsi/initiator", List[ISCSIInitiator])

    def create_iscsi_initiator(self, config: ISCSIInitiatorConfig) -> ISCSIInitiator:
        return self._post("/iscsi/initiator", config.to_request(), ISCSIInitiator)

    def delete_iscsi_initiator(self, initiator_id: int) -> None:
        _require_id(initiator_id, "iSCSI initiator")
        self._call("DELETE", f"/iscsi/initiator/id/{initiator_id}")

    # iSCSI targets

    def list_iscsi_targets(self) -> List[ISCSITarget]:
        return self._get("/iscsi/target", List[ISCSITarget])

    def create_iscsi_target(self, config: ISCSITargetConfig) -> ISCSITarget:
        _require_name(config.name, "iSCSI target name")
        return self._post("/iscsi/target", config.to_request(), ISCSITarget)

    def delete_iscsi_target(self, target_id: int) -> None:
        _require_id(target_id, "iSCSI target")
        self._call("DELETE", f"/iscsi/target/id/{target_id}")

    # iSCSI extents

    def list_iscsi_extents(self) -> List[ISCSIExtent]:
        return self._get("/iscsi/extent", List[ISCSIExtent])

    def create_iscsi_extent(self, config: ISCSIExtentConfig) -> ISCSIExtent:
        _require_name(config.name, "iSCSI extent name")
        if config.type == "DISK":
            _require_name(config.disk, "iSCSI extent disk")
        elif config.type == "FILE":
            _require_name(config.path, "iSCSI extent path")
        return self._post("/iscsi/extent", config.to_request(), ISCSIExtent)

    def delete_iscsi_extent(self, extent_id: int) -> None:
        _require_id(extent_id, "iSCSI extent")
        self._call("DELETE", f"/iscsi/extent/id/{extent_id}")

    # iSCSI target-extent mappings

    def list_iscsi_target_extents(self) -> List[ISCSITargetExtent]:
        return self._get("/iscsi/targetextent", List[ISCSITargetExtent])

    def create_iscsi_target_extent(self, config: ISCSITargetExtentConfig) -> ISCSITargetExtent:
        _require_id(config.target, "iSCSI target")
        _require_id(config.extent, "iSCSI extent")
        return self._post("/iscsi/targetextent", config.to_request(), ISCSITargetExtent)

    def delete_iscsi_target_extent(self, mapping_id: int) -> None:
        _require_id(mapping_id, "iSCSI target-extent")
        self._call("DELETE", f"/iscsi/targetextent/id/{mapping_id}")

    # Services

    def list_services(self) -> List[Service]:
        return self._get("/service", List[Service])

    def get_service(self, name: str) -> Service:
        """Get a service by name.

        Raises:
            TrueNASNotFoundError: No service with that name exists
        """
        _require_name(name, "service name")
        for service in self.list_services():
            if service.service == name:
                return service
        raise TrueNASNotFoundError(f"service {name} not found")

    def enable_service(self, name: str, service_id: Optional[int] = None) -> None:
        """Enable a service so it starts on boot; looks up the id unless given."""
        if service_id is None:
            service_id = self.get_service(name).id
        _require_id(service_id, "service")
        self._call("PUT", f"/service/id/{service_id}", {"enable": True})

    def start_service(self, name: str) -> None:
        _require_name(name, "service name")
        self._call("POST", "/service/start", {"service": name})

    def stop_service(self, name: str) -> None:
        _require_name(name, "service name")
        self._call("POST", "/service/stop", {"service": name})

    def ensure_service_running(self, name: str) -> Service:
        """Enable and start a service unless it is already running.

        Returns:
            The service as it was before any change
        """
        service = self.get_service(name)
        if not service.enable:
            LOG.info("Enabling service %s", name)
            self.enable_service(name, service.id)
        if not service.running:
            LOG.info("Starting service %s", name)
            self.start_service(name)
        return service

    # Disks

    def list_disks(self) -> List[Disk]:
        return self._get("/disk", List[Disk])

    def get_unused_disks(self) -> List[Disk]:
        """List disks that are not part of any pool."""
        return [disk for disk in self.list_disks() if not disk.pool]

    def close(self) -> None:
        """Close the underlying transport."""
        close = getattr(self.transport, "close", None)
        if close:
            close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
