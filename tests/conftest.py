"""
Pytest configuration and fixtures.
"""

import json
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Tuple
from unittest.mock import MagicMock
from urllib.parse import unquote

import pytest

from foundry_storage.longhorn.exceptions import RemoteCommandError
from foundry_storage.longhorn.inventory import BlockDevice, CommandResult, DiskInventory
from foundry_storage.truenas.client import API_PREFIX, TrueNASClient
from foundry_storage.truenas.exceptions import TrueNASAPIError


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests with every dependency faked")
    config.addinivalue_line("markers", "integration: tests that drive several components together, or the CLI")


class FakeAppliance:
    """In-memory TrueNAS API speaking the HTTPTransport ``do`` interface."""

    def __init__(self):
        self.system_info = {"version": "TrueNAS-SCALE-24.04.2", "hostname": "nas01", "physmem": 68719476736}
        self.pools: List[dict] = []
        self.datasets: Dict[str, dict] = {}
        self.services = [
            {"id": 1, "service": "nfs", "enable": False, "state": "STOPPED", "pids": []},
            {"id": 2, "service": "iscsitarget", "enable": False, "state": "STOPPED", "pids": []},
            {"id": 3, "service": "ssh", "enable": True, "state": "RUNNING", "pids": [812]},
        ]
        self.disks: List[dict] = []
        self.portals: List[dict] = []
        self.initiators: List[dict] = []
        self.calls: List[Tuple[str, str, object]] = []
        self.failures: Dict[Tuple[str, str], Tuple[int, bytes]] = {}
        self._next_id = 1

    def new_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    def add_disk(self, name: str, size: int = 4 * 1024 ** 4, pool=None) -> None:
        self.disks.append({"identifier": f"{{serial}}{name.upper()}", "name": name, "size": size, "pool": pool})

    def add_pool(self, name: str) -> dict:
        pool = {"id": self.new_id(), "name": name, "status": "ONLINE", "healthy": True, "free": 2 * 1024 ** 4}
        self.pools.append(pool)
        return pool

    def add_dataset(self, name: str) -> dict:
        dataset = {"id": name, "name": name, "pool": name.split("/")[0], "type": "FILESYSTEM"}
        self.datasets[name] = dataset
        return dataset

    def service(self, name: str) -> dict:
        return next(s for s in self.services if s["service"] == name)

    def requests(self, method: str) -> List[Tuple[str, object]]:
        return [(path, body) for m, path, body in self.calls if m == method]

    def do(self, method, path, body=None):
        self.calls.append((method, path, body))
        assert path.startswith(API_PREFIX)
        path = path[len(API_PREFIX):]

        if (method, path) in self.failures:
            status, payload = self.failures[(method, path)]
            raise TrueNASAPIError.from_response(status, payload)

        result = self._handle(method, path, body)
        return json.dumps(result).encode()

    def _handle(self, method, path, body):
        if path == "/system/info":
            return self.system_info

        if path == "/pool":
            if method == "GET":
                return self.pools
            vdev = body["topology"]["data"][0]
            pool = self.add_pool(body["name"])
            pool["topology"] = {
                "data": [{"type": vdev["type"], "children": [{"type": "DISK", "path": d} for d in vdev["disks"]]}]
            }
            for disk in self.disks:
                if disk["name"] in vdev["disks"]:
                    disk["pool"] = body["name"]
            return pool

        if path == "/pool/dataset":
            if method == "GET":
                return list(self.datasets.values())
            dataset = self.add_dataset(body["name"])
            dataset["type"] = body.get("type") or "FILESYSTEM"
            dataset["comments"] = {"parsed": body.get("comments"), "rawvalue": body.get("comments")}
            return dataset

        if path.startswith("/pool/dataset/id/"):
            name = unquote(path[len("/pool/dataset/id/"):])
            if name not in self.datasets:
                raise TrueNASAPIError.from_response(
                    404, json.dumps({"message": f"{name} does not exist", "errcode": 2}).encode()
                )
            if method == "DELETE":
                del self.datasets[name]
                return True
            return self.datasets[name]

        if path == "/service":
            return self.services
        if path.startswith("/service/id/"):
            service_id = int(path.rsplit("/", 1)[1])
            service = next(s for s in self.services if s["id"] == service_id)
            service.update(body)
            return service_id
        if path == "/service/start":
            self.service(body["service"])["state"] = "RUNNING"
            return True
        if path == "/service/stop":
            self.service(body["service"])["state"] = "STOPPED"
            return True

        if path == "/disk":
            return self.disks

        if path == "/iscsi/portal":
            if method == "GET":
                return self.portals
            portal_id = self.new_id()
            portal = {"id": portal_id, "tag": len(self.portals) + 1, "comment": body.get("comment", ""), "listen": body["listen"]}
            self.portals.append(portal)
            return portal

        if path == "/iscsi/initiator":
            if method == "GET":
                return self.initiators
            group = {
                "id": self.new_id(),
                "tag": len(self.initiators) + 1,
                "initiators": body.get("initiators", []),
                "comment": body.get("comment", ""),
            }
            self.initiators.append(group)
            return group

        raise TrueNASAPIError.from_response(404, b"Not Found")


class FakeRunner:
    """CommandRunner returning canned results by command prefix."""

    def __init__(self):
        self.commands: List[str] = []
        self.responses: List[Tuple[str, CommandResult]] = []

    def on(self, prefix: str, stdout: str = "", stderr: str = "", exit_code: int = 0) -> "FakeRunner":
        self.responses.append((prefix, CommandResult(stdout=stdout, stderr=stderr, exit_code=exit_code)))
        return self

    def execute(self, command: str) -> CommandResult:
        self.commands.append(command)
        # Last registration wins so tests can override defaults.
        for prefix, result in reversed(self.responses):
            if command.startswith(prefix):
                return result
        return CommandResult()


class FakeInventory(DiskInventory):
    """DiskInventory over a fixed device list that records preparation steps."""

    def __init__(self, devices=None, mounted=(), broken=(), fail_on=None):
        self.devices = list(devices or [])
        self.mounted = set(mounted)
        self.broken = set(broken)
        self.fail_on = fail_on or {}
        self.steps: List[Tuple[str, str]] = []

    def _step(self, name: str, target: str) -> None:
        self.steps.append((name, target))
        if self.fail_on.get(name) == target:
            raise RemoteCommandError(f"{name} {target}", CommandResult(stderr=f"{name} failed", exit_code=1))

    def list_block_devices(self):
        return list(self.devices)

    def has_mounted_partitions(self, disk):
        if disk.name in self.broken:
            raise RemoteCommandError(f"lsblk /dev/{disk.name}", CommandResult(stderr="ssh: broken pipe", exit_code=255))
        return disk.name in self.mounted

    def create_partition(self, disk):
        self._step("partition", disk.name)
        return disk.partition_path

    def wait_for_partition(self, partition):
        self._step("wait", partition)

    def format_ext4(self, partition):
        self._step("format", partition)

    def create_mount_point(self, mount_point):
        self._step("mkdir", mount_point)

    def filesystem_uuid(self, partition):
        self._step("uuid", partition)
        return f"uuid-{partition.rsplit('/', 1)[1]}"

    def ensure_fstab_entry(self, uuid, mount_point):
        self._step("fstab", mount_point)
        return True

    def mount(self, mount_point):
        self._step("mount", mount_point)

    def set_permissions(self, mount_point):
        self._step("chmod", mount_point)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path)


@pytest.fixture
def appliance():
    return FakeAppliance()


@pytest.fixture
def truenas_client(appliance):
    return TrueNASClient("https://192.168.1.100", "1-abcdef", transport=appliance)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def block_devices():
    return [
        BlockDevice(name="sda", size="240G", type="disk"),
        BlockDevice(name="sdb", size="1.8T", type="disk"),
        BlockDevice(name="sdc", size="1.8T", type="disk", fstype="ext4"),
        BlockDevice(name="sr0", size="1024M", type="rom"),
        BlockDevice(name="nvme0n1", size="931.5G", type="disk"),
    ]


@pytest.fixture
def fake_inventory(block_devices):
    return FakeInventory(block_devices, mounted={"sda"})


@pytest.fixture
def mock_custom_objects_api():
    """CustomObjectsApi mock holding a Longhorn node with one default disk."""
    api = MagicMock()
    api.get_namespaced_custom_object.return_value = {
        "apiVersion": "longhorn.io/v1beta2",
        "kind": "Node",
        "metadata": {"name": "node1", "namespace": "longhorn-system"},
        "spec": {
            "disks": {
                "default-disk-fd0000000000": {
                    "allowScheduling": True,
                    "diskType": "filesystem",
                    "evictionRequested": False,
                    "path": "/var/lib/longhorn/",
                    "storageReserved": 30000000000,
                    "tags": [],
                }
            }
        },
    }
    return api


@pytest.fixture
def config_file(temp_dir, monkeypatch):
    """Point the config loader at a file in temp_dir and return its path."""
    path = temp_dir / "storage.conf"
    monkeypatch.setenv("FOUNDRY_STORAGE_CONFIG_PATH", str(path))
    monkeypatch.delenv("OPENBAO_ADDR", raising=False)
    monkeypatch.delenv("OPENBAO_TOKEN", raising=False)
    return path


@pytest.fixture
def make_inventory():
    """Factory for FakeInventory with custom failures."""
    return FakeInventory
