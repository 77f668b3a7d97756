"""
Configuration loader for foundry-storage.

Settings live in one INI file so that appliance URLs, pool names, cluster
hosts and secret-store locations are not hardcoded.
"""

from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple


DEFAULT_CONFIG_PATH = Path("~/.config/foundry/storage.conf")
DEFAULT_KUBECONFIG = "~/.config/foundry/kubeconfig"

SECRET_REF_PREFIX = "${secret:"
TRUENAS_API_KEY_REF = "${{secret:{mount}/truenas:api_key}}"

ROLE_CLUSTER_CONTROL_PLANE = "cluster-control-plane"
ROLE_CLUSTER_WORKER = "cluster-worker"

HOST_SECTION_PREFIX = "host:"


@dataclass(frozen=True)
class TrueNASSettings:
    api_url: str = ""
    api_key: str = ""
    api_key_ref: str = ""
    verify_ssl: bool = True
    timeout: int = 30
    pool_name: str = "tank"
    dataset_name: str = "k8s"
    enable_nfs: bool = True
    enable_iscsi: bool = True
    iscsi_portal_ip: str = "0.0.0.0"
    iscsi_portal_port: int = 3260
    vdev_type: str = "MIRROR"
    min_disks_for_mirror: int = 2


@dataclass(frozen=True)
class OpenBAOSettings:
    addr: str = ""
    token: str = ""
    mount: str = "foundry-core"
    verify_ssl: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.addr and self.token)


@dataclass(frozen=True)
class KubernetesSettings:
    kubeconfig: str = DEFAULT_KUBECONFIG
    longhorn_namespace: str = "longhorn-system"


@dataclass(frozen=True)
class HostConfig:
    name: str
    address: str
    port: int = 22
    user: str = "root"
    key_file: str = ""
    roles: Tuple[str, ...] = ()

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @property
    def is_cluster_node(self) -> bool:
        return self.has_role(ROLE_CLUSTER_CONTROL_PLANE) or self.has_role(ROLE_CLUSTER_WORKER)


@dataclass(frozen=True)
class FoundryStorageConfig:
    truenas: TrueNASSettings = field(default_factory=TrueNASSettings)
    openbao: OpenBAOSettings = field(default_factory=OpenBAOSettings)
    kubernetes: KubernetesSettings = field(default_factory=KubernetesSettings)
    hosts: Tuple[HostConfig, ...] = ()

    def get_host(self, name: str) -> Optional[HostConfig]:
        for host in self.hosts:
            if host.name == name:
                return host
        return None

    def cluster_hosts(self) -> List[HostConfig]:
        return [host for host in self.hosts if host.is_cluster_node]


def config_path() -> Path:
    env = os.environ.get("FOUNDRY_STORAGE_CONFIG_PATH")
    if env:
        return Path(env).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def _read_ini(path: Path) -> configparser.ConfigParser:
    # Interpolation off: secret references contain "$" and "{".
    parser = configparser.ConfigParser(interpolation=None)
    if path.exists():
        parser.read(path, encoding="utf-8")
    return parser


def _get(section: object, key: str, default: str) -> str:
    if isinstance(section, dict):
        return str(section.get(key, default)).strip()
    return str(section.get(key, fallback=default)).strip()


def _get_int(section: object, key: str, default: int) -> int:
    raw = _get(section, key, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def _get_bool(section: object, key: str, default: bool) -> bool:
    raw = _get(section, key, "").lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


def _section(parser: configparser.ConfigParser, name: str) -> object:
    return parser[name] if parser.has_section(name) else {}


def _parse_roles(raw: str) -> Tuple[str, ...]:
    return tuple(r.strip() for r in raw.split(",") if r.strip())


def load_config(path: Optional[Path] = None) -> FoundryStorageConfig:
    """
    Load config from ``path``, else `FOUNDRY_STORAGE_CONFIG_PATH`, else
    `~/.config/foundry/storage.conf`.

    A missing file is not an error; defaults are returned. `OPENBAO_ADDR`
    and `OPENBAO_TOKEN` override the [openbao] section.
    """
    parser = _read_ini(path or config_path())

    truenas = _section(parser, "truenas")
    api_key = _get(truenas, "api_key", "")
    api_key_ref = ""
    if api_key.startswith(SECRET_REF_PREFIX):
        api_key_ref, api_key = api_key, ""

    openbao = _section(parser, "openbao")
    kubernetes = _section(parser, "kubernetes")

    hosts = []
    for name in parser.sections():
        if not name.startswith(HOST_SECTION_PREFIX):
            continue
        section = parser[name]
        host_name = name[len(HOST_SECTION_PREFIX):].strip()
        hosts.append(
            HostConfig(
                name=host_name,
                address=_get(section, "address", host_name),
                port=_get_int(section, "port", 22),
                user=_get(section, "user", "root"),
                key_file=_get(section, "key_file", ""),
                roles=_parse_roles(_get(section, "roles", "")),
            )
        )

    return FoundryStorageConfig(
        truenas=TrueNASSettings(
            api_url=_get(truenas, "api_url", ""),
            api_key=api_key,
            api_key_ref=api_key_ref,
            verify_ssl=_get_bool(truenas, "verify_ssl", True),
            timeout=_get_int(truenas, "timeout", 30),
            pool_name=_get(truenas, "pool_name", "tank"),
            dataset_name=_get(truenas, "dataset_name", "k8s"),
            enable_nfs=_get_bool(truenas, "enable_nfs", True),
            enable_iscsi=_get_bool(truenas, "enable_iscsi", True),
            iscsi_portal_ip=_get(truenas, "iscsi_portal_ip", "0.0.0.0"),
            iscsi_portal_port=_get_int(truenas, "iscsi_portal_port", 3260),
            vdev_type=_get(truenas, "vdev_type", "MIRROR").upper(),
            min_disks_for_mirror=_get_int(truenas, "min_disks_for_mirror", 2),
        ),
        openbao=OpenBAOSettings(
            addr=os.environ.get("OPENBAO_ADDR") or _get(openbao, "addr", ""),
            token=os.environ.get("OPENBAO_TOKEN") or _get(openbao, "token", ""),
            mount=_get(openbao, "mount", "foundry-core"),
            verify_ssl=_get_bool(openbao, "verify_ssl", True),
        ),
        kubernetes=KubernetesSettings(
            kubeconfig=_get(kubernetes, "kubeconfig", DEFAULT_KUBECONFIG),
            longhorn_namespace=_get(kubernetes, "longhorn_namespace", "longhorn-system"),
        ),
        hosts=tuple(hosts),
    )


def _bool_str(value: bool) -> str:
    return "true" if value else "false"


def _to_parser(cfg: FoundryStorageConfig, use_secret_ref: bool) -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None)

    t = cfg.truenas
    if use_secret_ref:
        api_key = TRUENAS_API_KEY_REF.format(mount=cfg.openbao.mount)
    else:
        api_key = t.api_key or t.api_key_ref
    parser["truenas"] = {
        "api_url": t.api_url,
        "api_key": api_key,
        "verify_ssl": _bool_str(t.verify_ssl),
        "timeout": str(t.timeout),
        "pool_name": t.pool_name,
        "dataset_name": t.dataset_name,
        "enable_nfs": _bool_str(t.enable_nfs),
        "enable_iscsi": _bool_str(t.enable_iscsi),
        "iscsi_portal_ip": t.iscsi_portal_ip,
        "iscsi_portal_port": str(t.iscsi_portal_port),
        "vdev_type": t.vdev_type,
        "min_disks_for_mirror": str(t.min_disks_for_mirror),
    }

    # Tokens from the environment are not written back.
    openbao: Dict[str, str] = {"mount": cfg.openbao.mount, "verify_ssl": _bool_str(cfg.openbao.verify_ssl)}
    if cfg.openbao.addr:
        openbao["addr"] = cfg.openbao.addr
    parser["openbao"] = openbao

    parser["kubernetes"] = {
        "kubeconfig": cfg.kubernetes.kubeconfig,
        "longhorn_namespace": cfg.kubernetes.longhorn_namespace,
    }

    for host in cfg.hosts:
        section = {
            "address": host.address,
            "port": str(host.port),
            "user": host.user,
            "roles": ",".join(host.roles),
        }
        if host.key_file:
            section["key_file"] = host.key_file
        parser[f"{HOST_SECTION_PREFIX}{host.name}"] = section

    return parser


def save_config(cfg: FoundryStorageConfig, path: Optional[Path] = None, use_secret_ref: bool = False) -> Path:
    """
    Write the config file atomically.

    With ``use_secret_ref`` the API key is written as a reference to the
    secret store instead of in clear text.
    """
    path = path or config_path()
    parser = _to_parser(cfg, use_secret_ref)

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as file:
            parser.write(file)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
    return path
