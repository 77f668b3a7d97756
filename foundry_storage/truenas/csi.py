"""
democratic-csi connection settings derived from TrueNAS setup results.
"""

from dataclasses import dataclass
from typing import Optional

from .models import WILDCARD_IP, ISCSIInitiator, ISCSIPortal


@dataclass
class CSIConfig:
    http_url: str
    api_key: str
    pool_name: str
    dataset_parent: str
    nfs_share_host: str
    iscsi_portal: str = ""
    iscsi_target_portal_group: int = 0
    iscsi_initiator_group: int = 0


def extract_host_from_url(url: str) -> str:
    """Strip scheme, path and port from a URL: https://nas:443/ui -> nas."""
    _, sep, rest = url.partition("://")
    host = rest if sep else url
    host = host.split("/", 1)[0]
    return host.split(":", 1)[0]


def project_csi_config(
    api_url: str,
    api_key: str,
    pool_name: str,
    dataset_parent: str,
    portal: Optional[ISCSIPortal] = None,
    initiator: Optional[ISCSIInitiator] = None,
) -> CSIConfig:
    host = extract_host_from_url(api_url)
    config = CSIConfig(
        http_url=api_url,
        api_key=api_key,
        pool_name=pool_name,
        dataset_parent=dataset_parent,
        nfs_share_host=host,
    )

    if portal is not None:
        if portal.listen:
            listen = portal.listen[0]
            ip = host if listen.ip == WILDCARD_IP else listen.ip
            config.iscsi_portal = f"{ip}:{listen.port}"
        config.iscsi_target_portal_group = portal.tag

    if initiator is not None:
        config.iscsi_initiator_group = initiator.tag

    return config


def minimal_csi_config(api_url: str, api_key: str, pool_name: str, dataset_name: str) -> CSIConfig:
    """Descriptor built from configuration alone, used when setup is skipped."""
    return project_csi_config(api_url, api_key, pool_name, f"{pool_name}/{dataset_name}")
