"""
Longhorn Node resource updates.

New mount paths are registered as disks on the ``nodes.longhorn.io`` custom
resource for the node with a JSON merge-patch on ``spec.disks``.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .exceptions import NodeUpdateError

LOG = logging.getLogger(__name__)

LONGHORN_GROUP = "longhorn.io"
LONGHORN_VERSION = "v1beta2"
LONGHORN_NODE_PLURAL = "nodes"
LONGHORN_NAMESPACE = "longhorn-system"

MERGE_PATCH = "application/merge-patch+json"


@dataclass
class DiskMergeResult:
    added: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added)


def disk_name_for_path(path: str) -> str:
    """/mnt/longhorn-sdb -> disk-longhorn-sdb"""
    if path.startswith("/mnt/"):
        path = path[len("/mnt/"):]
    return "disk-" + path


def disk_entry(path: str) -> Dict[str, Any]:
    return {
        "allowScheduling": True,
        "diskDriver": "",
        "diskType": "filesystem",
        "evictionRequested": False,
        "path": path,
        "storageReserved": 0,
        "tags": [],
    }


def merge_disk_paths(existing: Optional[Dict[str, Any]], paths: Sequence[str]) -> DiskMergeResult:
    """
    Work out which disk entries to add for ``paths``.

    Paths already registered under any entry are skipped. Existing entries
    are never modified; a name already taken by another path gets a numeric
    suffix instead.
    """
    existing = existing or {}
    known_paths = set()
    for entry in existing.values():
        if isinstance(entry, dict) and isinstance(entry.get("path"), str):
            known_paths.add(entry["path"])

    result = DiskMergeResult()
    for path in paths:
        if path in known_paths:
            LOG.info("Disk path %s already configured, skipping", path)
            result.skipped.append(path)
            continue

        base = disk_name_for_path(path)
        name = base
        suffix = 2
        while name in existing or name in result.added:
            name = f"{base}-{suffix}"
            suffix += 1

        result.added[name] = disk_entry(path)
        known_paths.add(path)
    return result


def load_custom_objects_api(kubeconfig: Optional[str] = None) -> client.CustomObjectsApi:
    """
    Build a CustomObjectsApi client.

    Uses ``kubeconfig`` when that file exists, else in-cluster config, else
    the default kubeconfig lookup.
    """
    if kubeconfig and os.path.exists(os.path.expanduser(kubeconfig)):
        config.load_kube_config(config_file=os.path.expanduser(kubeconfig))
    else:
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config()
    return client.CustomObjectsApi()


def update_node_disks(
    api: client.CustomObjectsApi,
    node_name: str,
    paths: Sequence[str],
    namespace: str = LONGHORN_NAMESPACE,
    request_timeout: Optional[int] = 30,
) -> DiskMergeResult:
    """
    Register mount paths as disks on the Longhorn node.

    The patch carries only the new entries; nothing is sent when every path
    is already present.

    Raises:
        NodeUpdateError: The node cannot be read, parsed or patched
    """
    try:
        node = api.get_namespaced_custom_object(
            LONGHORN_GROUP,
            LONGHORN_VERSION,
            namespace,
            LONGHORN_NODE_PLURAL,
            node_name,
            _request_timeout=request_timeout,
        )
    except ApiException as e:
        raise NodeUpdateError(f"Failed to get Longhorn node {node_name}: {e.status} {e.reason}") from e

    spec = node.get("spec") if isinstance(node, dict) else None
    if not isinstance(spec, dict):
        raise NodeUpdateError(f"Failed to parse Longhorn node spec for {node_name}")

    disks = spec.get("disks")
    merge = merge_disk_paths(disks if isinstance(disks, dict) else {}, paths)
    if not merge.changed:
        LOG.info("No new disks to add to Longhorn node %s", node_name)
        return merge

    body = {"spec": {"disks": merge.added}}
    try:
        api.patch_namespaced_custom_object(
            LONGHORN_GROUP,
            LONGHORN_VERSION,
            namespace,
            LONGHORN_NODE_PLURAL,
            node_name,
            body,
            _content_type=MERGE_PATCH,
            _request_timeout=request_timeout,
        )
    except ApiException as e:
        raise NodeUpdateError(f"Failed to patch Longhorn node {node_name}: {e.status} {e.reason}") from e

    LOG.info("Added %d disk(s) to Longhorn node %s", len(merge.added), node_name)
    return merge
