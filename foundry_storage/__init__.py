"""
Foundry Storage - storage backend reconciliation for self-hosted clusters.

This package prepares a storage backend for the cluster's persistent-volume
layer: a TrueNAS appliance reconciled over its REST API (consumed by
democratic-csi), or raw disks on a cluster node formatted and registered with
Longhorn.
"""

__version__ = "0.1.0"
__all__ = ["cli", "longhorn", "truenas"]
