"""
Longhorn disk commands.
"""

from typing import List, Optional, Sequence

import typer

from foundry_storage.cli.lib.config import FoundryStorageConfig, HostConfig, load_config
from foundry_storage.cli.lib.errors import echo_error
from foundry_storage.cli.lib.ssh import connect_host
from foundry_storage.cli.lib.validators import validate_disk_name
from foundry_storage.longhorn.exceptions import DiskSelectionError, DiskSetupError, ProvisionError
from foundry_storage.longhorn.inventory import BlockDevice, RemoteDiskInventory
from foundry_storage.longhorn.node import load_custom_objects_api, update_node_disks
from foundry_storage.longhorn.provisioner import (
    DiskProvisioner,
    ProvisionResult,
    parse_selection,
    plan_steps,
)

app = typer.Typer(help="Longhorn disk commands")


def select_host(hosts: Sequence[HostConfig], value: str) -> HostConfig:
    """Pick a host by 1-based index."""
    value = value.strip()
    try:
        index = int(value)
    except ValueError:
        raise DiskSelectionError(f"Invalid selection: {value}")
    if index < 1 or index > len(hosts):
        raise DiskSelectionError(f"Invalid selection: {value}")
    return hosts[index - 1]


def _resolve_host(cfg: FoundryStorageConfig, name: Optional[str]) -> HostConfig:
    if not name:
        hosts = cfg.cluster_hosts()
        if not hosts:
            raise ProvisionError("No cluster nodes found in configuration")
        typer.echo("Available cluster nodes:")
        for i, h in enumerate(hosts, 1):
            typer.echo(f"  {i}. {h.name} ({h.address}) [{', '.join(h.roles)}]")
        return select_host(hosts, typer.prompt("Select a host (enter number)"))

    host = cfg.get_host(name)
    if host is None:
        raise ProvisionError(f"Host {name} not found in configuration")
    if not host.is_cluster_node:
        raise ProvisionError(
            f"Host {name} is not a cluster node (missing cluster-control-plane or cluster-worker role)"
        )
    return host


def _describe(disk: BlockDevice) -> str:
    fs = f"has {disk.fstype} filesystem" if disk.fstype else "no filesystem"
    return f"{disk.device_path} - {disk.size} ({fs})"


@app.command("list")
def list_disks(
    host: str = typer.Option(..., "--host", "-H", help="Host name from the config file"),
):
    """
    List unmounted raw disks on a host.
    """
    try:
        cfg = load_config()
        host_cfg = _resolve_host(cfg, host)

        with connect_host(host_cfg) as conn:
            disks = DiskProvisioner(RemoteDiskInventory(conn)).discover()

        if not disks:
            typer.echo("No unmounted raw disks found on this host.")
            return

        for disk in disks:
            typer.echo(_describe(disk))

    except (typer.Exit, typer.Abort):
        raise
    except Exception as e:
        echo_error(e)
        raise typer.Exit(1)


@app.command()
def add(
    host: Optional[str] = typer.Option(None, "--host", "-H", help="Target node (interactive selection if omitted)"),
    disks: Optional[List[str]] = typer.Option(None, "--disk", "-d", help="Disk to add (e.g., sdb); repeatable"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without making changes"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
):
    """
    Format and mount raw disks for Longhorn storage.

    Each disk gets one ext4 partition mounted at /mnt/longhorn-<disk> with an
    fstab entry, then the mount paths are added to the Longhorn node.
    """
    try:
        names = [validate_disk_name(d) for d in disks or []]

        cfg = load_config()
        host_cfg = _resolve_host(cfg, host)

        typer.echo(f"Connecting to {host_cfg.name}...")
        with connect_host(host_cfg) as conn:
            provisioner = DiskProvisioner(RemoteDiskInventory(conn))

            typer.echo("Discovering available disks...")
            available = provisioner.discover()
            if not available:
                typer.echo("No unmounted raw disks found on this host.")
                return

            if names:
                selected = provisioner.select_by_name(available, names)
            else:
                typer.echo("Available unmounted disks:")
                for i, disk in enumerate(available, 1):
                    typer.echo(f"  {i}. {_describe(disk)}")
                answer = typer.prompt(
                    "Enter disk numbers to add (comma-separated, e.g., 1,2,3), or 'all'",
                    default="",
                    show_default=False,
                )
                selected = parse_selection(answer, available)

            if not selected:
                typer.echo("No disks selected.")
                return

            if dry_run:
                typer.echo("Dry-run mode - would perform the following actions:")
                for i, step in enumerate(plan_steps(selected), 1):
                    typer.echo(f"  {i}. {step}")
                return

            if not yes:
                typer.echo("The following disks will be formatted and added to Longhorn:")
                for disk in selected:
                    typer.echo(f"  {disk.device_path} ({disk.size})")
                typer.echo("WARNING: All data on these disks will be DESTROYED!")
                answer = typer.prompt("Continue? [y/N]", default="", show_default=False)
                if answer.strip().lower() not in ("y", "yes"):
                    typer.echo("Aborted.")
                    return

            result = ProvisionResult()
            try:
                provisioner.prepare_disks(selected, result)
            except DiskSetupError:
                for prepared in result.prepared:
                    typer.echo(f"  {prepared.disk.device_path} remains mounted at {prepared.mount_point}", err=True)
                raise

            for prepared in result.prepared:
                typer.echo(f"  Disk {prepared.disk.device_path} mounted at {prepared.mount_point}")

        typer.echo("Updating Longhorn node configuration...")
        api = load_custom_objects_api(cfg.kubernetes.kubeconfig)
        merge = update_node_disks(
            api,
            host_cfg.name,
            result.mount_paths,
            namespace=cfg.kubernetes.longhorn_namespace,
        )
        for path in merge.skipped:
            typer.echo(f"  Disk path {path} already configured, skipping")

        typer.echo(f"{len(result.prepared)} disk(s) successfully added to {host_cfg.name} for Longhorn storage")

    except (typer.Exit, typer.Abort):
        raise
    except Exception as e:
        echo_error(e)
        raise typer.Exit(1)
