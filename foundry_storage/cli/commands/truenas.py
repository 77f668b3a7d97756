"""
TrueNAS backend commands.
"""

import dataclasses
from typing import Optional

import typer

from foundry_storage.cli.lib.config import load_config, save_config
from foundry_storage.cli.lib.errors import echo_error
from foundry_storage.cli.lib.secrets import open_secret_store, resolve_api_key
from foundry_storage.cli.lib.validators import validate_api_url, validate_name
from foundry_storage.truenas.checks import BackendStatus, backend_status, run_backend_check
from foundry_storage.truenas.client import TrueNASClient
from foundry_storage.truenas.exceptions import TrueNASSetupError
from foundry_storage.truenas.integration import (
    API_KEY_HINT,
    InstallConfig,
    SecretStoreError,
    prepare_install,
    store_api_key,
)
from foundry_storage.truenas.reconciler import Reconciler, SetupConfig

app = typer.Typer(help="TrueNAS backend commands")

NOT_CONFIGURED = "TrueNAS not configured. Run 'foundry-storage truenas configure' first"


def _client(settings, api_key: str) -> TrueNASClient:
    return TrueNASClient(settings.api_url, api_key, timeout=settings.timeout, verify_ssl=settings.verify_ssl)


def _resolve_key(cfg) -> str:
    store = open_secret_store(cfg.openbao)
    try:
        return resolve_api_key(cfg.truenas, store, cfg.openbao.mount)
    finally:
        if store is not None:
            store.close()


def _prompt(label: str) -> str:
    if "key" in label.lower():
        typer.echo(f"  {API_KEY_HINT}")
        return typer.prompt(f"  {label}", hide_input=True)
    return typer.prompt(f"  {label} (e.g., https://truenas.example.com)")


@app.command()
def configure(
    api_url: Optional[str] = typer.Option(None, "--api-url", help="TrueNAS URL (e.g., https://truenas.example.com)"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="TrueNAS API key"),
    skip_test: bool = typer.Option(False, "--skip-test", help="Save without testing the connection"),
):
    """
    Configure the TrueNAS backend.

    Prompts for missing values, tests the connection and saves the config
    file. The API key goes to OpenBAO when it is configured.
    """
    try:
        cfg = load_config()
        settings = cfg.truenas

        api_url = validate_api_url(api_url or typer.prompt("TrueNAS API URL", default=settings.api_url or None))
        if not api_key:
            typer.echo(API_KEY_HINT)
            api_key = typer.prompt("TrueNAS API key", hide_input=True)

        settings = dataclasses.replace(settings, api_url=api_url, api_key=api_key, api_key_ref="")

        if not skip_test:
            typer.echo("Testing connection to TrueNAS...")
            with _client(settings, api_key) as client:
                client.ping()
                pools = client.list_pools()
            typer.echo(f"  Connection successful, found {len(pools)} pool(s)")

        stored = False
        store = open_secret_store(cfg.openbao)
        if store is not None:
            try:
                store_api_key(store, api_key, cfg.openbao.mount)
                stored = True
                typer.echo("  API key stored in OpenBAO")
            except SecretStoreError as e:
                typer.echo(f"  Warning: Failed to store API key in OpenBAO: {e}", err=True)
            finally:
                store.close()

        path = save_config(dataclasses.replace(cfg, truenas=settings), use_secret_ref=stored)
        typer.echo(f"Configuration saved to {path}")

    except (typer.Exit, typer.Abort):
        raise
    except Exception as e:
        echo_error(e)
        raise typer.Exit(1)


@app.command("test")
def check_backend(
    full_test: bool = typer.Option(False, "--full-test", help="Also create and delete a test dataset"),
    pool: Optional[str] = typer.Option(None, "--pool", help="Pool for the full test (default: first pool)"),
):
    """
    Test connectivity and permissions for the TrueNAS backend.

    The test dataset is created as <pool>/foundry-test-<timestamp>.
    """
    try:
        cfg = load_config()
        settings = cfg.truenas
        if not settings.api_url:
            raise TrueNASSetupError(NOT_CONFIGURED)
        if pool:
            validate_name(pool)

        api_key = _resolve_key(cfg)

        typer.echo("Testing TrueNAS storage backend...")
        typer.echo(f"API URL: {settings.api_url}")
        with _client(settings, api_key) as client:
            result = run_backend_check(client, full_test=full_test, pool_name=pool)

        typer.echo(f"Found {len(result.pools)} pool(s)")
        for p in result.pools:
            health = "healthy" if p.healthy else "UNHEALTHY"
            typer.echo(f"  - {p.name}: {health}, {p.free_gib:.2f} GB free")

        if result.test_dataset:
            typer.echo(f"Created and verified test dataset {result.test_dataset}")
            if result.cleanup_warning:
                typer.echo(f"  Warning: {result.cleanup_warning}", err=True)
                typer.echo(f"  You may need to manually delete: {result.test_dataset}", err=True)
            else:
                typer.echo("  Test dataset deleted")
        else:
            typer.echo("Skipped dataset creation test (use --full-test)")

        if result.dataset_count is not None:
            typer.echo(f"Found {result.dataset_count} dataset(s)")
        for warning in result.warnings:
            if warning != result.cleanup_warning:
                typer.echo(f"  Warning: {warning}", err=True)

        typer.echo("All tests passed")

    except (typer.Exit, typer.Abort):
        raise
    except Exception as e:
        echo_error(e)
        raise typer.Exit(1)


def _backend_status(cfg) -> BackendStatus:
    try:
        api_key = _resolve_key(cfg)
    except SecretStoreError as e:
        return BackendStatus(status=f"error: {e}")
    if not api_key:
        return BackendStatus(status="error: no API key configured")
    with _client(cfg.truenas, api_key) as client:
        return backend_status(client)


@app.command("list")
def list_backends(
    detailed: bool = typer.Option(False, "--detailed", help="Show size and usage for each pool"),
):
    """
    Show the configured TrueNAS backend, whether it answers, and its pools.

    An unreachable backend is reported, not treated as a failure.
    """
    try:
        cfg = load_config()
        settings = cfg.truenas
        if not settings.api_url:
            typer.echo("No storage backends configured")
            typer.echo("To configure TrueNAS storage, run:")
            typer.echo("  foundry-storage truenas configure")
            return

        status = _backend_status(cfg)

        typer.echo("TrueNAS:")
        typer.echo(f"  API URL: {settings.api_url}")
        typer.echo(f"  Status: {status.status}")
        if not status.connected:
            return

        typer.echo(f"  Pools: {len(status.pools)}")
        for p in status.pools:
            health = "healthy" if p.healthy else "UNHEALTHY"
            if detailed:
                typer.echo(f"    {p.name}:")
                typer.echo(f"      Status: {p.status} ({health})")
                typer.echo(f"      Size: {p.size_gib:.2f} GB")
                typer.echo(f"      Used: {p.allocated_gib:.2f} GB ({p.used_percent:.1f}%)")
                typer.echo(f"      Free: {p.free_gib:.2f} GB")
            else:
                typer.echo(f"    - {p.name}: {health}, {p.free_gib:.2f} GB free")

    except (typer.Exit, typer.Abort):
        raise
    except Exception as e:
        echo_error(e)
        raise typer.Exit(1)


def _setup_config(settings,pool: Optional[str], dataset: Optional[str], no_nfs: bool, no_iscsi: bool) -> SetupConfig:
    setup_cfg = SetupConfig.from_config(settings)
    if pool:
        validate_name(pool)
        setup_cfg.pool_name = pool
    if dataset:
        validate_name(dataset)
        setup_cfg.dataset_name = dataset
    if no_nfs:
        setup_cfg.enable_nfs = False
    if no_iscsi:
        setup_cfg.enable_iscsi = False
    return setup_cfg


@app.command()
def setup(
    pool: Optional[str] = typer.Option(None, "--pool", help="Pool name (default: from config)"),
    dataset: Optional[str] = typer.Option(None, "--dataset", help="Parent dataset name for CSI volumes"),
    skip_setup: bool = typer.Option(False, "--skip-setup", help="Only validate an already configured appliance"),
    no_nfs: bool = typer.Option(False, "--no-nfs", help="Do not enable NFS"),
    no_iscsi: bool = typer.Option(False, "--no-iscsi", help="Do not enable iSCSI"),
    non_interactive: bool = typer.Option(False, "--non-interactive", help="Fail instead of prompting"),
):
    """
    Prepare TrueNAS for democratic-csi.

    Ensures the pool, dataset, NFS/iSCSI services, iSCSI portal and
    initiator group exist, then prints the CSI connection settings.
    """
    try:
        cfg = load_config()
        settings = cfg.truenas
        setup_cfg = _setup_config(settings, pool, dataset, no_nfs, no_iscsi)

        store = open_secret_store(cfg.openbao)
        try:
            api_key = settings.api_key
            if not api_key and (store is not None or settings.api_key_ref):
                try:
                    api_key = resolve_api_key(settings, store, cfg.openbao.mount)
                except SecretStoreError as e:
                    if store is None:
                        raise
                    # Fall through to the prompt below.
                    typer.echo(f"  Warning: {e}", err=True)

            install_cfg = InstallConfig(
                api_url=settings.api_url,
                api_key=api_key,
                setup_config=setup_cfg,
                interactive=not non_interactive,
                skip_setup=skip_setup,
                timeout=settings.timeout,
                verify_ssl=settings.verify_ssl,
                secret_mount=cfg.openbao.mount,
            )

            typer.echo("Preparing TrueNAS for CSI...")
            result = prepare_install(install_cfg, secret_store=store, prompt=_prompt)
        finally:
            if store is not None:
                store.close()

        if result.setup_result is not None:
            for step in result.setup_result.steps:
                mark = "ok" if step.ok else "!!"
                typer.echo(f"  [{mark}] {step.name}: {step.message}")
        else:
            typer.echo("  TrueNAS requirements validated")

        if result.warnings:
            typer.echo("Warnings:")
            for warning in result.warnings:
                typer.echo(f"  - {warning}")

        if result.api_key_stored:
            typer.echo("  API key stored in OpenBAO")

        csi = result.csi_config
        typer.echo("democratic-csi settings:")
        typer.echo(f"  httpUrl: {csi.http_url}")
        typer.echo(f"  pool: {csi.pool_name}")
        typer.echo(f"  datasetParent: {csi.dataset_parent}")
        typer.echo(f"  nfsShareHost: {csi.nfs_share_host}")
        if csi.iscsi_portal:
            typer.echo(f"  iscsiPortal: {csi.iscsi_portal}")
            typer.echo(f"  targetPortalGroup: {csi.iscsi_target_portal_group}")
            typer.echo(f"  initiatorGroup: {csi.iscsi_initiator_group}")

        typer.echo("TrueNAS setup complete")

    except (typer.Exit, typer.Abort):
        raise
    except Exception as e:
        echo_error(e)
        raise typer.Exit(1)


@app.command()
def validate(
    pool: Optional[str] = typer.Option(None, "--pool", help="Pool name (default: from config)"),
):
    """
    Check that TrueNAS is ready for CSI without changing anything.
    """
    try:
        cfg = load_config()
        settings = cfg.truenas
        if not settings.api_url:
            raise TrueNASSetupError(NOT_CONFIGURED)
        setup_cfg = _setup_config(settings, pool, None, False, False)

        api_key = _resolve_key(cfg)

        with _client(settings, api_key) as client:
            Reconciler(client).validate_requirements(setup_cfg)

        typer.echo("TrueNAS requirements validated")

    except (typer.Exit, typer.Abort):
        raise
    except Exception as e:
        echo_error(e)
        raise typer.Exit(1)
