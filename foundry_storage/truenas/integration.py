"""
CSI install preparation for TrueNAS.

Validates connection settings, runs (or verifies) the appliance setup, keeps
the API key in the secret store and produces the democratic-csi descriptor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from .client import TrueNASClient
from .csi import CSIConfig, minimal_csi_config
from .exceptions import TrueNASConnectionError, TrueNASException, TrueNASValidationError
from .reconciler import Reconciler, SetupConfig, SetupResult

LOG = logging.getLogger(__name__)

SECRET_MOUNT = "foundry-core"
SECRET_PATH = "truenas"
SECRET_KEY = "api_key"

API_KEY_HINT = "TrueNAS API key can be generated in TrueNAS: System -> API Keys -> Add"


class SecretStoreError(Exception):
    """Reading or writing the secret store failed."""

    pass


class SecretStore(Protocol):
    def read_secret(self, mount: str, path: str) -> Optional[Dict[str, object]]: ...

    def write_secret(self, mount: str, path: str, data: Dict[str, object]) -> None: ...


@dataclass
class InstallConfig:
    api_url: str = ""
    api_key: str = ""
    setup_config: Optional[SetupConfig] = None
    interactive: bool = False
    skip_setup: bool = False
    timeout: int = 30
    verify_ssl: bool = True
    secret_mount: str = SECRET_MOUNT


@dataclass
class InstallResult:
    csi_config: Optional[CSIConfig] = None
    setup_result: Optional[SetupResult] = None
    api_key_stored: bool = False
    warnings: List[str] = field(default_factory=list)


def _resolve_value(value: str, config_key: str, label: str, interactive: bool, prompt) -> str:
    if value:
        return value
    if not interactive or prompt is None:
        raise TrueNASValidationError(f"{label} is required (set {config_key} in config)")
    value = (prompt(label) or "").strip()
    if not value:
        raise TrueNASValidationError(f"{label} is required")
    return value


def prepare_install(
    cfg: InstallConfig,
    secret_store: Optional[SecretStore] = None,
    prompt: Optional[Callable[[str], str]] = None,
) -> InstallResult:
    """
    Prepare TrueNAS for a democratic-csi install.

    Args:
        cfg: Install settings; missing URL/key are prompted for when
            ``cfg.interactive`` is set and a ``prompt`` callable is given
        secret_store: Where the API key is kept; skipped when None
        prompt: ``prompt(label) -> str`` used for missing values

    Returns:
        InstallResult with the CSI descriptor

    Raises:
        TrueNASValidationError: A required value is missing
        TrueNASConnectionError: The appliance cannot be reached
        TrueNASSetupError: A fatal setup step failed
        RequirementNotMet: ``skip_setup`` was set and the appliance is not ready
    """
    cfg.api_url = _resolve_value(cfg.api_url, "truenas.api_url", "TrueNAS API URL", cfg.interactive, prompt)
    cfg.api_key = _resolve_value(cfg.api_key, "truenas.api_key", "TrueNAS API key", cfg.interactive, prompt)
    if cfg.setup_config is None:
        cfg.setup_config = SetupConfig()

    result = InstallResult()

    with TrueNASClient(cfg.api_url, cfg.api_key, timeout=cfg.timeout, verify_ssl=cfg.verify_ssl) as client:
        LOG.info("Testing connection to TrueNAS at %s", cfg.api_url)
        try:
            client.ping()
        except TrueNASException as e:
            raise TrueNASConnectionError(f"Failed to connect to TrueNAS: {e.message}") from e

        reconciler = Reconciler(client)
        validated = None
        if cfg.skip_setup:
            LOG.info("Validating TrueNAS requirements")
            validated = reconciler.validate_requirements(cfg.setup_config)
        else:
            LOG.info("Setting up TrueNAS for CSI")
            result.setup_result = reconciler.setup(cfg.setup_config)
            result.warnings.extend(result.setup_result.warnings)

        if secret_store is not None:
            try:
                store_api_key(secret_store, cfg.api_key, cfg.secret_mount)
            except SecretStoreError as e:
                message = f"Failed to store API key in OpenBAO: {e}"
                LOG.warning("%s", message)
                result.warnings.append(message)
            else:
                result.api_key_stored = True

        if result.setup_result is not None:
            result.csi_config = reconciler.csi_config(result.setup_result, cfg.api_url)
        else:
            # The validated pool can be the first-pool fallback, not the configured name.
            result.csi_config = minimal_csi_config(
                cfg.api_url,
                cfg.api_key,
                validated.pool.name,
                cfg.setup_config.dataset_name,
            )

    return result


def _stored_key(secret_store: SecretStore, mount: str) -> str:
    data = secret_store.read_secret(mount, SECRET_PATH)
    if not data:
        return ""
    value = data.get(SECRET_KEY)
    return value if isinstance(value, str) else ""


def store_api_key(secret_store: SecretStore, api_key: str, mount: str = SECRET_MOUNT) -> None:
    """Write the API key unless the same key is already stored."""
    try:
        existing = _stored_key(secret_store, mount)
    except SecretStoreError as e:
        LOG.debug("Could not read existing API key: %s", e)
        existing = ""
    if existing and existing == api_key:
        LOG.debug("TrueNAS API key already stored")
        return
    secret_store.write_secret(mount, SECRET_PATH, {SECRET_KEY: api_key})


def ensure_api_key(secret_store: SecretStore, api_key: str = "", mount: str = SECRET_MOUNT) -> str:
    """Return the stored API key, storing ``api_key`` when none exists yet."""
    try:
        existing = _stored_key(secret_store, mount)
    except SecretStoreError as e:
        LOG.debug("Could not read existing API key: %s", e)
        existing = ""
    if existing:
        return existing

    if not api_key:
        raise SecretStoreError("No TrueNAS API key found in OpenBAO and none provided")

    store_api_key(secret_store, api_key, mount)
    return api_key


def get_api_key(secret_store: SecretStore, mount: str = SECRET_MOUNT) -> str:
    data = secret_store.read_secret(mount, SECRET_PATH)
    if data is None:
        raise SecretStoreError("TrueNAS API key not found in OpenBAO")
    value = data.get(SECRET_KEY)
    if not isinstance(value, str) or not value:
        raise SecretStoreError("TrueNAS API key is empty or invalid")
    return value
