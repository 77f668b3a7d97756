"""
OpenBAO (Vault-compatible) KV v2 secret access over HTTP.
"""

import logging
from typing import Any, Dict, Optional

import requests

from foundry_storage.truenas.integration import SECRET_MOUNT, SecretStoreError, get_api_key

LOG = logging.getLogger(__name__)


class OpenBAOClient:
    """Reads and writes KV v2 secrets with a static token."""

    def __init__(self, addr: str, token: str, verify_ssl: bool = True, timeout: int = 10):
        if not addr:
            raise SecretStoreError("OpenBAO address cannot be empty")
        if not token:
            raise SecretStoreError("OpenBAO token cannot be empty")
        self.base_url = addr.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"X-Vault-Token": token})
        self.session.verify = verify_ssl

    def _url(self, mount: str, path: str) -> str:
        return f"{self.base_url}/v1/{mount.strip('/')}/data/{path.strip('/')}"

    def read_secret(self, mount: str, path: str) -> Optional[Dict[str, Any]]:
        """
        Read the latest version of a secret.

        Returns:
            The secret's key/value data, or None when it does not exist

        Raises:
            SecretStoreError: The request failed
        """
        url = self._url(mount, path)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise SecretStoreError(f"Failed to read secret {mount}/{path}: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise SecretStoreError(f"Failed to read secret {mount}/{path}: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise SecretStoreError(f"Invalid response reading secret {mount}/{path}") from e
        return ((body or {}).get("data") or {}).get("data")

    def write_secret(self, mount: str, path: str, data: Dict[str, Any]) -> None:
        """Write a new version of a secret."""
        url = self._url(mount, path)
        try:
            response = self.session.post(url, json={"data": data}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise SecretStoreError(f"Failed to write secret {mount}/{path}: {e}") from e

        if response.status_code not in (200, 204):
            raise SecretStoreError(f"Failed to write secret {mount}/{path}: HTTP {response.status_code}")
        LOG.debug("Wrote secret %s/%s", mount, path)

    def close(self) -> None:
        self.session.close()


def open_secret_store(settings) -> Optional[OpenBAOClient]:
    """OpenBAO client for the [openbao] settings, or None when not configured."""
    if not settings.configured:
        return None
    return OpenBAOClient(settings.addr, settings.token, verify_ssl=settings.verify_ssl)


def resolve_api_key(truenas_settings, secret_store: Optional[OpenBAOClient], mount: str = SECRET_MOUNT) -> str:
    """
    API key from the config file, else from the secret store.

    Raises:
        SecretStoreError: The key is only in the secret store and that is
            not configured or does not hold it
    """
    if truenas_settings.api_key:
        return truenas_settings.api_key
    if secret_store is not None:
        return get_api_key(secret_store, mount)
    if truenas_settings.api_key_ref:
        raise SecretStoreError(
            "TrueNAS API key is kept in OpenBAO but OpenBAO is not configured (set OPENBAO_ADDR and OPENBAO_TOKEN)"
        )
    return ""
