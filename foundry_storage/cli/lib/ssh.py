"""
SSH command execution on cluster hosts.
"""

import logging
import os
from typing import Optional

import paramiko

from foundry_storage.cli.lib.config import HostConfig
from foundry_storage.longhorn.exceptions import ProvisionError
from foundry_storage.longhorn.inventory import CommandResult

LOG = logging.getLogger(__name__)


class SSHError(ProvisionError):
    """Connecting to or running a command on a host failed."""

    pass


class SSHConnection:
    """
    One SSH session to a host.

    Authenticates with ``key_file`` when given, otherwise with the SSH agent
    and default keys. Use as a context manager so the session is closed on
    every exit path.
    """

    def __init__(
        self,
        host: str,
        user: str = "root",
        port: int = 22,
        key_file: Optional[str] = None,
        timeout: int = 30,
    ):
        self.host = host
        self.user = user
        self.port = port
        self.key_file = os.path.expanduser(key_file) if key_file else None
        self.timeout = timeout
        self._client: Optional[paramiko.SSHClient] = None

    def connect(self) -> "SSHConnection":
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.user,
                key_filename=self.key_file,
                timeout=self.timeout,
                allow_agent=True,
                look_for_keys=self.key_file is None,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise SSHError(f"SSH authentication failed for {self.user}@{self.host}: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise SSHError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        LOG.debug("Connected to %s@%s:%d", self.user, self.host, self.port)
        self._client = client
        return self

    def execute(self, command: str) -> CommandResult:
        """Run a command and wait for it to finish."""
        if self._client is None:
            raise SSHError(f"Not connected to {self.host}")
        try:
            _, stdout, stderr = self._client.exec_command(command)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise SSHError(f"Failed to run command on {self.host}: {e}") from e
        return CommandResult(stdout=out, stderr=err, exit_code=exit_code)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self):
        if self._client is None:
            self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def connect_host(host: HostConfig, timeout: int = 30) -> SSHConnection:
    """Open an SSH session to a configured host."""
    return SSHConnection(
        host=host.address,
        user=host.user,
        port=host.port,
        key_file=host.key_file or None,
        timeout=timeout,
    ).connect()
