"""Custom exceptions for Longhorn disk provisioning."""


class ProvisionError(Exception):
    """Base exception for disk provisioning errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class RemoteCommandError(ProvisionError):
    """A command on the target host exited non-zero."""

    def __init__(self, command: str, result, message: str = ""):
        self.command = command
        self.result = result
        if not message:
            detail = (result.stderr or result.stdout or "").strip()
            message = f"Command failed with exit code {result.exit_code}: {command}"
            if detail:
                message = f"{message}: {detail}"
        super().__init__(message)


class DiskSelectionError(ProvisionError, ValueError):
    """The requested disks cannot be used."""

    pass


class DiskSetupError(ProvisionError):
    """Preparing a disk failed at a given step."""

    def __init__(self, disk: str, step: str, message: str):
        self.disk = disk
        self.step = step
        super().__init__(f"Failed to {step} {disk}: {message}")


class NodeUpdateError(ProvisionError):
    """Reading or patching the Longhorn node resource failed."""

    pass
