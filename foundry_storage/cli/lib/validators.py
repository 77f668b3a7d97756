"""
Input validation functions.
"""

import re
from urllib.parse import urlparse


def validate_name(name: str) -> None:
    """
    Validate a pool or dataset name.

    Args:
        name: Name to validate

    Raises:
        ValueError: If name is invalid
    """
    if not name:
        raise ValueError("Name cannot be empty")

    if len(name) > 64:
        raise ValueError("Name must be between 1 and 64 characters")

    # ZFS component names: alphanumeric, dots, underscores, hyphens, colons
    if not re.match(r'^[a-zA-Z0-9][a-zA-Z0-9._:-]*$', name):
        raise ValueError("Name must start with alphanumeric and contain only alphanumeric, dots, underscores, colons, or hyphens")


def validate_api_url(url: str) -> str:
    """
    Validate a TrueNAS API URL.

    Returns:
        The URL without a trailing slash

    Raises:
        ValueError: If the URL is not http(s) with a host
    """
    if not url:
        raise ValueError("API URL cannot be empty")

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValueError(f"API URL must start with http:// or https://: {url}")
    if not parsed.hostname:
        raise ValueError(f"API URL has no host: {url}")

    return url.rstrip("/")


def validate_disk_name(name: str) -> str:
    """
    Validate a block device name such as ``sdb`` or ``/dev/nvme0n1``.

    Returns:
        The bare device name

    Raises:
        ValueError: If the name is invalid
    """
    if name.startswith("/dev/"):
        name = name[len("/dev/"):]

    if not name:
        raise ValueError("Disk name cannot be empty")

    if not re.match(r'^[a-zA-Z][a-zA-Z0-9_-]*$', name):
        raise ValueError(f"Invalid disk name: {name}")

    return name


def validate_port(port: int) -> None:
    if port < 1 or port > 65535:
        raise ValueError("Port must be between 1 and 65535")
