"""Helpers describing the default public instance and self-hosted hosts."""

import os

DEFAULT_HOSTNAME = "gitlab.com"
DEFAULT_PROTOCOL = "https"

# Public OAuth application registered on the default instance. PKCE clients
# have no secret, so this value is safe to ship.
DEFAULT_CLIENT_ID = "41d48f9422ebd655dd9cf2947d6979681dfaddc6d0c56f7628f6ada59559af1e"

HOST_ENV_VARS = ("LABCLI_HOST", "GITLAB_HOST")


def normalize_hostname(hostname: str) -> str:
    """Return the canonical (lowercase, bare) form of a hostname."""
    return hostname.strip().lower()


def strip_host_protocol(value: str) -> tuple[str, str]:
    """Split an optional scheme off a host value.

    Returns:
        (hostname, protocol) where protocol is "http" or "https"
    """
    hostname = normalize_hostname(value)
    protocol = DEFAULT_PROTOCOL
    if hostname.startswith("http://"):
        protocol = "http"
        hostname = hostname[len("http://"):]
    elif hostname.startswith("https://"):
        hostname = hostname[len("https://"):]
    return hostname.strip(":/"), protocol


def default_hostname() -> str:
    """Default host, overridable through LABCLI_HOST or GITLAB_HOST."""
    for name in HOST_ENV_VARS:
        value = os.environ.get(name)
        if value:
            return strip_host_protocol(value)[0]
    return DEFAULT_HOSTNAME


def is_self_hosted(hostname: str) -> bool:
    """Anything other than the default public instance is self-hosted."""
    return normalize_hostname(hostname) != DEFAULT_HOSTNAME


def validate_hostname(hostname: str) -> str:
    """Validate a bare hostname supplied by the operator.

    Raises:
        ValueError: If the value is empty or contains a scheme, path or port.
    """
    if not hostname or not hostname.strip():
        raise ValueError("a hostname is required")
    if "/" in hostname or ":" in hostname:
        raise ValueError(f"invalid hostname {hostname!r}: use a bare host such as gitlab.example.com")
    return normalize_hostname(hostname)
