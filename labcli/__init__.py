"""labcli - command line access to GitLab instances, with OAuth2 browser login."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("labcli")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Core modules
    "HostConfig",
    "ValueCipher",
    "OAuthManager",
    "AuthToken",
    "OutputHandler",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name == "HostConfig":
        from .config import HostConfig
        return HostConfig
    elif name == "ValueCipher":
        from .crypto import ValueCipher
        return ValueCipher
    elif name in ("OAuthManager", "AuthToken"):
        from .oauth import AuthToken, OAuthManager
        return {"OAuthManager": OAuthManager, "AuthToken": AuthToken}[name]
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
