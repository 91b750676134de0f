"""High-level OAuth manager for labcli.

One manager is created per CLI invocation and passed down to the commands
that need credentials. It wraps login, refresh-before-use, logout and status
reporting around a single credential store.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from ..config import ConfigDecryptionError
from ..instance import DEFAULT_PROTOCOL, normalize_hostname
from .callback import CALLBACK_PORT, DEFAULT_TIMEOUT
from .flow import OAuthFlow, refresh_token, resolve_client_id
from .store import (
    KEY_API_PROTOCOL,
    CredentialStore,
    delete_token,
    is_oauth2_host,
    load_token,
    save_token,
)
from .tokens import AuthToken

logger = logging.getLogger(__name__)


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta for humans, e.g. "45 minutes" or "3 days"."""
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "Expired"

    if total_seconds < 60:
        return f"{total_seconds} second{'s' if total_seconds != 1 else ''}"

    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"

    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''}"


def host_protocol(store: CredentialStore, hostname: str) -> str:
    """Scheme for the host's OAuth endpoints, from its api_protocol setting."""
    protocol = store.get(hostname, KEY_API_PROTOCOL)
    return protocol if protocol in ("http", "https") else DEFAULT_PROTOCOL


@dataclass
class AuthStatus:
    """Authentication state of one host, safe to display (no secrets)."""

    hostname: str
    oauth2: bool = False
    authenticated: bool = False
    expired: bool = False
    expiry_date: str | None = None
    expires_in_human: str | None = None
    has_refresh_token: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hostname": self.hostname,
            "oauth2": self.oauth2,
            "authenticated": self.authenticated,
            "expired": self.expired,
            "expiry_date": self.expiry_date,
            "expires_in_human": self.expires_in_human,
            "has_refresh_token": self.has_refresh_token,
            "error": self.error,
        }


class OAuthManager:
    """Manages OAuth credentials for every configured host.

    Refreshes are serialized per host: the stored token is re-read after the
    host lock is taken, so concurrent callers refresh at most once.

    Usage:
        manager = OAuthManager(HostConfig())
        await manager.authenticate("gitlab.com", on_status=print)
        token = await manager.get_access_token("gitlab.com")
    """

    def __init__(self, store: CredentialStore, http_client: httpx.AsyncClient | None = None):
        self._store = store
        self._http_client = http_client
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    @property
    def store(self) -> CredentialStore:
        return self._store

    def _lock_for(self, hostname: str) -> asyncio.Lock:
        key = normalize_hostname(hostname)
        lock = self._refresh_locks.get(key)
        if lock is None:
            lock = self._refresh_locks[key] = asyncio.Lock()
        return lock

    async def authenticate(
        self,
        hostname: str,
        callback_port: int = CALLBACK_PORT,
        callback_timeout: float | None = DEFAULT_TIMEOUT,
        on_status: Callable[[str], None] | None = None,
    ) -> str:
        """Run the interactive login for hostname and return the access token.

        Raises:
            ConfigurationError: If the host has no usable client id
            AuthenticationFailedError: If the login attempt failed
        """
        flow = OAuthFlow(
            hostname,
            self._store,
            protocol=host_protocol(self._store, hostname),
            http_client=self._http_client,
            callback_port=callback_port,
            callback_timeout=callback_timeout,
            on_status=on_status,
        )
        return await flow.run()

    async def refresh_if_needed(self, hostname: str, now: datetime | None = None) -> bool:
        """Refresh the stored token for hostname if it has expired.

        Does nothing for hosts that are not OAuth2 hosts or hold no token,
        and for tokens whose expiry date is strictly in the future. Errors
        from the token endpoint propagate; the operator has to log in again.

        Returns:
            True if a refresh request was made and the new token stored
        """
        token = load_token(self._store, hostname)
        if token is None or not token.is_expired(now):
            return False

        async with self._lock_for(hostname):
            # Another caller may have refreshed while we waited for the lock
            token = load_token(self._store, hostname)
            if token is None or not token.is_expired(now):
                return False

            logger.info(f"Token for {hostname} expired at {token.expiry_date}, refreshing")

            new_token = await refresh_token(
                hostname,
                resolve_client_id(self._store, hostname),
                token.refresh_token,
                token.code_verifier,
                protocol=host_protocol(self._store, hostname),
                http_client=self._http_client,
            )
            save_token(self._store, hostname, new_token)

            logger.info(f"Token refreshed for {hostname}")
            return True

    async def get_token(self, hostname: str) -> AuthToken | None:
        """Refresh if needed, then return the stored token (None if not logged in)."""
        await self.refresh_if_needed(hostname)
        return load_token(self._store, hostname)

    async def get_access_token(self, hostname: str) -> str | None:
        token = await self.get_token(hostname)
        return token.access_token if token else None

    def logout(self, hostname: str) -> bool:
        """Forget the OAuth2 credentials of hostname.

        Other host settings (client_id, browser, api_protocol) are kept.

        Returns:
            True if credentials were removed, False if there were none
        """
        deleted = delete_token(self._store, hostname)
        if deleted:
            logger.info(f"Logged out from {hostname}")
        return deleted

    def get_auth_status(self, hostname: str) -> AuthStatus:
        """Describe the stored credentials of hostname without refreshing them.

        Secrets that can no longer be decrypted are reported in ``error``
        rather than raised, so other hosts can still be listed.
        """
        if not is_oauth2_host(self._store, hostname):
            return AuthStatus(hostname=hostname)

        try:
            token = load_token(self._store, hostname)
        except ConfigDecryptionError as e:
            logger.debug(f"Stored credentials for {hostname} are unreadable: {e}")
            return AuthStatus(hostname=hostname, oauth2=True, error=str(e))

        if token is None:
            return AuthStatus(hostname=hostname, oauth2=True)

        remaining = token.expires_within()
        return AuthStatus(
            hostname=hostname,
            oauth2=True,
            authenticated=True,
            expired=token.is_expired(),
            expiry_date=token.expiry_date.astimezone(timezone.utc).isoformat() if token.expiry_date else None,
            expires_in_human=_format_timedelta(remaining) if remaining is not None else None,
            has_refresh_token=bool(token.refresh_token),
        )
