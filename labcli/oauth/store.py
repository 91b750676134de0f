"""Credential store contract and AuthToken persistence.

The OAuth package never touches files directly. It reads and writes string
values per host through any object satisfying :class:`CredentialStore`;
:class:`labcli.config.HostConfig` is the production implementation.
"""

import logging
from typing import Protocol

from .tokens import AuthToken, format_expiry_date, parse_expiry_date

logger = logging.getLogger(__name__)

KEY_IS_OAUTH2 = "is_oauth2"
KEY_TOKEN = "token"
KEY_REFRESH_TOKEN = "oauth2_refresh_token"
KEY_CODE_VERIFIER = "oauth2_code_verifier"
KEY_EXPIRY_DATE = "oauth2_expiry_date"
KEY_CLIENT_ID = "client_id"
KEY_BROWSER = "browser"
KEY_API_PROTOCOL = "api_protocol"

OAUTH2_KEYS = (KEY_IS_OAUTH2, KEY_TOKEN, KEY_REFRESH_TOKEN, KEY_CODE_VERIFIER, KEY_EXPIRY_DATE)


class CredentialStore(Protocol):
    """Per-host string key/value store with an explicit flush."""

    def get(self, hostname: str, key: str) -> str: ...

    def set(self, hostname: str, key: str, value: str) -> None: ...

    def unset(self, hostname: str, key: str) -> None: ...

    def write(self) -> None: ...


def is_oauth2_host(store: CredentialStore, hostname: str) -> bool:
    return store.get(hostname, KEY_IS_OAUTH2) == "true"


def save_token(store: CredentialStore, hostname: str, token: AuthToken) -> None:
    """Replace every OAuth2 field for hostname with token and flush.

    Raises:
        ValueError: If the token has no expiry date
    """
    if token.expiry_date is None:
        raise ValueError("refusing to store a token without an expiry date")

    store.set(hostname, KEY_IS_OAUTH2, "true")
    store.set(hostname, KEY_TOKEN, token.access_token)
    store.set(hostname, KEY_REFRESH_TOKEN, token.refresh_token)
    store.set(hostname, KEY_CODE_VERIFIER, token.code_verifier)
    store.set(hostname, KEY_EXPIRY_DATE, format_expiry_date(token.expiry_date))
    store.write()

    logger.debug(f"Stored OAuth2 token for {hostname}")


def load_token(store: CredentialStore, hostname: str) -> AuthToken | None:
    """Load the persisted token for hostname.

    Returns None when the host is not flagged as OAuth2 or holds no access
    token. An unreadable expiry date leaves expiry_date unset, which makes
    the token count as expired.
    """
    if not is_oauth2_host(store, hostname):
        return None

    access_token = store.get(hostname, KEY_TOKEN)
    if not access_token:
        return None

    expiry_date = None
    raw_expiry = store.get(hostname, KEY_EXPIRY_DATE)
    if raw_expiry:
        try:
            expiry_date = parse_expiry_date(raw_expiry)
        except ValueError as e:
            logger.warning(f"Ignoring stored expiry date for {hostname}: {e}")

    return AuthToken(
        access_token=access_token,
        refresh_token=store.get(hostname, KEY_REFRESH_TOKEN),
        code_verifier=store.get(hostname, KEY_CODE_VERIFIER),
        expiry_date=expiry_date,
    )


def delete_token(store: CredentialStore, hostname: str) -> bool:
    """Remove every OAuth2 field for hostname and flush.

    Returns:
        True if the host had OAuth2 credentials
    """
    had_token = is_oauth2_host(store, hostname)
    for key in OAUTH2_KEYS:
        store.unset(hostname, key)
    store.write()

    if had_token:
        logger.debug(f"Deleted OAuth2 token for {hostname}")
    return had_token
