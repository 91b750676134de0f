"""Shared fixtures and utilities for labcli tests."""

from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest
from cryptography.fernet import Fernet

from labcli.config import HostConfig
from labcli.crypto import ValueCipher
from labcli.oauth.store import save_token
from labcli.oauth.tokens import AuthToken


# ============================================================================
# In-memory credential store
# ============================================================================


class MemoryStore:
    """Credential store kept in a dict; counts write() calls."""

    def __init__(self, hosts: dict[str, dict[str, str]] | None = None):
        self.hosts: dict[str, dict[str, str]] = hosts or {}
        self.writes = 0

    def get(self, hostname: str, key: str) -> str:
        return self.hosts.get(hostname, {}).get(key, "")

    def set(self, hostname: str, key: str, value: str) -> None:
        self.hosts.setdefault(hostname, {})[key] = value

    def unset(self, hostname: str, key: str) -> None:
        self.hosts.get(hostname, {}).pop(key, None)

    def write(self) -> None:
        self.writes += 1


@pytest.fixture
def memory_store() -> MemoryStore:
    """Create an empty in-memory credential store."""
    return MemoryStore()


# ============================================================================
# File-backed config
# ============================================================================


@pytest.fixture
def cipher() -> ValueCipher:
    """Create a cipher with a throwaway key (never touches the keyring)."""
    return ValueCipher(Fernet.generate_key())


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Config directory inside the test's tmp_path."""
    return tmp_path / "labcli"


@pytest.fixture
def host_config(config_dir: Path, cipher: ValueCipher) -> HostConfig:
    """Create a HostConfig writing to tmp_path."""
    return HostConfig(config_dir, cipher=cipher)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Remove labcli environment overrides for the test."""
    for name in ("LABCLI_HOST", "GITLAB_HOST", "LABCLI_CONFIG_DIR", "JOB_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    yield


# ============================================================================
# Tokens
# ============================================================================


def make_token(
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
    code_verifier: str = "verifier-1",
    expires_in_delta: timedelta = timedelta(hours=2),
) -> AuthToken:
    """Create a token expiring expires_in_delta from now (negative: already expired)."""
    return AuthToken(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=max(int(expires_in_delta.total_seconds()), 0),
        code_verifier=code_verifier,
        expiry_date=datetime.now(timezone.utc) + expires_in_delta,
    )


@pytest.fixture
def valid_token() -> AuthToken:
    return make_token()


@pytest.fixture
def expired_token() -> AuthToken:
    return make_token(expires_in_delta=timedelta(minutes=-5))


@pytest.fixture
def stored_expired(memory_store: MemoryStore, expired_token: AuthToken) -> MemoryStore:
    """Memory store holding an expired OAuth2 token for gitlab.com."""
    save_token(memory_store, "gitlab.com", expired_token)
    memory_store.writes = 0
    return memory_store


# ============================================================================
# HTTP
# ============================================================================


def token_body(
    access_token: str = "new-access",
    refresh_token: str = "new-refresh",
    expires_in: int = 7200,
) -> dict[str, Any]:
    """Token endpoint success body."""
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expires_in": expires_in,
        "token_type": "Bearer",
        "scope": "openid profile read_user write_repository api",
        "created_at": 1700000000,
    }


class RecordingTransport:
    """httpx.MockTransport wrapper that records every request."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: list[httpx.Request] = []
        self._handler = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def token_factory() -> Callable[..., AuthToken]:
    """Factory for tokens with a given remaining lifetime."""
    return make_token


@pytest.fixture
def token_response() -> Callable[..., dict[str, Any]]:
    """Factory for token endpoint success bodies."""
    return token_body


@pytest.fixture
def mock_token_endpoint() -> Callable[..., RecordingTransport]:
    """Factory for a recording token endpoint.

    Usage:
        endpoint = mock_token_endpoint(lambda req: httpx.Response(200, json=...))
        async with endpoint.client() as http:
            ...
        assert len(endpoint.requests) == 1
    """
    return RecordingTransport
