"""OAuth token data structures and expiry handling."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any

logger = logging.getLogger(__name__)


class TokenParseError(ValueError):
    """The token endpoint returned a body that is not a usable token."""

    pass


def format_expiry_date(value: datetime) -> str:
    """Serialize an expiry timestamp for the config store (ISO 8601, UTC)."""
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_expiry_date(value: str) -> datetime:
    """Parse a stored expiry timestamp.

    Accepts ISO 8601 and the RFC 822 layout written by older releases
    ("13 Mar 23 15:47 GMT"). Naive values are taken as UTC.

    Raises:
        ValueError: If the value matches neither layout
    """
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"unrecognised expiry date {value!r}") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class AuthToken:
    """An OAuth2 access/refresh token pair for one host.

    Attributes:
        access_token: Bearer credential for API calls
        refresh_token: Credential used to mint a new access token
        expires_in: Lifetime in seconds as returned by the server
            (0 for tokens loaded back from the config store)
        code_verifier: PKCE verifier of the authorization that produced
            this token; resent on every refresh
        expiry_date: Absolute expiry, computed when the token is received
    """

    access_token: str
    refresh_token: str
    expires_in: int = 0
    code_verifier: str = ""
    expiry_date: datetime | None = None

    def calc_expiry_date(self, issued_at: datetime | None = None) -> datetime:
        """Recompute expiry_date from expires_in, relative to issued_at (default now)."""
        issued_at = issued_at or datetime.now(timezone.utc)
        self.expiry_date = issued_at + timedelta(seconds=self.expires_in)
        return self.expiry_date

    def is_expired(self, now: datetime | None = None) -> bool:
        """True unless expiry_date is strictly in the future.

        There is no early-refresh margin. A token without an expiry date
        counts as expired so that it gets refreshed.
        """
        if self.expiry_date is None:
            return True

        now = now or datetime.now(timezone.utc)
        return not self.expiry_date > now

    def expires_within(self) -> timedelta | None:
        """Time left before expiry, negative once expired."""
        if self.expiry_date is None:
            return None
        return self.expiry_date - datetime.now(timezone.utc)

    @classmethod
    def from_token_response(
        cls,
        response: Any,
        code_verifier: str,
        issued_at: datetime | None = None,
    ) -> "AuthToken":
        """Build a token from a token endpoint JSON body and stamp its expiry.

        Args:
            response: Decoded JSON body
            code_verifier: Verifier to carry forward for refreshes
            issued_at: Issuance time, defaults to now

        Raises:
            TokenParseError: If a required field is missing or has the wrong type
        """
        if not isinstance(response, dict):
            raise TokenParseError("token response is not a JSON object")

        access_token = response.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise TokenParseError("token response has no access_token")

        refresh_token = response.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            raise TokenParseError("token response has no refresh_token")

        expires_in = response.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, str)):
            raise TokenParseError("token response has no expires_in")
        try:
            expires_in = int(expires_in)
        except ValueError as e:
            raise TokenParseError(f"invalid expires_in {expires_in!r}") from e
        if expires_in < 0:
            raise TokenParseError(f"invalid expires_in {expires_in!r}")

        token = cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            code_verifier=code_verifier,
        )
        token.calc_expiry_date(issued_at)
        return token
