"""PKCE (Proof Key for Code Exchange, RFC 7636) helpers.

labcli is a public client: it ships no client secret, so the authorization
code is bound to a locally generated verifier instead.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass


MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 64

# RFC 7636 unreserved characters
VERIFIER_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"

CHALLENGE_METHOD = "S256"


@dataclass
class PKCEPair:
    """A code verifier and the S256 challenge derived from it."""

    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD


def generate_code_verifier(length: int = DEFAULT_VERIFIER_LENGTH) -> str:
    """Return a fresh, cryptographically random code verifier.

    Args:
        length: Number of characters, between 43 and 128 inclusive.

    Raises:
        ValueError: If length is outside the RFC 7636 range.
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"Code verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH}, got {length}"
        )

    return "".join(secrets.choice(VERIFIER_CHARS) for _ in range(length))


def generate_code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge: BASE64URL(SHA256(verifier)), unpadded."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_pkce_pair(length: int = DEFAULT_VERIFIER_LENGTH) -> PKCEPair:
    """Generate a verifier and its matching challenge in one step."""
    verifier = generate_code_verifier(length)
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_state() -> str:
    """Return an opaque anti-CSRF value for a single authorization attempt."""
    return secrets.token_urlsafe(32)
