"""Encryption at rest for secret configuration values.

Secret host keys (access token, refresh token, PKCE verifier) are encrypted
with Fernet (AES-128-CBC + HMAC). The Fernet key lives in the OS keyring
(Keychain, libsecret, Windows Credential Locker); when no keyring backend is
usable a key derived from machine-specific data is used instead.
"""

import base64
import hashlib
import logging
import os
from pathlib import Path

import keyring
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "labcli"
KEYRING_USERNAME = "config-encryption-key"

# Marks a stored value as ciphertext so plaintext values written by hand
# (or by older versions) are still readable.
ENCRYPTED_PREFIX = "enc:"


class DecryptionError(Exception):
    """A stored secret could not be decrypted with the current key."""

    pass


def _derive_fallback_key() -> bytes:
    """Derive a Fernet key from machine-specific data."""
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "labcli")))

    key_bytes = hashlib.sha256(":".join(components).encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


def _load_keyring_key() -> bytes:
    """Fetch the Fernet key from the keyring, creating it on first use."""
    key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    if key is None:
        key = Fernet.generate_key().decode("ascii")
        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
        logger.debug("Generated new config encryption key in keyring")
    return key.encode("ascii")


class ValueCipher:
    """Encrypts and decrypts individual config values.

    Args:
        key: Optional Fernet key. When omitted the key is read from the
            OS keyring, with a machine-derived fallback.
    """

    def __init__(self, key: bytes | None = None):
        self._using_keyring = False

        if key is None:
            try:
                key = _load_keyring_key()
                self._using_keyring = True
            except Exception as e:
                logger.warning(
                    f"Keyring not available: {type(e).__name__}: {e}. "
                    f"Falling back to a machine-derived encryption key."
                )
                key = _derive_fallback_key()

        self._fernet = Fernet(key)

    @property
    def using_keyring(self) -> bool:
        return self._using_keyring

    def encrypt(self, value: str) -> str:
        token = self._fernet.encrypt(value.encode("utf-8")).decode("ascii")
        return ENCRYPTED_PREFIX + token

    def decrypt(self, value: str) -> str:
        """Decrypt a stored value. Values without the marker are returned as is.

        Raises:
            DecryptionError: If the value was encrypted with a different key
        """
        if not value.startswith(ENCRYPTED_PREFIX):
            return value

        try:
            plain = self._fernet.decrypt(value[len(ENCRYPTED_PREFIX):].encode("ascii"))
        except InvalidToken as e:
            raise DecryptionError(
                "Failed to decrypt a stored secret. The encryption key may have changed."
            ) from e
        return plain.decode("utf-8")
