"""Tests for config value encryption."""

from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from labcli.crypto import (
    ENCRYPTED_PREFIX,
    KEYRING_SERVICE,
    KEYRING_USERNAME,
    DecryptionError,
    ValueCipher,
    _derive_fallback_key,
)


class TestValueCipher:
    """Tests for ValueCipher."""

    def test_encrypt_decrypt(self):
        cipher = ValueCipher(Fernet.generate_key())
        encrypted = cipher.encrypt("secret")

        assert encrypted.startswith(ENCRYPTED_PREFIX)
        assert "secret" not in encrypted
        assert cipher.decrypt(encrypted) == "secret"

    def test_plaintext_passes_through(self):
        cipher = ValueCipher(Fernet.generate_key())
        assert cipher.decrypt("glpat-plain") == "glpat-plain"

    def test_wrong_key(self):
        encrypted = ValueCipher(Fernet.generate_key()).encrypt("secret")
        with pytest.raises(DecryptionError, match="encryption key may have changed"):
            ValueCipher(Fernet.generate_key()).decrypt(encrypted)

    def test_explicit_key_does_not_use_keyring(self):
        with patch("labcli.crypto.keyring") as mock_keyring:
            cipher = ValueCipher(Fernet.generate_key())
        mock_keyring.get_password.assert_not_called()
        assert not cipher.using_keyring


class TestKeyringKey:
    """Tests for loading the key from the OS keyring."""

    def test_existing_key_is_used(self):
        key = Fernet.generate_key()
        with patch("labcli.crypto.keyring") as mock_keyring:
            mock_keyring.get_password.return_value = key.decode("ascii")
            cipher = ValueCipher()

        mock_keyring.get_password.assert_called_once_with(KEYRING_SERVICE, KEYRING_USERNAME)
        mock_keyring.set_password.assert_not_called()
        assert cipher.using_keyring
        assert ValueCipher(key).decrypt(cipher.encrypt("x")) == "x"

    def test_key_generated_on_first_use(self):
        with patch("labcli.crypto.keyring") as mock_keyring:
            mock_keyring.get_password.return_value = None
            cipher = ValueCipher()

        mock_keyring.set_password.assert_called_once()
        service, username, stored_key = mock_keyring.set_password.call_args[0]
        assert (service, username) == (KEYRING_SERVICE, KEYRING_USERNAME)
        assert ValueCipher(stored_key.encode("ascii")).decrypt(cipher.encrypt("x")) == "x"

    def test_falls_back_when_keyring_fails(self, caplog):
        with patch("labcli.crypto.keyring") as mock_keyring:
            mock_keyring.get_password.side_effect = RuntimeError("no backend")
            cipher = ValueCipher()

        assert not cipher.using_keyring
        assert "Keyring not available" in caplog.text
        assert ValueCipher(_derive_fallback_key()).decrypt(cipher.encrypt("x")) == "x"


class TestFallbackKey:
    def test_is_stable_and_valid(self):
        key = _derive_fallback_key()
        assert key == _derive_fallback_key()
        Fernet(key)
