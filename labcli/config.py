"""Config discovery and per-host configuration storage for labcli.

Host settings live in a single JSON document::

    {
      "hosts": {
        "gitlab.com": {"is_oauth2": "true", "token": "enc:...", ...}
      }
    }

Secret values are encrypted with :class:`labcli.crypto.ValueCipher`. Writes
are atomic, guarded by an exclusive file lock, and leave the file readable by
the owner only.
"""

import json
import logging
import os
import stat
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from dotenv import load_dotenv

from .crypto import DecryptionError, ValueCipher
from .instance import normalize_hostname

logger = logging.getLogger(__name__)

if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path) -> Generator[None, None, None]:
        """Hold an exclusive lock on a sidecar lock file (fcntl)."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path) -> Generator[None, None, None]:
        """Hold an exclusive lock on a sidecar lock file (msvcrt)."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            try:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


CONFIG_DIR_ENV_VAR = "LABCLI_CONFIG_DIR"
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "labcli"
CONFIG_FILE = "config.json"

ENV_SEARCH_PATHS = [
    Path(".env"),
    DEFAULT_CONFIG_DIR / ".env",
]

# Keys whose values are encrypted at rest
SECRET_KEYS = frozenset({"token", "job_token", "oauth2_refresh_token", "oauth2_code_verifier"})


class ConfigError(Exception):
    """The configuration file could not be read or written."""

    pass


class ConfigDecryptionError(ConfigError):
    """A secret in the configuration file could not be decrypted.

    Happens when the keyring was cleared or the file was copied from another
    machine. Logging out of the host (or deleting the file) and logging in
    again fixes it.
    """

    pass


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking the working directory then the config dir."""
    if explicit_path:
        return explicit_path if explicit_path.exists() else None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def load_env(env_path: Path | None = None) -> Path | None:
    """Load environment overrides from a .env file, if one is found."""
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)
        logger.debug(f"Loaded environment from {env_file}")
    return env_file


def get_config_dir(explicit_dir: Path | None = None) -> Path:
    """Resolve the config directory: explicit, then LABCLI_CONFIG_DIR, then default."""
    if explicit_dir:
        return explicit_dir
    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser()
    return DEFAULT_CONFIG_DIR


class HostConfig:
    """File-backed per-host key/value store.

    Implements the credential store contract used by the OAuth package:
    ``get``, ``set``, ``unset`` and ``write``, plus ``hosts``. Changes are
    kept in memory until :meth:`write` flushes them.
    """

    def __init__(self, config_dir: Path | None = None, cipher: ValueCipher | None = None):
        self.config_dir = get_config_dir(config_dir)
        self.path = self.config_dir / CONFIG_FILE
        self._cipher = cipher
        self._hosts: dict[str, dict[str, str]] | None = None

    @property
    def cipher(self) -> ValueCipher:
        if self._cipher is None:
            self._cipher = ValueCipher()
        return self._cipher

    def _load(self) -> dict[str, dict[str, str]]:
        if self._hosts is not None:
            return self._hosts

        if not self.path.exists():
            self._hosts = {}
            return self._hosts

        try:
            data: dict[str, Any] = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigError(f"Config file {self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise ConfigError(f"Could not read config file {self.path}: {e}") from e

        hosts = data.get("hosts", {})
        if not isinstance(hosts, dict):
            raise ConfigError(f"Config file {self.path}: 'hosts' must be an object")

        self._hosts = {
            normalize_hostname(host): {str(k): str(v) for k, v in (values or {}).items()}
            for host, values in hosts.items()
        }
        return self._hosts

    def get(self, hostname: str, key: str) -> str:
        """Return the value of key for hostname, or "" when unset.

        Raises:
            ConfigError: If the file cannot be parsed
            ConfigDecryptionError: If a secret value cannot be decrypted
        """
        value = self._load().get(normalize_hostname(hostname), {}).get(key, "")
        if value and key in SECRET_KEYS:
            try:
                return self.cipher.decrypt(value)
            except DecryptionError as e:
                raise ConfigDecryptionError(
                    f"Cannot decrypt '{key}' for {hostname}. "
                    f"Run 'labcli auth logout --hostname {hostname}' and log in again."
                ) from e
        return value

    def set(self, hostname: str, key: str, value: str) -> None:
        """Set key for hostname in memory; call write() to persist."""
        host = self._load().setdefault(normalize_hostname(hostname), {})
        if value and key in SECRET_KEYS:
            value = self.cipher.encrypt(value)
        host[key] = value

    def unset(self, hostname: str, key: str) -> None:
        self._load().get(normalize_hostname(hostname), {}).pop(key, None)

    def hosts(self) -> list[str]:
        return sorted(self._load())

    def write(self) -> None:
        """Flush the in-memory state to disk atomically.

        Raises:
            ConfigError: If the file cannot be written
        """
        hosts = self._load()
        payload = json.dumps({"hosts": hosts}, indent=2, sort_keys=True)

        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            try:
                self.config_dir.chmod(stat.S_IRWXU)
            except OSError as e:
                logger.warning(f"Could not set config directory permissions: {e}")

            with _file_lock(self.path):
                fd, tmp_name = tempfile.mkstemp(dir=self.config_dir, prefix=".config-", suffix=".tmp")
                try:
                    with os.fdopen(fd, "w") as tmp:
                        tmp.write(payload)
                    os.chmod(tmp_name, stat.S_IRUSR | stat.S_IWUSR)
                    os.replace(tmp_name, self.path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
        except OSError as e:
            raise ConfigError(f"Could not write config file {self.path}: {e}") from e

        logger.debug(f"Wrote config for {len(hosts)} host(s) to {self.path}")
