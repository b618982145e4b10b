"""Secure secret storage backends.

Two backends share one small contract: ``get``, ``set``, ``delete`` and
``add_if_absent``. ``add_if_absent`` is the atomic create-if-absent
primitive the crypto store relies on: it returns whatever value ended up
stored, so racing initialisers converge on one value.
"""

import os
import re
import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ..exceptions import SecretStoreError

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r'^[A-Za-z0-9._-]+$')


def _check_name(name: str) -> str:
    if not name or not _SAFE_NAME.match(name) or name in ('.', '..'):
        raise SecretStoreError(f"Invalid secret name: {name!r}")
    return name


class SecretStore(ABC):
    """Abstract named-secret storage."""

    @abstractmethod
    def get(self, name: str) -> Optional[str]:
        """Return the stored secret or None when absent."""

    @abstractmethod
    def set(self, name: str, value: str) -> None:
        """Create or replace a secret."""

    @abstractmethod
    def delete(self, name: str) -> bool:
        """Remove a secret. Returns True if something was removed."""

    @abstractmethod
    def add_if_absent(self, name: str, value: str) -> str:
        """Store ``value`` only if ``name`` is unset; return the stored value."""


class FileSecretStore(SecretStore):
    """One file per secret inside a private (0700) directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.directory, 0o700)
        except OSError as e:
            logger.warning(f"Could not restrict permissions on {self.directory}: {e}")

    def _path(self, name: str) -> Path:
        return self.directory / _check_name(name)

    def get(self, name: str) -> Optional[str]:
        path = self._path(name)
        try:
            value = path.read_text(encoding='utf-8').strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SecretStoreError(f"Failed to read secret {name}: {e}") from e
        return value or None

    def set(self, name: str, value: str) -> None:
        path = self._path(name)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(value)
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise SecretStoreError(f"Failed to write secret {name}: {e}") from e
        logger.debug(f"Secret stored: {name}")

    def delete(self, name: str) -> bool:
        try:
            self._path(name).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise SecretStoreError(f"Failed to delete secret {name}: {e}") from e

    def add_if_absent(self, name: str, value: str) -> str:
        path = self._path(name)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.new")
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(value)
            # link() fails if the target exists, and readers never see a partial file
            os.link(tmp_path, path)
        except FileExistsError:
            existing = self.get(name)
            if existing is None:
                raise SecretStoreError(f"Secret {name} exists but is empty")
            logger.debug(f"Secret {name} already present, keeping existing value")
            return existing
        except OSError as e:
            raise SecretStoreError(f"Failed to create secret {name}: {e}") from e
        finally:
            tmp_path.unlink(missing_ok=True)

        logger.info(f"Created new secret: {name}")
        return value


class KeychainSecretStore(SecretStore):
    """macOS Keychain generic passwords via the ``security`` CLI."""

    def __init__(self, service: str = "com.vaultscribe", timeout: int = 10):
        self.service = service
        self.timeout = timeout

    def _run(self, args: list) -> subprocess.CompletedProcess:
        # Argument arrays only, never shell=True
        try:
            return subprocess.run(
                ["security", *args],
                shell=False,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError) as e:
            raise SecretStoreError(f"Keychain unavailable: {type(e).__name__}") from e

    def get(self, name: str) -> Optional[str]:
        result = self._run([
            "find-generic-password",
            "-s", self.service,
            "-a", _check_name(name),
            "-w",
        ])
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
        return None

    def set(self, name: str, value: str) -> None:
        result = self._run([
            "add-generic-password",
            "-s", self.service,
            "-a", _check_name(name),
            "-w", value,
            "-U",  # update if exists
        ])
        if result.returncode != 0:
            raise SecretStoreError(f"Keychain write failed for {name} (rc={result.returncode})")

    def delete(self, name: str) -> bool:
        result = self._run([
            "delete-generic-password",
            "-s", self.service,
            "-a", _check_name(name),
        ])
        return result.returncode == 0

    def add_if_absent(self, name: str, value: str) -> str:
        # Without -U the add fails when the item exists, which makes it a create-if-absent
        result = self._run([
            "add-generic-password",
            "-s", self.service,
            "-a", _check_name(name),
            "-w", value,
        ])
        if result.returncode == 0:
            logger.info(f"Created new keychain secret: {name}")
            return value

        existing = self.get(name)
        if existing is None:
            raise SecretStoreError(f"Keychain add failed for {name} (rc={result.returncode})")
        return existing


def build_secret_store(config) -> SecretStore:
    """Create the secret store selected by ``security.secret_store``."""
    kind = config.get('security.secret_store', 'file')
    if kind == 'file':
        return FileSecretStore(config.get('security.secrets_directory'))
    if kind == 'keychain':
        return KeychainSecretStore(config.get('security.keychain_service', 'com.vaultscribe'))
    raise SecretStoreError(f"Unknown secret store: {kind}")
