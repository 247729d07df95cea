"""Credential vault: one secret per identity, native-first with encrypted fallback.

Provides two storage backends behind a common interface:
1. KeyringSecretBackend (primary): OS keychain via the keyring library
   - macOS: Keychain
   - Windows: Credential Locker
   - Linux: Secret Service (GNOME Keyring, KDE Wallet)

2. EncryptedFileSecretBackend (fallback): AES-256-GCM blobs in a single
   owner-only JSON file mapping identity id -> blob
   - Used when keyring is unavailable or fails
   - Key derived from host-identifying material (see secret_cipher)

CredentialVault composes the backends as an ordered chain. Writes go to
the first backend that accepts them; reads take the first hit. Plaintext
is never written to disk.
"""

from __future__ import annotations

__all__ = [
    "Credential",
    "CredentialVault",
    "EncryptedFileSecretBackend",
    "KeyringSecretBackend",
    "SecretBackend",
    "SecretBackendUnavailable",
]

import os
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path
from typing import Literal

import keyring
from keyring.errors import PasswordDeleteError
from pydantic import BaseModel, Field

from repochief.constants import KEYRING_SERVICE, SECRETS_FILENAME, get_config_dir
from repochief.exceptions import (
    ConfigWriteError,
    DecryptionError,
    InvalidCiphertextError,
    RepoChiefError,
)
from repochief.security.keyring_utils import get_keyring_backend_name, is_keyring_available
from repochief.security.secret_cipher import decode_legacy_secret, decrypt_secret, encrypt_secret
from repochief.utils.file_helpers import atomic_write_json, read_json_object
from repochief.utils.logging import get_system_logger

BackendName = Literal["native", "encrypted-file"]


class SecretBackendUnavailable(RepoChiefError):
    """A storage backend cannot be used on this host right now."""

    failure_type = "secret_backend_unavailable"


class Credential(BaseModel):
    """A stored secret and where it ended up.

    Attributes:
        identity_id: Identity the secret belongs to.
        secret: The secret (refresh token or personal access token).
        backend: Backend that holds it.
    """

    identity_id: str
    secret: str = Field(repr=False)
    backend: BackendName


class SecretBackend(ABC):
    """Capability interface for one place a secret can live."""

    name: BackendName

    @abstractmethod
    def store(self, identity_id: str, secret: str) -> None:
        """Store (overwrite) the secret for an identity.

        Raises:
            SecretBackendUnavailable: If this backend cannot be used.
            ConfigWriteError: If the write fails.
        """

    @abstractmethod
    def retrieve(self, identity_id: str) -> str | None:
        """Return the secret for an identity, or None if absent.

        Raises:
            SecretBackendUnavailable: If this backend cannot be used.
            DecryptionError: If a stored value exists but cannot be read.
        """

    @abstractmethod
    def remove(self, identity_id: str) -> None:
        """Delete the secret for an identity (missing is not an error)."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the backend is usable on this host."""

    @abstractmethod
    def describe(self) -> dict[str, str]:
        """Backend details for status display."""


class KeyringSecretBackend(SecretBackend):
    """Secret storage using the OS keychain via keyring.

    Service name is KEYRING_SERVICE, username is the identity id. Every
    keyring error is reported as SecretBackendUnavailable so the vault
    moves on to the next backend.
    """

    name: BackendName = "native"

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        self._service = service
        self._available: bool | None = None

    def is_available(self) -> bool:
        # Probe once per instance; the probe writes to the keychain
        if self._available is None:
            self._available = is_keyring_available(self._service)
        return self._available

    def _require_available(self) -> None:
        if not self.is_available():
            raise SecretBackendUnavailable("No usable keyring backend on this host")

    def store(self, identity_id: str, secret: str) -> None:
        self._require_available()
        try:
            keyring.set_password(self._service, identity_id, secret)
        except Exception as e:
            raise SecretBackendUnavailable(f"Failed to save secret to keychain: {e}") from e

    def retrieve(self, identity_id: str) -> str | None:
        self._require_available()
        try:
            return keyring.get_password(self._service, identity_id)
        except Exception as e:
            raise SecretBackendUnavailable(f"Failed to access keychain: {e}") from e

    def remove(self, identity_id: str) -> None:
        self._require_available()
        try:
            keyring.delete_password(self._service, identity_id)
        except PasswordDeleteError:
            # Not stored, that's fine
            pass
        except Exception as e:
            raise SecretBackendUnavailable(f"Failed to delete secret from keychain: {e}") from e

    def describe(self) -> dict[str, str]:
        return {
            "backend": "keychain",
            "keyring_backend": get_keyring_backend_name(),
            "service": self._service,
        }


class EncryptedFileSecretBackend(SecretBackend):
    """Fallback secret storage in an AES-256-GCM encrypted JSON file.

    The file maps identity id -> base64 blob and is rewritten atomically
    with 0600 permissions. Removing the last entry deletes the file.

    Blobs that fail to decrypt are checked against the legacy
    base64-obfuscated format; a recognizable token is re-encrypted in
    place and returned.
    """

    name: BackendName = "encrypted-file"

    def __init__(self, path: Path, key_material: str | None = None) -> None:
        """Initialize encrypted file storage.

        Args:
            path: Secrets file location.
            key_material: Host key material override (tests).
        """
        self._path = path
        self._key_material = key_material

    @property
    def path(self) -> Path:
        return self._path

    def is_available(self) -> bool:
        return True

    def _load(self) -> dict[str, str]:
        """Read the identity id -> blob map.

        Raises:
            InvalidCiphertextError: If the file is not a JSON object of strings.
        """
        try:
            data = read_json_object(self._path)
        except (ValueError, OSError) as e:
            raise InvalidCiphertextError(f"Secrets file is unreadable: {e}") from e

        if data is None:
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _write(self, blobs: dict[str, str]) -> None:
        try:
            atomic_write_json(self._path, blobs)
        except OSError as e:
            raise ConfigWriteError(f"Failed to write secrets file {self._path}: {e}") from e

    def store(self, identity_id: str, secret: str) -> None:
        try:
            blobs = self._load()
        except InvalidCiphertextError as e:
            # An unreadable map cannot be merged into; start a fresh one
            get_system_logger().warning(
                {
                    "event": "secrets_file_reset",
                    "message": f"Replacing unreadable secrets file: {e}",
                    "path": str(self._path),
                }
            )
            blobs = {}

        blobs[identity_id] = encrypt_secret(secret, self._key_material)
        self._write(blobs)

    def retrieve(self, identity_id: str) -> str | None:
        blob = self._load().get(identity_id)
        if blob is None:
            return None

        try:
            return decrypt_secret(blob, self._key_material)
        except DecryptionError as e:
            legacy = decode_legacy_secret(blob)
            if legacy is None:
                raise
            self._migrate(identity_id, legacy, e)
            return legacy

    def _migrate(self, identity_id: str, secret: str, error: Exception) -> None:
        logger = get_system_logger()
        try:
            self.store(identity_id, secret)
        except ConfigWriteError as e:
            # Still usable this run; migration is retried on the next read
            logger.warning(
                {
                    "event": "legacy_secret_migration_failed",
                    "message": f"Could not re-encrypt legacy credential: {e}",
                    "identity_id": identity_id,
                }
            )
            return

        logger.info(
            {
                "event": "legacy_secret_migrated",
                "message": "Re-encrypted legacy credential with AES-256-GCM",
                "identity_id": identity_id,
                "reason": type(error).__name__,
            }
        )

    def remove(self, identity_id: str) -> None:
        blobs = self._load()
        if identity_id not in blobs:
            return

        del blobs[identity_id]
        if blobs:
            self._write(blobs)
        else:
            os.unlink(self._path)

    def describe(self) -> dict[str, str]:
        return {
            "backend": "encrypted_file",
            "location": str(self._path),
        }


class CredentialVault:
    """Ordered chain of secret backends.

    - store(): first backend that accepts the write wins; stale copies in
      the other backends are then removed.
    - retrieve(): first backend holding a value wins. Unavailable backends
      are skipped; decryption errors propagate.
    - remove(): best-effort delete from every backend.
    """

    def __init__(self, backends: Sequence[SecretBackend]) -> None:
        if not backends:
            raise ValueError("CredentialVault needs at least one backend")
        self._backends = tuple(backends)

    @classmethod
    def create(cls, config_dir: Path | None = None) -> CredentialVault:
        """Build the default chain: OS keychain, then encrypted file.

        Args:
            config_dir: Directory holding the secrets file. Defaults to get_config_dir().

        Returns:
            CredentialVault instance.
        """
        directory = config_dir or get_config_dir()
        return cls(
            [
                KeyringSecretBackend(),
                EncryptedFileSecretBackend(directory / SECRETS_FILENAME),
            ]
        )

    @property
    def backends(self) -> tuple[SecretBackend, ...]:
        return self._backends

    def store(self, identity_id: str, secret: str) -> Credential:
        """Store the secret for an identity, replacing any previous one.

        Args:
            identity_id: Identity to store under.
            secret: Secret to store.

        Returns:
            Credential describing where the secret was stored.

        Raises:
            ConfigWriteError: If no backend accepted the write.
        """
        logger = get_system_logger()
        failures: list[str] = []

        for backend in self._backends:
            try:
                backend.store(identity_id, secret)
            except (SecretBackendUnavailable, ConfigWriteError) as e:
                logger.info(
                    {
                        "event": "credential_backend_skipped",
                        "message": f"{backend.name} storage failed, trying next backend: {e}",
                        "backend": backend.name,
                        "operation": "store",
                    }
                )
                failures.append(f"{backend.name}: {e}")
                continue

            self._remove_from_others(identity_id, keep=backend)
            return Credential(identity_id=identity_id, secret=secret, backend=backend.name)

        raise ConfigWriteError(f"Could not store credential for {identity_id}: " + "; ".join(failures))

    def retrieve(self, identity_id: str) -> str | None:
        """Return the secret for an identity, or None if no backend holds one.

        Raises:
            DecryptionError: If the fallback copy exists but cannot be decrypted.
        """
        for backend in self._backends:
            try:
                secret = backend.retrieve(identity_id)
            except SecretBackendUnavailable as e:
                get_system_logger().debug(
                    {
                        "event": "credential_backend_skipped",
                        "message": f"{backend.name} storage unavailable: {e}",
                        "backend": backend.name,
                        "operation": "retrieve",
                    }
                )
                continue
            if secret is not None:
                return secret
        return None

    def remove(self, identity_id: str) -> None:
        """Delete the secret for an identity from every backend (best-effort)."""
        for backend in self._backends:
            self._try_remove(backend, identity_id)

    def describe(self) -> dict[str, str]:
        """Details of the backend new secrets will be written to."""
        for backend in self._backends:
            if backend.is_available():
                return backend.describe()
        return self._backends[-1].describe()

    def _remove_from_others(self, identity_id: str, keep: SecretBackend) -> None:
        for backend in self._backends:
            if backend is not keep:
                self._try_remove(backend, identity_id)

    @staticmethod
    def _try_remove(backend: SecretBackend, identity_id: str) -> None:
        try:
            backend.remove(identity_id)
        except (RepoChiefError, OSError) as e:
            get_system_logger().debug(
                {
                    "event": "credential_remove_failed",
                    "message": f"Could not remove credential from {backend.name}: {e}",
                    "backend": backend.name,
                }
            )
