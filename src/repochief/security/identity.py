"""Identity store: a stable per-host identity that namespaces credentials.

The identity is created once per host (first login) and persisted as
identity.json in the config directory:

    {
      "id": "ws_<32 hex>",
      "display_name": "laptop-darwin-3f9a1c",
      "created_at": "2026-01-01T00:00:00Z",
      "host_metadata": {"os": ..., "arch": ..., "hostname": ..., "runtime_version": ...}
    }

The display name comes from a name provider, tried in order:
explicit name -> REPOCHIEF_IDENTITY_NAME -> interactive prompt (bounded
timeout, skipped in CI / non-TTY) -> generated "{hostname}-{platform}-{6 hex}".
"""

from __future__ import annotations

__all__ = [
    "Identity",
    "IdentityNameProvider",
    "IdentityStore",
    "NamePrompt",
    "collect_host_metadata",
    "generate_default_name",
    "is_non_interactive",
    "validate_identity_name",
]

import os
import platform
import secrets
import socket
import sys
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from repochief.constants import (
    AUTO_IDENTITY_ENV_VAR,
    IDENTITY_FILENAME,
    IDENTITY_ID_PREFIX,
    IDENTITY_NAME_ENV_VAR,
    IDENTITY_NAME_MAX_LENGTH,
    IDENTITY_PROMPT_TIMEOUT_SECONDS,
    get_config_dir,
)
from repochief.exceptions import ConfigWriteError
from repochief.utils.file_helpers import atomic_write_json, load_validated_json
from repochief.utils.logging import get_system_logger

# (default_name, timeout_seconds) -> entered name, or None on timeout/cancel
NamePrompt = Callable[[str, float], str | None]


class Identity(BaseModel):
    """Stable identity of this host.

    Attributes:
        id: "ws_" + 32 hex characters.
        display_name: Human-readable label shown in the web UI.
        created_at: UTC creation time.
        host_metadata: OS, arch, hostname, runtime version and merged extras.
    """

    id: str = Field(pattern=rf"^{IDENTITY_ID_PREFIX}[0-9a-f]{{32}}$")
    display_name: str = Field(min_length=1, max_length=IDENTITY_NAME_MAX_LENGTH)
    created_at: datetime
    host_metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}


def collect_host_metadata() -> dict[str, Any]:
    """Basic facts about this host recorded on the identity."""
    return {
        "os": sys.platform,
        "arch": platform.machine(),
        "hostname": socket.gethostname(),
        "runtime_version": platform.python_version(),
    }


def is_non_interactive() -> bool:
    """True when no operator can answer a prompt (non-TTY stdin, CI, opt-out)."""
    if not sys.stdin or not sys.stdin.isatty():
        return True
    if os.environ.get("CI", "").lower() == "true":
        return True
    return os.environ.get(AUTO_IDENTITY_ENV_VAR, "").lower() == "true"


def generate_default_name() -> str:
    """Unique default label: "{hostname}-{platform}-{6 hex}"."""
    return f"{socket.gethostname()}-{sys.platform}-{secrets.token_hex(3)}"


def validate_identity_name(name: str) -> str:
    """Normalize and validate an identity display name.

    Args:
        name: Candidate name.

    Returns:
        The stripped name.

    Raises:
        ValueError: If the name is empty or too long.
    """
    stripped = name.strip()
    if not stripped:
        raise ValueError("Identity name cannot be empty")
    if len(stripped) > IDENTITY_NAME_MAX_LENGTH:
        raise ValueError(f"Identity name must be at most {IDENTITY_NAME_MAX_LENGTH} characters")
    return stripped


class IdentityNameProvider:
    """Chooses the display name for a new identity.

    Order: explicit name, REPOCHIEF_IDENTITY_NAME, interactive prompt,
    generated default. The prompt is skipped when is_non_interactive()
    and a prompt that times out or returns nothing yields the default.
    """

    def __init__(
        self,
        explicit_name: str | None = None,
        prompt: NamePrompt | None = None,
        timeout_seconds: float = IDENTITY_PROMPT_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize name provider.

        Args:
            explicit_name: Name given on the command line.
            prompt: Interactive prompt, or None to never prompt.
            timeout_seconds: How long the prompt may wait for input.

        Raises:
            ValueError: If explicit_name is invalid.
        """
        self._explicit_name = validate_identity_name(explicit_name) if explicit_name is not None else None
        self._prompt = prompt
        self._timeout_seconds = timeout_seconds

    def __call__(self) -> str:
        if self._explicit_name:
            return self._explicit_name

        env_name = os.environ.get(IDENTITY_NAME_ENV_VAR, "").strip()
        if env_name:
            try:
                return validate_identity_name(env_name)
            except ValueError as e:
                get_system_logger().warning(
                    {
                        "event": "identity_name_env_invalid",
                        "message": f"Ignoring {IDENTITY_NAME_ENV_VAR}: {e}",
                    }
                )

        default = generate_default_name()
        if self._prompt is None or is_non_interactive():
            return default

        entered = self._prompt(default, self._timeout_seconds)
        if not entered:
            return default
        try:
            return validate_identity_name(entered)
        except ValueError:
            return default


class IdentityStore:
    """Reads and writes identity.json.

    Writes replace the whole file atomically (0600). Concurrent CLI
    invocations race last-writer-wins.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or get_config_dir() / IDENTITY_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> Identity | None:
        """Return the stored identity, or None if there is none.

        An unreadable or invalid file is treated as absent and logged.
        """
        if not self._path.exists():
            return None
        try:
            return load_validated_json(self._path, Identity, "identity")
        except ValueError as e:
            get_system_logger().warning(
                {
                    "event": "identity_file_invalid",
                    "message": f"Ignoring unreadable identity file: {e}",
                    "path": str(self._path),
                }
            )
            return None

    def get_or_create(self, name_provider: Callable[[], str] | None = None) -> Identity:
        """Return the existing identity, or create and persist a new one.

        Args:
            name_provider: Supplies the display name for a new identity.
                Defaults to IdentityNameProvider() without a prompt.

        Returns:
            The identity for this host.

        Raises:
            ConfigWriteError: If a new identity cannot be persisted.
        """
        existing = self.get()
        if existing is not None:
            return existing

        provider = name_provider or IdentityNameProvider()
        identity = Identity(
            id=f"{IDENTITY_ID_PREFIX}{uuid.uuid4().hex}",
            display_name=validate_identity_name(provider()),
            created_at=datetime.now(timezone.utc),
            host_metadata=collect_host_metadata(),
        )
        self._save(identity)

        get_system_logger().info(
            {
                "event": "identity_created",
                "message": f"Created identity {identity.display_name}",
                "identity_id": identity.id,
            }
        )
        return identity

    def update_metadata(self, partial: dict[str, Any]) -> None:
        """Merge fields into host_metadata and stamp last_updated.

        Best-effort: a missing identity or failed write is logged and ignored.
        """
        identity = self.get()
        if identity is None:
            return

        merged = {
            **identity.host_metadata,
            **partial,
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self._save(identity.model_copy(update={"host_metadata": merged}))
        except ConfigWriteError as e:
            get_system_logger().warning(
                {
                    "event": "identity_metadata_update_failed",
                    "message": str(e),
                    "identity_id": identity.id,
                }
            )

    def delete(self) -> bool:
        """Remove the identity file.

        Returns:
            True if a file was removed.

        Raises:
            ConfigWriteError: If the file exists but cannot be removed.
        """
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise ConfigWriteError(f"Failed to remove identity file {self._path}: {e}") from e
        return True

    def _save(self, identity: Identity) -> None:
        try:
            atomic_write_json(self._path, identity.model_dump(mode="json"))
        except (OSError, TypeError) as e:
            raise ConfigWriteError(f"Failed to write identity file {self._path}: {e}") from e
