"""Shared file utilities for repochief.

Provides common utilities used by the identity store, credential vault
and configuration:
- ensure_config_dir: Create the per-user config directory (0o700)
- set_secure_permissions: Owner-only file/directory permissions
- read_json_object: Read a JSON object file, None if missing
- atomic_write_json: Whole-file replace via temp file + rename
- load_validated_json: JSON file validated against a Pydantic model
"""

from __future__ import annotations

__all__ = [
    "atomic_write_json",
    "ensure_config_dir",
    "load_validated_json",
    "read_json_object",
    "set_secure_permissions",
]

import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from repochief.constants import get_config_dir

# Type variable for Pydantic models
T = TypeVar("T", bound=BaseModel)


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Create the config directory with owner-only permissions.

    Args:
        config_dir: Directory to create. Defaults to get_config_dir().

    Returns:
        Path to the (now existing) directory.

    Raises:
        OSError: If the directory cannot be created.
    """
    path = config_dir or get_config_dir()
    path.mkdir(parents=True, exist_ok=True)
    set_secure_permissions(path, is_directory=True)
    return path


def set_secure_permissions(path: Path, *, is_directory: bool = False) -> None:
    """Set secure permissions on file or directory.

    Sets permissions to restrict access to owner only:
    - Directory: 0o700 (rwx------)
    - File: 0o600 (rw-------)

    Does nothing on Windows. Silently ignores permission errors
    (some systems don't allow permission changes).

    Args:
        path: Path to file or directory.
        is_directory: If True, use directory permissions (0o700).
    """
    if sys.platform == "win32":
        return

    try:
        mode = 0o700 if is_directory else 0o600
        path.chmod(mode)
    except OSError:
        pass  # Permission changes might fail on some systems


def read_json_object(file_path: Path) -> dict[str, Any] | None:
    """Read a file holding a single JSON object.

    Args:
        file_path: Path to the JSON file.

    Returns:
        Parsed object, or None if the file doesn't exist.

    Raises:
        ValueError: If the file is not valid JSON or not an object.
        OSError: If the file exists but cannot be read.
    """
    if not file_path.exists():
        return None

    with file_path.open(encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {file_path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {file_path}, got {type(data).__name__}")
    return data


def atomic_write_json(file_path: Path, data: Any, *, indent: int | None = 2) -> None:
    """Replace a JSON file atomically with owner-only permissions.

    Writes to a temp file in the same directory (created 0600 by mkstemp),
    fsyncs, then renames over the target. Readers never observe a
    half-written file; concurrent writers race last-writer-wins.

    Args:
        file_path: Destination path.
        data: JSON-serializable data.
        indent: JSON indentation (None for compact output).

    Raises:
        OSError: If the directory or file cannot be written.
        TypeError: If data is not JSON-serializable.
    """
    ensure_config_dir(file_path.parent)

    fd, temp_path = tempfile.mkstemp(
        dir=file_path.parent,
        prefix=f".{file_path.name}_",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent)
            if indent is not None:
                f.write("\n")
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, file_path)
    except BaseException:
        # Clean up temp file on failure
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise

    set_secure_permissions(file_path)


def load_validated_json(
    file_path: Path,
    model_class: type[T],
    file_type: str = "file",
) -> T:
    """Load JSON file and validate against Pydantic model.

    Args:
        file_path: Path to JSON file.
        model_class: Pydantic model class to validate against.
        file_type: Description for error messages (e.g., "config", "identity").

    Returns:
        Validated Pydantic model instance.

    Raises:
        ValueError: If the file is unreadable, invalid JSON, or fails validation.
    """
    try:
        data = read_json_object(file_path)
    except OSError as e:
        raise ValueError(f"Could not read {file_type} file {file_path}: {e}") from e

    if data is None:
        raise ValueError(f"{file_type.capitalize()} file not found at {file_path}")

    try:
        return model_class.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        raise ValueError(f"Invalid {file_type} in {file_path}:\n" + "\n".join(errors)) from e
