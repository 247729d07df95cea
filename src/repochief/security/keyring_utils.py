"""OS keychain probing for the credential vault.

keyring always returns *some* backend; on headless Linux or a locked
keychain that backend fails on first use. The vault asks here before
trusting the native backend so it can fall back to the encrypted file
instead of failing the login.
"""

from __future__ import annotations

__all__ = [
    "get_keyring_backend_name",
    "is_keyring_available",
    "keyring_unavailable_reason",
]

import secrets

import keyring
from keyring.backends.fail import Keyring as FailKeyring
from keyring.errors import PasswordDeleteError

from repochief.constants import KEYRING_SERVICE
from repochief.utils.logging import get_system_logger

_PROBE_USERNAME = "__availability_probe__"


def get_keyring_backend_name() -> str:
    """Class name of the active keyring backend (for status display)."""
    return type(keyring.get_keyring()).__name__


def keyring_unavailable_reason(service: str = KEYRING_SERVICE) -> str | None:
    """Round-trip a random value through the keychain.

    The probe entry lives under "{service}-probe" and is removed again.

    Args:
        service: Service name the vault stores secrets under.

    Returns:
        None if the keychain works, otherwise a short reason.
    """
    if isinstance(keyring.get_keyring(), FailKeyring):
        return "no keyring backend installed"

    probe_service = f"{service}-probe"
    probe_value = secrets.token_hex(8)
    try:
        keyring.set_password(probe_service, _PROBE_USERNAME, probe_value)
        try:
            read_back = keyring.get_password(probe_service, _PROBE_USERNAME)
        finally:
            try:
                keyring.delete_password(probe_service, _PROBE_USERNAME)
            except PasswordDeleteError:
                pass
    except Exception as e:
        # DBus errors on Linux, locked keychains, permission prompts denied
        return f"{type(e).__name__}: {e}"

    if read_back != probe_value:
        return "keyring did not return the stored value"
    return None


def is_keyring_available(service: str = KEYRING_SERVICE) -> bool:
    """Whether secrets can be stored in the OS keychain on this host."""
    reason = keyring_unavailable_reason(service)
    if reason is None:
        return True

    get_system_logger().debug(
        {
            "event": "keyring_unavailable",
            "message": f"OS keychain unusable ({reason}), using encrypted file storage",
            "keyring_backend": get_keyring_backend_name(),
        }
    )
    return False
