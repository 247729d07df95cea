"""Custom exceptions for repochief.

This module contains the base exceptions shared across the package.
Component-specific errors live next to the code that raises them and
subclass one of these:

Local state:
    - ConfigWriteError: Identity or secrets file could not be written
    - DecryptionError: Stored credential could not be decrypted
    - InvalidCiphertextError: Stored credential is truncated/garbled

Authentication (remediation: run 'repochief auth login'):
    - AuthenticationError: Base for all auth failures
    - NotAuthenticatedError: No identity or credential on this host
    - device flow errors (security/auth/device_flow.py)
    - refresh errors (security/auth/token_refresh.py)
    - AuthenticationExpiredError (api/client.py)

Network:
    - APIError: Server returned an error status
    - TransientNetworkError: Retries exhausted on timeouts, connection errors or 5xx

Usage:
    from repochief.exceptions import AuthenticationError, DecryptionError
"""

from __future__ import annotations

__all__ = [
    "APIError",
    "AuthenticationError",
    "ConfigWriteError",
    "DecryptionError",
    "InvalidCiphertextError",
    "LOGIN_HINT",
    "NotAuthenticatedError",
    "RepoChiefError",
    "TransientNetworkError",
]

# Single remediation for every "cannot authenticate" condition
LOGIN_HINT = "Run 'repochief auth login' to authenticate."


class RepoChiefError(Exception):
    """Base exception for repochief.

    Attributes:
        exit_code: Process exit code used by the CLI.
        failure_type: Category string for logging.
    """

    exit_code: int = 1
    failure_type: str = "unknown"


# =============================================================================
# Local state
# =============================================================================


class ConfigWriteError(RepoChiefError):
    """Local state (identity or secrets file) could not be persisted.

    Exit code 10 indicates a local storage failure.
    """

    exit_code = 10
    failure_type = "config_write_failure"


class DecryptionError(RepoChiefError):
    """Stored credential exists but cannot be decrypted.

    Raised when:
    - The secrets file was written on another host (key mismatch)
    - The blob was tampered with (GCM tag mismatch)

    Never treated as "absent": corruption must be distinguishable
    from "not logged in".

    Exit code 11 indicates credential corruption.
    """

    exit_code = 11
    failure_type = "decryption_failure"


class InvalidCiphertextError(DecryptionError):
    """Stored blob is shorter than the encryption header or not base64."""

    failure_type = "invalid_ciphertext"


# =============================================================================
# Authentication
# =============================================================================


class AuthenticationError(RepoChiefError):
    """Authentication failed - cannot obtain a usable credential.

    Raised when:
    - Device authorization is denied, expires, or errors
    - Refresh token is missing, expired, or rejected
    - A protected request still gets 401 after one refresh

    Exit code 13 indicates authentication failure.
    """

    exit_code = 13
    failure_type = "authentication_failure"


class NotAuthenticatedError(AuthenticationError):
    """No identity or credential is stored on this host."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or f"Not authenticated. {LOGIN_HINT}")


# =============================================================================
# Network
# =============================================================================


class APIError(RepoChiefError):
    """API request returned a non-retryable error status.

    Attributes:
        status_code: HTTP status code, if a response was received.
    """

    exit_code = 12
    failure_type = "api_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        if status_code:
            super().__init__(f"API error ({status_code}): {message}")
        else:
            super().__init__(f"API error: {message}")
        self.status_code = status_code
        self.detail = message


class TransientNetworkError(RepoChiefError):
    """Retries exhausted on timeouts, connection errors or 5xx responses.

    Raised by the API client and by token refresh. Never an
    authentication failure: the credential may still be valid.

    Attributes:
        status_code: Last HTTP status received, or None if no response.
        detail: Last error message.
    """

    exit_code = 14
    failure_type = "transient_network_failure"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        if status_code:
            super().__init__(f"Network error ({status_code}): {message}")
        else:
            super().__init__(f"Network error: {message}")
        self.status_code = status_code
        self.detail = message
