"""Application-wide constants for repochief.

Constants that define application behavior.
For user-configurable settings per host, see config.py.
"""

__all__ = [
    # Application identity
    "APP_NAME",
    "CLI_VERSION_HEADER",
    # Local state
    "CONFIG_DIR_ENV_VAR",
    "get_config_dir",
    "IDENTITY_FILENAME",
    "SECRETS_FILENAME",
    "CONFIG_FILENAME",
    "SYSTEM_LOG_FILENAME",
    # Identity naming
    "IDENTITY_ID_PREFIX",
    "IDENTITY_NAME_ENV_VAR",
    "AUTO_IDENTITY_ENV_VAR",
    "IDENTITY_NAME_MAX_LENGTH",
    "IDENTITY_PROMPT_TIMEOUT_SECONDS",
    # Credential vault
    "KEYRING_SERVICE",
    "ENCRYPTION_SALT_LENGTH",
    "ENCRYPTION_IV_LENGTH",
    "ENCRYPTION_TAG_LENGTH",
    "ENCRYPTION_KEY_LENGTH",
    "ENCRYPTION_HEADER_LENGTH",
    "PBKDF2_ITERATIONS",
    "APP_KEY_SALT",
    # OAuth
    "DEFAULT_API_URL",
    "DEFAULT_CLIENT_ID",
    "DEFAULT_SCOPES",
    "DEVICE_CODE_GRANT_TYPE",
    "REFRESH_TOKEN_GRANT_TYPE",
    "OAUTH_CLIENT_TIMEOUT_SECONDS",
    "DEVICE_FLOW_POLL_INTERVAL_SECONDS",
    "DEVICE_FLOW_MAX_BACKOFF_SECONDS",
    "DEFAULT_TOKEN_EXPIRES_IN_SECONDS",
    "ACCESS_TOKEN_REFRESH_BUFFER_SECONDS",
    # API endpoints
    "DEVICE_CODE_ENDPOINT",
    "TOKEN_ENDPOINT",
    "REFRESH_ENDPOINT",
    "AUTHORIZE_ENDPOINT",
    "VALIDATE_ENDPOINT",
    "REVOKE_ENDPOINT",
    "USER_STATUS_ENDPOINT",
    "HEARTBEAT_ENDPOINT",
    "PUBLIC_ENDPOINTS",
    # API client retry
    "DEFAULT_HTTP_TIMEOUT_SECONDS",
    "API_RETRY_MAX_ATTEMPTS",
    "API_RETRY_BASE_DELAY_SECONDS",
    # Heartbeat
    "HEARTBEAT_INTERVAL_SECONDS",
    "HEARTBEAT_MAX_RETRIES",
]

import os
from pathlib import Path

from platformdirs import user_config_dir

# ============================================================================
# Application Identity
# ============================================================================

# Application name used for directory names, keyring service names, etc.
APP_NAME: str = "repochief"

# Sent as User-Agent prefix on every API request
CLI_VERSION_HEADER: str = "RepoChief-CLI"

# ============================================================================
# Local State
# ============================================================================

# Environment variable that relocates all local state (tests, sandboxes)
CONFIG_DIR_ENV_VAR: str = "REPOCHIEF_CONFIG_DIR"

# Platform-specific paths:
# - macOS: ~/Library/Application Support/repochief/
# - Linux: ~/.config/repochief/
# - Windows: %APPDATA%\repochief\
IDENTITY_FILENAME: str = "identity.json"
SECRETS_FILENAME: str = ".tokens"
CONFIG_FILENAME: str = "config.json"
SYSTEM_LOG_FILENAME: str = "system.jsonl"


def get_config_dir() -> Path:
    """Get the per-user config directory, honoring REPOCHIEF_CONFIG_DIR.

    Resolved on every call so tests and subprocesses can relocate state
    through the environment.

    Returns:
        Absolute path to the config directory (may not exist yet).
    """
    override = os.environ.get(CONFIG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path(os.path.realpath(user_config_dir(APP_NAME)))


# ============================================================================
# Identity Naming
# ============================================================================

# Identity ids: ws_ + uuid4 hex (collision resistant, stable per host)
IDENTITY_ID_PREFIX: str = "ws_"

# Explicit identity name for non-interactive setups
IDENTITY_NAME_ENV_VAR: str = "REPOCHIEF_IDENTITY_NAME"

# "true" suppresses the interactive naming prompt (CI)
AUTO_IDENTITY_ENV_VAR: str = "REPOCHIEF_AUTO_IDENTITY"

IDENTITY_NAME_MAX_LENGTH: int = 255

# Interactive naming prompt gives up after this long and uses the default
IDENTITY_PROMPT_TIMEOUT_SECONDS: float = 30.0

# ============================================================================
# Credential Vault
# ============================================================================

# Service name for keyring storage (username is the identity id)
KEYRING_SERVICE: str = APP_NAME

# Encrypted fallback blob layout: salt || iv || tag || ciphertext
ENCRYPTION_SALT_LENGTH: int = 64
ENCRYPTION_IV_LENGTH: int = 16
ENCRYPTION_TAG_LENGTH: int = 16
ENCRYPTION_KEY_LENGTH: int = 32  # AES-256
ENCRYPTION_HEADER_LENGTH: int = ENCRYPTION_SALT_LENGTH + ENCRYPTION_IV_LENGTH + ENCRYPTION_TAG_LENGTH

PBKDF2_ITERATIONS: int = 100_000

# Fixed application salt mixed into every key derivation
APP_KEY_SALT: bytes = b"repochief-cli-token-encryption"

# ============================================================================
# OAuth Device Flow (RFC 8628) and Refresh
# ============================================================================

DEFAULT_API_URL: str = "https://api.repochief.com/api"
DEFAULT_CLIENT_ID: str = "repochief-cli"
DEFAULT_SCOPES: tuple[str, ...] = ("read", "write", "offline_access")

DEVICE_CODE_GRANT_TYPE: str = "urn:ietf:params:oauth:grant-type:device_code"
REFRESH_TOKEN_GRANT_TYPE: str = "refresh_token"

# Timeout for OAuth HTTP requests (device code, token polling, refresh)
OAUTH_CLIENT_TIMEOUT_SECONDS: int = 30

# Polling interval used when the server omits one
DEVICE_FLOW_POLL_INTERVAL_SECONDS: int = 5

# Cap for the network-failure backoff while polling (not used for slow_down)
DEVICE_FLOW_MAX_BACKOFF_SECONDS: float = 30.0

# Assumed lifetime when a token response omits expires_in (1 hour)
DEFAULT_TOKEN_EXPIRES_IN_SECONDS: int = 3600

# Cached access tokens are trusted only while this far from expiry (5 minutes)
ACCESS_TOKEN_REFRESH_BUFFER_SECONDS: int = 300

# ============================================================================
# API Endpoints (relative to api_url)
# ============================================================================

DEVICE_CODE_ENDPOINT: str = "/auth/device"
TOKEN_ENDPOINT: str = "/auth/token"
REFRESH_ENDPOINT: str = "/auth/refresh"
AUTHORIZE_ENDPOINT: str = "/auth/authorize"
VALIDATE_ENDPOINT: str = "/auth/validate"
REVOKE_ENDPOINT: str = "/auth/revoke"
USER_STATUS_ENDPOINT: str = "/user/status"
HEARTBEAT_ENDPOINT: str = "/workspaces/{identity_id}/heartbeat"

# Bootstrap endpoints: never carry a user token
PUBLIC_ENDPOINTS: frozenset[str] = frozenset(
    {
        DEVICE_CODE_ENDPOINT,
        TOKEN_ENDPOINT,
        REFRESH_ENDPOINT,
        AUTHORIZE_ENDPOINT,
    }
)

# ============================================================================
# API Client Retry
# ============================================================================

DEFAULT_HTTP_TIMEOUT_SECONDS: float = 30.0

# Transient failures (timeouts, DNS/connect errors, 5xx)
# 3 attempts: immediate -> wait 1s -> retry -> wait 2s -> retry -> fail
API_RETRY_MAX_ATTEMPTS: int = 3
API_RETRY_BASE_DELAY_SECONDS: float = 1.0

# ============================================================================
# Heartbeat
# ============================================================================

HEARTBEAT_INTERVAL_SECONDS: float = 30.0

# Consecutive failures tolerated before the reporter disconnects
HEARTBEAT_MAX_RETRIES: int = 3
