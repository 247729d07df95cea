"""Client configuration for repochief.

Defines the settings model shared by the session service, the API client
and the CLI. Settings are read from config.json in the per-user config
directory (optional), then overridden by environment variables:

- REPOCHIEF_API_URL: API base URL
- REPOCHIEF_CONFIG_DIR: Directory holding identity, secrets and logs

Example usage:
    config = load_client_config()
    async with AuthSession(config) as session:
        ...
"""

from __future__ import annotations

__all__ = [
    "API_URL_ENV_VAR",
    "ClientConfig",
    "load_client_config",
]

import json
import os
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from repochief.constants import (
    API_RETRY_BASE_DELAY_SECONDS,
    API_RETRY_MAX_ATTEMPTS,
    CONFIG_FILENAME,
    DEFAULT_API_URL,
    DEFAULT_CLIENT_ID,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_SCOPES,
    HEARTBEAT_INTERVAL_SECONDS,
    HEARTBEAT_MAX_RETRIES,
    IDENTITY_FILENAME,
    OAUTH_CLIENT_TIMEOUT_SECONDS,
    SECRETS_FILENAME,
    SYSTEM_LOG_FILENAME,
    get_config_dir,
)
from repochief.utils.logging import get_system_logger

API_URL_ENV_VAR = "REPOCHIEF_API_URL"


class ClientConfig(BaseModel):
    """Settings for talking to the RepoChief API from this host.

    Attributes:
        api_url: Base URL all endpoints are relative to.
        client_id: OAuth client id sent with device-code and refresh grants.
        scopes: OAuth scopes requested during device authorization.
        config_dir: Directory for identity.json, .tokens and logs.
        http_timeout_seconds: Timeout for authenticated API requests.
        oauth_timeout_seconds: Timeout for device-code/token/refresh requests.
        retry_max_attempts: Attempts per request on transient failures.
        retry_base_delay_seconds: First backoff delay; doubles per attempt.
        heartbeat_interval_seconds: Liveness report cadence.
        heartbeat_max_retries: Consecutive failures before disconnecting.
    """

    api_url: str = Field(default=DEFAULT_API_URL, min_length=1)
    client_id: str = Field(default=DEFAULT_CLIENT_ID, min_length=1)
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    config_dir: Path = Field(default_factory=get_config_dir)
    http_timeout_seconds: float = Field(default=DEFAULT_HTTP_TIMEOUT_SECONDS, gt=0)
    oauth_timeout_seconds: float = Field(default=OAUTH_CLIENT_TIMEOUT_SECONDS, gt=0)
    retry_max_attempts: int = Field(default=API_RETRY_MAX_ATTEMPTS, ge=1, le=10)
    retry_base_delay_seconds: float = Field(default=API_RETRY_BASE_DELAY_SECONDS, ge=0)
    heartbeat_interval_seconds: float = Field(default=HEARTBEAT_INTERVAL_SECONDS, gt=0)
    heartbeat_max_retries: int = Field(default=HEARTBEAT_MAX_RETRIES, ge=0)

    model_config = {"extra": "ignore"}  # Ignore unknown fields for forward compat

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def scope(self) -> str:
        """Scopes as the space-separated string OAuth expects."""
        return " ".join(self.scopes)

    @property
    def identity_path(self) -> Path:
        return self.config_dir / IDENTITY_FILENAME

    @property
    def secrets_path(self) -> Path:
        return self.config_dir / SECRETS_FILENAME

    @property
    def system_log_path(self) -> Path:
        return self.config_dir / "logs" / SYSTEM_LOG_FILENAME


def load_client_config(config_dir: Path | None = None) -> ClientConfig:
    """Load client configuration.

    Reads config.json from the config directory if present. Invalid JSON
    or invalid values fall back to defaults with a warning, so a broken
    settings file never blocks login. Environment overrides win over the
    file.

    Args:
        config_dir: Config directory to use. Defaults to get_config_dir().

    Returns:
        ClientConfig: Loaded or default configuration.
    """
    directory = config_dir or get_config_dir()
    config_path = directory / CONFIG_FILENAME

    data: dict[str, object] = {}
    if config_path.exists():
        try:
            with config_path.open(encoding="utf-8") as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                data = loaded
            else:
                get_system_logger().warning(
                    {
                        "event": "config_invalid_json",
                        "message": "Config file is not a JSON object, using defaults",
                        "details": {"config_path": str(config_path)},
                    }
                )
        except json.JSONDecodeError as e:
            get_system_logger().warning(
                {
                    "event": "config_invalid_json",
                    "message": f"Invalid JSON in config, using defaults: {e}",
                    "error_type": type(e).__name__,
                    "details": {"config_path": str(config_path)},
                }
            )
        except OSError as e:
            get_system_logger().warning(
                {
                    "event": "config_read_failed",
                    "message": f"Failed to read config file, using defaults: {e}",
                    "error_type": type(e).__name__,
                    "details": {"config_path": str(config_path)},
                }
            )

    # config_dir always reflects where we looked, not the file's opinion
    data["config_dir"] = directory
    api_url = os.environ.get(API_URL_ENV_VAR)
    if api_url:
        data["api_url"] = api_url

    try:
        return ClientConfig.model_validate(data)
    except ValidationError as e:
        get_system_logger().warning(
            {
                "event": "config_validation_failed",
                "message": f"Invalid config values, using defaults: {e}",
                "error_type": type(e).__name__,
                "details": {"config_path": str(config_path)},
            }
        )
        fallback: dict[str, object] = {"config_dir": directory}
        if api_url:
            fallback["api_url"] = api_url
        return ClientConfig.model_validate(fallback)
