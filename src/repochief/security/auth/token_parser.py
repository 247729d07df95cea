"""Shared OAuth token response parsing.

Used by the device flow (device_code grant) and the refresh coordinator
(refresh_token grant) so both produce the same OAuthTokens shape.
"""

from __future__ import annotations

__all__ = ["OAuthTokens", "parse_token_response"]

import time
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from repochief.constants import DEFAULT_TOKEN_EXPIRES_IN_SECONDS


class OAuthTokens(BaseModel):
    """Tokens returned by the authorization server.

    Attributes:
        access_token: Bearer token for API calls.
        refresh_token: Token for obtaining new access tokens (may rotate).
        token_type: Usually "Bearer".
        expires_in: Lifetime in seconds as reported by the server.
        expires_at: UTC time the access token expires.
        scope: Granted scopes, if reported.
        user: User profile returned with the device grant, if any.
        user_id: User id returned with the device grant, if any.
    """

    access_token: str = Field(min_length=1, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    token_type: str = "Bearer"
    expires_in: int
    expires_at: datetime
    scope: str | None = None
    user: dict[str, Any] | None = None
    user_id: str | None = None

    model_config = {"extra": "ignore"}


def parse_token_response(data: Any, now: float | None = None) -> OAuthTokens:
    """Parse an OAuth token response.

    Handles standard OAuth 2.0 token response fields:
    - access_token (required)
    - refresh_token (optional)
    - expires_in (optional, defaults to 1h)
    - token_type, scope, user, user_id (optional)

    Args:
        data: Token response JSON.
        now: Epoch seconds the response was received. Defaults to time.time().

    Returns:
        OAuthTokens with absolute expiry.

    Raises:
        ValueError: If the response has no usable access_token.
    """
    if not isinstance(data, dict):
        raise ValueError("Token response is not a JSON object")

    received_at = time.time() if now is None else now
    expires_in = data.get("expires_in") or DEFAULT_TOKEN_EXPIRES_IN_SECONDS

    user = data.get("user")
    user_id = data.get("user_id")
    if user_id is None and isinstance(user, dict) and user.get("id") is not None:
        user_id = user["id"]

    try:
        return OAuthTokens(
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type") or "Bearer",
            expires_in=int(expires_in),
            expires_at=datetime.fromtimestamp(received_at + int(expires_in), tz=timezone.utc),
            scope=data.get("scope"),
            user=user if isinstance(user, dict) else None,
            user_id=str(user_id) if user_id is not None else None,
        )
    except (ValidationError, TypeError) as e:
        raise ValueError(f"Malformed token response: {e}") from e
