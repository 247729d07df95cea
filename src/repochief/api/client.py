"""Authenticated HTTP client for the RepoChief API.

Every request is classified as public (auth bootstrap endpoints) or
protected. Protected requests carry `Authorization: Bearer <token>` from
the token provider; public requests never carry a user token.

Two independent retry layers compose per logical request:
- Transient failures (timeouts, connect/DNS errors, 5xx) are retried up
  to max_attempts with exponential backoff: base, base*2, base*4, ...
- A 401 on a protected request triggers one coordinated refresh and one
  replay. A second 401 or a rejected refresh token is final; a refresh
  that only hit transient failures surfaces as TransientNetworkError.
"""

from __future__ import annotations

__all__ = [
    "APIClient",
    "AuthenticationExpiredError",
    "TransientNetworkError",
    "is_public_endpoint",
]

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import httpx

from repochief.constants import (
    API_RETRY_BASE_DELAY_SECONDS,
    API_RETRY_MAX_ATTEMPTS,
    HEARTBEAT_ENDPOINT,
    PUBLIC_ENDPOINTS,
    REVOKE_ENDPOINT,
    USER_STATUS_ENDPOINT,
    VALIDATE_ENDPOINT,
)
from repochief.exceptions import (
    LOGIN_HINT,
    APIError,
    AuthenticationError,
    NotAuthenticatedError,
    TransientNetworkError,
)
from repochief.security.auth.token_refresh import ReauthenticationRequiredError
from repochief.utils.logging import get_system_logger

if TYPE_CHECKING:
    from repochief.security.auth.token_refresh import TokenProvider

Sleep = Callable[[float], Awaitable[None]]

# Retried with backoff; anything else from httpx is a hard failure
_TRANSIENT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


class AuthenticationExpiredError(AuthenticationError):
    """A protected request was still unauthorized after one refresh."""

    failure_type = "authentication_expired"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or f"Authentication expired. {LOGIN_HINT}")


def is_public_endpoint(path: str) -> bool:
    """True for auth bootstrap endpoints that must not carry a user token."""
    return path.split("?", 1)[0].rstrip("/") in PUBLIC_ENDPOINTS


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict):
        for key in ("message", "error_description", "detail", "error"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return response.reason_phrase or str(response.status_code)


class APIClient:
    """HTTP client with bearer injection, 401 refresh-and-retry and backoff.

    The client does not own the httpx.AsyncClient; the session that
    builds it closes it.

    Usage:
        client = APIClient(http_client, coordinator, api_url=config.api_url)
        status = await client.get_status()
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: TokenProvider | None,
        *,
        api_url: str,
        max_attempts: int = API_RETRY_MAX_ATTEMPTS,
        base_delay_seconds: float = API_RETRY_BASE_DELAY_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize API client.

        Args:
            http_client: Shared httpx client.
            token_provider: Bearer token source. None allows public requests only.
            api_url: Base URL paths are relative to.
            max_attempts: Attempts per request on transient failures.
            base_delay_seconds: Delay before the second attempt; doubles after.
            sleep: Coroutine used for backoff waits (tests).
        """
        self._client = http_client
        self._provider = token_provider
        self._api_url = api_url.rstrip("/")
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay_seconds
        self._sleep = sleep

    @property
    def api_url(self) -> str:
        return self._api_url

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Args:
            method: HTTP method.
            path: Endpoint path relative to api_url (e.g. "/user/status").
            json: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Parsed JSON response ({} for empty bodies).

        Raises:
            NotAuthenticatedError: Protected request without a token provider.
            AuthenticationExpiredError: Still 401 after one refresh, or the refresh
                token was rejected.
            TransientNetworkError: Transient retries exhausted (request or refresh).
            APIError: Any other error status.
        """
        if is_public_endpoint(path):
            response = await self._send(method, path, None, json, params)
            return self._decode(response)

        if self._provider is None:
            raise NotAuthenticatedError()

        token = await self._provider.get_valid_access_token()
        response = await self._send(method, path, token, json, params)

        if response.status_code == 401:
            get_system_logger().info(
                {
                    "event": "api_unauthorized_refreshing",
                    "message": f"{method} {path} returned 401, refreshing access token",
                }
            )
            try:
                token = await self._provider.refresh(stale_token=token)
            except ReauthenticationRequiredError as e:
                raise AuthenticationExpiredError() from e

            response = await self._send(method, path, token, json, params)
            if response.status_code == 401:
                raise AuthenticationExpiredError()

        return self._decode(response)

    async def _send(
        self,
        method: str,
        path: str,
        token: str | None,
        json: Any,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        """Send one logical request, retrying transient failures.

        Returns the first non-5xx response (including 401 and other 4xx).
        """
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        url = f"{self._api_url}{path}"
        last_status: int | None = None
        last_message = ""

        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await self._client.request(
                    method, url, json=json, params=params, headers=headers
                )
            except _TRANSIENT_ERRORS as e:
                last_status = None
                last_message = str(e) or type(e).__name__
            except httpx.HTTPError as e:
                raise APIError(str(e)) from e
            else:
                if response.status_code < 500:
                    return response
                last_status = response.status_code
                last_message = _error_detail(response)

            if attempt < self._max_attempts:
                delay = self._base_delay * 2 ** (attempt - 1)
                get_system_logger().info(
                    {
                        "event": "api_request_retry",
                        "message": f"{method} {path} failed ({last_status or last_message}), "
                        f"retrying in {delay}s",
                        "attempt": attempt,
                        "status_code": last_status,
                    }
                )
                await self._sleep(delay)

        raise TransientNetworkError(last_message, last_status)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.is_success:
            if response.status_code == 204 or not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise APIError("Response is not valid JSON", response.status_code) from e
        raise APIError(_error_detail(response), response.status_code)

    # =========================================================================
    # Convenience methods
    # =========================================================================

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None) -> Any:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, json: Any = None) -> Any:
        return await self.request("PUT", path, json=json)

    async def patch(self, path: str, json: Any = None) -> Any:
        return await self.request("PATCH", path, json=json)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def validate_token(self, token: str) -> dict[str, Any]:
        """Validate a token (e.g. a personal access token) before storing it.

        Uses the given token as bearer, bypassing the token provider.

        Returns:
            Validation payload ({"valid": True, "user_id": ...}), or
            {"valid": False} if the server answered 401.
        """
        response = await self._send("GET", VALIDATE_ENDPOINT, token, None, None)
        if response.status_code == 401:
            return {"valid": False}
        data = self._decode(response)
        return data if isinstance(data, dict) else {"valid": False}

    async def get_status(self) -> Any:
        """Current user and subscription status."""
        return await self.get(USER_STATUS_ENDPOINT)

    async def revoke_identity_token(self, identity_id: str) -> Any:
        return await self.post(REVOKE_ENDPOINT, json={"device_id": identity_id})

    async def revoke_all_tokens(self) -> Any:
        return await self.post(REVOKE_ENDPOINT, json={"all_devices": True})

    async def send_heartbeat(self, identity_id: str, payload: dict[str, Any]) -> Any:
        return await self.post(HEARTBEAT_ENDPOINT.format(identity_id=identity_id), json=payload)
