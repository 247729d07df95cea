"""Token refresh for the OAuth refresh_token grant.

When the cached access token is within 5 minutes of expiry, the
coordinator exchanges the stored refresh token for a new access token
without user interaction.

Flow:
1. Read refresh token from the credential vault
2. POST /auth/refresh, retrying timeouts, connection errors and 5xx
3. Persist a rotated refresh token (if the server issued one)
4. Cache the new access token in memory (never persisted)

Concurrent refreshes are coalesced: the first caller starts the exchange
and every other caller awaits the same result. Refresh-token rotation
makes duplicate exchanges unsafe (the second would present a token the
first already invalidated).
"""

from __future__ import annotations

__all__ = [
    "AccessTokenCache",
    "ReauthenticationRequiredError",
    "StaticTokenProvider",
    "TokenProvider",
    "TokenRefreshCoordinator",
    "TokenRefreshError",
]

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import httpx

from repochief.constants import (
    ACCESS_TOKEN_REFRESH_BUFFER_SECONDS,
    API_RETRY_BASE_DELAY_SECONDS,
    API_RETRY_MAX_ATTEMPTS,
    DEFAULT_CLIENT_ID,
    OAUTH_CLIENT_TIMEOUT_SECONDS,
    REFRESH_ENDPOINT,
    REFRESH_TOKEN_GRANT_TYPE,
)
from repochief.exceptions import LOGIN_HINT, AuthenticationError, TransientNetworkError
from repochief.security.auth.token_parser import OAuthTokens, parse_token_response
from repochief.utils.logging import get_system_logger

if TYPE_CHECKING:
    from repochief.security.credential_storage import CredentialVault

Sleep = Callable[[float], Awaitable[None]]

# Retried with backoff, like API requests
_TRANSIENT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


class TokenRefreshError(AuthenticationError):
    """Token refresh failed for a non-transient reason (malformed response, unexpected 4xx)."""

    failure_type = "token_refresh_failed"


class ReauthenticationRequiredError(TokenRefreshError):
    """No usable refresh token - user must log in again."""

    failure_type = "reauthentication_required"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or f"Session expired. {LOGIN_HINT}")


class TokenProvider(Protocol):
    """Source of bearer tokens for the API client."""

    async def get_valid_access_token(self) -> str:
        """Return a token usable for the next request."""
        ...

    async def refresh(self, stale_token: str | None = None) -> str:
        """Obtain a new token after the server rejected stale_token."""
        ...


@dataclass(frozen=True)
class AccessTokenCache:
    """In-memory access token with absolute expiry (epoch seconds)."""

    token: str
    expires_at: float

    def is_fresh(self, now: float, buffer_seconds: float) -> bool:
        return self.expires_at - now > buffer_seconds


class StaticTokenProvider:
    """Serves a personal access token. PATs cannot be refreshed."""

    def __init__(self, token: str) -> None:
        self._token = token

    async def get_valid_access_token(self) -> str:
        return self._token

    async def refresh(self, stale_token: str | None = None) -> str:
        raise ReauthenticationRequiredError(f"Personal access token was rejected. {LOGIN_HINT}")


class TokenRefreshCoordinator:
    """Caches the access token and performs single-flight refreshes.

    Usage:
        coordinator = TokenRefreshCoordinator(vault, identity.id, api_url=..., http_client=client)
        coordinator.seed(tokens)  # after login
        token = await coordinator.get_valid_access_token()
    """

    def __init__(
        self,
        vault: CredentialVault,
        identity_id: str,
        *,
        api_url: str,
        http_client: httpx.AsyncClient,
        client_id: str = DEFAULT_CLIENT_ID,
        clock: Callable[[], float] | None = None,
        refresh_buffer_seconds: float = ACCESS_TOKEN_REFRESH_BUFFER_SECONDS,
        timeout_seconds: float = OAUTH_CLIENT_TIMEOUT_SECONDS,
        max_attempts: int = API_RETRY_MAX_ATTEMPTS,
        base_delay_seconds: float = API_RETRY_BASE_DELAY_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the coordinator.

        Args:
            vault: Credential vault holding the refresh token.
            identity_id: Identity the refresh token is stored under.
            api_url: API base URL.
            http_client: Shared httpx client (not closed by the coordinator).
            client_id: OAuth client id.
            clock: Epoch clock (tests). Defaults to time.time.
            refresh_buffer_seconds: Refresh when the token has less than this left.
            timeout_seconds: Timeout for each refresh request.
            max_attempts: Attempts per refresh on transient failures.
            base_delay_seconds: Delay before the second attempt; doubles after.
            sleep: Coroutine used for backoff waits (tests).
        """
        self._vault = vault
        self._identity_id = identity_id
        self._refresh_url = f"{api_url.rstrip('/')}{REFRESH_ENDPOINT}"
        self._client = http_client
        self._client_id = client_id
        self._clock = clock or time.time
        self._buffer = refresh_buffer_seconds
        self._timeout = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay_seconds
        self._sleep = sleep
        self._cache: AccessTokenCache | None = None
        self._inflight: asyncio.Task[str] | None = None

    @property
    def identity_id(self) -> str:
        return self._identity_id

    @property
    def cached(self) -> AccessTokenCache | None:
        return self._cache

    def seed(self, tokens: OAuthTokens) -> None:
        """Prime the cache with tokens obtained at login."""
        self._cache = AccessTokenCache(
            token=tokens.access_token,
            expires_at=tokens.expires_at.timestamp(),
        )

    def invalidate(self) -> None:
        """Drop the cached access token."""
        self._cache = None

    async def get_valid_access_token(self) -> str:
        """Return the cached token if >5 minutes from expiry, otherwise refresh.

        Raises:
            ReauthenticationRequiredError: If no refresh token exists or it was rejected.
            TransientNetworkError: If the refresh endpoint stayed unreachable.
            TokenRefreshError: If the refresh failed for another reason.
            DecryptionError: If the stored refresh token cannot be decrypted.
        """
        if self._cache is not None and self._cache.is_fresh(self._clock(), self._buffer):
            return self._cache.token
        return await self.refresh()

    async def refresh(self, stale_token: str | None = None) -> str:
        """Refresh the access token, sharing one exchange among concurrent callers.

        Args:
            stale_token: The token the server just rejected. If the cache
                already holds a different fresh token, it is returned
                without another exchange.

        Returns:
            A new access token.
        """
        cache = self._cache
        if (
            stale_token is not None
            and cache is not None
            and cache.token != stale_token
            and cache.is_fresh(self._clock(), self._buffer)
        ):
            return cache.token

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh_once())
        # One caller being cancelled must not cancel the shared exchange
        return await asyncio.shield(self._inflight)

    async def _refresh_once(self) -> str:
        try:
            refresh_token = await asyncio.to_thread(self._vault.retrieve, self._identity_id)
            if not refresh_token:
                raise ReauthenticationRequiredError(f"No refresh token stored. {LOGIN_HINT}")

            try:
                tokens = await self.exchange(refresh_token)
            except ReauthenticationRequiredError:
                self.invalidate()
                raise

            self.seed(tokens)
            return tokens.access_token
        finally:
            self._inflight = None

    async def exchange(self, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new access token.

        Timeouts, connection errors and 5xx responses are retried with the
        same exponential backoff as API requests. A rotated refresh token
        is written to the vault before returning.

        Args:
            refresh_token: Current refresh token.

        Returns:
            OAuthTokens with the new access token and absolute expiry.

        Raises:
            ReauthenticationRequiredError: If the refresh token is expired or rejected.
            TransientNetworkError: If every attempt hit a transient failure.
            TokenRefreshError: For other error responses or a malformed body.
            ConfigWriteError: If a rotated refresh token cannot be stored.
        """
        logger = get_system_logger()
        last_status: int | None = None
        last_message = ""

        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await self._client.post(
                    self._refresh_url,
                    json={
                        "refresh_token": refresh_token,
                        "client_id": self._client_id,
                        "grant_type": REFRESH_TOKEN_GRANT_TYPE,
                    },
                    timeout=self._timeout,
                )
            except _TRANSIENT_ERRORS as e:
                last_status = None
                last_message = str(e) or type(e).__name__
            except httpx.HTTPError as e:
                raise TokenRefreshError(f"HTTP error during token refresh: {e}") from e
            else:
                if response.status_code < 500:
                    return await self._handle_response(response, refresh_token)
                last_status = response.status_code
                last_message = _error_fields(response)[1] or response.reason_phrase

            if attempt < self._max_attempts:
                delay = self._base_delay * 2 ** (attempt - 1)
                logger.info(
                    {
                        "event": "token_refresh_retry",
                        "message": f"Token refresh failed ({last_status or last_message}), retrying in {delay}s",
                        "attempt": attempt,
                        "status_code": last_status,
                    }
                )
                await self._sleep(delay)

        logger.warning(
            {
                "event": "token_refresh_unreachable",
                "message": f"Token refresh gave up after {self._max_attempts} attempts: {last_message}",
                "identity_id": self._identity_id,
                "status_code": last_status,
            }
        )
        raise TransientNetworkError(last_message, last_status)

    async def _handle_response(self, response: httpx.Response, refresh_token: str) -> OAuthTokens:
        logger = get_system_logger()

        if response.status_code == 200:
            try:
                tokens = parse_token_response(response.json(), now=self._clock())
            except ValueError as e:
                raise TokenRefreshError(f"Malformed refresh response: {e}") from e

            if tokens.refresh_token and tokens.refresh_token != refresh_token:
                await asyncio.to_thread(self._vault.store, self._identity_id, tokens.refresh_token)
                logger.info(
                    {
                        "event": "refresh_token_rotated",
                        "message": "Stored rotated refresh token",
                        "identity_id": self._identity_id,
                    }
                )
            return tokens

        error, error_desc = _error_fields(response)
        if response.status_code == 401 or (
            response.status_code == 400 and error in ("invalid_grant", "expired_token")
        ):
            logger.warning(
                {
                    "event": "refresh_token_rejected",
                    "message": f"Refresh token rejected ({response.status_code} {error or 'unauthorized'})",
                    "identity_id": self._identity_id,
                }
            )
            raise ReauthenticationRequiredError(f"Refresh token has expired. {LOGIN_HINT}")

        raise TokenRefreshError(f"Token refresh failed: {error_desc or response.status_code}")


def _error_fields(response: httpx.Response) -> tuple[str, str]:
    """(error, description) from an error body; empty strings if absent."""
    try:
        data = response.json()
    except ValueError:
        return "", ""
    if not isinstance(data, dict):
        return "", ""
    error = data.get("error")
    error = error if isinstance(error, str) else ""
    for key in ("error_description", "message"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return error, value
    return error, ""
