"""Unit tests for the token refresh coordinator.

Tests cover:
- Cached token reuse inside the expiry buffer
- Refresh exchange and refresh-token rotation persisted to the vault
- Rejected / missing refresh tokens require re-authentication
- Transient failures retried with backoff, then surfaced as TransientNetworkError
- Concurrent refreshes coalesced into a single exchange
- Personal access tokens cannot be refreshed
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

from tests.helpers import API_URL, FakeClock, json_response
from repochief.security.auth import (
    OAuthTokens,
    ReauthenticationRequiredError,
    StaticTokenProvider,
    TokenRefreshCoordinator,
    TokenRefreshError,
)
from repochief.exceptions import AuthenticationError, TransientNetworkError
from repochief.security.credential_storage import CredentialVault

IDENTITY_ID = "ws_" + "c" * 32


@pytest.fixture
def vault(config_dir: Path) -> CredentialVault:
    return CredentialVault.create(config_dir)


def make_coordinator(vault, mock_http, handler, clock: FakeClock, **kwargs) -> TokenRefreshCoordinator:
    return TokenRefreshCoordinator(
        vault,
        IDENTITY_ID,
        api_url=API_URL,
        http_client=mock_http(handler),
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


def tokens_expiring_at(expires_at: float, access_token: str = "A0") -> OAuthTokens:
    return OAuthTokens(
        access_token=access_token,
        expires_in=3600,
        expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
    )


# ============================================================================
# Tests: get_valid_access_token
# ============================================================================


class TestGetValidAccessToken:
    """Tests for cached token handling."""

    async def test_fresh_cache_skips_network(self, vault, mock_http, clock: FakeClock) -> None:
        """Given a token with more than 5 minutes left, no request is made."""
        # Arrange
        calls: list[httpx.Request] = []
        coordinator = make_coordinator(vault, mock_http, lambda r: calls.append(r), clock)
        coordinator.seed(tokens_expiring_at(clock.now + 600))

        # Act
        token = await coordinator.get_valid_access_token()

        # Assert
        assert token == "A0"
        assert calls == []

    async def test_near_expiry_triggers_refresh(self, vault, mock_http, clock: FakeClock) -> None:
        """Given a token inside the buffer, the stored refresh token is exchanged."""
        # Arrange
        vault.store(IDENTITY_ID, "R1")
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return json_response(200, {"access_token": "A1", "expires_in": 3600})

        coordinator = make_coordinator(vault, mock_http, handler, clock)
        coordinator.seed(tokens_expiring_at(clock.now + 120))

        # Act
        token = await coordinator.get_valid_access_token()

        # Assert
        assert token == "A1"
        assert bodies == [{"refresh_token": "R1", "client_id": "repochief-cli", "grant_type": "refresh_token"}]
        assert coordinator.cached is not None
        assert coordinator.cached.expires_at == clock.now + 3600
        assert vault.retrieve(IDENTITY_ID) == "R1"


# ============================================================================
# Tests: refresh
# ============================================================================


class TestRefresh:
    """Tests for TokenRefreshCoordinator.refresh()."""

    async def test_rotation_is_persisted(self, vault, mock_http, clock: FakeClock) -> None:
        """Given a rotated refresh token, the vault holds the new one."""
        # Arrange
        vault.store(IDENTITY_ID, "R1")
        coordinator = make_coordinator(
            vault,
            mock_http,
            lambda r: json_response(200, {"access_token": "A2", "refresh_token": "R2", "expires_in": 900}),
            clock,
        )

        # Act
        token = await coordinator.refresh()

        # Assert
        assert token == "A2"
        assert vault.retrieve(IDENTITY_ID) == "R2"

    async def test_unauthorized_requires_reauthentication(self, vault, mock_http, clock: FakeClock) -> None:
        vault.store(IDENTITY_ID, "R1")
        coordinator = make_coordinator(vault, mock_http, lambda r: json_response(401, {"error": "unauthorized"}), clock)
        coordinator.seed(tokens_expiring_at(clock.now + 10))

        with pytest.raises(ReauthenticationRequiredError):
            await coordinator.refresh()
        assert coordinator.cached is None

    async def test_invalid_grant_requires_reauthentication(self, vault, mock_http, clock: FakeClock) -> None:
        vault.store(IDENTITY_ID, "R1")
        coordinator = make_coordinator(vault, mock_http, lambda r: json_response(400, {"error": "invalid_grant"}), clock)

        with pytest.raises(ReauthenticationRequiredError):
            await coordinator.refresh()

    async def test_missing_refresh_token(self, vault, mock_http, clock: FakeClock) -> None:
        """Given nothing in the vault, no request is made and login is required."""
        # Arrange
        calls: list[httpx.Request] = []
        coordinator = make_coordinator(vault, mock_http, lambda r: calls.append(r), clock)

        # Act / Assert
        with pytest.raises(ReauthenticationRequiredError):
            await coordinator.refresh()
        assert calls == []

    async def test_unexpected_client_error_is_refresh_error(self, vault, mock_http, clock: FakeClock) -> None:
        """Given a 400 that is not a grant rejection, no retry and no re-login."""
        # Arrange
        vault.store(IDENTITY_ID, "R1")
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return json_response(400, {"error": "invalid_request", "error_description": "bad client"})

        # Act
        with pytest.raises(TokenRefreshError) as exc_info:
            await make_coordinator(vault, mock_http, handler, clock).refresh()

        # Assert
        assert not isinstance(exc_info.value, ReauthenticationRequiredError)
        assert "bad client" in str(exc_info.value)
        assert len(calls) == 1
        assert clock.sleeps == []

    async def test_server_error_retries_then_is_transient(self, vault, mock_http, clock: FakeClock) -> None:
        """Given 503 on every attempt, the status and server message survive."""
        # Arrange
        vault.store(IDENTITY_ID, "R1")
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return json_response(503, {"message": "maintenance"})

        coordinator = make_coordinator(vault, mock_http, handler, clock)
        coordinator.seed(tokens_expiring_at(clock.now + 3600))

        # Act
        with pytest.raises(TransientNetworkError) as exc_info:
            await coordinator.refresh()

        # Assert
        assert not isinstance(exc_info.value, AuthenticationError)
        assert exc_info.value.status_code == 503
        assert exc_info.value.detail == "maintenance"
        assert len(calls) == 3
        assert clock.sleeps == [1, 2]
        # Credential untouched: a later refresh can still succeed
        assert vault.retrieve(IDENTITY_ID) == "R1"
        assert coordinator.cached is not None

    async def test_network_error_is_transient(self, vault, mock_http, clock: FakeClock) -> None:
        vault.store(IDENTITY_ID, "R1")

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out")

        with pytest.raises(TransientNetworkError) as exc_info:
            await make_coordinator(vault, mock_http, handler, clock).refresh()
        assert exc_info.value.status_code is None
        assert clock.sleeps == [1, 2]

    async def test_recovers_after_transient_failure(self, vault, mock_http, clock: FakeClock) -> None:
        """Given one 502 then success, the refresh succeeds after one backoff."""
        # Arrange
        vault.store(IDENTITY_ID, "R1")
        answers = [
            json_response(502, {"message": "bad gateway"}),
            json_response(200, {"access_token": "A1", "expires_in": 3600}),
        ]

        # Act
        token = await make_coordinator(vault, mock_http, lambda r: answers.pop(0), clock).refresh()

        # Assert
        assert token == "A1"
        assert clock.sleeps == [1]

    async def test_refresh_uses_oauth_timeout(self, vault, mock_http, clock: FakeClock) -> None:
        vault.store(IDENTITY_ID, "R1")
        timeouts: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            timeouts.append(request.extensions["timeout"])
            return json_response(200, {"access_token": "A1", "expires_in": 3600})

        await make_coordinator(vault, mock_http, handler, clock, timeout_seconds=7).refresh()

        assert timeouts == [{"connect": 7, "read": 7, "write": 7, "pool": 7}]

    async def test_concurrent_refreshes_share_one_exchange(self, vault, mock_http, clock: FakeClock) -> None:
        """Given five simultaneous refreshes, exactly one request is sent."""
        # Arrange
        vault.store(IDENTITY_ID, "R1")
        gate = asyncio.Event()
        calls: list[httpx.Request] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            await gate.wait()
            return json_response(200, {"access_token": "A1", "refresh_token": "R2", "expires_in": 3600})

        coordinator = make_coordinator(vault, mock_http, handler, clock)

        # Act
        waiters = [asyncio.ensure_future(coordinator.refresh()) for _ in range(5)]
        while not calls:
            await asyncio.sleep(0.01)
        gate.set()
        results = await asyncio.gather(*waiters)

        # Assert
        assert results == ["A1"] * 5
        assert len(calls) == 1
        assert vault.retrieve(IDENTITY_ID) == "R2"

    async def test_stale_token_already_replaced(self, vault, mock_http, clock: FakeClock) -> None:
        """Given the cache already holds a newer token, no exchange happens."""
        # Arrange
        calls: list[httpx.Request] = []
        coordinator = make_coordinator(vault, mock_http, lambda r: calls.append(r), clock)
        coordinator.seed(tokens_expiring_at(clock.now + 3600, access_token="A-new"))

        # Act
        token = await coordinator.refresh(stale_token="A-old")

        # Assert
        assert token == "A-new"
        assert calls == []


class TestStaticTokenProvider:
    """Tests for personal access tokens."""

    async def test_serves_token(self) -> None:
        assert await StaticTokenProvider("sbp_pat").get_valid_access_token() == "sbp_pat"

    async def test_cannot_refresh(self) -> None:
        with pytest.raises(ReauthenticationRequiredError):
            await StaticTokenProvider("sbp_pat").refresh("sbp_pat")
