"""Tests for AuthSession: login, logout, status and client wiring.

Tests cover:
- Device-flow login storing the refresh token under a new identity
- Personal access token login
- Status with valid, expired and corrupted credentials
- Logout revocation and local cleanup
- Heartbeat reporter wiring
"""

from __future__ import annotations

import base64
import json

import pytest

from tests.helpers import FakeClock, FakeServer
from repochief.config import ClientConfig
from repochief.exceptions import AuthenticationError, NotAuthenticatedError
from repochief.security.auth import AuthProtocolError
from repochief.session import AUTH_METHOD_DEVICE_FLOW, AUTH_METHOD_PAT, AuthSession


@pytest.fixture
def make_session(client_config: ClientConfig, mock_http, server: FakeServer, clock: FakeClock):
    def make() -> AuthSession:
        return AuthSession(
            client_config,
            http_client=mock_http(server),
            sleep=clock.sleep,
            clock=clock,
            monotonic=clock,
        )

    return make


def name_provider() -> str:
    return "test-host"


# ============================================================================
# Tests: Login
# ============================================================================


class TestDeviceFlowLogin:
    """Tests for login() without a token."""

    async def test_fresh_login_stores_refresh_token(self, make_session, server: FakeServer, clock: FakeClock) -> None:
        """Given no prior state, login creates an identity and vaults the refresh token."""
        # Arrange
        session = make_session()
        shown: list[str] = []

        # Act
        result = await session.login(
            name_provider=name_provider,
            display_callback=lambda code, uri, complete: shown.append(code),
        )

        # Assert
        assert shown == ["ABCD"]
        assert result.method == AUTH_METHOD_DEVICE_FLOW
        assert result.identity.display_name == "test-host"
        assert result.identity.host_metadata["auth_method"] == AUTH_METHOD_DEVICE_FLOW
        assert result.identity.host_metadata["user_id"] == "u1"
        assert result.credential.backend == "native"
        assert session.vault.retrieve(result.identity.id) == "R1"
        assert clock.sleeps == [1, 1]

    async def test_client_after_login_uses_seeded_token(self, make_session, server: FakeServer) -> None:
        session = make_session()
        await session.login(name_provider=name_provider)

        client = await session.get_authenticated_client()
        await client.get_status()

        assert server.requests[-1].headers["Authorization"] == "Bearer A1"
        assert "/auth/refresh" not in server.paths()

    async def test_login_reuses_existing_identity(self, make_session, server: FakeServer) -> None:
        """Given an identity from an earlier login, logging in again keeps it."""
        # Arrange
        first = await make_session().login(name_provider=name_provider)
        server.token_answers = [(200, {"access_token": "A3", "refresh_token": "R3", "expires_in": 3600})]

        # Act
        second = await make_session().login(name_provider=lambda: "other-name")

        # Assert
        assert second.identity.id == first.identity.id
        assert second.identity.display_name == "test-host"
        assert make_session().vault.retrieve(first.identity.id) == "R3"

    async def test_missing_refresh_token_rejected(self, make_session, server: FakeServer) -> None:
        server.token_answers = [(200, {"access_token": "A1", "expires_in": 3600})]
        session = make_session()

        with pytest.raises(AuthProtocolError):
            await session.login(name_provider=name_provider)
        assert session.identities.get() is None


class TestTokenLogin:
    """Tests for login() with a personal access token."""

    async def test_valid_token(self, make_session, server: FakeServer) -> None:
        """Given a valid PAT, it is stored and used as the bearer."""
        # Arrange
        session = make_session()

        # Act
        result = await session.login("sbp_good", name_provider=name_provider)
        client = await session.get_authenticated_client()
        await client.get_status()

        # Assert
        assert result.method == AUTH_METHOD_PAT
        assert result.user == {"id": "u9", "email": "pat@example.com"}
        assert session.vault.retrieve(result.identity.id) == "sbp_good"
        assert server.requests[-1].headers["Authorization"] == "Bearer sbp_good"

    async def test_invalid_token(self, make_session) -> None:
        session = make_session()

        with pytest.raises(AuthenticationError):
            await session.login("sbp_bad", name_provider=name_provider)
        assert session.identities.get() is None

    async def test_pat_survives_new_session(self, make_session, server: FakeServer) -> None:
        await make_session().login("sbp_good", name_provider=name_provider)

        status = await make_session().status_check()

        assert status.authenticated is True
        assert server.requests[-1].headers["Authorization"] == "Bearer sbp_good"


# ============================================================================
# Tests: Status
# ============================================================================


class TestStatusCheck:
    """Tests for status_check()."""

    async def test_not_logged_in(self, make_session) -> None:
        status = await make_session().status_check()

        assert status.authenticated is False
        assert status.identity is None
        assert status.storage["backend"] == "keychain"

    async def test_new_process_refreshes(self, make_session, server: FakeServer) -> None:
        """Given a stored refresh token, a new session refreshes before calling the API."""
        # Arrange
        await make_session().login(name_provider=name_provider)

        # Act
        status = await make_session().status_check()

        # Assert
        assert status.authenticated is True
        assert status.user == {"id": "u1", "email": "dev@example.com"}
        assert server.paths()[-2:] == ["/auth/refresh", "/user/status"]
        assert server.requests[-1].headers["Authorization"] == "Bearer A2"

    async def test_expired_refresh_token(self, make_session, server: FakeServer) -> None:
        """Given a rejected refresh token, status is unauthenticated with a login hint."""
        # Arrange
        await make_session().login(name_provider=name_provider)
        server.refresh_status = 400

        # Act
        status = await make_session().status_check()

        # Assert
        assert status.authenticated is False
        assert status.identity is not None
        assert "repochief auth login" in (status.error or "")

    async def test_refresh_outage_keeps_server_message(
        self, make_session, server: FakeServer, clock: FakeClock
    ) -> None:
        """Given a refresh endpoint in maintenance, status reports the outage, not an expiry."""
        # Arrange
        await make_session().login(name_provider=name_provider)
        server.refresh_status = 503
        clock.sleeps.clear()

        # Act
        status = await make_session().status_check()

        # Assert
        assert status.authenticated is False
        assert status.error == "Network error (503): maintenance"
        assert server.paths().count("/auth/refresh") == 3
        assert clock.sleeps == [1, 2]

    async def test_oauth_requests_use_oauth_timeout(
        self, client_config: ClientConfig, mock_http, server: FakeServer, clock: FakeClock
    ) -> None:
        """Given oauth_timeout_seconds, auth endpoints use it and API calls keep the client default."""
        # Arrange
        config = client_config.model_copy(update={"oauth_timeout_seconds": 9})

        def make() -> AuthSession:
            return AuthSession(config, http_client=mock_http(server), sleep=clock.sleep, clock=clock, monotonic=clock)

        # Act
        await make().login(name_provider=name_provider)
        await make().status_check()

        # Assert
        reads = {
            request.url.path.removeprefix("/api"): request.extensions["timeout"]["read"]
            for request in server.requests
        }
        assert reads["/auth/device"] == 9
        assert reads["/auth/token"] == 9
        assert reads["/auth/refresh"] == 9
        assert reads["/user/status"] != 9

    async def test_corrupted_fallback_file(self, no_keyring: None, make_session, client_config: ClientConfig) -> None:
        """Given a truncated encrypted blob, status reports the corruption instead of crashing."""
        # Arrange
        result = await make_session().login(name_provider=name_provider)
        assert result.credential.backend == "encrypted-file"
        client_config.secrets_path.write_text(
            json.dumps({result.identity.id: base64.b64encode(b"short").decode()})
        )

        # Act
        status = await make_session().status_check()

        # Assert
        assert status.authenticated is False
        assert "could not be read" in (status.error or "")
        assert status.storage["backend"] == "encrypted_file"

    async def test_to_dict(self, make_session) -> None:
        await make_session().login("sbp_good", name_provider=name_provider)

        data = (await make_session().status_check()).to_dict()

        assert data["authenticated"] is True
        assert data["identity"]["display_name"] == "test-host"


class TestGetAuthenticatedClient:
    """Tests for get_authenticated_client()."""

    async def test_no_identity(self, make_session) -> None:
        with pytest.raises(NotAuthenticatedError):
            await make_session().get_authenticated_client()

    async def test_identity_without_credential(self, make_session) -> None:
        session = make_session()
        session.identities.get_or_create(name_provider)

        with pytest.raises(NotAuthenticatedError):
            await session.get_authenticated_client()

    async def test_client_is_reused(self, make_session) -> None:
        session = make_session()
        await session.login("sbp_good", name_provider=name_provider)

        assert await session.get_authenticated_client() is await session.get_authenticated_client()


# ============================================================================
# Tests: Logout
# ============================================================================


class TestLogout:
    """Tests for logout()."""

    async def test_revokes_and_removes(self, make_session, server: FakeServer) -> None:
        """Given a logged-in host, the server is told and the secret is removed."""
        # Arrange
        session = make_session()
        login = await session.login("sbp_good", name_provider=name_provider)

        # Act
        result = await session.logout()

        # Assert
        assert result.revoked is True
        assert result.identity_id == login.identity.id
        assert json.loads(server.requests[-1].content) == {"device_id": login.identity.id}
        assert session.vault.retrieve(login.identity.id) is None
        assert session.identities.get() is not None

    async def test_all_and_reset(self, make_session, server: FakeServer) -> None:
        session = make_session()
        await session.login("sbp_good", name_provider=name_provider)

        result = await session.logout(all_identities=True, reset_identity=True)

        assert json.loads(server.requests[-1].content) == {"all_devices": True}
        assert result.identity_reset is True
        assert session.identities.get() is None

    async def test_revoke_failure_still_removes_locally(self, make_session, server: FakeServer) -> None:
        """Given an unreachable server, local credentials are removed anyway."""
        # Arrange
        await make_session().login(name_provider=name_provider)
        server.refresh_status = 401
        session = make_session()

        # Act
        result = await session.logout()

        # Assert
        assert result.revoked is False
        assert result.revoke_error
        assert session.vault.retrieve(result.identity_id) is None

    async def test_not_logged_in(self, make_session) -> None:
        result = await make_session().logout()

        assert result.identity_id is None
        assert result.revoked is False


class TestHeartbeatWiring:
    """Tests for create_heartbeat()."""

    async def test_send_once(self, make_session, server: FakeServer) -> None:
        session = make_session()
        login = await session.login("sbp_good", name_provider=name_provider)

        reporter = await session.create_heartbeat()
        await reporter.send_once()

        assert server.paths()[-1] == f"/workspaces/{login.identity.id}/heartbeat"
        assert reporter.interval == 30
