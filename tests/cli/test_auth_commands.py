"""CLI tests for auth and heartbeat commands.

Tests cover:
- auth login (device flow and --token), including failures and exit codes
- auth status (text and --json), always exiting 0
- auth logout (--all, --reset)
- heartbeat --once and disconnect handling
- top-level --version / help
"""

from __future__ import annotations

import json

import httpx
import pytest
from click.testing import CliRunner

from tests.helpers import FakeServer
from repochief import __version__
from repochief.cli.main import cli
from repochief.config import ClientConfig
from repochief.session import AuthSession

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def fake_api(monkeypatch: pytest.MonkeyPatch, server: FakeServer) -> FakeServer:
    """Route every command's session to the fake API without real waits."""

    async def no_sleep(seconds: float) -> None:
        pass

    def build_session(config: ClientConfig) -> AuthSession:
        return AuthSession(
            config,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(server)),
            sleep=no_sleep,
        )

    monkeypatch.setattr("repochief.cli.commands.auth.build_session", build_session)
    monkeypatch.setattr("repochief.cli.commands.heartbeat.build_session", build_session)
    return server


def login_with_token(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["auth", "login", "--token", "sbp_good", "--name", "ci-runner"])
    assert result.exit_code == 0, result.output


# ============================================================================
# Tests: auth login
# ============================================================================


class TestLogin:
    """Tests for 'repochief auth login'."""

    def test_device_flow(self, runner: CliRunner) -> None:
        """Given approval on the second poll, the code is shown and login succeeds."""
        # Act
        result = runner.invoke(cli, ["auth", "login", "--no-browser", "--name", "laptop"])

        # Assert
        assert result.exit_code == 0, result.output
        assert "ABCD" in result.output
        assert "Authentication successful!" in result.output
        assert "Machine: laptop" in result.output
        assert "Refresh token stored in: OS keychain" in result.output

    def test_token(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["auth", "login", "--token", "sbp_good", "--name", "ci-runner"])

        assert result.exit_code == 0, result.output
        assert "Logged in as: pat@example.com" in result.output
        assert "Token stored in: OS keychain" in result.output

    def test_invalid_token_exits_with_auth_code(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["auth", "login", "--token", "sbp_bad"])

        assert result.exit_code == 13
        assert "Authentication failed" in result.output
        assert "repochief auth login" in result.output

    def test_denied(self, runner: CliRunner, server: FakeServer) -> None:
        server.token_answers = [(400, {"error": "access_denied"})]

        result = runner.invoke(cli, ["auth", "login", "--no-browser"])

        assert result.exit_code == 13
        assert "Authentication was denied" in result.output

    def test_invalid_name(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["auth", "login", "--name", "   "])

        assert result.exit_code == 2
        assert "--name" in result.output

    def test_name_from_environment(self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("REPOCHIEF_IDENTITY_NAME", "env-runner")

        result = runner.invoke(cli, ["auth", "login", "--token", "sbp_good"])

        assert result.exit_code == 0, result.output
        assert "Machine: env-runner" in result.output


# ============================================================================
# Tests: auth status
# ============================================================================


class TestStatus:
    """Tests for 'repochief auth status'."""

    def test_not_logged_in(self, runner: CliRunner) -> None:
        """Given no credential, status explains how to log in and exits 0."""
        # Act
        result = runner.invoke(cli, ["auth", "status"])

        # Assert
        assert result.exit_code == 0
        assert "Not authenticated" in result.output
        assert "repochief auth login" in result.output

    def test_logged_in(self, runner: CliRunner) -> None:
        login_with_token(runner)

        result = runner.invoke(cli, ["auth", "status"])

        assert result.exit_code == 0
        assert "Authenticated" in result.output
        assert "dev@example.com" in result.output
        assert "ci-runner" in result.output
        assert "personal access token" in result.output

    def test_json(self, runner: CliRunner) -> None:
        login_with_token(runner)

        result = runner.invoke(cli, ["auth", "status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["authenticated"] is True
        assert data["identity"]["display_name"] == "ci-runner"
        assert data["storage"]["backend"] == "keychain"

    def test_expired_session(self, runner: CliRunner, server: FakeServer) -> None:
        """Given a rejected refresh token, status reports it without failing."""
        # Arrange
        runner.invoke(cli, ["auth", "login", "--no-browser", "--name", "laptop"])
        server.refresh_status = 401

        # Act
        result = runner.invoke(cli, ["auth", "status", "--json"])

        # Assert
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["authenticated"] is False
        assert "repochief auth login" in data["error"]

    def test_refresh_outage_is_not_expired(self, runner: CliRunner, server: FakeServer) -> None:
        """Given a refresh endpoint answering 503, status keeps the server's message."""
        # Arrange
        runner.invoke(cli, ["auth", "login", "--no-browser", "--name", "laptop"])
        server.refresh_status = 503

        # Act
        result = runner.invoke(cli, ["auth", "status", "--json"])

        # Assert
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["authenticated"] is False
        assert data["error"] == "Network error (503): maintenance"
        assert server.paths().count("/auth/refresh") == 3


# ============================================================================
# Tests: auth logout
# ============================================================================


class TestLogout:
    """Tests for 'repochief auth logout'."""

    def test_not_logged_in(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["auth", "logout"])

        assert result.exit_code == 0
        assert "Not logged in." in result.output

    def test_logout(self, runner: CliRunner) -> None:
        login_with_token(runner)

        result = runner.invoke(cli, ["auth", "logout"])

        assert result.exit_code == 0
        assert "Logged out from this machine." in result.output
        assert "Local credentials removed." in result.output
        assert "Not authenticated" in runner.invoke(cli, ["auth", "status"]).output

    def test_logout_all_and_reset(self, runner: CliRunner, server: FakeServer) -> None:
        login_with_token(runner)

        result = runner.invoke(cli, ["auth", "logout", "--all", "--reset"])

        assert result.exit_code == 0
        assert "Logged out from all machines." in result.output
        assert "Machine identity reset." in result.output
        assert json.loads(server.requests[-1].content) == {"all_devices": True}


# ============================================================================
# Tests: heartbeat
# ============================================================================


class TestHeartbeat:
    """Tests for 'repochief heartbeat'."""

    def test_once(self, runner: CliRunner, server: FakeServer) -> None:
        login_with_token(runner)

        result = runner.invoke(cli, ["heartbeat", "--once"])

        assert result.exit_code == 0, result.output
        assert "Heartbeat sent." in result.output
        assert server.paths()[-1].endswith("/heartbeat")

    def test_requires_login(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["heartbeat", "--once"])

        assert result.exit_code == 13
        assert "repochief auth login" in result.output

    def test_disconnect_exits_non_zero(self, runner: CliRunner, server: FakeServer) -> None:
        """Given a failing heartbeat endpoint, the reporter gives up and the command fails."""
        # Arrange
        login_with_token(runner)
        server.heartbeat_status = 503

        # Act
        result = runner.invoke(cli, ["heartbeat"])

        # Assert
        assert result.exit_code == 14
        assert "Disconnected after repeated heartbeat failures." in result.output

    def test_refresh_outage_exits_transient(self, runner: CliRunner, server: FakeServer) -> None:
        """Given an unreachable refresh endpoint, the hint is about the network, not login."""
        # Arrange
        runner.invoke(cli, ["auth", "login", "--no-browser", "--name", "laptop"])
        server.refresh_status = 503

        # Act
        result = runner.invoke(cli, ["heartbeat", "--once"])

        # Assert
        assert result.exit_code == 14
        assert "maintenance" in result.output
        assert "Check your network connection" in result.output
        assert "auth login" not in result.output


# ============================================================================
# Tests: top level
# ============================================================================


class TestMain:
    """Tests for the root command."""

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "auth" in result.output
        assert "heartbeat" in result.output
        assert "REPOCHIEF_CONFIG_DIR" in result.output
