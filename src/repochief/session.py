"""Auth session: the interface command handlers use to authenticate.

One AuthSession is built per process (CLI invocation) and closed at exit.
It owns the shared httpx.AsyncClient and wires together:

    IdentityStore -> CredentialVault -> TokenRefreshCoordinator -> APIClient

Operations:
- login(token=None): device flow, or a personal access token (PAT)
- logout(all_identities=False, reset_identity=False)
- status_check() -> AuthStatus
- get_authenticated_client() -> APIClient
- create_heartbeat() -> HeartbeatReporter

Blocking identity/vault I/O runs in worker threads via asyncio.to_thread.
"""

from __future__ import annotations

__all__ = [
    "AUTH_METHOD_DEVICE_FLOW",
    "AUTH_METHOD_PAT",
    "AuthSession",
    "AuthStatus",
    "LoginResult",
    "LogoutResult",
]

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from repochief import __version__
from repochief.api.client import APIClient
from repochief.api.heartbeat import HeartbeatReporter
from repochief.config import ClientConfig, load_client_config
from repochief.constants import CLI_VERSION_HEADER
from repochief.exceptions import (
    LOGIN_HINT,
    AuthenticationError,
    DecryptionError,
    NotAuthenticatedError,
    RepoChiefError,
)
from repochief.security.auth.device_flow import AuthProtocolError, DeviceFlow, run_device_flow
from repochief.security.auth.token_refresh import StaticTokenProvider, TokenProvider, TokenRefreshCoordinator
from repochief.security.credential_storage import Credential, CredentialVault
from repochief.security.identity import Identity, IdentityStore
from repochief.utils.logging import get_system_logger

AUTH_METHOD_DEVICE_FLOW = "device_flow"
AUTH_METHOD_PAT = "personal_access_token"

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class LoginResult:
    """Outcome of a successful login.

    Attributes:
        identity: Identity the credential is stored under.
        credential: Where the secret was stored.
        method: AUTH_METHOD_DEVICE_FLOW or AUTH_METHOD_PAT.
        user: User info reported by the server, if any.
    """

    identity: Identity
    credential: Credential
    method: str
    user: dict[str, Any] | None = None


@dataclass
class LogoutResult:
    """Outcome of a logout.

    Attributes:
        identity_id: Identity that was logged out, None if there was none.
        revoked: Whether the server confirmed revocation.
        revoke_error: Why server revocation failed (local removal still happened).
        identity_reset: Whether identity.json was deleted.
    """

    identity_id: str | None
    revoked: bool = False
    revoke_error: str | None = None
    identity_reset: bool = False


@dataclass
class AuthStatus:
    """Result of status_check().

    Attributes:
        authenticated: True only if the server accepted our credential.
        identity: Local identity, if one exists.
        user: User info from /user/status.
        error: Why authentication is not usable.
        storage: Credential backend details.
    """

    authenticated: bool
    identity: Identity | None = None
    user: dict[str, Any] | None = None
    error: str | None = None
    storage: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "authenticated": self.authenticated,
            "identity": self.identity.model_dump(mode="json") if self.identity else None,
            "user": self.user,
            "error": self.error,
            "storage": self.storage,
        }


class AuthSession:
    """Per-process authentication service.

    Usage:
        async with AuthSession(load_client_config()) as session:
            client = await session.get_authenticated_client()
            status = await client.get_status()
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        vault: CredentialVault | None = None,
        identity_store: IdentityStore | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the session.

        Args:
            config: Client configuration. Defaults to load_client_config().
            http_client: Shared httpx client. Created (and owned) if omitted.
            vault: Credential vault. Defaults to keychain + encrypted file.
            identity_store: Identity store. Defaults to config.identity_path.
            sleep: Coroutine for polling/backoff/heartbeat waits (tests).
            clock: Epoch clock for token expiry (tests).
            monotonic: Monotonic clock for deadlines and uptime (tests).
        """
        self.config = config or load_client_config()
        self._http = http_client or httpx.AsyncClient(
            timeout=self.config.http_timeout_seconds,
            headers={"User-Agent": f"{CLI_VERSION_HEADER}/{__version__}"},
        )
        self._owns_http = http_client is None
        self.vault = vault or CredentialVault.create(self.config.config_dir)
        self.identities = identity_store or IdentityStore(self.config.identity_path)
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic

        self._client: APIClient | None = None
        self._client_identity_id: str | None = None
        self._provider: TokenProvider | None = None

    async def __aenter__(self) -> AuthSession:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_http:
            await self._http.aclose()

    # =========================================================================
    # Building blocks
    # =========================================================================

    def public_client(self) -> APIClient:
        """API client without a token provider (public endpoints only)."""
        return self._build_client(None)

    def device_flow(self) -> DeviceFlow:
        """Device flow sharing this session's HTTP client."""
        return DeviceFlow(
            self.config.api_url,
            client_id=self.config.client_id,
            scope=self.config.scope,
            http_client=self._http,
            sleep=self._sleep,
            clock=self._monotonic,
            wall_clock=self._clock,
            timeout_seconds=self.config.oauth_timeout_seconds,
        )

    def _build_client(self, provider: TokenProvider | None) -> APIClient:
        return APIClient(
            self._http,
            provider,
            api_url=self.config.api_url,
            max_attempts=self.config.retry_max_attempts,
            base_delay_seconds=self.config.retry_base_delay_seconds,
            sleep=self._sleep,
        )

    def _build_coordinator(self, identity_id: str) -> TokenRefreshCoordinator:
        return TokenRefreshCoordinator(
            self.vault,
            identity_id,
            api_url=self.config.api_url,
            http_client=self._http,
            client_id=self.config.client_id,
            clock=self._clock,
            timeout_seconds=self.config.oauth_timeout_seconds,
            max_attempts=self.config.retry_max_attempts,
            base_delay_seconds=self.config.retry_base_delay_seconds,
            sleep=self._sleep,
        )

    def _install(self, identity_id: str, provider: TokenProvider) -> APIClient:
        self._provider = provider
        self._client = self._build_client(provider)
        self._client_identity_id = identity_id
        return self._client

    def _reset(self) -> None:
        self._provider = None
        self._client = None
        self._client_identity_id = None

    # =========================================================================
    # Login / logout
    # =========================================================================

    async def login(
        self,
        token: str | None = None,
        *,
        name_provider: Callable[[], str] | None = None,
        display_callback: Callable[[str, str, str | None], None] | None = None,
        poll_callback: Callable[[], None] | None = None,
    ) -> LoginResult:
        """Authenticate this host.

        Args:
            token: Personal access token. If omitted, runs the device flow.
            name_provider: Display name source if an identity must be created.
            display_callback: Shows (user_code, verification_uri, verification_uri_complete).
            poll_callback: Called on each device-flow poll.

        Returns:
            LoginResult.

        Raises:
            AuthenticationError: Invalid PAT or device flow failure.
            ConfigWriteError: Identity or credential could not be persisted.
        """
        if token is not None:
            return await self._login_with_token(token, name_provider)
        return await self._login_with_device_flow(name_provider, display_callback, poll_callback)

    async def _login_with_token(
        self,
        token: str,
        name_provider: Callable[[], str] | None,
    ) -> LoginResult:
        token = token.strip()
        if not token:
            raise AuthenticationError("The provided token is empty")

        validation = await self.public_client().validate_token(token)
        if not validation.get("valid"):
            raise AuthenticationError("The provided token is invalid or expired")

        identity = await asyncio.to_thread(self.identities.get_or_create, name_provider)
        credential = await asyncio.to_thread(self.vault.store, identity.id, token)

        user: dict[str, Any] = {"id": validation.get("user_id")}
        if validation.get("user_email"):
            user["email"] = validation["user_email"]

        identity = await self._record_login(identity, AUTH_METHOD_PAT, user.get("id"))
        self._install(identity.id, StaticTokenProvider(token))
        return LoginResult(identity=identity, credential=credential, method=AUTH_METHOD_PAT, user=user)

    async def _login_with_device_flow(
        self,
        name_provider: Callable[[], str] | None,
        display_callback: Callable[[str, str, str | None], None] | None,
        poll_callback: Callable[[], None] | None,
    ) -> LoginResult:
        tokens = await run_device_flow(
            self.device_flow(),
            display_callback=display_callback or (lambda *_: None),
            poll_callback=poll_callback,
        )
        if not tokens.refresh_token:
            raise AuthProtocolError("missing_refresh_token", "Server did not issue a refresh token")

        identity = await asyncio.to_thread(self.identities.get_or_create, name_provider)
        credential = await asyncio.to_thread(self.vault.store, identity.id, tokens.refresh_token)
        identity = await self._record_login(identity, AUTH_METHOD_DEVICE_FLOW, tokens.user_id)

        coordinator = self._build_coordinator(identity.id)
        coordinator.seed(tokens)
        self._install(identity.id, coordinator)

        return LoginResult(
            identity=identity,
            credential=credential,
            method=AUTH_METHOD_DEVICE_FLOW,
            user=tokens.user or ({"id": tokens.user_id} if tokens.user_id else None),
        )

    async def _record_login(self, identity: Identity, method: str, user_id: Any) -> Identity:
        metadata: dict[str, Any] = {"auth_method": method}
        if user_id is not None:
            metadata["user_id"] = user_id
        await asyncio.to_thread(self.identities.update_metadata, metadata)
        return await asyncio.to_thread(self.identities.get) or identity

    async def logout(self, all_identities: bool = False, reset_identity: bool = False) -> LogoutResult:
        """Revoke the credential on the server (best-effort) and remove it locally.

        Args:
            all_identities: Revoke every identity of this user, not just this host.
            reset_identity: Also delete identity.json so the next login creates a new one.

        Returns:
            LogoutResult. Local removal always happens, even if revocation fails.
        """
        logger = get_system_logger()
        identity = await asyncio.to_thread(self.identities.get)
        if identity is None:
            return LogoutResult(identity_id=None)

        result = LogoutResult(identity_id=identity.id)
        try:
            client = await self.get_authenticated_client()
            if all_identities:
                await client.revoke_all_tokens()
            else:
                await client.revoke_identity_token(identity.id)
            result.revoked = True
        except RepoChiefError as e:
            result.revoke_error = str(e)
            logger.warning(
                {
                    "event": "logout_revoke_failed",
                    "message": f"Server logout failed, removing local credentials anyway: {e}",
                    "identity_id": identity.id,
                }
            )
        finally:
            await asyncio.to_thread(self.vault.remove, identity.id)
            self._reset()

        if reset_identity:
            result.identity_reset = await asyncio.to_thread(self.identities.delete)
        return result

    # =========================================================================
    # Status and clients
    # =========================================================================

    async def status_check(self) -> AuthStatus:
        """Check whether this host can make authenticated requests.

        Never raises for credential problems: missing, corrupt or rejected
        credentials are reported as authenticated=False with an error.
        """
        storage = await asyncio.to_thread(self.vault.describe)
        identity = await asyncio.to_thread(self.identities.get)
        if identity is None:
            return AuthStatus(authenticated=False, error="No identity on this host", storage=storage)

        try:
            client = await self.get_authenticated_client()
            status = await client.get_status()
        except RepoChiefError as e:
            return AuthStatus(authenticated=False, identity=identity, error=str(e), storage=storage)

        user = status.get("user") if isinstance(status, dict) else None
        return AuthStatus(
            authenticated=True,
            identity=identity,
            user=user if isinstance(user, dict) else None,
            storage=storage,
        )

    async def get_authenticated_client(self) -> APIClient:
        """Return an API client bound to this host's credential.

        Raises:
            NotAuthenticatedError: No identity or no stored credential, or the
                stored credential cannot be decrypted.
        """
        identity = await asyncio.to_thread(self.identities.get)
        if identity is None:
            raise NotAuthenticatedError()

        if self._client is not None and self._client_identity_id == identity.id:
            return self._client

        try:
            secret = await asyncio.to_thread(self.vault.retrieve, identity.id)
        except DecryptionError as e:
            raise NotAuthenticatedError(f"Stored credential could not be read ({e}). {LOGIN_HINT}") from e
        if secret is None:
            raise NotAuthenticatedError()

        provider: TokenProvider
        if identity.host_metadata.get("auth_method") == AUTH_METHOD_PAT:
            provider = StaticTokenProvider(secret)
        else:
            # The coordinator reads the refresh token from the vault itself
            provider = self._build_coordinator(identity.id)
        return self._install(identity.id, provider)

    async def create_heartbeat(
        self,
        on_heartbeat: Callable[[Any], None] | None = None,
        on_disconnect: Callable[[Exception], None] | None = None,
    ) -> HeartbeatReporter:
        """Build a liveness reporter bound to this session's client.

        Raises:
            NotAuthenticatedError: If the host is not logged in.
        """
        client = await self.get_authenticated_client()
        identity = await asyncio.to_thread(self.identities.get)
        return HeartbeatReporter(
            client,
            identity,
            interval_seconds=self.config.heartbeat_interval_seconds,
            max_retries=self.config.heartbeat_max_retries,
            on_heartbeat=on_heartbeat,
            on_disconnect=on_disconnect,
            sleep=self._sleep,
            clock=self._monotonic,
        )
