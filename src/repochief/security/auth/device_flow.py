"""OAuth Device Authorization Flow (RFC 8628) for CLI authentication.

User runs `repochief auth login`, sees a code, approves it in a browser
(possibly on another device) while the CLI polls for completion.

This is the same pattern as `gh auth login`, `aws sso login`, `gcloud auth login`.

Flow:
1. POST /auth/device -> device_code, user_code, verification_uri
2. Display: "Go to https://... and enter code: XXXX-XXXX"
3. POST /auth/token every `interval` seconds until a terminal answer
4. Caller stores the refresh token in the credential vault

Polling rules:
- authorization_pending: keep the current interval
- slow_down: double the interval (never reset for this session)
- network failure / 5xx: wait min(interval * 2, 30s), interval unchanged
- no poll is scheduled past the session's expiry
"""

from __future__ import annotations

__all__ = [
    "AuthDeniedError",
    "AuthExpiredError",
    "AuthInitError",
    "AuthProtocolError",
    "DeviceAuthorizationSession",
    "DeviceFlow",
    "DeviceFlowError",
    "DeviceFlowState",
    "run_device_flow",
]

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, NoReturn

import httpx

from repochief.constants import (
    DEFAULT_CLIENT_ID,
    DEFAULT_SCOPES,
    DEVICE_CODE_ENDPOINT,
    DEVICE_CODE_GRANT_TYPE,
    DEVICE_FLOW_MAX_BACKOFF_SECONDS,
    DEVICE_FLOW_POLL_INTERVAL_SECONDS,
    OAUTH_CLIENT_TIMEOUT_SECONDS,
    TOKEN_ENDPOINT,
)
from repochief.exceptions import LOGIN_HINT, AuthenticationError
from repochief.security.auth.token_parser import OAuthTokens, parse_token_response
from repochief.utils.logging import get_system_logger

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


class DeviceFlowState(str, Enum):
    """Where a device flow is in its lifecycle."""

    REQUESTING_CODE = "requesting_code"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    EXPIRED = "expired"
    ERROR = "error"


class DeviceFlowError(AuthenticationError):
    """Device flow specific errors."""

    failure_type = "device_flow_error"


class AuthInitError(DeviceFlowError):
    """The device-code request failed."""

    failure_type = "device_flow_init_failed"


class AuthDeniedError(DeviceFlowError):
    """User denied the authorization request."""

    failure_type = "device_flow_denied"


class AuthExpiredError(DeviceFlowError):
    """Device code expired before user authenticated."""

    failure_type = "device_flow_expired"


class AuthProtocolError(DeviceFlowError):
    """Server answered the token poll with an unexpected error code.

    Attributes:
        code: The OAuth error code from the response.
    """

    failure_type = "device_flow_protocol_error"

    def __init__(self, code: str, description: str | None = None) -> None:
        detail = f": {description}" if description and description != code else ""
        super().__init__(f"Authorization failed ({code}){detail}")
        self.code = code


@dataclass
class DeviceAuthorizationSession:
    """Device-code response plus the absolute deadline for polling.

    Attributes:
        device_code: Code used to poll for tokens (don't show to user).
        user_code: Code user enters in browser (e.g., "HDFC-LQRT").
        verification_uri: URL user opens to authenticate.
        verification_uri_complete: URL with code embedded (optional).
        expires_in: Seconds the codes were valid for when issued.
        expires_at: Clock reading at which polling must stop.
        interval: Current polling interval in seconds.
    """

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str | None
    expires_in: int
    expires_at: float
    interval: float

    @classmethod
    def from_response(cls, data: dict[str, Any], now: float) -> DeviceAuthorizationSession:
        """Parse the device-code response.

        Raises:
            KeyError: If a required field is missing.
        """
        expires_in = int(data["expires_in"])
        return cls(
            device_code=data["device_code"],
            user_code=data["user_code"],
            verification_uri=data["verification_uri"],
            verification_uri_complete=data.get("verification_uri_complete"),
            expires_in=expires_in,
            expires_at=now + expires_in,
            interval=float(data.get("interval") or DEVICE_FLOW_POLL_INTERVAL_SECONDS),
        )


class DeviceFlow:
    """OAuth Device Authorization Flow implementation.

    Sleep and clock are injectable so tests can drive polling cadence
    without real time passing.

    Usage:
        async with DeviceFlow(api_url) as flow:
            session = await flow.request_code()
            print(f"Go to {session.verification_uri}")
            print(f"Enter code: {session.user_code}")
            tokens = await flow.poll(session)
    """

    def __init__(
        self,
        api_url: str,
        client_id: str = DEFAULT_CLIENT_ID,
        scope: str = " ".join(DEFAULT_SCOPES),
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
        wall_clock: Clock = time.time,
        timeout_seconds: float = OAUTH_CLIENT_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize device flow.

        Args:
            api_url: API base URL the auth endpoints are relative to.
            client_id: OAuth client id.
            scope: Space-separated scopes to request.
            http_client: Optional httpx client (shared or for testing).
            sleep: Coroutine used to wait between polls.
            clock: Monotonic clock used for the polling deadline.
            wall_clock: Epoch clock used for token expiry.
            timeout_seconds: Timeout for each device-code and token request.
        """
        self._client_id = client_id
        self._scope = scope
        self._timeout = timeout_seconds
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = http_client is None
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock
        self._polling = False
        self.state = DeviceFlowState.REQUESTING_CODE

        base = api_url.rstrip("/")
        self._device_code_url = f"{base}{DEVICE_CODE_ENDPOINT}"
        self._token_url = f"{base}{TOKEN_ENDPOINT}"

    async def __aenter__(self) -> DeviceFlow:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def request_code(self) -> DeviceAuthorizationSession:
        """Request a device code.

        Returns:
            DeviceAuthorizationSession with user_code and verification_uri.

        Raises:
            AuthInitError: If the request fails or the response is malformed.
        """
        self.state = DeviceFlowState.REQUESTING_CODE
        try:
            response = await self._client.post(
                self._device_code_url,
                json={"client_id": self._client_id, "scope": self._scope},
                timeout=self._timeout,
            )
            response.raise_for_status()
            session = DeviceAuthorizationSession.from_response(response.json(), self._clock())
        except httpx.HTTPStatusError as e:
            error_msg = _error_fields(e.response)[1] or str(e)
            self.state = DeviceFlowState.ERROR
            raise AuthInitError(f"Failed to initiate device flow: {error_msg}") from e
        except httpx.HTTPError as e:
            self.state = DeviceFlowState.ERROR
            raise AuthInitError(f"Failed to initiate device flow: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            self.state = DeviceFlowState.ERROR
            raise AuthInitError(f"Malformed device code response: {e}") from e

        self.state = DeviceFlowState.AWAITING_AUTHORIZATION
        return session

    async def poll(
        self,
        session: DeviceAuthorizationSession,
        on_poll: Callable[[], None] | None = None,
    ) -> OAuthTokens:
        """Poll the token endpoint until the user completes authentication.

        The first request goes out one interval after the call. Cancelling
        the calling task cancels the pending wait.

        Args:
            session: Response from request_code(). Its interval is updated on slow_down.
            on_poll: Optional callback called before each request (progress display).

        Returns:
            OAuthTokens from the authorization server.

        Raises:
            AuthExpiredError: If the device code expires.
            AuthDeniedError: If the user denies authorization.
            AuthProtocolError: For any other error code.
            DeviceFlowError: If another poll is already running on this flow.
        """
        if self._polling:
            raise DeviceFlowError("A device flow poll is already in progress")
        self._polling = True
        self.state = DeviceFlowState.AWAITING_AUTHORIZATION
        try:
            return await self._poll_until_terminal(session, on_poll)
        finally:
            self._polling = False

    async def _poll_until_terminal(
        self,
        session: DeviceAuthorizationSession,
        on_poll: Callable[[], None] | None,
    ) -> OAuthTokens:
        logger = get_system_logger()
        delay = session.interval

        while True:
            remaining = session.expires_at - self._clock()
            if remaining <= delay:
                # Next tick would land at or past the deadline
                if remaining > 0:
                    await self._sleep(remaining)
                self._expire()

            await self._sleep(delay)

            if on_poll:
                on_poll()

            try:
                response = await self._client.post(
                    self._token_url,
                    json={
                        "device_code": session.device_code,
                        "client_id": self._client_id,
                        "grant_type": DEVICE_CODE_GRANT_TYPE,
                    },
                    timeout=self._timeout,
                )
            except httpx.TransportError as e:
                delay = min(session.interval * 2, DEVICE_FLOW_MAX_BACKOFF_SECONDS)
                logger.info(
                    {
                        "event": "device_flow_poll_failed",
                        "message": f"Network error polling for token, retrying in {delay}s: {e}",
                        "error_type": type(e).__name__,
                    }
                )
                continue

            if response.status_code >= 500:
                delay = min(session.interval * 2, DEVICE_FLOW_MAX_BACKOFF_SECONDS)
                logger.info(
                    {
                        "event": "device_flow_poll_failed",
                        "message": f"Server error {response.status_code} polling for token, retrying in {delay}s",
                        "status_code": response.status_code,
                    }
                )
                continue

            if response.status_code == 200:
                try:
                    tokens = parse_token_response(response.json(), now=self._wall_clock())
                except ValueError as e:
                    self.state = DeviceFlowState.ERROR
                    raise AuthProtocolError("invalid_token_response", str(e)) from e
                self.state = DeviceFlowState.AUTHORIZED
                return tokens

            error, error_desc = _error_fields(response)

            if error == "authorization_pending":
                delay = session.interval
                continue

            if error == "slow_down":
                session.interval *= 2
                delay = session.interval
                logger.info(
                    {
                        "event": "device_flow_slow_down",
                        "message": f"Server asked to slow down, polling every {session.interval}s",
                    }
                )
                continue

            if error == "access_denied":
                self.state = DeviceFlowState.DENIED
                raise AuthDeniedError(f"Authorization was denied. {LOGIN_HINT}")

            if error == "expired_token":
                self._expire()

            self.state = DeviceFlowState.ERROR
            raise AuthProtocolError(error or f"http_{response.status_code}", error_desc)

    def _expire(self) -> NoReturn:
        self.state = DeviceFlowState.EXPIRED
        raise AuthExpiredError(f"Device code expired. {LOGIN_HINT}")


def _error_fields(response: httpx.Response) -> tuple[str, str | None]:
    """Extract (error, error_description) from an OAuth error response."""
    try:
        data = response.json()
    except ValueError:
        return "", None
    if not isinstance(data, dict):
        return "", None
    error = data.get("error")
    desc = data.get("error_description") or data.get("message")
    return (error if isinstance(error, str) else ""), (desc if isinstance(desc, str) else None)


async def run_device_flow(
    flow: DeviceFlow,
    display_callback: Callable[[str, str, str | None], None],
    poll_callback: Callable[[], None] | None = None,
) -> OAuthTokens:
    """Run the complete device flow with callbacks for display.

    Args:
        flow: Device flow to drive.
        display_callback: Called with (user_code, verification_uri, verification_uri_complete)
            to display authentication instructions to user.
        poll_callback: Optional callback called on each poll iteration.

    Returns:
        OAuthTokens from the authorization server.

    Raises:
        DeviceFlowError: If authentication fails.

    Example:
        def show_code(user_code, uri, uri_complete):
            print(f"Go to: {uri}")
            print(f"Enter code: {user_code}")

        tokens = await run_device_flow(flow, display_callback=show_code)
    """
    session = await flow.request_code()

    display_callback(
        session.user_code,
        session.verification_uri,
        session.verification_uri_complete,
    )

    return await flow.poll(session, on_poll=poll_callback)
