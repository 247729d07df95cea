"""Test doubles shared across the repochief test suite.

- MemoryKeyring: keyring backend that keeps passwords in a dict
- FakeClock: manual clock whose async sleep advances it
- FakeServer: path-routing MockTransport handler standing in for the API
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

API_URL = "https://api.repochief.test/api"

Handler = Callable[[httpx.Request], Any]

SESSION_DEVICE_RESPONSE = {
    "device_code": "D1",
    "user_code": "ABCD",
    "verification_uri": "https://repochief.test/device",
    "expires_in": 5,
    "interval": 1,
}


def json_response(status_code: int, body: Any) -> httpx.Response:
    """Build a JSON response for MockTransport handlers."""
    return httpx.Response(status_code, content=json.dumps(body), headers={"Content-Type": "application/json"})


class MemoryKeyring(KeyringBackend):
    """Keyring backend that keeps passwords in a dict."""

    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        try:
            del self.passwords[(service, username)]
        except KeyError:
            raise PasswordDeleteError("Password not found") from None


class FakeClock:
    """Manually advanced clock with an async sleep that advances it.

    Attributes:
        now: Current reading (used as both epoch and monotonic time).
        sleeps: Every duration passed to sleep(), in order.
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Yield so other tasks get to run, like a real sleep
        await asyncio.sleep(0)


class FakeServer:
    """Routes requests by path and records them.

    Attributes:
        token_answers: Responses for /auth/token polls, consumed in order.
        refresh_status: Status code answered on /auth/refresh.
        requests: Every request seen.
    """

    def __init__(self) -> None:
        self.token_answers: list[tuple[int, dict[str, Any]]] = [
            (400, {"error": "authorization_pending"}),
            (200, {"access_token": "A1", "refresh_token": "R1", "expires_in": 3600, "user": {"id": "u1"}}),
        ]
        self.refresh_status = 200
        self.status_code = 200
        self.heartbeat_status = 200
        self.valid_tokens = {"sbp_good"}
        self.requests: list[httpx.Request] = []

    def paths(self) -> list[str]:
        return [request.url.path.removeprefix("/api") for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api")
        auth = request.headers.get("Authorization", "")

        if path == "/auth/device":
            return json_response(200, SESSION_DEVICE_RESPONSE)
        if path == "/auth/token":
            status, body = self.token_answers.pop(0)
            return json_response(status, body)
        if path == "/auth/refresh":
            if self.refresh_status >= 500:
                return json_response(self.refresh_status, {"message": "maintenance"})
            if self.refresh_status != 200:
                return json_response(self.refresh_status, {"error": "invalid_grant"})
            return json_response(200, {"access_token": "A2", "expires_in": 3600})
        if path == "/auth/validate":
            if auth.removeprefix("Bearer ") in self.valid_tokens:
                return json_response(200, {"valid": True, "user_id": "u9", "user_email": "pat@example.com"})
            return json_response(401, {"message": "invalid token"})
        if path == "/user/status":
            return json_response(self.status_code, {"user": {"id": "u1", "email": "dev@example.com"}})
        if path == "/auth/revoke":
            return json_response(200, {"revoked": True})
        if path.endswith("/heartbeat"):
            return json_response(self.heartbeat_status, {"ok": self.heartbeat_status == 200})
        return json_response(404, {"message": "not found"})
