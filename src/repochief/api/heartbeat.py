"""Periodic liveness reporting for an identity.

Sends an initial heartbeat on start, then one every interval (30s) to
POST /workspaces/{identity_id}/heartbeat with basic process metadata.

Failure handling:
- Each failure increments a retry counter and the next beat is delayed
  by interval * retry_count (linear backoff)
- A success resets the counter
- Once the counter exceeds max_retries the reporter disconnects: the
  on_disconnect callback fires and the loop halts
"""

from __future__ import annotations

__all__ = ["HeartbeatReporter"]

import asyncio
import os
import platform
import socket
import time
import traceback
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from repochief.constants import HEARTBEAT_INTERVAL_SECONDS, HEARTBEAT_MAX_RETRIES
from repochief.exceptions import LOGIN_HINT, RepoChiefError
from repochief.security.auth.token_refresh import ReauthenticationRequiredError
from repochief.utils.logging import get_system_logger

if TYPE_CHECKING:
    from repochief.api.client import APIClient
    from repochief.security.identity import Identity

_system_logger = get_system_logger()

Sleep = Callable[[float], Awaitable[None]]


class HeartbeatReporter:
    """Background heartbeat for one identity.

    Only one loop runs at a time; start() while running is a no-op and
    stop() is idempotent.
    """

    def __init__(
        self,
        client: APIClient,
        identity: Identity | None,
        *,
        interval_seconds: float = HEARTBEAT_INTERVAL_SECONDS,
        max_retries: int = HEARTBEAT_MAX_RETRIES,
        on_heartbeat: Callable[[Any], None] | None = None,
        on_disconnect: Callable[[Exception], None] | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the heartbeat reporter.

        Args:
            client: Authenticated API client.
            identity: Identity to report for (required to start).
            interval_seconds: Delay between successful heartbeats.
            max_retries: Consecutive failures tolerated before disconnecting.
            on_heartbeat: Called with each successful response.
            on_disconnect: Called with the last error when giving up.
            sleep: Coroutine used to wait between beats (tests).
            clock: Monotonic clock for uptime (tests).
        """
        self._client = client
        self._identity = identity
        self.interval = interval_seconds
        self.max_retries = max_retries
        self._on_heartbeat = on_heartbeat
        self._on_disconnect = on_disconnect
        self._sleep = sleep
        self._clock = clock

        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._started_at: float | None = None
        self.retry_count = 0
        self.last_error: Exception | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Send the initial heartbeat and keep reporting in the background.

        Raises:
            ReauthenticationRequiredError: If there is no identity to report for.
        """
        if self._identity is None:
            raise ReauthenticationRequiredError(f"No identity found on this host. {LOGIN_HINT}")
        if self._running:
            return

        self._running = True
        self.retry_count = 0
        self._started_at = self._clock()
        self._task = asyncio.create_task(
            self._heartbeat_loop(),
            name="heartbeat_reporter",
        )

    async def stop(self) -> None:
        """Stop reporting. Safe to call more than once."""
        self._running = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def wait(self) -> None:
        """Block until the loop ends (disconnect or stop())."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def status(self) -> dict[str, Any]:
        """Connection status snapshot."""
        uptime = 0.0
        if self._running and self._started_at is not None:
            uptime = self._clock() - self._started_at
        return {
            "connected": self._running,
            "identity_id": self._identity.id if self._identity else None,
            "retry_count": self.retry_count,
            "uptime": uptime,
        }

    def heartbeat_payload(self) -> dict[str, Any]:
        """Liveness metadata sent with each heartbeat."""
        return {
            "status": "active",
            "metadata": {
                "uptime": self.status()["uptime"],
                "pid": os.getpid(),
                "hostname": socket.gethostname(),
                "runtime": f"python {platform.python_version()}",
            },
        }

    async def send_once(self) -> Any:
        """Send a single heartbeat now.

        Raises:
            ReauthenticationRequiredError: If there is no identity.
            RepoChiefError: If the request fails.
        """
        if self._identity is None:
            raise ReauthenticationRequiredError(f"No identity found on this host. {LOGIN_HINT}")
        return await self._client.send_heartbeat(self._identity.id, self.heartbeat_payload())

    async def _heartbeat_loop(self) -> None:
        """Beat, then wait interval (or interval * retry_count after a failure)."""
        assert self._identity is not None
        identity_id = self._identity.id
        delay = 0.0

        try:
            while self._running:
                if delay:
                    await self._sleep(delay)
                    if not self._running:
                        break

                try:
                    response = await self.send_once()
                except RepoChiefError as e:
                    self.retry_count += 1
                    self.last_error = e
                    if self.retry_count > self.max_retries:
                        self._disconnect(e)
                        return
                    delay = self.interval * self.retry_count
                    _system_logger.warning(
                        {
                            "event": "heartbeat_failed",
                            "message": f"Heartbeat failed, retrying in {delay}s: {e}",
                            "identity_id": identity_id,
                            "retry_count": self.retry_count,
                            "max_retries": self.max_retries,
                        }
                    )
                    continue

                self.retry_count = 0
                self.last_error = None
                delay = self.interval
                if self._on_heartbeat:
                    self._on_heartbeat(response)

        except asyncio.CancelledError:
            raise  # Normal shutdown
        except Exception as e:
            self.last_error = e
            _system_logger.error(
                {
                    "event": "heartbeat_loop_crashed",
                    "error": str(e),
                    "traceback": traceback.format_exc(),
                }
            )
        finally:
            self._running = False

    def _disconnect(self, error: Exception) -> None:
        _system_logger.error(
            {
                "event": "heartbeat_disconnected",
                "message": f"Heartbeat gave up after {self.retry_count} consecutive failures: {error}",
                "identity_id": self._identity.id if self._identity else None,
            }
        )
        self._running = False
        if self._on_disconnect:
            self._on_disconnect(error)
