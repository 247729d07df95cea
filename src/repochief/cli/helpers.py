"""Shared helpers for CLI commands.

- build_session: the one place commands construct an AuthSession
- run_async: run a coroutine from a synchronous click command
- CommandError: maps RepoChiefError to a click error with remediation
"""

from __future__ import annotations

__all__ = [
    "CommandError",
    "build_session",
    "remediation_for",
    "run_async",
]

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

import click

from repochief.config import ClientConfig
from repochief.exceptions import (
    LOGIN_HINT,
    AuthenticationError,
    ConfigWriteError,
    DecryptionError,
    RepoChiefError,
    TransientNetworkError,
)
from repochief.session import AuthSession

T = TypeVar("T")


def build_session(config: ClientConfig) -> AuthSession:
    """Create the per-invocation auth session."""
    return AuthSession(config)


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


def remediation_for(error: RepoChiefError) -> str | None:
    """The command (or action) that fixes an error, if there is one."""
    if isinstance(error, DecryptionError):
        return "Run 'repochief auth logout' and then 'repochief auth login' to store a fresh credential."
    if isinstance(error, AuthenticationError):
        return None if LOGIN_HINT in str(error) else LOGIN_HINT
    if isinstance(error, TransientNetworkError):
        return "Check your network connection and try again."
    if isinstance(error, ConfigWriteError):
        return "Check permissions on the repochief config directory."
    return None


class CommandError(click.ClickException):
    """Fatal command error: cause plus remediation, exits with the error's code."""

    def __init__(self, error: RepoChiefError, action: str) -> None:
        message = f"{action}: {error}"
        hint = remediation_for(error)
        if hint:
            message = f"{message}\n{hint}"
        super().__init__(message)
        self.exit_code = error.exit_code
        self.error = error
