"""Command-line interface for repochief.

Provides the auth commands (login, logout, status) and the heartbeat
command on top of repochief.session.AuthSession.
"""

from .main import cli, main

__all__ = ["cli", "main"]
