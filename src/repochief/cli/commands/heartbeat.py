"""Heartbeat command for repochief CLI.

Commands:
    heartbeat         - Report this machine as online until interrupted
    heartbeat --once  - Send a single heartbeat and exit
"""

from __future__ import annotations

__all__ = ["heartbeat"]

import asyncio
from typing import Any

import click

from repochief.cli.helpers import CommandError, build_session, run_async
from repochief.config import ClientConfig
from repochief.exceptions import RepoChiefError

from ..styling import style_dim, style_error, style_success


@click.command()
@click.option("--once", is_flag=True, help="Send a single heartbeat and exit")
@click.pass_obj
def heartbeat(config: ClientConfig, once: bool) -> None:
    """Keep this machine marked as online.

    Sends a heartbeat every 30 seconds until interrupted (Ctrl+C). After
    repeated failures the reporter gives up and the command exits non-zero.
    """

    async def _send_once() -> Any:
        async with build_session(config) as session:
            reporter = await session.create_heartbeat()
            return await reporter.send_once()

    disconnect_errors: list[Exception] = []

    def on_heartbeat(_response: Any) -> None:
        click.echo(style_dim("."), nl=False)

    def on_disconnect(error: Exception) -> None:
        disconnect_errors.append(error)

    async def _run() -> None:
        async with build_session(config) as session:
            reporter = await session.create_heartbeat(on_heartbeat=on_heartbeat, on_disconnect=on_disconnect)
            await reporter.start()
            try:
                await reporter.wait()
            finally:
                await reporter.stop()

    try:
        if once:
            run_async(_send_once())
            click.echo(style_success("Heartbeat sent."))
            return

        click.echo(f"Reporting every {config.heartbeat_interval_seconds:.0f}s (Ctrl+C to stop)", nl=False)
        run_async(_run())
    except (KeyboardInterrupt, asyncio.CancelledError):
        click.echo()
        click.echo(style_dim("Stopped."))
        return
    except RepoChiefError as e:
        raise CommandError(e, "Heartbeat failed") from e

    click.echo()
    if disconnect_errors:
        error = disconnect_errors[-1]
        click.echo(style_error("Disconnected after repeated heartbeat failures."))
        if isinstance(error, RepoChiefError):
            raise CommandError(error, "Heartbeat failed")
        raise click.ClickException(f"Heartbeat failed: {error}")
