"""Main CLI entry point for repochief.

Defines the CLI group and registers all subcommands.

Commands:
    auth      - Authentication commands (login, logout, status)
    heartbeat - Report this machine as online

Subcommand help:
    repochief COMMAND -h         Show help for a specific command
"""

from __future__ import annotations

__all__ = ["cli", "main"]

import logging
import sys
from pathlib import Path

import click

from repochief import __version__
from repochief.config import load_client_config
from repochief.constants import CONFIG_DIR_ENV_VAR
from repochief.utils.logging import configure_system_logger_file, set_console_level

from .commands.auth import auth
from .commands.heartbeat import heartbeat


class ReorderedGroup(click.Group):
    """Custom group that shows commands before custom help text."""

    def format_epilog(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        """Add extra help after commands section."""
        formatter.write(
            """
Quick Start:
  repochief auth login             Approve this machine in your browser
  repochief auth status            Check the stored credential

Non-Interactive Setup (CI):
  REPOCHIEF_IDENTITY_NAME=ci-runner repochief auth login --token <PAT>

Environment:
  REPOCHIEF_API_URL        API base URL
  REPOCHIEF_CONFIG_DIR     Where identity, credentials and logs are kept
  REPOCHIEF_AUTO_IDENTITY  "true" to never prompt for a machine name
"""
        )


@click.group(
    cls=ReorderedGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.option("--verbose", is_flag=True, help="Show informational log messages")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar=CONFIG_DIR_ENV_VAR,
    help="Directory for identity, credentials and logs",
)
@click.pass_context
def cli(ctx: click.Context, version: bool, verbose: bool, config_dir: Path | None) -> None:
    """repochief: Authenticate this machine with RepoChief."""
    if version:
        click.echo(f"repochief {__version__}")
        sys.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    config = load_client_config(config_dir)
    if verbose:
        set_console_level(logging.INFO)
    configure_system_logger_file(config.system_log_path)
    ctx.obj = config


# Register commands
cli.add_command(auth)
cli.add_command(heartbeat)


def main() -> None:
    """CLI entry point."""
    cli()
