"""Authentication commands for repochief CLI.

Commands:
    auth login    - Authenticate via browser (Device Flow) or --token (PAT)
    auth logout   - Revoke and clear stored credentials
    auth status   - Show authentication status
"""

from __future__ import annotations

__all__ = ["auth"]

import json as json_module
import webbrowser
from typing import Any

import click

from repochief.cli.helpers import CommandError, build_session, run_async
from repochief.cli.prompts import prompt_identity_name
from repochief.config import ClientConfig
from repochief.exceptions import LOGIN_HINT, RepoChiefError
from repochief.security.auth.device_flow import AuthDeniedError, AuthExpiredError
from repochief.security.identity import IdentityNameProvider
from repochief.session import AUTH_METHOD_PAT, AuthStatus, LoginResult, LogoutResult

from ..styling import (
    style_code,
    style_dim,
    style_error,
    style_header,
    style_label,
    style_success,
    style_url,
    style_warning,
)


@click.group()
def auth() -> None:
    """Authentication commands."""
    pass


@auth.command()
@click.option("--token", help="Use a Personal Access Token instead of the browser flow")
@click.option("--no-browser", is_flag=True, help="Don't automatically open browser")
@click.option("--name", "identity_name", help="Name for this machine (first login only)")
@click.pass_obj
def login(config: ClientConfig, token: str | None, no_browser: bool, identity_name: str | None) -> None:
    """Authenticate this machine with RepoChief.

    Opens your browser to approve a one-time code (same pattern as
    'gh auth login'). The refresh token is stored in your OS keychain,
    or in an encrypted file when no keychain is available.
    """
    try:
        name_provider = IdentityNameProvider(explicit_name=identity_name, prompt=prompt_identity_name)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--name") from e

    def display_callback(
        user_code: str,
        verification_uri: str,
        verification_uri_complete: str | None,
    ) -> None:
        """Display authentication instructions to user."""
        auth_url = verification_uri_complete or f"{verification_uri}?user_code={user_code}"

        click.echo(style_header("Authentication Required"))
        click.echo()
        click.echo(f"  1. Open: {style_url(verification_uri)}")
        click.echo(f"  2. Enter code: {style_code(user_code)}")
        click.echo()

        if not no_browser:
            try:
                if webbrowser.open(auth_url):
                    click.echo("  Browser opened automatically.")
            except (OSError, webbrowser.Error) as e:
                click.echo(style_dim(f"  (Could not open browser automatically: {e})"))
            click.echo()

        click.echo("Waiting for authentication", nl=False)

    def poll_callback() -> None:
        """Show progress while polling."""
        click.echo(".", nl=False)

    async def _login() -> LoginResult:
        async with build_session(config) as session:
            return await session.login(
                token,
                name_provider=name_provider,
                display_callback=display_callback,
                poll_callback=poll_callback,
            )

    if token is None:
        click.echo("Starting authentication...")
        click.echo()

    try:
        result = run_async(_login())
    except AuthExpiredError as e:
        click.echo()
        raise CommandError(e, "Authentication timed out") from e
    except AuthDeniedError as e:
        click.echo()
        raise CommandError(e, "Authentication was denied") from e
    except RepoChiefError as e:
        click.echo()
        raise CommandError(e, "Authentication failed") from e

    if token is None:
        click.echo()  # Newline after dots
        click.echo()

    click.echo(click.style(style_success("Authentication successful!"), bold=True))
    user = result.user or {}
    if user.get("email"):
        click.echo(f"  Logged in as: {user['email']}")
    click.echo(f"  Machine: {result.identity.display_name} ({result.identity.id})")
    storage = "OS keychain" if result.credential.backend == "native" else "encrypted file"
    kind = "Token" if result.method == AUTH_METHOD_PAT else "Refresh token"
    click.echo(f"  {kind} stored in: {storage}")


@auth.command()
@click.option("--all", "all_identities", is_flag=True, help="Revoke access on all your machines")
@click.option("--reset", "reset_identity", is_flag=True, help="Also forget this machine's identity")
@click.pass_obj
def logout(config: ClientConfig, all_identities: bool, reset_identity: bool) -> None:
    """Revoke and clear stored credentials.

    Server-side revocation is best-effort: local credentials are removed
    even if the server cannot be reached.
    """

    async def _logout() -> LogoutResult:
        async with build_session(config) as session:
            return await session.logout(all_identities=all_identities, reset_identity=reset_identity)

    try:
        result = run_async(_logout())
    except RepoChiefError as e:
        raise CommandError(e, "Logout failed") from e

    if result.identity_id is None:
        click.echo(style_dim("Not logged in."))
        return

    if result.revoked:
        scope = "all machines" if all_identities else "this machine"
        click.echo(style_success(f"Logged out from {scope}."))
    else:
        click.echo(style_warning(f"Server logout failed: {result.revoke_error}"))
    click.echo(style_success("Local credentials removed."))
    if result.identity_reset:
        click.echo(style_success("Machine identity reset."))


@auth.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def status(config: ClientConfig, as_json: bool) -> None:
    """Show authentication status.

    Checks the stored credential against the server and shows the
    machine identity and storage backend.
    """

    async def _status() -> AuthStatus:
        async with build_session(config) as session:
            return await session.status_check()

    result = run_async(_status())

    if as_json:
        click.echo(json_module.dumps(result.to_dict(), indent=2))
        return

    _print_status(result)


def _print_status(result: AuthStatus) -> None:
    if result.authenticated:
        click.echo(style_success("Authenticated"))
    else:
        click.echo(style_error("Not authenticated"))
        if result.error:
            click.echo(style_dim(f"  {result.error}"))
    click.echo()

    user: dict[str, Any] = result.user or {}
    if user:
        click.echo(style_header("Account"))
        if user.get("email"):
            click.echo(f"  {style_label('Email')} {user['email']}")
        click.echo(f"  {style_label('Plan')} {user.get('plan') or 'Free'}")
        click.echo()

    if result.identity is not None:
        identity = result.identity
        click.echo(style_header("Machine"))
        click.echo(f"  {style_label('ID')} {identity.id}")
        click.echo(f"  {style_label('Name')} {identity.display_name}")
        click.echo(f"  {style_label('Registered')} {identity.created_at:%Y-%m-%d}")
        method = identity.host_metadata.get("auth_method")
        if method:
            click.echo(f"  {style_label('Login method')} {method.replace('_', ' ')}")
        click.echo()

    if result.storage:
        click.echo(style_header("Credential Storage"))
        click.echo(f"  {style_label('Backend')} {result.storage.get('backend', 'unknown')}")
        detail = result.storage.get("keyring_backend") or result.storage.get("location")
        if detail:
            click.echo(f"  {style_dim(detail)}")
        click.echo()

    if not result.authenticated:
        click.echo(LOGIN_HINT)
