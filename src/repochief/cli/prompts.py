"""Interactive prompt helpers for CLI commands."""

from __future__ import annotations

__all__ = ["prompt_identity_name", "prompt_with_timeout"]

import threading

import click

from repochief.cli.styling import style_dim


def prompt_with_timeout(text: str, default: str, timeout_seconds: float) -> str | None:
    """Prompt on a daemon thread and give up after timeout_seconds.

    A prompt nobody answers (unattended terminal) must not hang the
    command. The abandoned reader thread dies with the process.

    Args:
        text: Prompt text.
        default: Value shown as default (returned when the user presses Enter).
        timeout_seconds: How long to wait for an answer.

    Returns:
        The answer, or None on timeout, EOF or Ctrl-C.
    """
    answer: list[str] = []

    def ask() -> None:
        try:
            answer.append(click.prompt(text, default=default, show_default=True))
        except (click.Abort, EOFError):
            pass

    reader = threading.Thread(target=ask, name="identity-name-prompt", daemon=True)
    reader.start()
    reader.join(timeout_seconds)

    if reader.is_alive():
        click.echo()
        click.echo(style_dim(f"No answer after {timeout_seconds:.0f}s, using '{default}'."))
        return None
    return answer[0] if answer else None


def prompt_identity_name(default: str, timeout_seconds: float) -> str | None:
    """Ask for the name of this host's identity (shown in the web UI)."""
    return prompt_with_timeout("Name for this machine", default, timeout_seconds)
