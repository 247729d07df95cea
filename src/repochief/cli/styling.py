"""CLI output styling utilities.

Visual language for repochief output:
- Cyan bold for section headers and labels
- Green for success (checkmark) and for codes the user must type
- Red for errors (cross)
- Yellow for warnings
- Dim for neutral/empty state messages
"""

from __future__ import annotations

__all__ = [
    "style_code",
    "style_dim",
    "style_error",
    "style_header",
    "style_label",
    "style_success",
    "style_url",
    "style_warning",
]

import click


def style_header(title: str) -> str:
    """Section header, e.g. "--- Identity ---"."""
    return click.style(f"--- {title} ---", fg="cyan", bold=True)


def style_label(label: str) -> str:
    """Field label with colon suffix.

    Example:
        >>> click.echo(style_label("Identity") + f" {identity.display_name}")
        Identity: laptop-darwin-3f9a1c
    """
    return click.style(f"{label}:", fg="cyan", bold=True)


def style_success(message: str) -> str:
    """Success message with checkmark, e.g. "✓ Logged in"."""
    return click.style(f"✓ {message}", fg="green")


def style_error(message: str) -> str:
    """Error message with cross, e.g. "✗ Not authenticated"."""
    return click.style(f"✗ {message}", fg="red")


def style_warning(message: str) -> str:
    """Warning in yellow (no prefix; callers word it)."""
    return click.style(message, fg="yellow")


def style_dim(message: str) -> str:
    """Neutral or secondary information."""
    return click.style(message, dim=True)


def style_code(code: str) -> str:
    """A code the user has to type somewhere (device user code)."""
    return click.style(code, fg="green", bold=True)


def style_url(url: str) -> str:
    return click.style(url, fg="blue", underline=True)
