"""repochief: credential and session management for the RepoChief CLI."""

__all__ = ["__version__"]

__version__ = "0.4.0"
