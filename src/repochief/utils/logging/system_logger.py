"""System logger for operational events.

This module provides a singleton system logger for everything the
credential subsystem wants an operator to be able to see (keychain
fallbacks, refresh failures, heartbeat retries, migrations).

Logging strategy:
- Console (stderr): WARNING and above by default; the CLI's --verbose
  flag lowers it to INFO via set_console_level()
- File (system.jsonl): Only issues (WARNING, ERROR, CRITICAL), added once
  the config directory is known via configure_system_logger_file()

Messages are dicts ({"event": ..., "message": ...}); secret-bearing keys
are redacted by the formatters.
"""

from __future__ import annotations

__all__ = [
    "ConsoleFormatter",
    "configure_system_logger_file",
    "get_system_logger",
    "set_console_level",
]

import logging
import sys
from pathlib import Path

from repochief.constants import APP_NAME
from repochief.utils.file_helpers import set_secure_permissions
from repochief.utils.logging.iso_formatter import ISO8601Formatter


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output.

    Extracts 'message' or 'event' field from dict messages for cleaner stderr output.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for human-readable console output.

        Args:
            record: The log record to format.

        Returns:
            str: Formatted log message with level prefix.
        """
        if isinstance(record.msg, dict):
            msg = record.msg.get("message") or record.msg.get("event", "")
            return f"{record.levelname}: {msg}"
        return f"{record.levelname}: {record.getMessage()}"


# Module-level singleton logger - initialized on first use
_system_logger: logging.Logger | None = None
_console_handler: logging.Handler | None = None
_file_handler_path: Path | None = None


def get_system_logger() -> logging.Logger:
    """Get the singleton system logger instance.

    Creates the logger on first call with a stderr handler only.

    Returns:
        logging.Logger: Configured system logger instance.

    Example:
        >>> logger = get_system_logger()
        >>> logger.warning({"event": "keyring_store_failed", "message": "..."})
    """
    global _system_logger, _console_handler

    if _system_logger is not None:
        return _system_logger

    # Base logger accepts INFO; handlers decide what they emit
    _system_logger = logging.getLogger(f"{APP_NAME}.system")
    _system_logger.setLevel(logging.INFO)
    _system_logger.propagate = False

    for handler in _system_logger.handlers:
        handler.close()
    _system_logger.handlers.clear()

    _console_handler = logging.StreamHandler(sys.stderr)
    _console_handler.setLevel(logging.WARNING)
    _console_handler.setFormatter(ConsoleFormatter())
    _system_logger.addHandler(_console_handler)

    return _system_logger


def set_console_level(level: int) -> None:
    """Change what the stderr handler emits (e.g. INFO for --verbose).

    Args:
        level: logging level for the console handler.
    """
    get_system_logger()
    if _console_handler is not None:
        _console_handler.setLevel(level)


def configure_system_logger_file(log_path: Path) -> None:
    """Attach the JSONL file handler (WARNING and above).

    Only the first call takes effect. If the log directory cannot be
    created the logger keeps writing to stderr only.

    Args:
        log_path: Path to the system log file.
    """
    global _file_handler_path

    if _file_handler_path is not None:
        return

    logger = get_system_logger()

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        set_secure_permissions(log_path.parent, is_directory=True)
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    except OSError as e:
        logger.debug(
            {
                "event": "system_log_file_unavailable",
                "message": f"Cannot open system log file, using stderr only: {e}",
                "path": str(log_path),
            }
        )
        return

    file_handler.setLevel(logging.WARNING)
    file_handler.setFormatter(ISO8601Formatter())
    logger.addHandler(file_handler)
    _file_handler_path = log_path
