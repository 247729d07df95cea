"""Logging utilities for repochief."""

from repochief.utils.logging.iso_formatter import ISO8601Formatter, redact_secrets
from repochief.utils.logging.system_logger import (
    ConsoleFormatter,
    configure_system_logger_file,
    get_system_logger,
    set_console_level,
)

__all__ = [
    "ConsoleFormatter",
    "ISO8601Formatter",
    "configure_system_logger_file",
    "get_system_logger",
    "redact_secrets",
    "set_console_level",
]
