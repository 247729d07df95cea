"""Log formatting utilities for JSONL output.

Provides ISO 8601 timestamp formatting and secret redaction for the
structured (dict) log messages used throughout repochief.
"""

from __future__ import annotations

__all__ = ["ISO8601Formatter", "REDACTED", "redact_secrets"]

import json
import logging
from datetime import datetime, timezone
from typing import Any

REDACTED = "[REDACTED]"

# Keys whose values must never reach a log sink
_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "access_token",
        "refresh_token",
        "device_code",
        "token",
        "secret",
        "authorization",
        "password",
    }
)


def redact_secrets(data: Any) -> Any:
    """Return a copy of data with secret-bearing values replaced.

    Walks nested dicts and lists. Matching is by key name, case-insensitive.

    Args:
        data: Structured log payload.

    Returns:
        Redacted copy (input is not modified).
    """
    if isinstance(data, dict):
        return {
            key: REDACTED if str(key).lower() in _SECRET_KEYS else redact_secrets(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_secrets(item) for item in data]
    return data


class ISO8601Formatter(logging.Formatter):
    """Custom formatter with ISO 8601 timestamps (UTC) for JSONL output.

    Format: YYYY-MM-DDTHH:MM:SS.sssZ
    Example: 2026-10-19T10:48:37.123Z
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSONL with ISO 8601 timestamp.

        Args:
            record: The log record to format

        Returns:
            str: JSON-formatted log entry with timestamp and level
        """
        timestamp = (
            datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z")
        )

        if isinstance(record.msg, dict):
            log_data = redact_secrets(record.msg)
        else:
            log_data = {"message": record.getMessage()}

        log_entry = {"time": timestamp, "level": record.levelname, **log_data}
        return json.dumps(log_entry, default=str)
