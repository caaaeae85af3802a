"""Logging setup for CLI runs: JSON lines or readable text, both carrying extras."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from imap_backup.config.settings import LoggingSettings

# Attributes every LogRecord has; anything else came in through `extra=`.
_STANDARD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__,
) | {"message", "asctime", "taskName"}

# aioimaplib logs every protocol line (including message bodies) at DEBUG.
_NOISY_LOGGERS: tuple[str, ...] = ("aioimaplib", "aioimaplib.aioimaplib")

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Return the `extra=` fields of a record, JSON-safe.

    Args:
        record: Log record.

    Returns:
        Mapping of extra field name to a JSON-serializable value.
    """
    extras: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_ATTRS or key.startswith("_"):
            continue
        try:
            json.dumps(value)
        except TypeError:
            value = str(value)
        extras[key] = value
    return extras


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; extras become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON.

        Args:
            record: Log record to format.

        Returns:
            JSON string representation.
        """
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(
                timespec="milliseconds",
            ),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **record_extras(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class TextLogFormatter(logging.Formatter):
    """Readable single-line format with extras appended as `key=value`."""

    def __init__(self) -> None:
        super().__init__(fmt=_TEXT_FORMAT, datefmt=_TEXT_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as text."""
        line = super().format(record)
        extras = record_extras(record)
        if not extras:
            return line
        head, sep, tail = line.partition("\n")
        fields = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        return f"{head} [{fields}]{sep}{tail}"


def configure_logging(*, settings: LoggingSettings) -> None:
    """Configure root logging for CLI runs.

    Args:
        settings: Logging settings (level and JSON/human output).
    """
    level_name = settings.level.strip().upper() if settings.level else "INFO"
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter() if settings.json_logs else TextLogFormatter())

    logging.basicConfig(level=level, handlers=[handler], force=True)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
