"""
Structured JSON logging utilities.

Background coordinators (migration jobs, health monitors, polling) run
unattended, so their logs are emitted as single-line JSON objects that
carry job and provider context as first-class fields.
"""

import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

PACKAGE_LOGGER = "helpdesk_storage"

# Attributes every LogRecord has; anything else arrived through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Context fields placed right after the message, in this order
CONTEXT_FIELDS = ("provider", "job_id", "table")


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredJsonFormatter(logging.Formatter):
    """
    One JSON object per record: timestamp (UTC, from the record's creation
    time), level, logger, message, then provider/job_id/table when present,
    then any other ``extra`` fields and the formatted exception.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        for key in CONTEXT_FIELDS:
            if key in extras:
                entry[key] = _json_safe(extras.pop(key))
        entry.update((key, _json_safe(value)) for key, value in extras.items())

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_structured_logging(
    level: int | str | None = None,
    logger_name: str | None = PACKAGE_LOGGER,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Route storage layer logs through the JSON formatter.

    Args:
        level: Logging level; defaults to HELPDESK_LOG_LEVEL, else INFO
        logger_name: Logger to configure (default: the package logger; None for root)
        stream: Output stream (default: stdout)

    Returns:
        The configured logger, with any previous handlers replaced
    """
    if level is None:
        level = os.environ.get("HELPDESK_LOG_LEVEL", "INFO").upper()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())

    logger = logging.getLogger(logger_name)
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    return logger


def get_storage_logger(name: str) -> logging.Logger:
    """Logger for a storage component, e.g. ``get_storage_logger("monitoring")``."""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


class StorageLoggerAdapter(logging.LoggerAdapter):
    """
    Stamps fixed context (provider, job_id) on every record.

    Context given per call through ``extra`` wins over the bound context.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def bind(self, **context: Any) -> "StorageLoggerAdapter":
        """Adapter over the same logger with extra context merged in."""
        return StorageLoggerAdapter(self.logger, {**self.extra, **context})
