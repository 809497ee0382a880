from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

from swap_engine.common import sanitize_text, sanitize_value

# Attributes every LogRecord carries; anything else arrived through ``extra``.
RESERVED_RECORD_FIELDS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}


def event_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in RESERVED_RECORD_FIELDS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message and event fields."""

    def __init__(self, *, service: str = "swap_engine") -> None:
        super().__init__()
        self._service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self._service,
            "message": sanitize_text(record.getMessage()),
        }
        payload.update(sanitize_value(event_fields(record)))

        if record.exc_info:
            payload["exception"] = sanitize_text(self.formatException(record.exc_info))

        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines for interactive CLI use: ``LEVEL event message key=value``."""

    def format(self, record: logging.LogRecord) -> str:
        fields = sanitize_value(event_fields(record))
        event = fields.pop("event", "-")
        details = " ".join(f"{key}={value}" for key, value in sorted(fields.items()) if value is not None)
        line = f"{record.levelname:<7} {event} {sanitize_text(record.getMessage())}"
        if details:
            line = f"{line} {details}"
        if record.exc_info:
            line = f"{line}\n{sanitize_text(self.formatException(record.exc_info))}"
        return line


def setup_logger(
    *,
    level: str = "INFO",
    name: str = "swap_engine",
    log_format: str = "json",
    stream: TextIO | None = None,
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Logs go to stderr so command output on stdout stays machine-readable.
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(TextFormatter() if log_format == "text" else JsonFormatter(service=name))

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    return logger
