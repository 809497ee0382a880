from __future__ import annotations

import logging
import re
from decimal import Decimal
from enum import Enum
from typing import Any
from urllib.parse import urlsplit, urlunsplit

URL_TOKEN_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)

# (pattern, replacement) pairs applied after URLs lose their query strings.
SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)([?&](?:api[-_]?key)=)([^&#\s]+)"), r"\1***"),
    (re.compile(r"(?i)((?:x-)?api[-_]?key[\"']?\s*[:=]\s*[\"']?)([^\s,;\"'&}]+)"), r"\1***"),
    (re.compile(r"(?i)(private[-_]?key[\"']?\s*[:=]\s*[\"']?)(\[[^\]]*\]|[^\s,;\"'&}]+)"), r"\1***"),
)

# Upstream error bodies can echo whole base64 transactions back.
MAX_TEXT_CHARS = 2_000

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _strip_query(token: str) -> str:
    body = token.rstrip(".,);]}")
    trailing = token[len(body):]
    parsed = urlsplit(body)
    if parsed.scheme.lower() in {"http", "https"} and parsed.netloc:
        body = urlunsplit((parsed.scheme, parsed.netloc, parsed.path, "", ""))
    return body + trailing


def sanitize_text(value: str) -> str:
    masked = URL_TOKEN_RE.sub(lambda match: _strip_query(match.group(0)), value)
    for pattern, replacement in SECRET_PATTERNS:
        masked = pattern.sub(replacement, masked)
    if len(masked) > MAX_TEXT_CHARS:
        masked = f"{masked[:MAX_TEXT_CHARS]}...<{len(masked) - MAX_TEXT_CHARS} more chars>"
    return masked


def sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, Enum):
        return value.value
    # Token amounts keep their exact decimal form.
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, dict):
        return {key: sanitize_value(child) for key, child in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize_value(item) for item in value)
    return value


def log_event(
    logger: logging.Logger,
    *,
    level: str,
    event: str,
    message: str,
    **fields: Any,
) -> None:
    """Log ``message`` with ``event`` and ``fields`` attached to the record, secrets masked."""
    extra = {key: sanitize_value(value) for key, value in fields.items()}
    extra["event"] = event
    safe_message = sanitize_text(message)

    if level == "exception":
        logger.exception(safe_message, extra=extra)
        return
    logger.log(_LEVELS.get(level, logging.INFO), safe_message, extra=extra)
