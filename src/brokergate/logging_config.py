"""
Structured logging configuration for brokergate.

One JSON object per line, with:
- Credential filtering (Alpaca key id/secret never reach a log line)
- URLs reduced to their path (no query strings, no hostnames)
- Response bodies and order payloads redacted

Usage:
    from brokergate.logging_config import setup_logging, get_logger

    setup_logging()  # Call once at startup
    logger = get_logger(__name__)
    logger.warning("Provider throttling detected", extra={"endpoint": "/v2/orders"})
"""

from __future__ import annotations

import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any, TextIO
from urllib.parse import urlsplit

import orjson

_URL_PATTERN = re.compile(r"(https?://[^\s\"'<>]+)")

_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # Alpaca credential headers echoed in exception text
    (re.compile(r"apca-api-(key-id|secret-key)['\"]?\s*[=:]\s*['\"]?[\w\-]+['\"]?", re.I), "[APCA]"),
    (re.compile(r"\b(api[_-]?key|secret[_-]?key)[=:]\s*['\"]?[\w\-]+['\"]?", re.I), "[API_KEY]"),
    (re.compile(r"\b(bearer|token)[=:\s]+['\"]?[\w\-\.]+['\"]?", re.I), "[TOKEN]"),
    (re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w+\b"), "[EMAIL]"),
]

BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        "apca-api-key-id",
        "apca-api-secret-key",
        "api_key_id",
        "api_secret_key",
        "api_key",
        "secret",
        "token",
        "password",
        "authorization",
        "credential",
        "account_number",
    }
)

# Fields replaced by a placeholder (or, for url, by its path)
REDACTED_FIELDS: dict[str, str] = {
    "url": "endpoint",
    "body": "[BODY]",
    "order": "[ORDER]",
    "params": "[PARAMS]",
    "result": "[RESULT]",
}

# LogRecord attributes that are not user-supplied extras
_RECORD_ATTRS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)


def _url_path(url: str) -> str:
    return urlsplit(url).path or "/"


def _sanitize_text(text: str) -> str:
    """Strip hosts/query strings from URLs and mask credentials in free text."""
    if not text:
        return text

    result = _URL_PATTERN.sub(lambda m: _url_path(m.group(1)), text)
    for pattern, replacement in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _is_blocked(key: str) -> bool:
    key_lower = key.lower()
    return any(blocked in key_lower for blocked in BLOCKED_FIELDS)


def _filter_extra(extra: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Drop credentials, redact payloads and flatten values to JSON-safe types."""
    if _depth > 3:
        return {"_truncated": "max depth exceeded"}

    filtered: dict[str, Any] = {}
    for key, value in extra.items():
        if _is_blocked(key):
            continue

        key_lower = key.lower()
        if key_lower in REDACTED_FIELDS:
            if key_lower == "url" and isinstance(value, str):
                filtered.setdefault("endpoint", _url_path(value))
            else:
                filtered[key] = REDACTED_FIELDS[key_lower]
            continue

        if isinstance(value, (int, float, bool, type(None))):
            filtered[key] = value
        elif isinstance(value, str):
            filtered[key] = _sanitize_text(value)
        elif isinstance(value, (list, tuple)):
            filtered[key] = list(value) if len(value) <= 10 else f"[list:{len(value)} items]"
        elif isinstance(value, dict):
            filtered[key] = _filter_extra(value, _depth=_depth + 1)
        else:
            filtered[key] = _sanitize_text(str(value))

    return filtered


def _extras_of(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line.

    {"ts":"2026-01-01T00:00:00.000+00:00","level":"WARNING","logger":"...","msg":"...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_dict: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": _sanitize_text(record.getMessage()),
        }

        if record.levelno >= logging.WARNING:
            log_dict["file"] = record.filename
            log_dict["line"] = record.lineno

        if record.exc_info:
            log_dict["exc"] = _sanitize_text(self.formatException(record.exc_info))

        extra = _extras_of(record)
        if extra:
            log_dict.update(_filter_extra(extra))

        return orjson.dumps(log_dict, default=str).decode()


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for local runs: `LEVEL logger: msg | k=v ...`."""

    def format(self, record: logging.LogRecord) -> str:
        base = f"{record.levelname:8s} {record.name}: {_sanitize_text(record.getMessage())}"
        filtered = _filter_extra(_extras_of(record))
        if filtered:
            base = f"{base} | " + " ".join(f"{k}={v}" for k, v in filtered.items())
        if record.exc_info:
            base = f"{base}\n{_sanitize_text(self.formatException(record.exc_info))}"
        return base


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = True,
    stream: TextIO | None = None,
) -> None:
    """
    Configure root logging. Call once at startup.

    Args:
        level: Log level (default INFO).
        json_format: JSON lines (default) or SimpleFormatter.
        stream: Output stream (default stderr).
    """
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(JsonFormatter() if json_format else SimpleFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # aiohttp access logs and asyncio debug noise
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically get_logger(__name__))."""
    return logging.getLogger(name)
