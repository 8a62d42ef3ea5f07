"""Structured logging for the stockstream client.

One line per record: timestamp, level, module tag, message, and an
optional JSON blob of structured data, plus the traceback when the
record carries one. Bearer tokens, passwords, and key material are
redacted before anything reaches the handler.

Usage:
    from stockstream.common.logging import get_logger
    logger = get_logger("REALTIME")
    logger.info("Tick batch received", extra={"data": {"symbols": 8}})

The level defaults to DEBUG; DashboardSession applies Settings.log_level
through set_log_level().
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import UTC, datetime

ROOT_LOGGER_NAME = "stockstream"

# Module tags for structured logging
MODULE_TAGS = {
    "AUTH",  # credential store
    "REALTIME",  # connection manager and transports
    "BUS",  # update bus fan-out
    "NOTIFY",  # notification gateway and platforms
    "API",  # REST client
    "SYSTEM",
    "TEST",
}

_SECRET_WORDS = "key|secret|password|token|private|credential|authorization"

# "name": "value" pairs whose name looks secret
_SECRET_KEY_PATTERN = re.compile(
    rf'"([^"]*(?:{_SECRET_WORDS})[^"]*)":\s*"([^"]*)"',
    re.IGNORECASE,
)

# Bearer tokens embedded in free text (e.g. exception messages)
_BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9\-_.=+/]+", re.IGNORECASE)


def _redact_secrets(text: str) -> str:
    """Replace secret-looking JSON values and bearer tokens with [REDACTED]."""
    text = _SECRET_KEY_PATTERN.sub(r'"\1": "[REDACTED]"', text)
    return _BEARER_PATTERN.sub(r"\1[REDACTED]", text)


def _render_data(data: object) -> str:
    try:
        return json.dumps(data, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(data)


class StructuredFormatter(logging.Formatter):
    """Pipe-separated record formatter.

    Output format:
        2026-02-15T10:30:00Z | INFO | REALTIME | Connection state changed | {"to": "connected"}
    """

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            datetime.fromtimestamp(record.created, UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
            record.levelname,
            getattr(record, "module_tag", "SYSTEM"),
            record.getMessage(),
        ]
        data = getattr(record, "data", None)
        if data is not None:
            parts.append(_render_data(data))

        line = " | ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return _redact_secrets(line)


class ModuleTagLogger(logging.LoggerAdapter):
    """Adapter that stamps every record with its module tag.

    Caller-supplied `extra` keys are kept; only `module_tag` is forced.
    """

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs["extra"] = {**kwargs.get("extra", {}), "module_tag": self.extra["module_tag"]}
        return msg, kwargs


_loggers: dict[str, ModuleTagLogger] = {}


def _root_logger() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        root.addHandler(handler)
        root.setLevel(logging.DEBUG)
        root.propagate = False
    return root


def get_logger(module_tag: str) -> ModuleTagLogger:
    """Get the structured logger for a module tag.

    Args:
        module_tag: One of MODULE_TAGS (AUTH, REALTIME, NOTIFY, ...).

    Returns:
        A cached adapter; repeated calls with the same tag return the same object.
    """
    adapter = _loggers.get(module_tag)
    if adapter is None:
        _root_logger()
        logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{module_tag.lower()}")
        adapter = ModuleTagLogger(logger, {"module_tag": module_tag})
        _loggers[module_tag] = adapter
    return adapter


def set_log_level(level: str | int) -> None:
    """Set the level for every stockstream logger (e.g. "INFO" or logging.WARNING)."""
    if isinstance(level, str):
        level = level.upper()
    _root_logger().setLevel(level)
