"""
Structured Logging for kvlink components

Every record carries the fields of the enclosing ``StructuredLogger.context``
block plus the keyword fields of the call. Store keys are tuples; they are
rendered as ``a/b/c`` paths so log queries can match on key prefixes.
Errors passed as fields are rendered through ``KVLinkError.to_dict``.

Output is one JSON object per line by default, or a single-line text form
with ``key=value`` suffixes for local runs.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Iterator, Optional, TextIO

from kvlink.core.errors import KVLinkError


class LogLevel(IntEnum):
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @classmethod
    def from_name(cls, name: str) -> LogLevel:
        return cls[name.upper()]


_fields: ContextVar[dict[str, Any]] = ContextVar("kvlink_log_fields", default={})

# Attributes every logging.LogRecord has; anything else came in via extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime"}


def _render(value: Any) -> Any:
    if isinstance(value, tuple) and all(isinstance(part, str) for part in value):
        return "/".join(value)
    if isinstance(value, KVLinkError):
        return value.to_dict()
    return value


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Context fields overlaid with the record's own extra fields."""
    fields = dict(_fields.get())
    for key, value in record.__dict__.items():
        if key not in _RECORD_ATTRS:
            fields[key] = value
    return {key: _render(value) for key, value in fields.items()}


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        data.update(record_fields(record))
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class FieldsFormatter(logging.Formatter):
    """Plain text with the structured fields appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = record_fields(record)
        if not fields:
            return line
        suffix = " ".join(f"{key}={value}" for key, value in fields.items())
        return f"{line} | {suffix}"


class StructuredLogger:
    """
    Thin wrapper over ``logging.getLogger`` taking fields as keywords.

    Usage:
        log = StructuredLogger(__name__).with_extra(kind="session")

        with log.context(owner_id="u1"):
            log.info("Cascade committed", removed=3)
    """

    __slots__ = ("_logger", "_defaults")

    def __init__(self, name: str, defaults: Optional[dict[str, Any]] = None) -> None:
        self._logger = logging.getLogger(name)
        self._defaults = defaults or {}

    @property
    def name(self) -> str:
        return self._logger.name

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(LogLevel.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(LogLevel.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(LogLevel.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(LogLevel.ERROR, message, fields)

    def _emit(self, level: LogLevel, message: str, fields: dict[str, Any]) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, message, extra={**self._defaults, **fields})

    def with_extra(self, **fields: Any) -> StructuredLogger:
        """Child logger with additional default fields."""
        return StructuredLogger(self.name, {**self._defaults, **fields})

    @staticmethod
    @contextmanager
    def context(**fields: Any) -> Iterator[None]:
        """Attach ``fields`` to every record logged inside the block."""
        token = _fields.set({**_fields.get(), **fields})
        try:
            yield
        finally:
            _fields.reset(token)


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Route the root logger to one stream handler.

    Args:
        level: Minimum log level
        json_output: JSON lines when true, text with key=value fields otherwise
        stream: Output stream (default: stderr)
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter() if json_output else FieldsFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Client libraries log every reconnect at INFO
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
