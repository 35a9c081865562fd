"""
Observability: structured logging for kvlink.
"""

from kvlink.observability.logging import (
    FieldsFormatter,
    JsonFormatter,
    LogLevel,
    StructuredLogger,
    setup_logging,
)

__all__ = [
    "FieldsFormatter",
    "JsonFormatter",
    "LogLevel",
    "StructuredLogger",
    "setup_logging",
]
