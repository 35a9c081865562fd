"""
Core module: Type definitions, error hierarchy, and configuration.

This module provides the foundational abstractions for kvlink:
- Result/Either monads for zero-exception control flow
- Exhaustive error hierarchy with typed error codes
- Configuration management with validation
"""

from kvlink.core.types import (
    Result,
    Ok,
    Err,
    Key,
    Timestamp,
)
from kvlink.core.errors import (
    ErrorCode,
    KVLinkError,
    IndexEngineError,
    StoreError,
    CascadeError,
    ReliabilityError,
    ConfigurationError,
)
from kvlink.core.config import (
    KVLinkConfig,
    EngineConfig,
    SweeperConfig,
    ForwardMode,
    ExpiryMode,
)

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Key",
    "Timestamp",
    "ErrorCode",
    "KVLinkError",
    "IndexEngineError",
    "StoreError",
    "CascadeError",
    "ReliabilityError",
    "ConfigurationError",
    "KVLinkConfig",
    "EngineConfig",
    "SweeperConfig",
    "ForwardMode",
    "ExpiryMode",
]
