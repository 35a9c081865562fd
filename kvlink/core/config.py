"""
Configuration Management for kvlink

Provides validated configuration with sensible defaults.
Supports environment variable overrides.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum

from kvlink.core import constants as C
from kvlink.core.errors import ConfigurationError
from kvlink.core.types import Err, Ok, Result
from kvlink.storage.config import StoreConfig


class ForwardMode(Enum):
    """Physical representation of the owner -> dependents index."""

    SENTINEL = "sentinel"  # one key per member, listed by prefix scan
    SET = "set"            # one key per owner holding the serialized id list


class ExpiryMode(Enum):
    """How dependent records of a kind expire."""

    SWEEP = "sweep"    # expiry field only; removed by the sweeper
    NATIVE = "native"  # expiry field plus store TTL on primary and reverse keys
    NONE = "none"      # never expires


@dataclass(frozen=True)
class EngineConfig:
    """Index engine limits and behavior switches."""

    max_mutations_per_transaction: int = C.MAX_MUTATIONS_PER_TRANSACTION
    get_many_batch_size: int = C.GET_MANY_BATCH_SIZE
    strict_updates: bool = False
    forward_mode: ForwardMode = ForwardMode.SENTINEL
    session_expiry: ExpiryMode = ExpiryMode.SWEEP

    def __post_init__(self) -> None:
        # Removing one member takes three mutations
        if self.max_mutations_per_transaction < 3:
            raise ValueError(
                f"max_mutations_per_transaction must be >= 3, "
                f"got {self.max_mutations_per_transaction}"
            )
        if self.get_many_batch_size <= 0:
            raise ValueError(
                f"get_many_batch_size must be > 0, got {self.get_many_batch_size}"
            )


@dataclass(frozen=True)
class SweeperConfig:
    """Expiry sweeper paging configuration."""

    scan_page_size: int = C.SWEEP_SCAN_PAGE_SIZE

    def __post_init__(self) -> None:
        if self.scan_page_size <= 0:
            raise ValueError(f"scan_page_size must be > 0, got {self.scan_page_size}")


@dataclass(frozen=True)
class ReliabilityConfig:
    """Caller-side retry configuration."""

    retry_base_ms: int = C.RETRY_BASE_MS
    retry_max_delay_ms: int = C.RETRY_MAX_DELAY_MS
    retry_max_attempts: int = C.RETRY_MAX_ATTEMPTS


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration."""

    log_level: str = "INFO"
    log_json: bool = True


@dataclass(frozen=True)
class KVLinkConfig:
    """Root configuration for kvlink."""

    store: StoreConfig = field(default_factory=StoreConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    reliability: ReliabilityConfig = field(default_factory=ReliabilityConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> Result[KVLinkConfig, ConfigurationError]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with KVLINK_.
        Example: KVLINK_MAX_MUTATIONS, KVLINK_FORWARD_MODE
        Store selection reads KVLINK_STORE_BACKEND and REDIS_*.
        """

        def _get(key: str, default: str = "") -> str:
            return os.environ.get(f"KVLINK_{key}", default)

        def _get_int(key: str, default: int) -> int:
            val = _get(key)
            return int(val) if val else default

        def _get_bool(key: str, default: bool) -> bool:
            val = _get(key).lower()
            if val in ("true", "1", "yes"):
                return True
            if val in ("false", "0", "no"):
                return False
            return default

        try:
            engine = EngineConfig(
                max_mutations_per_transaction=_get_int(
                    "MAX_MUTATIONS", C.MAX_MUTATIONS_PER_TRANSACTION
                ),
                get_many_batch_size=_get_int("GET_MANY_BATCH", C.GET_MANY_BATCH_SIZE),
                strict_updates=_get_bool("STRICT_UPDATES", False),
                forward_mode=ForwardMode(_get("FORWARD_MODE", "sentinel").lower()),
                session_expiry=ExpiryMode(_get("SESSION_EXPIRY", "sweep").lower()),
            )

            sweeper = SweeperConfig(
                scan_page_size=_get_int("SWEEP_PAGE_SIZE", C.SWEEP_SCAN_PAGE_SIZE),
            )

            reliability = ReliabilityConfig(
                retry_base_ms=_get_int("RETRY_BASE_MS", C.RETRY_BASE_MS),
                retry_max_delay_ms=_get_int("RETRY_MAX_DELAY_MS", C.RETRY_MAX_DELAY_MS),
                retry_max_attempts=_get_int("RETRY_MAX_ATTEMPTS", C.RETRY_MAX_ATTEMPTS),
            )

            observability = ObservabilityConfig(
                log_level=_get("LOG_LEVEL", "INFO").upper(),
                log_json=_get_bool("LOG_JSON", True),
            )

            return Ok(cls(
                store=StoreConfig.from_env(),
                engine=engine,
                sweeper=sweeper,
                reliability=reliability,
                observability=observability,
            ))
        except (ValueError, TypeError) as e:
            return Err(ConfigurationError.invalid("environment", str(e)))

    def validate(self) -> Result[None, ConfigurationError]:
        """Validate cross-section invariants."""
        if self.reliability.retry_max_attempts < 1:
            return Err(ConfigurationError.invalid("retry_max_attempts", "must be >= 1"))
        if self.reliability.retry_base_ms > self.reliability.retry_max_delay_ms:
            return Err(ConfigurationError.invalid("retry_base_ms", "cannot exceed retry_max_delay_ms"))
        if self.observability.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            return Err(ConfigurationError.invalid("log_level", f"unknown level {self.observability.log_level}"))
        return Ok(None)
