"""
Store Backend Configuration Module
==================================

Type-safe, immutable configuration dataclasses for store backends.
All configurations use frozen dataclasses for thread-safety and hash-ability.

Design Principles:
------------------
1. **Immutability**: All configs are frozen to prevent runtime mutation
2. **Validation**: Pre-conditions checked at construction time
3. **Defaults**: In-memory store for development; explicit Redis for production
4. **Environment**: Supports loading from environment variables

Author: kvlink maintainers
License: MIT
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, Optional


# =============================================================================
# ENUMERATIONS
# =============================================================================

class BackendType(Enum):
    """
    Store backend type enumeration.

    Used for factory pattern dispatch and configuration validation.
    """
    IN_MEMORY = auto()  # Development/testing only
    REDIS = auto()      # Production - Lua-scripted atomic commits


# =============================================================================
# REDIS CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class RedisConfig:
    """
    Redis connection configuration.

    Attributes:
        host: Redis server hostname or IP address.
        port: Redis server port (1-65535).
        password: Optional authentication password.
        db: Logical database index (0-15).
        key_namespace: Leading segment of every physical key.
        max_connections: Connection pool size. Must be > 0.
        connect_timeout_ms: TCP connection timeout in milliseconds.
        socket_timeout_ms: Socket read/write timeout in milliseconds.
        max_mutations: Per-commit mutation limit enforced client-side.
        ssl: Enable TLS encryption for connections.

    Example:
        >>> config = RedisConfig.from_env()
        >>> config = RedisConfig(host="redis.example.com", password="secret")
    """
    password: Optional[str] = None
    host: str = "localhost"
    key_namespace: str = "kvlink"

    socket_timeout_ms: int = 5000
    connect_timeout_ms: int = 2000
    max_connections: int = 50
    max_mutations: int = 1000
    port: int = 6379
    db: int = 0

    ssl: bool = False

    def __post_init__(self) -> None:
        """
        Validate configuration invariants.

        Raises:
            ValueError: If any invariant is violated.
        """
        if not (1 <= self.port <= 65535):
            raise ValueError(f"port must be in [1, 65535], got {self.port}")

        if not (0 <= self.db <= 15):
            raise ValueError(f"db must be in [0, 15], got {self.db}")

        if self.max_connections <= 0:
            raise ValueError(f"max_connections must be > 0, got {self.max_connections}")

        if self.connect_timeout_ms <= 0:
            raise ValueError(f"connect_timeout_ms must be > 0, got {self.connect_timeout_ms}")
        if self.socket_timeout_ms <= 0:
            raise ValueError(f"socket_timeout_ms must be > 0, got {self.socket_timeout_ms}")

        if self.max_mutations <= 0:
            raise ValueError(f"max_mutations must be > 0, got {self.max_mutations}")

        if not self.key_namespace or ":" in self.key_namespace:
            raise ValueError(
                f"key_namespace must be non-empty without ':', got {self.key_namespace!r}"
            )

    @classmethod
    def from_env(cls, prefix: str = "REDIS") -> "RedisConfig":
        """
        Construct configuration from environment variables.

        Environment Variables:
        - {prefix}_HOST: Server hostname (default: localhost)
        - {prefix}_PORT: Server port (default: 6379)
        - {prefix}_PASSWORD: Authentication password
        - {prefix}_DB: Database index (default: 0)
        - {prefix}_SSL: Enable TLS (default: false)
        - {prefix}_MAX_CONNECTIONS: Pool size (default: 50)
        - {prefix}_NAMESPACE: Key namespace (default: kvlink)
        - {prefix}_MAX_MUTATIONS: Per-commit limit (default: 1000)

        Args:
            prefix: Environment variable prefix (default: REDIS).
        """
        def _get(key: str, default: str = "") -> str:
            return os.environ.get(f"{prefix}_{key}", default)

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

        return cls(
            host=_get("HOST", "localhost"),
            port=_get_int("PORT", 6379),
            password=_get("PASSWORD") or None,
            db=_get_int("DB", 0),
            key_namespace=_get("NAMESPACE", "kvlink"),
            max_connections=_get_int("MAX_CONNECTIONS", 50),
            max_mutations=_get_int("MAX_MUTATIONS", 1000),
            connect_timeout_ms=_get_int("CONNECT_TIMEOUT_MS", 2000),
            socket_timeout_ms=_get_int("SOCKET_TIMEOUT_MS", 5000),
            ssl=_get_bool("SSL", False),
        )

    def get_connection_kwargs(self) -> Dict[str, Any]:
        """
        Generate kwargs for redis-py connection.

        Responses stay as bytes; values are codec-encoded binary.
        """
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "max_connections": self.max_connections,
            "socket_connect_timeout": self.connect_timeout_ms / 1000.0,
            "socket_timeout": self.socket_timeout_ms / 1000.0,
            "decode_responses": False,
            "ssl": self.ssl,
        }
        if self.password:
            kwargs["password"] = self.password
        return kwargs


# =============================================================================
# UNIFIED STORE CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class StoreConfig:
    """
    Store backend selection.

    Attributes:
        backend: Which StoreClient implementation to build.
        redis_config: Redis configuration (required if backend == REDIS).
        memory_max_mutations: Per-commit limit for the in-memory store.
        compression_enabled: LZ4-compress large values (Redis only).
        compression_threshold_bytes: Minimum encoded size to compress.
    """
    backend: BackendType = BackendType.IN_MEMORY
    redis_config: Optional[RedisConfig] = None
    memory_max_mutations: Optional[int] = None
    compression_enabled: bool = True
    compression_threshold_bytes: int = 1024

    def __post_init__(self) -> None:
        if self.backend == BackendType.REDIS and self.redis_config is None:
            raise ValueError("redis_config required when backend=REDIS")
        if self.memory_max_mutations is not None and self.memory_max_mutations <= 0:
            raise ValueError(
                f"memory_max_mutations must be > 0, got {self.memory_max_mutations}"
            )

    @classmethod
    def for_testing(cls, max_mutations: Optional[int] = None) -> "StoreConfig":
        """In-memory store, optionally with a small mutation limit."""
        return cls(backend=BackendType.IN_MEMORY, memory_max_mutations=max_mutations)

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """
        Construct store configuration from environment.

        Environment Variables:
        - KVLINK_STORE_BACKEND: in_memory|redis
        - KVLINK_STORE_COMPRESSION: true|false
        - KVLINK_STORE_COMPRESSION_THRESHOLD: bytes

        Plus REDIS_* when the Redis backend is selected.
        """
        def _get(key: str, default: str = "") -> str:
            return os.environ.get(f"KVLINK_STORE_{key}", default).lower()

        def _get_bool(key: str, default: bool) -> bool:
            val = _get(key)
            return val in ("true", "1", "yes") if val else default

        backend_map = {
            "in_memory": BackendType.IN_MEMORY,
            "memory": BackendType.IN_MEMORY,
            "redis": BackendType.REDIS,
        }
        backend_str = _get("BACKEND", "in_memory")
        if backend_str not in backend_map:
            raise ValueError(f"Unknown store backend: {backend_str}")
        backend = backend_map[backend_str]

        redis_config = None
        if backend == BackendType.REDIS:
            redis_config = RedisConfig.from_env()

        threshold = _get("COMPRESSION_THRESHOLD")
        return cls(
            backend=backend,
            redis_config=redis_config,
            compression_enabled=_get_bool("COMPRESSION", True),
            compression_threshold_bytes=int(threshold) if threshold else 1024,
        )


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    "BackendType",
    "RedisConfig",
    "StoreConfig",
]
