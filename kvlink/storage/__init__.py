"""
Storage Module: Flat Key-Value Store Abstraction Layer
======================================================

Provides:
- Protocol definitions for pluggable store clients
- Atomic transactions with absent/version checks
- In-memory implementation for development/testing
- Redis implementation for production
- Factory function for backend selection

Design Principles:
-----------------
1. **Backend Agnostic**: Same interface for in-memory and production
2. **Factory Pattern**: Runtime backend selection via configuration
3. **Lazy Loading**: The Redis client is imported only when selected
4. **Result Monad**: No exceptions for control flow

Example:
    >>> # Development (in-memory)
    >>> store = create_store()

    >>> # Production (configured)
    >>> store = create_store(StoreConfig(backend=BackendType.REDIS,
    ...                                  redis_config=RedisConfig(host="redis.prod")))
    >>> (await store.connect()).unwrap()
"""

from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING

from kvlink.storage.protocols import (
    AtomicBatch,
    Check,
    CommitInfo,
    Entry,
    Mutation,
    MutationType,
    StoreClient,
    stream_scan,
)
from kvlink.storage.transaction import (
    StagingView,
    Transaction,
    TransactionState,
)
from kvlink.storage.memory import InMemoryKVStore
from kvlink.storage.codec import ValueCodec
from kvlink.storage.config import (
    BackendType,
    RedisConfig,
    StoreConfig,
)

if TYPE_CHECKING:
    from kvlink.storage.redis_store import RedisKVStore


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_store(config: Optional[StoreConfig] = None) -> Any:
    """
    Create a store client.

    Returns the in-memory implementation by default. Redis clients must
    be connected with ``await store.connect()`` before use.

    Args:
        config: Optional store configuration.

    Returns:
        InMemoryKVStore: If config is None or selects IN_MEMORY.
        RedisKVStore: If config selects REDIS.
    """
    if config is None:
        return InMemoryKVStore()

    if config.backend == BackendType.REDIS:
        from kvlink.storage.redis_store import RedisKVStore

        codec = ValueCodec(
            compress=config.compression_enabled,
            threshold=config.compression_threshold_bytes,
        )
        return RedisKVStore(config.redis_config, codec=codec)

    return InMemoryKVStore(max_mutations=config.memory_max_mutations)


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    # Protocols
    "AtomicBatch",
    "Check",
    "CommitInfo",
    "Entry",
    "Mutation",
    "MutationType",
    "StoreClient",
    "stream_scan",
    # Transactions
    "StagingView",
    "Transaction",
    "TransactionState",
    # Configuration
    "BackendType",
    "RedisConfig",
    "StoreConfig",
    # Backends
    "InMemoryKVStore",
    "ValueCodec",
    # Factory functions
    "create_store",
]
