"""
Store Protocol Definitions: Flat Key-Value Store Abstraction

Provides structural subtyping protocols (PEP 544) for pluggable store clients:
- StoreClient: point reads, batched reads, prefix scans, atomic commits
- Entry: a read result carrying value and versionstamp
- AtomicBatch: the checks and mutations a transaction submits at commit

Design Principles:
    - Zero-exception control flow via Result[T, KVLinkError] monad
    - Async-first; every store call is a suspension point
    - Protocol classes for structural subtyping (duck typing with type safety)
    - The store provides per-key linearizability and all-or-nothing commit

Author: kvlink maintainers
License: MIT
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Optional,
    Protocol,
    runtime_checkable,
)

from kvlink.core.errors import KVLinkError
from kvlink.core.types import Key, Result

if TYPE_CHECKING:
    from kvlink.storage.transaction import Transaction


# =============================================================================
# READ RESULTS
# =============================================================================
@dataclass(frozen=True, slots=True)
class Entry:
    """
    Result of reading one key.

    ``value`` and ``version`` are both None when the key is absent.
    Versions are opaque strings that compare in commit order.
    """

    key: Key
    value: Any = None
    version: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.version is not None


@dataclass(frozen=True, slots=True)
class CommitInfo:
    """Outcome of a successful atomic commit."""

    versionstamp: str
    mutations: int = 0


# =============================================================================
# ATOMIC BATCH
# =============================================================================
class MutationType(Enum):
    """Kinds of write a transaction can stage."""

    SET = "set"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class Check:
    """
    Commit precondition on one key.

    ``version`` None means the key must be absent at commit time.
    """

    key: Key
    version: Optional[str]


@dataclass(frozen=True, slots=True)
class Mutation:
    key: Key
    op: MutationType
    value: Any = None
    expire_in_ms: Optional[int] = None


@dataclass(slots=True)
class AtomicBatch:
    """
    Checks plus ordered mutations submitted by one commit.

    Every check is evaluated before any mutation applies. Mutations
    apply in staging order, so a later write to the same key wins.
    """

    checks: list[Check] = field(default_factory=list)
    mutations: list[Mutation] = field(default_factory=list)

    @property
    def mutation_count(self) -> int:
        return len(self.mutations)


# =============================================================================
# STORE CLIENT PROTOCOL
# =============================================================================
@runtime_checkable
class StoreClient(Protocol):
    """
    Base protocol for async flat key-value store clients.

    All methods return Result[T, KVLinkError]. Transport failures surface
    as StoreError.unavailable; a failed commit check as StoreError.conflict.

    Example:
        entry = (await store.get(("auth", "user", "u1"))).unwrap()
        if entry.exists:
            ...
    """

    @property
    @abstractmethod
    def max_mutations(self) -> Optional[int]:
        """Per-commit mutation limit, None when unbounded."""
        ...

    @abstractmethod
    async def get(self, key: Key) -> Result[Entry, KVLinkError]:
        """
        Read one key.

        Returns:
            Ok(entry): entry.exists is False for an absent key
            Err(error): Store unavailable

        Complexity: O(1) for hash-based stores
        """
        ...

    @abstractmethod
    async def get_many(self, keys: list[Key]) -> Result[list[Entry], KVLinkError]:
        """
        Read several keys in one round trip.

        One entry per key, in input order; absent keys yield absent entries.
        """
        ...

    @abstractmethod
    async def scan(
        self,
        prefix: Key,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Result[tuple[list[Entry], Optional[str]], KVLinkError]:
        """
        List entries whose key starts with ``prefix``.

        Args:
            prefix: Leading key parts to match
            limit: Maximum entries to return in this page
            cursor: Cursor from the previous page, None to start

        Returns:
            Ok((entries, next_cursor)): next_cursor is None on the last page

        Pages are finite and the scan is restartable by re-issuing it.
        """
        ...

    @abstractmethod
    def atomic(self) -> Transaction:
        """Begin staging an atomic multi-key write."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


async def stream_scan(
    store: StoreClient,
    prefix: Key,
    batch_size: int = 100,
) -> AsyncIterator[Entry]:
    """
    Stream every entry under ``prefix`` page by page.

    Raises the store error when a page read fails, since an async
    generator has no Result channel.

    Example:
        async for entry in stream_scan(store, ("auth", "session")):
            process(entry)
    """
    cursor: Optional[str] = None

    while True:
        result = await store.scan(prefix, limit=batch_size, cursor=cursor)
        if result.is_err():
            raise result.error

        entries, next_cursor = result.unwrap()
        for entry in entries:
            yield entry

        if next_cursor is None:
            break
        cursor = next_cursor
