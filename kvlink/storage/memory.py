"""
In-Memory Key-Value Store: Development and Testing Implementation

Provides a full StoreClient implementation held in process memory:
    - Versionstamped records with optional TTL
    - Ordered prefix scans with restartable cursors
    - Atomic multi-key commits with absent/version checks

Design Principles:
    - Full protocol compliance for seamless swap with the Redis store
    - Commits are serialized via asyncio.Lock, matching the store's
      all-or-nothing contract
    - Every call yields to the event loop, so concurrent operations
      interleave the way they do against a networked store

Performance Characteristics:
    - Get: O(1) average case
    - Scan: O(N log N) per page (sorted key snapshot)
    - Commit: O(c + m) for c checks and m mutations

Author: kvlink maintainers
License: MIT
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from kvlink.core import constants as C
from kvlink.core.errors import KVLinkError, StoreError
from kvlink.core.types import Err, Key, Ok, Result, key_has_prefix, now_millis
from kvlink.storage.protocols import (
    AtomicBatch,
    CommitInfo,
    Entry,
    MutationType,
)
from kvlink.storage.transaction import Transaction

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================
MAX_SCAN_LIMIT: int = 10_000


# =============================================================================
# VERSIONED RECORD
# =============================================================================
@dataclass
class VersionedRecord:
    """
    Internal record with versionstamp and optional TTL deadline.

    ``ttl_expires_at_ms`` is an absolute wall-clock deadline in epoch ms.
    """

    value: Any
    version: str
    ttl_expires_at_ms: Optional[int] = None

    def is_expired(self, now_ms: int) -> bool:
        if self.ttl_expires_at_ms is None:
            return False
        return now_ms >= self.ttl_expires_at_ms


# =============================================================================
# IN-MEMORY STORE
# =============================================================================
class InMemoryKVStore:
    """
    In-memory flat key-value store with atomic conditional commits.

    Features:
        - Monotonic versionstamps shared by all keys of one commit
        - Store-native TTL (records vanish once their deadline passes)
        - Optional per-commit mutation limit

    Values are deep-copied on write and on read so callers can never
    mutate stored state by reference.

    Example:
        store = InMemoryKVStore()
        tx = store.atomic()
        tx.require_absent(("k",)).set(("k",), {"a": 1})
        await tx.commit()
        entry = (await store.get(("k",))).unwrap()
    """

    __slots__ = (
        "_data",
        "_lock",
        "_version_counter",
        "_max_mutations",
        "_latency_s",
        "_clock",
        "_closed",
        "commits",
        "conflicts",
    )

    def __init__(
        self,
        max_mutations: Optional[int] = None,
        latency_s: float = 0.0,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        """
        Initialize in-memory store.

        Args:
            max_mutations: Per-commit mutation limit, None for unbounded
            latency_s: Simulated round-trip delay per call
            clock: Epoch-milliseconds source used for TTL evaluation
        """
        self._data: Dict[Key, VersionedRecord] = {}
        self._lock = asyncio.Lock()
        self._version_counter: int = 0
        self._max_mutations = max_mutations
        self._latency_s = latency_s
        self._clock = clock
        self._closed = False
        self.commits: int = 0
        self.conflicts: int = 0

    @property
    def max_mutations(self) -> Optional[int]:
        return self._max_mutations

    async def _round_trip(self) -> None:
        # Always yield, even with zero latency, so callers interleave
        await asyncio.sleep(self._latency_s)

    def _live(self, key: Key) -> Optional[VersionedRecord]:
        """Return the record for ``key`` unless absent or TTL-expired."""
        record = self._data.get(key)
        if record is None:
            return None
        if record.is_expired(self._clock()):
            del self._data[key]
            return None
        return record

    def _entry(self, key: Key) -> Entry:
        record = self._live(key)
        if record is None:
            return Entry(key=key)
        return Entry(key=key, value=copy.deepcopy(record.value), version=record.version)

    def _check_open(self, operation: str) -> Optional[Err[KVLinkError]]:
        if self._closed:
            return Err(StoreError.unavailable(operation, RuntimeError("store closed")))
        return None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, key: Key) -> Result[Entry, KVLinkError]:
        """Complexity: O(1) average case (hash lookup)"""
        await self._round_trip()
        closed = self._check_open("get")
        if closed is not None:
            return closed

        async with self._lock:
            return Ok(self._entry(key))

    async def get_many(self, keys: List[Key]) -> Result[List[Entry], KVLinkError]:
        await self._round_trip()
        closed = self._check_open("get_many")
        if closed is not None:
            return closed

        async with self._lock:
            return Ok([self._entry(key) for key in keys])

    async def scan(
        self,
        prefix: Key,
        limit: int = C.DEFAULT_SCAN_LIMIT,
        cursor: Optional[str] = None,
    ) -> Result[Tuple[List[Entry], Optional[str]], KVLinkError]:
        """
        Ordered prefix scan.

        The cursor is the last key returned, so records deleted between
        pages never shift the window.
        """
        await self._round_trip()
        closed = self._check_open("scan")
        if closed is not None:
            return closed

        limit = max(1, min(limit, MAX_SCAN_LIMIT))
        after: Optional[Key] = None
        if cursor is not None:
            try:
                after = tuple(json.loads(cursor))
            except (ValueError, TypeError) as e:
                return Err(StoreError.unavailable("scan", e).with_context(cursor=cursor))

        async with self._lock:
            keys = sorted(
                k for k in self._data
                if key_has_prefix(k, prefix) and (after is None or k > after)
            )

            entries: List[Entry] = []
            last_key: Optional[Key] = None
            for key in keys:
                if len(entries) >= limit:
                    break
                last_key = key
                record = self._live(key)
                if record is not None:
                    entries.append(
                        Entry(key=key, value=copy.deepcopy(record.value), version=record.version)
                    )

            has_more = last_key is not None and last_key != keys[-1]
            next_cursor = json.dumps(list(last_key)) if has_more else None
            return Ok((entries, next_cursor))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def atomic(self) -> Transaction:
        return Transaction(self._commit)

    async def _commit(self, batch: AtomicBatch) -> Result[CommitInfo, KVLinkError]:
        """
        Evaluate every check, then apply every mutation, under one lock.
        """
        await self._round_trip()
        closed = self._check_open("commit")
        if closed is not None:
            return closed

        if self._max_mutations is not None and batch.mutation_count > self._max_mutations:
            return Err(StoreError.transaction_too_large(batch.mutation_count, self._max_mutations))

        async with self._lock:
            failed = []
            for check in batch.checks:
                record = self._live(check.key)
                current = record.version if record is not None else None
                if current != check.version:
                    failed.append(check.key)

            if failed:
                self.conflicts += 1
                return Err(StoreError.conflict("commit", keys=[repr(k) for k in failed]))

            self._version_counter += 1
            version = str(self._version_counter).zfill(C.VERSIONSTAMP_WIDTH)
            now_ms = self._clock()

            for mutation in batch.mutations:
                if mutation.op is MutationType.SET:
                    deadline = (
                        now_ms + mutation.expire_in_ms
                        if mutation.expire_in_ms is not None
                        else None
                    )
                    self._data[mutation.key] = VersionedRecord(
                        value=copy.deepcopy(mutation.value),
                        version=version,
                        ttl_expires_at_ms=deadline,
                    )
                else:
                    self._data.pop(mutation.key, None)

            self.commits += 1
            return Ok(CommitInfo(versionstamp=version, mutations=batch.mutation_count))

    # -------------------------------------------------------------------------
    # Utility Methods
    # -------------------------------------------------------------------------

    async def count(self, prefix: Key = ()) -> int:
        """Count live records under ``prefix`` (for testing)."""
        async with self._lock:
            return sum(
                1 for k in list(self._data)
                if key_has_prefix(k, prefix) and self._live(k) is not None
            )

    async def clear(self) -> None:
        """Clear all data (for testing)."""
        async with self._lock:
            self._data.clear()

    async def connect(self) -> Result[None, KVLinkError]:
        """No-op connect, mirrors RedisKVStore.connect."""
        self._closed = False
        return Ok(None)

    async def close(self) -> None:
        self._closed = True
        logger.debug("In-memory store closed")
