"""
Redis Key-Value Store
=====================

Production Redis implementation of the StoreClient protocol.

Design Principles:
------------------
1. **Lock-Free**: Checks and mutations commit inside one Lua script,
   no Python-side locks and no WATCH/MULTI round trips
2. **Pipeline Batching**: get_many and scan pages use one pipeline
3. **Result Monad**: Redis failures surface as StoreError.unavailable

Key Layout:
-----------
A key tuple ``("auth", "session", "s1")`` maps to the Redis key
``<namespace>:auth:session:s1``. Each part is percent-encoded, so ids may
contain ':' or glob characters without colliding or leaking into SCAN
patterns.

Each key is a Redis Hash with fields:
- 'd': codec-encoded value
- 'v': versionstamp of the commit that wrote it

The versionstamp counter lives at ``<namespace>#version``, outside every
scannable prefix.

Algorithmic Complexity:
-----------------------
| Operation    | Time     | Notes                          |
|--------------|----------|--------------------------------|
| get          | O(1)     | HGETALL                        |
| get_many     | O(k)     | Pipelined, single round trip   |
| scan         | O(N)     | SCAN MATCH, amortized by pages |
| commit       | O(c + m) | One EVALSHA                    |

Author: kvlink maintainers
License: MIT
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from kvlink.core.errors import KVLinkError, StoreError
from kvlink.core.types import Err, Key, Ok, Result
from kvlink.storage.codec import ValueCodec
from kvlink.storage.config import RedisConfig
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

# Maximum items per scan iteration (Redis SCAN count hint)
MAX_SCAN_COUNT: int = 1000

_STORE_ERRORS = (RedisError, asyncio.TimeoutError, OSError)

# Atomic conditional commit.
#   KEYS[1]  versionstamp counter
#   KEYS[2..] every key the batch touches
#   ARGV[1]  JSON plan: {"c": [[key_idx, version_or_empty], ...],
#                        "m": [[op, key_idx, value_argv_idx, ttl_ms], ...]}
#   ARGV[2..] encoded values
# Returns {1, versionstamp} or {0, failed_key_idx}.
LUA_COMMIT_SCRIPT: str = """
local plan = cjson.decode(ARGV[1])

for _, check in ipairs(plan.c) do
    local current = redis.call('HGET', KEYS[check[1]], 'v')
    if check[2] == '' then
        if current then
            return {0, check[1]}
        end
    elseif current ~= check[2] then
        return {0, check[1]}
    end
end

local version = string.format('%020d', redis.call('INCR', KEYS[1]))

for _, m in ipairs(plan.m) do
    local key = KEYS[m[2]]
    redis.call('DEL', key)
    if m[1] == 's' then
        redis.call('HSET', key, 'd', ARGV[m[3]], 'v', version)
        if m[4] > 0 then
            redis.call('PEXPIRE', key, m[4])
        end
    end
end

return {1, version}
"""


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

@dataclass(slots=True)
class RedisMetrics:
    """
    Nanosecond-precision metrics for Redis operations.

    Counters are safe to bump without locks in single-threaded asyncio.
    """
    get_count: int = 0
    scan_count: int = 0
    commit_count: int = 0
    pipeline_count: int = 0

    get_latency_sum_ns: int = 0
    commit_latency_sum_ns: int = 0

    connection_errors: int = 0
    timeout_errors: int = 0
    commit_conflicts: int = 0

    def record_get(self, latency_ns: int) -> None:
        self.get_count += 1
        self.get_latency_sum_ns += latency_ns

    def record_commit(self, latency_ns: int) -> None:
        self.commit_count += 1
        self.commit_latency_sum_ns += latency_ns

    def record_error(self, error: BaseException) -> None:
        if isinstance(error, asyncio.TimeoutError):
            self.timeout_errors += 1
        else:
            self.connection_errors += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gets": self.get_count,
            "scans": self.scan_count,
            "pipelines": self.pipeline_count,
            "commits": self.commit_count,
            "commit_conflicts": self.commit_conflicts,
            "connection_errors": self.connection_errors,
            "timeout_errors": self.timeout_errors,
            "avg_get_latency_ms": _avg_ms(self.get_latency_sum_ns, self.get_count),
            "avg_commit_latency_ms": _avg_ms(self.commit_latency_sum_ns, self.commit_count),
        }


def _avg_ms(total_ns: int, count: int) -> float:
    return (total_ns / count) / 1_000_000 if count else 0.0


# =============================================================================
# KEY ENCODING
# =============================================================================

def encode_key(namespace: str, key: Key) -> str:
    """Map a key tuple to its physical Redis key."""
    return ":".join([namespace, *(quote(part, safe="") for part in key)])


def decode_key(namespace: str, raw: str) -> Key:
    """Inverse of encode_key. Raises ValueError for foreign keys."""
    head, sep, rest = raw.partition(":")
    if head != namespace or not sep:
        raise ValueError(f"Key outside namespace {namespace!r}: {raw!r}")
    return tuple(unquote(part) for part in rest.split(":"))


def scan_pattern(namespace: str, prefix: Key) -> str:
    return encode_key(namespace, prefix) + ":*"


# =============================================================================
# REDIS STORE
# =============================================================================

class RedisKVStore:
    """
    Redis store implementing StoreClient.

    Prefix scans are SCAN MATCH over the whole database, O(total keys)
    per scan. Owner membership reads in sentinel forward mode are prefix
    scans, so Redis deployments should run ForwardMode.SET.

    Example:
        >>> store = RedisKVStore(RedisConfig(host="redis.example.com"))
        >>> (await store.connect()).unwrap()
        >>> entry = (await store.get(("auth", "user", "u1"))).unwrap()
        >>> await store.close()
    """

    __slots__ = (
        "_config",
        "_client",
        "_codec",
        "_metrics",
        "_commit_script",
        "_version_key",
        "_connected",
    )

    def __init__(
        self,
        config: RedisConfig,
        codec: Optional[ValueCodec] = None,
    ) -> None:
        """
        Initialize Redis store.

        Note:
            Call `connect()` before performing operations.
        """
        self._config = config
        self._client: Optional[aioredis.Redis] = None
        self._codec = codec or ValueCodec()
        self._metrics = RedisMetrics()
        self._commit_script: Any = None
        self._version_key = f"{config.key_namespace}#version"
        self._connected = False

    @property
    def max_mutations(self) -> Optional[int]:
        return self._config.max_mutations

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    async def connect(self) -> Result[None, KVLinkError]:
        """
        Create the client, verify connectivity, and register the commit script.
        """
        try:
            self._client = aioredis.Redis(**self._config.get_connection_kwargs())
            await self._client.ping()
            self._commit_script = self._client.register_script(LUA_COMMIT_SCRIPT)
            self._connected = True
            logger.info(f"Connected to Redis at {self._config.host}:{self._config.port}")
            return Ok(None)
        except _STORE_ERRORS as e:
            self._metrics.record_error(e)
            return Err(StoreError.unavailable("connect", e))

    async def close(self) -> None:
        """Close the connection pool. Safe to call multiple times."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info(f"Closed Redis store: {self._metrics.to_dict()}")
        self._connected = False

    def _not_connected(self, operation: str) -> Err[KVLinkError]:
        return Err(StoreError.unavailable(operation, RuntimeError("not connected")))

    def _to_entry(self, key: Key, data: Dict[bytes, bytes]) -> Entry:
        if not data:
            return Entry(key=key)
        return Entry(
            key=key,
            value=self._codec.decode(data[b"d"]),
            version=data[b"v"].decode("ascii"),
        )

    # -------------------------------------------------------------------------
    # READS
    # -------------------------------------------------------------------------

    async def get(self, key: Key) -> Result[Entry, KVLinkError]:
        """Complexity: O(1) - Redis HGETALL is constant time."""
        if not self._connected or self._client is None:
            return self._not_connected("get")

        start_ns = time.perf_counter_ns()
        try:
            data = await self._client.hgetall(encode_key(self._config.key_namespace, key))
            entry = self._to_entry(key, data)
            self._metrics.record_get(time.perf_counter_ns() - start_ns)
            return Ok(entry)
        except _STORE_ERRORS as e:
            self._metrics.record_error(e)
            return Err(StoreError.unavailable("get", e))
        except (KeyError, ValueError) as e:
            return Err(StoreError.unavailable("get", e).with_context(key=repr(key)))

    async def get_many(self, keys: List[Key]) -> Result[List[Entry], KVLinkError]:
        """
        Read many keys in a single round trip.

        Complexity: O(k) where k = len(keys), single round-trip.
        """
        if not self._connected or self._client is None:
            return self._not_connected("get_many")
        if not keys:
            return Ok([])

        try:
            async with self._client.pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.hgetall(encode_key(self._config.key_namespace, key))
                results = await pipe.execute()

            self._metrics.pipeline_count += 1
            return Ok([self._to_entry(key, data) for key, data in zip(keys, results)])
        except _STORE_ERRORS as e:
            self._metrics.record_error(e)
            return Err(StoreError.unavailable("get_many", e))
        except (KeyError, ValueError) as e:
            return Err(StoreError.unavailable("get_many", e))

    async def scan(
        self,
        prefix: Key,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Result[Tuple[List[Entry], Optional[str]], KVLinkError]:
        """
        Prefix scan via SCAN MATCH.

        ``limit`` is passed as the SCAN count hint, so a page may hold
        somewhat more or fewer entries than requested. Order follows the
        Redis hash table, not key order. Keys whose hash vanished between
        SCAN and HGETALL are skipped.
        """
        if not self._connected or self._client is None:
            return self._not_connected("scan")

        namespace = self._config.key_namespace
        try:
            scan_cursor = int(cursor) if cursor else 0
            # SCAN may return a key more than once
            seen: Dict[bytes, None] = {}

            while True:
                scan_cursor, batch = await self._client.scan(
                    cursor=scan_cursor,
                    match=scan_pattern(namespace, prefix),
                    count=min(MAX_SCAN_COUNT, max(1, limit)),
                )
                seen.update(dict.fromkeys(batch))
                if scan_cursor == 0 or len(seen) >= limit:
                    break

            raw_keys = list(seen)
            entries: List[Entry] = []
            if raw_keys:
                async with self._client.pipeline(transaction=False) as pipe:
                    for raw in raw_keys:
                        pipe.hgetall(raw)
                    values = await pipe.execute()

                for raw, data in zip(raw_keys, values):
                    if data:
                        key = decode_key(namespace, raw.decode("utf-8"))
                        entries.append(self._to_entry(key, data))

            self._metrics.scan_count += 1
            next_cursor = str(scan_cursor) if scan_cursor != 0 else None
            return Ok((entries, next_cursor))
        except _STORE_ERRORS as e:
            self._metrics.record_error(e)
            return Err(StoreError.unavailable("scan", e))
        except (KeyError, ValueError) as e:
            return Err(StoreError.unavailable("scan", e))

    # -------------------------------------------------------------------------
    # ATOMIC COMMIT
    # -------------------------------------------------------------------------

    def atomic(self) -> Transaction:
        return Transaction(self._commit)

    def build_commit_args(
        self,
        batch: AtomicBatch,
    ) -> Tuple[List[str], List[Any], List[Key]]:
        """
        Translate a batch into (KEYS, ARGV, key order) for the commit script.

        Key indexes in the plan are 1-based Lua indexes into KEYS.

        Raises:
            StoreError: A SET value has no JSON representation
        """
        namespace = self._config.key_namespace
        redis_keys: List[str] = [self._version_key]
        key_order: List[Key] = []
        index: Dict[Key, int] = {}

        def _idx(key: Key) -> int:
            if key not in index:
                redis_keys.append(encode_key(namespace, key))
                key_order.append(key)
                index[key] = len(redis_keys)
            return index[key]

        values: List[bytes] = []
        checks = [[_idx(c.key), c.version or ""] for c in batch.checks]
        mutations = []
        for m in batch.mutations:
            if m.op is MutationType.SET:
                try:
                    values.append(self._codec.encode(m.value))
                except (TypeError, ValueError) as e:
                    raise StoreError.value_not_encodable(repr(m.key), e) from e
                # ARGV[1] is the plan, values start at ARGV[2]
                mutations.append(["s", _idx(m.key), len(values) + 1, m.expire_in_ms or 0])
            else:
                mutations.append(["d", _idx(m.key), 0, 0])

        plan = json.dumps({"c": checks, "m": mutations}, separators=(",", ":"))
        return redis_keys, [plan, *values], key_order

    async def _commit(self, batch: AtomicBatch) -> Result[CommitInfo, KVLinkError]:
        if not self._connected or self._client is None:
            return self._not_connected("commit")

        limit = self._config.max_mutations
        if batch.mutation_count > limit:
            return Err(StoreError.transaction_too_large(batch.mutation_count, limit))

        start_ns = time.perf_counter_ns()
        try:
            keys, args, key_order = self.build_commit_args(batch)
            reply = await self._commit_script(keys=keys, args=args)
        except StoreError as e:
            return Err(e)
        except _STORE_ERRORS as e:
            self._metrics.record_error(e)
            return Err(StoreError.unavailable("commit", e))

        self._metrics.record_commit(time.perf_counter_ns() - start_ns)
        status, detail = int(reply[0]), reply[1]
        if status != 1:
            self._metrics.commit_conflicts += 1
            # detail is the 1-based KEYS index; KEYS[1] is the counter
            failed = key_order[int(detail) - 2]
            return Err(StoreError.conflict("commit", keys=[repr(failed)]))

        version = detail.decode("ascii") if isinstance(detail, bytes) else str(detail)
        return Ok(CommitInfo(versionstamp=version, mutations=batch.mutation_count))

    @property
    def metrics(self) -> RedisMetrics:
        """Get current metrics snapshot."""
        return self._metrics


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    "RedisKVStore",
    "RedisMetrics",
    "LUA_COMMIT_SCRIPT",
    "encode_key",
    "decode_key",
    "scan_pattern",
]
