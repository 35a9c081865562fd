"""
Index Engine: Consistent Owner/Dependent Indexes for One Dependent Kind

Maintains three structures per dependent kind:
    primary:  <primary>/<id>          -> record
    forward:  <forward>/<owner>[/...] -> member ids (see forward.py)
    reverse:  <reverse>/<id>          -> owner id

Invariant after every completed operation:
    primary exists  <=>  reverse exists  <=>  id in forward[owner]

Every write is a single atomic transaction over all three structures,
guarded by commit checks where a concurrent writer could otherwise
break the invariant:
    create           require_absent(primary), require_version(principal)
    update (expiry)  require_version(primary)
    forward set      require_version(set key)

Preconditions are read before the transaction is built and reported as
typed errors. Store conflicts and unavailability surface unchanged; the
engine never retries and holds no cache.

Design Principles:
    - Zero-exception control flow via Result monad
    - One parameterized engine per kind, sharing the principal namespace
    - A stale forward entry never wins over an absent primary record

Author: kvlink maintainers
License: MIT
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from kvlink.core import constants as C
from kvlink.core.config import EngineConfig, ExpiryMode, ForwardMode
from kvlink.core.errors import ErrorCode, IndexEngineError, KVLinkError
from kvlink.core.types import Err, Ok, Result, now_millis
from kvlink.index.forward import ForwardIndex, ForwardSnapshot, create_forward_index
from kvlink.index.keyspace import KeySpace, KindLayout
from kvlink.storage.protocols import Entry, StoreClient
from kvlink.storage.transaction import Transaction

logger = logging.getLogger(__name__)

Record = dict[str, Any]


# =============================================================================
# DEPENDENT KIND
# =============================================================================
@dataclass(frozen=True, slots=True)
class DependentKind:
    """
    Static description of one dependent entity kind.

    Attributes:
        name: Kind name used in errors and logs ("session", "key")
        layout: Key sub-prefixes for this kind
        owner_field: Record field holding the owner's id
        expiry_field: Record field holding the expiry (epoch ms)
        expiry_mode: How records of this kind expire
    """

    name: str
    layout: KindLayout
    owner_field: str = C.DEFAULT_OWNER_FIELD
    expiry_field: str = C.DEFAULT_EXPIRY_FIELD
    expiry_mode: ExpiryMode = ExpiryMode.SWEEP

    @property
    def expires(self) -> bool:
        return self.expiry_mode is not ExpiryMode.NONE


# =============================================================================
# METRICS
# =============================================================================
@dataclass
class IndexMetrics:
    """Per-engine operation counters."""

    creates: int = 0
    updates: int = 0
    deletes: int = 0
    cascaded: int = 0
    conflicts: int = 0
    shards: int = 0


# =============================================================================
# INDEX ENGINE
# =============================================================================
class IndexEngine:
    """
    Create/read/update/delete for one dependent kind.

    Example:
        sessions = IndexEngine(store, KeySpace(), SESSION_KIND)
        result = await sessions.create({"id": "s1", "user_id": "u1",
                                        "expires_at": now_ms + 3_600_000})
        match result:
            case Ok(record):
                ...
            case Err(error) if error.code is ErrorCode.OWNER_NOT_FOUND:
                ...
    """

    __slots__ = (
        "store",
        "keyspace",
        "kind",
        "keys",
        "forward",
        "metrics",
        "_config",
        "_clock",
    )

    def __init__(
        self,
        store: StoreClient,
        keyspace: KeySpace,
        kind: DependentKind,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self.store = store
        self.keyspace = keyspace
        self.kind = kind
        self.keys = keyspace.for_kind(kind.layout)
        self._config = config or EngineConfig()
        self._clock = clock
        self.forward: ForwardIndex = create_forward_index(
            self._config.forward_mode,
            store,
            self.keys,
            C.SWEEP_SCAN_PAGE_SIZE,
        )
        self.metrics = IndexMetrics()

    @property
    def name(self) -> str:
        return self.kind.name

    @property
    def forward_mode(self) -> ForwardMode:
        return self.forward.mode

    @property
    def mutation_limit(self) -> int:
        """Effective per-transaction limit: engine config capped by the store."""
        limit = self._config.max_mutations_per_transaction
        store_limit = self.store.max_mutations
        if store_limit is not None:
            limit = min(limit, store_limit)
        return limit

    @property
    def removal_cost(self) -> int:
        """Mutations needed to unlink one member (primary, reverse, forward)."""
        return 2 + self.forward.member_mutations

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, dependent_id: str) -> Result[Optional[Record], KVLinkError]:
        """Return the record, or Ok(None) when absent."""
        result = await self.store.get(self.keys.primary_key(dependent_id))
        if result.is_err():
            return result
        entry = result.unwrap()
        return Ok(entry.value if entry.exists else None)

    async def get_by_owner(self, owner_id: str) -> Result[list[Record], KVLinkError]:
        """
        All live records owned by ``owner_id``.

        Reads the forward membership, then the member primaries in batches.
        Members whose primary is absent (expired or mid-delete) are
        filtered. Not atomic with concurrent writers.
        """
        membership = await self.forward.read(owner_id)
        if membership.is_err():
            return membership

        entries = await self.primaries(list(membership.unwrap().member_ids))
        if entries.is_err():
            return entries
        return Ok([e.value for e in entries.unwrap() if e.exists])

    async def read_members(self, owner_id: str) -> Result[ForwardSnapshot, KVLinkError]:
        return await self.forward.read(owner_id)

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create(self, record: Record) -> Result[Record, KVLinkError]:
        """
        Insert a dependent and link it into both indexes atomically.

        Preconditions, first failure wins:
            1. owner field non-empty      -> MISSING_OWNER
            2. owner principal exists     -> OWNER_NOT_FOUND
            3. no record with this id     -> DUPLICATE_ID
            4. integer expiry, when set   -> INVALID_ATTRIBUTES

        A concurrent create of the same id, or deletion of the owner,
        fails the commit with CONFLICT and applies nothing.
        """
        record = dict(record)
        invalid = self.validate_new(record)
        if invalid is not None:
            return invalid

        dependent_id = record[C.ID_FIELD]
        owner_id = record.get(self.kind.owner_field)
        if not isinstance(owner_id, str) or not owner_id:
            return Err(IndexEngineError.missing_owner(self.kind.name, self.kind.owner_field))

        owner = await self.store.get(self.keyspace.principal_key(owner_id))
        if owner.is_err():
            return owner
        owner_entry = owner.unwrap()
        if not owner_entry.exists:
            return Err(IndexEngineError.owner_not_found(self.kind.name, owner_id))

        existing = await self.store.get(self.keys.primary_key(dependent_id))
        if existing.is_err():
            return existing
        if existing.unwrap().exists:
            return Err(IndexEngineError.duplicate_id(self.kind.name, dependent_id))

        invalid = self.validate_expiry(record)
        if invalid is not None:
            return invalid

        snapshot = await self.forward.read_for_write(owner_id)
        if snapshot.is_err():
            return snapshot

        tx = self.store.atomic()
        tx.require_version(owner_entry.key, owner_entry.version)
        self.stage_insert(tx, record, snapshot.unwrap())

        commit = await tx.commit()
        if commit.is_err():
            return self._write_failed(commit.error, "create", dependent_id)

        self.metrics.creates += 1
        logger.debug(f"Created {self.kind.name} {dependent_id} for owner {owner_id}")
        return Ok(record)

    def stage_insert(self, tx: Transaction, record: Record, snapshot: ForwardSnapshot) -> None:
        """
        Stage primary, reverse, and forward writes for a validated record.

        Also used by PrincipalStore.create for an initial dependent.
        """
        dependent_id = record[C.ID_FIELD]
        owner_id = record[self.kind.owner_field]
        ttl = self._ttl_for(record)
        primary = self.keys.primary_key(dependent_id)

        tx.require_absent(primary)
        tx.set(primary, record, expire_in_ms=ttl)
        tx.set(self.keys.reverse_key(dependent_id), owner_id, expire_in_ms=ttl)
        self.forward.stage_add(tx, snapshot, dependent_id)

    def validate_new(self, record: Record) -> Optional[Err[KVLinkError]]:
        dependent_id = record.get(C.ID_FIELD)
        if not isinstance(dependent_id, str) or not dependent_id:
            return Err(IndexEngineError.invalid_attributes(
                self.kind.name, [C.ID_FIELD], "id must be a non-empty string",
            ))
        return None

    def validate_expiry(self, attributes: Record) -> Optional[Err[KVLinkError]]:
        field_name = self.kind.expiry_field
        if not self.kind.expires or field_name not in attributes:
            return None
        value = attributes[field_name]
        if isinstance(value, bool) or not isinstance(value, int):
            return Err(IndexEngineError.invalid_attributes(
                self.kind.name, [field_name], "expiry must be integer epoch milliseconds",
            ))
        return None

    def _ttl_for(self, record: Record) -> Optional[int]:
        """Store TTL in ms under NATIVE expiry, else None."""
        if self.kind.expiry_mode is not ExpiryMode.NATIVE:
            return None
        expires_at = record.get(self.kind.expiry_field)
        if expires_at is None:
            return None
        # Already-expired records still get a (minimal) TTL
        return max(1, expires_at - self._clock())

    def is_expired(self, record: Record, now_ms: int) -> bool:
        """True when the record's expiry is at or before ``now_ms``."""
        if not self.kind.expires:
            return False
        expires_at = record.get(self.kind.expiry_field)
        if isinstance(expires_at, bool) or not isinstance(expires_at, int):
            return False
        return expires_at <= now_ms

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    async def update(self, dependent_id: str, partial: Record) -> Result[Record, KVLinkError]:
        """
        Shallow-merge ``partial`` into the record. Index structures untouched.

        The id and owner fields cannot change. A payload that touches the
        expiry field is conditional on the version the read observed, so
        it loses with CONFLICT against a concurrent delete. Other updates
        are last-writer-wins unless EngineConfig.strict_updates is set.
        """
        protected = [f for f in (C.ID_FIELD, self.kind.owner_field) if f in partial]
        if protected:
            return Err(IndexEngineError.invalid_attributes(
                self.kind.name, protected, "index fields cannot be updated",
            ))
        invalid = self.validate_expiry(partial)
        if invalid is not None:
            return invalid

        versioned = self._config.strict_updates or self.kind.expiry_field in partial
        return await self._merge_write(dependent_id, dict(partial), versioned, "update")

    async def extend_expiry(self, dependent_id: str, expires_at: int) -> Result[Record, KVLinkError]:
        """Version-checked change of the expiry field only."""
        if not self.kind.expires:
            return Err(IndexEngineError.invalid_attributes(
                self.kind.name, [self.kind.expiry_field], f"{self.kind.name} records do not expire",
            ))
        partial = {self.kind.expiry_field: expires_at}
        invalid = self.validate_expiry(partial)
        if invalid is not None:
            return invalid
        return await self._merge_write(dependent_id, partial, True, "extend_expiry")

    async def _merge_write(
        self,
        dependent_id: str,
        partial: Record,
        versioned: bool,
        operation: str,
    ) -> Result[Record, KVLinkError]:
        primary = self.keys.primary_key(dependent_id)
        current = await self.store.get(primary)
        if current.is_err():
            return current
        entry = current.unwrap()
        if not entry.exists:
            return Err(IndexEngineError.not_found(self.kind.name, dependent_id))

        merged = {**entry.value, **partial}
        ttl = self._ttl_for(merged)

        tx = self.store.atomic()
        if versioned:
            tx.require_version(primary, entry.version)
        tx.set(primary, merged, expire_in_ms=ttl)
        if ttl is not None:
            # Keep the reverse pointer's lifetime in step with the record
            tx.set(self.keys.reverse_key(dependent_id), merged[self.kind.owner_field], expire_in_ms=ttl)

        commit = await tx.commit()
        if commit.is_err():
            return self._write_failed(commit.error, operation, dependent_id)

        self.metrics.updates += 1
        return Ok(merged)

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def delete(self, dependent_id: str) -> Result[bool, KVLinkError]:
        """
        Unlink and delete one record.

        Returns Ok(False) without writing when no reverse pointer exists.
        """
        reverse = await self.store.get(self.keys.reverse_key(dependent_id))
        if reverse.is_err():
            return reverse
        reverse_entry = reverse.unwrap()
        if not reverse_entry.exists:
            return Ok(False)

        owner_id = reverse_entry.value
        snapshot = await self.forward.read_for_write(owner_id)
        if snapshot.is_err():
            return snapshot

        tx = self.store.atomic()
        self.stage_unlink(tx, snapshot.unwrap(), [dependent_id])

        commit = await tx.commit()
        if commit.is_err():
            return self._write_failed(commit.error, "delete", dependent_id)

        self.metrics.deletes += 1
        logger.debug(f"Deleted {self.kind.name} {dependent_id}")
        return Ok(True)

    def stage_unlink(
        self,
        tx: Transaction,
        snapshot: ForwardSnapshot,
        dependent_ids: Iterable[str],
    ) -> None:
        """Stage deletion of primary, reverse, and forward membership."""
        dependent_ids = list(dependent_ids)
        for dependent_id in dependent_ids:
            tx.delete(self.keys.primary_key(dependent_id))
            tx.delete(self.keys.reverse_key(dependent_id))
        self.forward.stage_remove(tx, snapshot, dependent_ids)

    def stage_forward_clear(self, tx: Transaction, snapshot: ForwardSnapshot) -> None:
        self.forward.stage_remove(tx, snapshot, snapshot.member_ids)

    def stage_member_removal(self, tx: Transaction, snapshot: ForwardSnapshot) -> None:
        for dependent_id in snapshot.member_ids:
            tx.delete(self.keys.primary_key(dependent_id))
            tx.delete(self.keys.reverse_key(dependent_id))

    def cascade_cost(self, snapshot: ForwardSnapshot) -> int:
        """Mutations needed to remove every member of ``snapshot`` in one commit."""
        return self.forward.owner_mutations + self.removal_cost * len(snapshot.member_ids)

    async def delete_all_by_owner(self, owner_id: str) -> Result[int, KVLinkError]:
        """
        Delete every dependent of ``owner_id`` and clear its forward index.

        One transaction when it fits the mutation limit. Otherwise the
        members are removed in sequential shards, each covering whole
        members, so the invariant holds per member even if a later shard
        fails (best-effort cascade; the error carries the removed count).
        """
        membership = await self.forward.read(owner_id)
        if membership.is_err():
            return membership
        snapshot = membership.unwrap()
        if not snapshot.member_ids:
            return Ok(0)

        per_shard = max(1, (self.mutation_limit - self.forward.owner_mutations) // self.removal_cost)
        members = snapshot.member_ids
        shards = [members[i:i + per_shard] for i in range(0, len(members), per_shard)]
        if len(shards) > 1:
            logger.info(
                f"Sharding cascade of {len(members)} {self.kind.name} records "
                f"for owner {owner_id} into {len(shards)} transactions"
            )

        removed = 0
        for shard in shards:
            tx = self.store.atomic()
            self.stage_unlink(tx, snapshot, shard)
            commit = await tx.commit()
            if commit.is_err():
                error = commit.error.with_context(owner_id=owner_id, removed=removed)
                return self._write_failed(error, "delete_all_by_owner", owner_id)
            snapshot = self.forward.after_remove(snapshot, shard, commit.unwrap().versionstamp)
            removed += len(shard)
            self.metrics.shards += 1

        self.metrics.cascaded += removed
        return Ok(removed)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _write_failed(
        self,
        error: KVLinkError,
        operation: str,
        subject: str,
    ) -> Err[KVLinkError]:
        if error.code is ErrorCode.CONFLICT:
            self.metrics.conflicts += 1
            logger.warning(f"{self.kind.name} {operation} conflict on {subject}")
        return Err(error.with_context(kind=self.kind.name, operation=operation, subject=subject))

    async def primaries(self, dependent_ids: list[str]) -> Result[list[Entry], KVLinkError]:
        """Batched read of primary entries, one per id, in input order."""
        entries: list[Entry] = []
        batch_size = self._config.get_many_batch_size
        for start in range(0, len(dependent_ids), batch_size):
            chunk = dependent_ids[start:start + batch_size]
            result = await self.store.get_many([self.keys.primary_key(i) for i in chunk])
            if result.is_err():
                return result
            entries.extend(result.unwrap())
        return Ok(entries)
