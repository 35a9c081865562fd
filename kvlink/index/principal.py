"""
Principal Store: owner records and the cascade across dependent kinds.

delete_owner builds one transaction that removes the principal, every
registered kind's forward index, and every dependent's primary record
and reverse pointer. A caller hook runs in the middle of staging with a
stage-only view, so it can add its own writes to the same commit:

    stage principal delete + forward clears
    hook(view, owner_id)          # may stage; cannot commit
    stage dependent primaries + reverse pointers
    commit

If the hook raises, the transaction is discarded and nothing applies.
When the cascade exceeds the mutation limit, dependents are removed
first through each engine's sharded delete_all_by_owner, and the final
transaction carries only the principal and the hook's work.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from kvlink.core import constants as C
from kvlink.core.config import EngineConfig
from kvlink.core.errors import (
    CascadeError,
    IndexEngineError,
    KVLinkError,
    StoreError,
)
from kvlink.core.types import Err, Ok, Result
from kvlink.index.engine import IndexEngine, Record
from kvlink.index.forward import ForwardSnapshot
from kvlink.index.keyspace import KeySpace
from kvlink.storage.protocols import StoreClient
from kvlink.storage.transaction import StagingView, Transaction

logger = logging.getLogger(__name__)

CascadeHook = Callable[[StagingView, str], Union[None, Awaitable[None]]]

_PRINCIPAL = "principal"


@dataclass(frozen=True, slots=True)
class InitialDependent:
    """A dependent created in the same transaction as its principal."""

    kind: str
    record: Record


@dataclass
class CascadeReport:
    """Outcome of delete_owner."""

    owner_id: str
    principal_existed: bool
    removed: dict[str, int] = field(default_factory=dict)
    sharded: bool = False
    versionstamp: Optional[str] = None

    @property
    def total_removed(self) -> int:
        return sum(self.removed.values())


class PrincipalStore:
    """
    Principal CRUD plus cascade deletion across registered engines.

    Example:
        principals = PrincipalStore(store, keyspace)
        principals.register(sessions)
        await principals.create({"id": "u1", "username": "ada"})
        report = (await principals.delete_owner("u1", hook=audit)).unwrap()
    """

    __slots__ = ("store", "keyspace", "_engines", "_config")

    def __init__(
        self,
        store: StoreClient,
        keyspace: KeySpace,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.store = store
        self.keyspace = keyspace
        self._engines: dict[str, IndexEngine] = {}
        self._config = config or EngineConfig()

    def register(self, engine: IndexEngine) -> None:
        if engine.keyspace != self.keyspace:
            raise ValueError(f"Engine {engine.name!r} uses a different key space")
        if engine.name in self._engines:
            raise ValueError(f"Engine {engine.name!r} already registered")
        self._engines[engine.name] = engine

    @property
    def engines(self) -> dict[str, IndexEngine]:
        return dict(self._engines)

    @property
    def mutation_limit(self) -> int:
        limit = self._config.max_mutations_per_transaction
        if self.store.max_mutations is not None:
            limit = min(limit, self.store.max_mutations)
        return limit

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    async def get(self, owner_id: str) -> Result[Optional[Record], KVLinkError]:
        result = await self.store.get(self.keyspace.principal_key(owner_id))
        if result.is_err():
            return result
        entry = result.unwrap()
        return Ok(entry.value if entry.exists else None)

    async def create(
        self,
        record: Record,
        initial: Optional[InitialDependent] = None,
    ) -> Result[Record, KVLinkError]:
        """
        Create a principal, optionally with one dependent, atomically.

        DUPLICATE_ID if the principal or the initial dependent exists.
        The initial dependent's owner field defaults to the principal id
        and must match it when present.
        """
        record = dict(record)
        owner_id = record.get(C.ID_FIELD)
        if not isinstance(owner_id, str) or not owner_id:
            return Err(IndexEngineError.invalid_attributes(
                _PRINCIPAL, [C.ID_FIELD], "id must be a non-empty string",
            ))

        principal_key = self.keyspace.principal_key(owner_id)
        existing = await self.store.get(principal_key)
        if existing.is_err():
            return existing
        if existing.unwrap().exists:
            return Err(IndexEngineError.duplicate_id(_PRINCIPAL, owner_id))

        tx = self.store.atomic()
        tx.require_absent(principal_key)
        tx.set(principal_key, record)

        if initial is not None:
            staged = await self._stage_initial(tx, owner_id, initial)
            if staged is not None:
                tx.discard()
                return staged

        commit = await tx.commit()
        if commit.is_err():
            return Err(commit.error.with_context(operation="create_principal", subject=owner_id))

        logger.debug(f"Created principal {owner_id}")
        return Ok(record)

    async def _stage_initial(
        self,
        tx: Transaction,
        owner_id: str,
        initial: InitialDependent,
    ) -> Optional[Err[KVLinkError]]:
        engine = self._engines.get(initial.kind)
        if engine is None:
            return Err(IndexEngineError.invalid_attributes(
                initial.kind, ["kind"], "no engine registered for this kind",
            ))

        dependent = dict(initial.record)
        owner_field = engine.kind.owner_field
        dependent.setdefault(owner_field, owner_id)
        if dependent[owner_field] != owner_id:
            return Err(IndexEngineError.invalid_attributes(
                engine.name, [owner_field], "initial dependent must belong to the new principal",
            ))

        invalid = engine.validate_new(dependent)
        if invalid is not None:
            return invalid

        dependent_id = dependent[C.ID_FIELD]
        existing = await self.store.get(engine.keys.primary_key(dependent_id))
        if existing.is_err():
            return existing
        if existing.unwrap().exists:
            return Err(IndexEngineError.duplicate_id(engine.name, dependent_id))

        invalid = engine.validate_expiry(dependent)
        if invalid is not None:
            return invalid

        snapshot = await engine.forward.read_for_write(owner_id)
        if snapshot.is_err():
            return snapshot
        engine.stage_insert(tx, dependent, snapshot.unwrap())
        return None

    async def update(self, owner_id: str, partial: Record) -> Result[Record, KVLinkError]:
        """
        Shallow-merge ``partial`` into the principal.

        Always conditional on the observed version, so an update never
        resurrects a principal deleted in between.
        """
        if C.ID_FIELD in partial:
            return Err(IndexEngineError.invalid_attributes(
                _PRINCIPAL, [C.ID_FIELD], "id cannot be updated",
            ))

        key = self.keyspace.principal_key(owner_id)
        current = await self.store.get(key)
        if current.is_err():
            return current
        entry = current.unwrap()
        if not entry.exists:
            return Err(IndexEngineError.not_found(_PRINCIPAL, owner_id))

        merged = {**entry.value, **partial}
        tx = self.store.atomic()
        tx.require_version(key, entry.version)
        tx.set(key, merged)

        commit = await tx.commit()
        if commit.is_err():
            return Err(commit.error.with_context(operation="update_principal", subject=owner_id))
        return Ok(merged)

    # -------------------------------------------------------------------------
    # Cascade
    # -------------------------------------------------------------------------

    async def delete_owner(
        self,
        owner_id: str,
        hook: Optional[CascadeHook] = None,
    ) -> Result[CascadeReport, KVLinkError]:
        """
        Delete a principal and every dependent of every registered kind.

        The hook receives a stage-only view and the owner id. It may be a
        plain function or a coroutine function. The view is sealed once
        the hook returns.
        """
        principal_key = self.keyspace.principal_key(owner_id)
        current = await self.store.get(principal_key)
        if current.is_err():
            return current
        principal = current.unwrap()

        report = CascadeReport(owner_id=owner_id, principal_existed=principal.exists)

        snapshots = await self._read_all_members(owner_id)
        if snapshots.is_err():
            return snapshots
        members = snapshots.unwrap()

        if self._cascade_cost(members) > self.mutation_limit:
            report.sharded = True
            for name, engine in self._engines.items():
                removed = await engine.delete_all_by_owner(owner_id)
                if removed.is_err():
                    return removed
                report.removed[name] = removed.unwrap()

            # Pick up anything created while the shards ran
            snapshots = await self._read_all_members(owner_id)
            if snapshots.is_err():
                return snapshots
            members = snapshots.unwrap()

        tx = self.store.atomic()
        tx.require_version(principal_key, principal.version)
        tx.delete(principal_key)
        for name, snapshot in members.items():
            self._engines[name].stage_forward_clear(tx, snapshot)

        if hook is not None:
            view = tx.staging_view()
            try:
                outcome = hook(view, owner_id)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                tx.discard()
                logger.warning(f"Cascade hook failed for owner {owner_id}: {e}")
                return Err(CascadeError.hook_failed(owner_id, e))
            finally:
                view.seal()

        for name, snapshot in members.items():
            self._engines[name].stage_member_removal(tx, snapshot)
            report.removed[name] = report.removed.get(name, 0) + len(snapshot)

        if tx.mutation_count > self.mutation_limit:
            count = tx.mutation_count
            tx.discard()
            return Err(StoreError.transaction_too_large(count, self.mutation_limit).with_context(
                owner_id=owner_id,
            ))

        commit = await tx.commit()
        if commit.is_err():
            return Err(commit.error.with_context(operation="delete_owner", subject=owner_id))

        report.versionstamp = commit.unwrap().versionstamp
        for name, snapshot in members.items():
            self._engines[name].metrics.cascaded += len(snapshot)
        logger.info(
            f"Deleted owner {owner_id} with {report.total_removed} dependents"
            f"{' (sharded)' if report.sharded else ''}"
        )
        return Ok(report)

    async def _read_all_members(
        self,
        owner_id: str,
    ) -> Result[dict[str, ForwardSnapshot], KVLinkError]:
        members: dict[str, ForwardSnapshot] = {}
        for name, engine in self._engines.items():
            result = await engine.read_members(owner_id)
            if result.is_err():
                return result
            members[name] = result.unwrap()
        return Ok(members)

    def _cascade_cost(self, members: dict[str, ForwardSnapshot]) -> int:
        return 1 + sum(
            self._engines[name].cascade_cost(snapshot)
            for name, snapshot in members.items()
        )
