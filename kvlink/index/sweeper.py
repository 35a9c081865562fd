"""
Expiry Sweeper: removes expired dependents and repairs index leftovers.

States:
    IDLE ──sweep()/prune_*()──► SWEEPING ──done──► IDLE

The sweeper is triggered externally (CLI, scheduler). It does not queue
or reject overlapping calls; every delete it issues is guarded by commit
checks, so overlapping passes are safe and simply report conflicts.

sweep()
    Pages through every primary record of the kind and deletes those
    whose expiry is at or before ``now``, together with their reverse
    pointer and forward membership. Each delete requires the primary to
    still carry the version the scan observed, so a record whose expiry
    was extended after the scan is never deleted.

prune_dangling()
    Removes forward entries whose primary record is gone (store-native
    TTL leftovers). Guarded by require_absent(primary), so a record
    re-created in between is never unlinked.

prune_orphans()
    Removes dependents whose owner principal no longer exists, guarded
    by require_absent(principal).

Transactions never exceed the engine's mutation limit. A batch that
conflicts is retried record by record; records that still conflict are
counted and left for the next pass.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Awaitable, Callable, Optional

from kvlink.core.config import SweeperConfig
from kvlink.core.errors import ErrorCode, KVLinkError
from kvlink.core.types import Err, Ok, Result, now_millis
from kvlink.index.engine import IndexEngine
from kvlink.index.forward import ForwardSnapshot
from kvlink.observability.logging import StructuredLogger
from kvlink.storage.protocols import CommitInfo, Entry

_log = StructuredLogger(__name__)


class SweeperState(Enum):
    """Sweeper execution state."""
    IDLE = auto()
    SWEEPING = auto()


@dataclass
class SweepReport:
    """Outcome of one expiry sweep."""
    kind: str
    now_ms: int = 0
    scanned: int = 0
    expired: int = 0
    deleted: int = 0
    conflicts: int = 0
    transactions: int = 0


@dataclass
class PruneReport:
    """Outcome of one repair pass."""
    kind: str
    scanned: int = 0
    removed: int = 0
    conflicts: int = 0
    transactions: int = 0


Commit = Callable[[list], Awaitable[Result[CommitInfo, KVLinkError]]]


class ExpirySweeper:
    """
    Sweeps one dependent kind.

    Usage:
        sweeper = ExpirySweeper(index.sessions)
        report = (await sweeper.sweep()).unwrap()
    """

    __slots__ = ("_engine", "_config", "_clock", "_active", "_log")

    def __init__(
        self,
        engine: IndexEngine,
        config: Optional[SweeperConfig] = None,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self._engine = engine
        self._config = config or SweeperConfig()
        self._clock = clock
        self._active = 0
        self._log = _log.with_extra(kind=engine.name)

    @property
    def state(self) -> SweeperState:
        return SweeperState.SWEEPING if self._active else SweeperState.IDLE

    @property
    def engine(self) -> IndexEngine:
        return self._engine

    def _capacity(self) -> int:
        """Records per transaction, assuming each touches its own owner."""
        per_record = self._engine.removal_cost + self._engine.forward.owner_mutations
        return max(1, self._engine.mutation_limit // per_record)

    # -------------------------------------------------------------------------
    # Expiry
    # -------------------------------------------------------------------------

    async def sweep(self, now_ms: Optional[int] = None) -> Result[SweepReport, KVLinkError]:
        """Delete every record of the kind expired at ``now_ms`` (default: now)."""
        now = self._clock() if now_ms is None else now_ms
        report = SweepReport(kind=self._engine.name, now_ms=now)
        if not self._engine.kind.expires:
            return Ok(report)

        self._active += 1
        try:
            result = await self._sweep(now, report)
        finally:
            self._active -= 1

        if result.is_ok():
            self._log.info(
                "Sweep finished",
                scanned=report.scanned,
                expired=report.expired,
                deleted=report.deleted,
                conflicts=report.conflicts,
            )
        return result

    async def _sweep(self, now: int, report: SweepReport) -> Result[SweepReport, KVLinkError]:
        prefix = self._engine.keys.primary_prefix()
        page_size = self._config.scan_page_size
        cursor: Optional[str] = None

        while True:
            page = await self._engine.store.scan(prefix, limit=page_size, cursor=cursor)
            if page.is_err():
                return page
            entries, cursor = page.unwrap()
            report.scanned += len(entries)

            expired = [
                e for e in entries
                if len(e.key) == len(prefix) + 1
                and isinstance(e.value, dict)
                and self._engine.is_expired(e.value, now)
            ]
            report.expired += len(expired)

            if expired:
                outcome = await self._run_batches(expired, self._commit_expired, report)
                if outcome is not None:
                    return outcome

            if cursor is None:
                return Ok(report)

    async def _commit_expired(self, entries: list[Entry]) -> Result[CommitInfo, KVLinkError]:
        engine = self._engine
        owner_field = engine.kind.owner_field
        tx = engine.store.atomic()
        by_owner: dict[str, list[str]] = {}

        for entry in entries:
            dependent_id = entry.key[-1]
            tx.require_version(entry.key, entry.version)
            owner_id = entry.value.get(owner_field)
            if isinstance(owner_id, str) and owner_id:
                by_owner.setdefault(owner_id, []).append(dependent_id)
            else:
                tx.delete(entry.key)
                tx.delete(engine.keys.reverse_key(dependent_id))

        for owner_id, ids in by_owner.items():
            snapshot = await engine.forward.read_for_write(owner_id)
            if snapshot.is_err():
                tx.discard()
                return snapshot
            engine.stage_unlink(tx, snapshot.unwrap(), ids)

        return await tx.commit()

    async def _run_batches(
        self,
        items: list,
        commit: Commit,
        report: SweepReport | PruneReport,
    ) -> Optional[Err[KVLinkError]]:
        """
        Commit ``items`` in capacity-sized batches.

        Returns None when every batch was applied or conflicted, or the
        first non-conflict error.
        """
        capacity = self._capacity()
        for start in range(0, len(items), capacity):
            batch = items[start:start + capacity]
            result = await commit(batch)
            if result.is_ok():
                self._count_applied(report, len(batch))
                continue
            if result.error.code is not ErrorCode.CONFLICT:
                return result
            if len(batch) == 1:
                report.conflicts += 1
                continue

            for item in batch:
                single = await commit([item])
                if single.is_ok():
                    self._count_applied(report, 1)
                elif single.error.code is ErrorCode.CONFLICT:
                    report.conflicts += 1
                else:
                    return single
        return None

    @staticmethod
    def _count_applied(report: SweepReport | PruneReport, count: int) -> None:
        report.transactions += 1
        if isinstance(report, SweepReport):
            report.deleted += count
        else:
            report.removed += count

    # -------------------------------------------------------------------------
    # Repair
    # -------------------------------------------------------------------------

    async def prune_dangling(self, owner_id: Optional[str] = None) -> Result[PruneReport, KVLinkError]:
        """Unlink forward entries whose primary record is absent."""
        report = PruneReport(kind=self._engine.name)
        self._active += 1
        try:
            result = await self._prune_dangling(owner_id, report)
        finally:
            self._active -= 1

        if result.is_ok():
            self._log.info("Dangling prune finished", scanned=report.scanned, removed=report.removed)
        return result

    async def _prune_dangling(
        self,
        owner_id: Optional[str],
        report: PruneReport,
    ) -> Result[PruneReport, KVLinkError]:
        engine = self._engine
        cursor: Optional[str] = None

        while True:
            page = await engine.forward.scan_page(owner_id, cursor)
            if page.is_err():
                return page
            snapshots, cursor = page.unwrap()

            for snapshot in snapshots:
                report.scanned += len(snapshot)
                ids = list(snapshot.member_ids)
                primaries = await engine.primaries(ids)
                if primaries.is_err():
                    return primaries
                dangling = [i for i, e in zip(ids, primaries.unwrap()) if not e.exists]
                if dangling:
                    outcome = await self._unlink_guarded(snapshot, dangling, report, principal=False)
                    if outcome is not None:
                        return outcome

            if cursor is None:
                return Ok(report)

    async def prune_orphans(self) -> Result[PruneReport, KVLinkError]:
        """Delete dependents whose owner principal no longer exists."""
        report = PruneReport(kind=self._engine.name)
        self._active += 1
        try:
            result = await self._prune_orphans(report)
        finally:
            self._active -= 1

        if result.is_ok():
            self._log.info("Orphan prune finished", scanned=report.scanned, removed=report.removed)
        return result

    async def _prune_orphans(self, report: PruneReport) -> Result[PruneReport, KVLinkError]:
        engine = self._engine
        prefix = engine.keys.reverse_prefix()
        cursor: Optional[str] = None

        while True:
            page = await engine.store.scan(prefix, limit=self._config.scan_page_size, cursor=cursor)
            if page.is_err():
                return page
            entries, cursor = page.unwrap()
            report.scanned += len(entries)

            by_owner: dict[str, list[str]] = {}
            for entry in entries:
                if len(entry.key) == len(prefix) + 1 and isinstance(entry.value, str):
                    by_owner.setdefault(entry.value, []).append(entry.key[-1])

            owners = list(by_owner)
            principals = await engine.store.get_many(
                [engine.keyspace.principal_key(o) for o in owners]
            )
            if principals.is_err():
                return principals

            for owner_id, principal in zip(owners, principals.unwrap()):
                if principal.exists:
                    continue
                snapshot = await engine.forward.read_for_write(owner_id)
                if snapshot.is_err():
                    return snapshot
                outcome = await self._unlink_guarded(
                    snapshot.unwrap(), by_owner[owner_id], report, principal=True,
                )
                if outcome is not None:
                    return outcome

            if cursor is None:
                return Ok(report)

    async def _unlink_guarded(
        self,
        snapshot: ForwardSnapshot,
        dependent_ids: list[str],
        report: PruneReport,
        principal: bool,
    ) -> Optional[Err[KVLinkError]]:
        """
        Unlink ``dependent_ids`` of one owner in capacity-sized batches.

        Guards each batch with require_absent on the primaries, or on
        the owner principal when ``principal`` is set. In set mode the
        snapshot is chained through each commit's versionstamp; a
        conflict stops the owner, since its set has moved on.
        """
        engine = self._engine
        capacity = self._capacity()

        for start in range(0, len(dependent_ids), capacity):
            batch = dependent_ids[start:start + capacity]
            tx = engine.store.atomic()
            if principal:
                tx.require_absent(engine.keyspace.principal_key(snapshot.owner_id))
            else:
                for dependent_id in batch:
                    tx.require_absent(engine.keys.primary_key(dependent_id))
            engine.stage_unlink(tx, snapshot, batch)

            result = await tx.commit()
            if result.is_err():
                if result.error.code is ErrorCode.CONFLICT:
                    report.conflicts += 1
                    self._log.warning("Repair batch conflicted", owner_id=snapshot.owner_id)
                    return None
                return result

            snapshot = engine.forward.after_remove(snapshot, batch, result.unwrap().versionstamp)
            self._count_applied(report, len(batch))
        return None
