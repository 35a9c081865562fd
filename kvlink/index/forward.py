"""
Forward Index Representations

The forward index maps an owner to the ids of the dependents it owns.
Two physical representations share one interface:

SentinelForwardIndex (default)
    One key per member, value = dependent id. Membership is a paged
    prefix scan. Adding or removing a member never touches another
    member's key, so concurrent writers for one owner do not conflict.

SetForwardIndex
    One key per owner holding the JSON list of member ids. Every rewrite
    of the list carries require_version on the set key (require_absent
    when the set does not exist yet), so a concurrent writer surfaces as
    a Conflict instead of a lost member.

Mutation cost per transaction:
    sentinel: 1 per member
    set:      1 per owner, regardless of member count
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from kvlink.core.config import ForwardMode
from kvlink.core.errors import KVLinkError
from kvlink.core.types import Ok, Result
from kvlink.index.keyspace import DependentKeys
from kvlink.storage.protocols import StoreClient
from kvlink.storage.transaction import Transaction


@dataclass(frozen=True, slots=True)
class ForwardSnapshot:
    """
    Observed membership of one owner.

    ``version`` is the set key's versionstamp in set mode, None when the
    set is absent or in sentinel mode.
    """

    owner_id: str
    member_ids: tuple[str, ...] = ()
    version: Optional[str] = None

    def __len__(self) -> int:
        return len(self.member_ids)

    def __contains__(self, dependent_id: object) -> bool:
        return dependent_id in self.member_ids


class ForwardIndex(ABC):
    """Common interface of both forward representations."""

    mode: ForwardMode
    # Mutations staged per owner touched, and per member added or removed
    owner_mutations: int
    member_mutations: int

    __slots__ = ("store", "keys", "page_size")

    def __init__(self, store: StoreClient, keys: DependentKeys, page_size: int) -> None:
        self.store = store
        self.keys = keys
        self.page_size = page_size

    @abstractmethod
    async def read(self, owner_id: str) -> Result[ForwardSnapshot, KVLinkError]:
        """Full membership of ``owner_id``; absent index reads as empty."""
        ...

    @abstractmethod
    async def read_for_write(self, owner_id: str) -> Result[ForwardSnapshot, KVLinkError]:
        """Whatever stage_add/stage_remove need to guard a rewrite."""
        ...

    @abstractmethod
    async def scan_page(
        self,
        owner_id: Optional[str],
        cursor: Optional[str],
    ) -> Result[tuple[list[ForwardSnapshot], Optional[str]], KVLinkError]:
        """
        One page of forward entries, grouped by owner.

        In sentinel mode a snapshot may hold only part of an owner's
        members; the rest arrive on later pages.
        """
        ...

    @abstractmethod
    def stage_add(self, tx: Transaction, snapshot: ForwardSnapshot, dependent_id: str) -> None:
        ...

    @abstractmethod
    def stage_remove(
        self,
        tx: Transaction,
        snapshot: ForwardSnapshot,
        dependent_ids: Iterable[str],
    ) -> None:
        ...

    @abstractmethod
    def after_remove(
        self,
        snapshot: ForwardSnapshot,
        dependent_ids: Iterable[str],
        versionstamp: str,
    ) -> ForwardSnapshot:
        """Snapshot as it stands after a committed stage_remove."""
        ...


class SentinelForwardIndex(ForwardIndex):
    """One key per member under the owner's forward prefix."""

    mode = ForwardMode.SENTINEL
    owner_mutations = 0
    member_mutations = 1

    __slots__ = ()

    async def read(self, owner_id: str) -> Result[ForwardSnapshot, KVLinkError]:
        prefix = self.keys.forward_prefix(owner_id)
        # Keyed by id; a store scan may repeat keys across pages
        members: dict[str, None] = {}
        cursor: Optional[str] = None

        while True:
            result = await self.store.scan(prefix, limit=self.page_size, cursor=cursor)
            if result.is_err():
                return result
            entries, cursor = result.unwrap()
            members.update((e.key[-1], None) for e in entries if len(e.key) == len(prefix) + 1)
            if cursor is None:
                break

        return Ok(ForwardSnapshot(owner_id=owner_id, member_ids=tuple(members)))

    async def read_for_write(self, owner_id: str) -> Result[ForwardSnapshot, KVLinkError]:
        # Entry keys are independent; nothing to guard
        return Ok(ForwardSnapshot(owner_id=owner_id))

    async def scan_page(
        self,
        owner_id: Optional[str],
        cursor: Optional[str],
    ) -> Result[tuple[list[ForwardSnapshot], Optional[str]], KVLinkError]:
        root = self.keys.forward_root()
        prefix = self.keys.forward_prefix(owner_id) if owner_id is not None else root

        result = await self.store.scan(prefix, limit=self.page_size, cursor=cursor)
        if result.is_err():
            return result
        entries, next_cursor = result.unwrap()

        grouped: OrderedDict[str, dict[str, None]] = OrderedDict()
        for entry in entries:
            if len(entry.key) != len(root) + 2:
                continue
            grouped.setdefault(entry.key[-2], {})[entry.key[-1]] = None

        snapshots = [
            ForwardSnapshot(owner_id=owner, member_ids=tuple(ids))
            for owner, ids in grouped.items()
        ]
        return Ok((snapshots, next_cursor))

    def stage_add(self, tx: Transaction, snapshot: ForwardSnapshot, dependent_id: str) -> None:
        tx.set(self.keys.forward_entry_key(snapshot.owner_id, dependent_id), dependent_id)

    def stage_remove(
        self,
        tx: Transaction,
        snapshot: ForwardSnapshot,
        dependent_ids: Iterable[str],
    ) -> None:
        for dependent_id in dependent_ids:
            tx.delete(self.keys.forward_entry_key(snapshot.owner_id, dependent_id))

    def after_remove(
        self,
        snapshot: ForwardSnapshot,
        dependent_ids: Iterable[str],
        versionstamp: str,
    ) -> ForwardSnapshot:
        removed = set(dependent_ids)
        return replace(
            snapshot,
            member_ids=tuple(m for m in snapshot.member_ids if m not in removed),
        )


class SetForwardIndex(ForwardIndex):
    """One version-guarded list key per owner."""

    mode = ForwardMode.SET
    owner_mutations = 1
    member_mutations = 0

    __slots__ = ()

    async def read(self, owner_id: str) -> Result[ForwardSnapshot, KVLinkError]:
        result = await self.store.get(self.keys.forward_set_key(owner_id))
        if result.is_err():
            return result
        entry = result.unwrap()
        if not entry.exists:
            return Ok(ForwardSnapshot(owner_id=owner_id))
        return Ok(ForwardSnapshot(
            owner_id=owner_id,
            member_ids=tuple(entry.value or ()),
            version=entry.version,
        ))

    async def read_for_write(self, owner_id: str) -> Result[ForwardSnapshot, KVLinkError]:
        return await self.read(owner_id)

    async def scan_page(
        self,
        owner_id: Optional[str],
        cursor: Optional[str],
    ) -> Result[tuple[list[ForwardSnapshot], Optional[str]], KVLinkError]:
        if owner_id is not None:
            single = await self.read(owner_id)
            if single.is_err():
                return single
            snapshot = single.unwrap()
            return Ok(([snapshot] if snapshot.member_ids else [], None))

        root = self.keys.forward_root()
        result = await self.store.scan(root, limit=self.page_size, cursor=cursor)
        if result.is_err():
            return result
        entries, next_cursor = result.unwrap()

        snapshots = [
            ForwardSnapshot(
                owner_id=entry.key[-1],
                member_ids=tuple(entry.value or ()),
                version=entry.version,
            )
            for entry in entries
            if len(entry.key) == len(root) + 1
        ]
        return Ok((snapshots, next_cursor))

    def stage_add(self, tx: Transaction, snapshot: ForwardSnapshot, dependent_id: str) -> None:
        key = self.keys.forward_set_key(snapshot.owner_id)
        members = list(snapshot.member_ids)
        if dependent_id not in members:
            members.append(dependent_id)
        tx.require_version(key, snapshot.version)
        tx.set(key, members)

    def stage_remove(
        self,
        tx: Transaction,
        snapshot: ForwardSnapshot,
        dependent_ids: Iterable[str],
    ) -> None:
        key = self.keys.forward_set_key(snapshot.owner_id)
        removed = set(dependent_ids)
        remaining = [m for m in snapshot.member_ids if m not in removed]
        tx.require_version(key, snapshot.version)
        if remaining:
            tx.set(key, remaining)
        else:
            tx.delete(key)

    def after_remove(
        self,
        snapshot: ForwardSnapshot,
        dependent_ids: Iterable[str],
        versionstamp: str,
    ) -> ForwardSnapshot:
        removed = set(dependent_ids)
        remaining = tuple(m for m in snapshot.member_ids if m not in removed)
        return ForwardSnapshot(
            owner_id=snapshot.owner_id,
            member_ids=remaining,
            version=versionstamp if remaining else None,
        )


def create_forward_index(
    mode: ForwardMode,
    store: StoreClient,
    keys: DependentKeys,
    page_size: int,
) -> ForwardIndex:
    if mode is ForwardMode.SET:
        return SetForwardIndex(store, keys, page_size)
    return SentinelForwardIndex(store, keys, page_size)
