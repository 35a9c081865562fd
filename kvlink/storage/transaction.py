"""
Atomic Transactions over a Flat Key-Value Store

A Transaction stages checks and mutations locally and submits them as
one AtomicBatch at commit. Nothing touches the store before commit, so
discarding a transaction needs no rollback.

StagingView is the restricted builder handed to cascade hooks: it can
stage writes and checks but can neither commit nor discard, and it is
sealed once the owning operation finishes with it.

Lifecycle:
    OPEN ──commit()──► COMMITTED
      │
      └──discard()──► DISCARDED

Misuse (staging after the transaction closed) is a programming error
and raises StoreError.transaction_closed.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from kvlink.core.errors import KVLinkError, StoreError
from kvlink.core.types import Key, Result
from kvlink.storage.protocols import (
    AtomicBatch,
    Check,
    CommitInfo,
    Mutation,
    MutationType,
)

logger = logging.getLogger(__name__)

Committer = Callable[[AtomicBatch], Awaitable[Result[CommitInfo, KVLinkError]]]


class TransactionState(Enum):
    OPEN = "open"
    COMMITTED = "committed"
    DISCARDED = "discarded"


class Transaction:
    """
    Staged atomic write.

    Example:
        tx = store.atomic()
        tx.require_absent(primary).set(primary, record).set(reverse, owner_id)
        result = await tx.commit()
    """

    __slots__ = ("transaction_id", "_committer", "_batch", "_state")

    def __init__(self, committer: Committer) -> None:
        self.transaction_id = str(uuid4())
        self._committer = committer
        self._batch = AtomicBatch()
        self._state = TransactionState.OPEN

    # -------------------------------------------------------------------------
    # Staging
    # -------------------------------------------------------------------------

    def set(
        self,
        key: Key,
        value: Any,
        expire_in_ms: Optional[int] = None,
    ) -> Transaction:
        self._ensure_open()
        self._batch.mutations.append(
            Mutation(key=key, op=MutationType.SET, value=value, expire_in_ms=expire_in_ms)
        )
        return self

    def delete(self, key: Key) -> Transaction:
        self._ensure_open()
        self._batch.mutations.append(Mutation(key=key, op=MutationType.DELETE))
        return self

    def require_absent(self, key: Key) -> Transaction:
        """Fail the commit if ``key`` exists at commit time."""
        self._ensure_open()
        self._batch.checks.append(Check(key=key, version=None))
        return self

    def require_version(self, key: Key, version: Optional[str]) -> Transaction:
        """
        Fail the commit unless ``key`` still carries ``version``.

        A None version is equivalent to require_absent.
        """
        self._ensure_open()
        self._batch.checks.append(Check(key=key, version=version))
        return self

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def mutation_count(self) -> int:
        return self._batch.mutation_count

    @property
    def check_count(self) -> int:
        return len(self._batch.checks)

    async def commit(self) -> Result[CommitInfo, KVLinkError]:
        """
        Submit every staged check and mutation atomically.

        Returns:
            Ok(CommitInfo): all checks held and every mutation applied
            Err(StoreError): CONFLICT when a check failed, nothing applied
        """
        self._ensure_open()
        self._state = TransactionState.COMMITTED
        result = await self._committer(self._batch)
        if result.is_err():
            logger.debug(
                f"Transaction {self.transaction_id[:8]} rejected: {result.error}"
            )
        return result

    def discard(self) -> None:
        """Drop all staged work. Idempotent once closed."""
        if self._state is TransactionState.OPEN:
            self._state = TransactionState.DISCARDED
            self._batch = AtomicBatch()

    def staging_view(self) -> StagingView:
        self._ensure_open()
        return StagingView(self)

    def _ensure_open(self) -> None:
        if self._state is not TransactionState.OPEN:
            raise StoreError.transaction_closed(self._state.value)


class StagingView:
    """
    Stage-only view of a transaction handed to caller hooks.

    Exposes set/delete/require_absent/require_version and nothing else.
    After seal() every call raises StoreError.transaction_closed.
    """

    __slots__ = ("_tx", "_sealed")

    def __init__(self, tx: Transaction) -> None:
        self._tx = tx
        self._sealed = False

    def set(self, key: Key, value: Any, expire_in_ms: Optional[int] = None) -> StagingView:
        self._ensure_usable()
        self._tx.set(key, value, expire_in_ms=expire_in_ms)
        return self

    def delete(self, key: Key) -> StagingView:
        self._ensure_usable()
        self._tx.delete(key)
        return self

    def require_absent(self, key: Key) -> StagingView:
        self._ensure_usable()
        self._tx.require_absent(key)
        return self

    def require_version(self, key: Key, version: Optional[str]) -> StagingView:
        self._ensure_usable()
        self._tx.require_version(key, version)
        return self

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        self._sealed = True

    def _ensure_usable(self) -> None:
        if self._sealed:
            raise StoreError.transaction_closed("sealed")
