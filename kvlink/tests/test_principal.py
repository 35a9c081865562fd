"""
Unit Tests: Principal Store and cascade deletion

Tests:
    - Principal CRUD with an optional initial dependent
    - delete_owner across every registered kind
    - Cascade hook staging, abort and sealing
    - Sharded cascade above the mutation limit
"""

import pytest

from kvlink.core.errors import ErrorCode, StoreError
from kvlink.index.principal import InitialDependent
from kvlink.storage.memory import InMemoryKVStore
from kvlink.tests.conftest import (
    api_key,
    assert_err,
    assert_ok,
    build_index,
    session,
)

AUDIT_PREFIX = ("audit", "deleted_user")


async def populate(index, owner_id="u1", sessions=2, keys=2):
    assert_ok(await index.principals.create({"id": owner_id}))
    for i in range(sessions):
        assert_ok(await index.sessions.create(session(f"{owner_id}-s{i}", user_id=owner_id)))
    for i in range(keys):
        assert_ok(await index.keys.create(api_key(f"{owner_id}-k{i}", user_id=owner_id)))


# =============================================================================
# CRUD TESTS
# =============================================================================
class TestPrincipalCrud:
    """Tests for principal create/get/update."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, index):
        """A created principal reads back unchanged."""
        assert_ok(await index.principals.create({"id": "u1", "username": "ada"}))
        assert assert_ok(await index.principals.get("u1")) == {"id": "u1", "username": "ada"}

    @pytest.mark.asyncio
    async def test_create_duplicate(self, index):
        """Creating an existing principal fails with DUPLICATE_ID."""
        assert_ok(await index.principals.create({"id": "u1"}))
        error = assert_err(await index.principals.create({"id": "u1"}))
        assert error.code is ErrorCode.DUPLICATE_ID

    @pytest.mark.asyncio
    async def test_create_with_initial_dependent(self, index):
        """The initial dependent is linked in the same commit as the principal."""
        initial = InitialDependent(kind="session", record={"id": "s1", "expires_at": 1})
        assert_ok(await index.principals.create({"id": "u1"}, initial=initial))

        record = assert_ok(await index.sessions.get("s1"))
        assert record["user_id"] == "u1"
        members = assert_ok(await index.sessions.read_members("u1"))
        assert "s1" in members

    @pytest.mark.asyncio
    async def test_initial_dependent_wrong_owner(self, index):
        """An initial dependent owned by someone else is rejected."""
        initial = InitialDependent(kind="key", record=api_key("k1", user_id="u2"))
        error = assert_err(await index.principals.create({"id": "u1"}, initial=initial))
        assert error.code is ErrorCode.INVALID_ATTRIBUTES
        assert assert_ok(await index.principals.get("u1")) is None

    @pytest.mark.asyncio
    async def test_initial_dependent_duplicate(self, index):
        """A duplicate initial dependent aborts the principal create too."""
        await populate(index, "u0", sessions=0, keys=1)
        initial = InitialDependent(kind="key", record={"id": "u0-k0"})
        error = assert_err(await index.principals.create({"id": "u1"}, initial=initial))
        assert error.code is ErrorCode.DUPLICATE_ID
        assert assert_ok(await index.principals.get("u1")) is None

    @pytest.mark.asyncio
    async def test_update(self, index):
        """update merges into the principal; the id is immutable."""
        assert_ok(await index.principals.create({"id": "u1", "username": "ada"}))
        merged = assert_ok(await index.principals.update("u1", {"email": "a@x"}))
        assert merged == {"id": "u1", "username": "ada", "email": "a@x"}

        error = assert_err(await index.principals.update("u1", {"id": "u2"}))
        assert error.code is ErrorCode.INVALID_ATTRIBUTES
        error = assert_err(await index.principals.update("nope", {"email": "x"}))
        assert error.code is ErrorCode.NOT_FOUND


# =============================================================================
# CASCADE TESTS
# =============================================================================
class TestDeleteOwner:
    """Tests for delete_owner."""

    @pytest.mark.asyncio
    async def test_cascade_removes_everything(self, index, store):
        """The principal and every dependent of every kind disappear."""
        await populate(index)
        await populate(index, "u2", sessions=1, keys=1)

        report = assert_ok(await index.principals.delete_owner("u1"))
        assert report.principal_existed
        assert report.removed == {"session": 2, "key": 2}
        assert report.total_removed == 4
        assert not report.sharded

        assert assert_ok(await index.principals.get("u1")) is None
        assert assert_ok(await index.sessions.get_by_owner("u1")) == []
        assert assert_ok(await index.keys.get_by_owner("u1")) == []
        for kind in ("session", "key"):
            engine = index.engine(kind)
            assert len(assert_ok(await engine.read_members("u1"))) == 0
        assert assert_ok(await index.sessions.get("u1-s0")) is None

        assert len(assert_ok(await index.keys.get_by_owner("u2"))) == 1

    @pytest.mark.asyncio
    async def test_cascade_absent_owner(self, index):
        """Deleting an absent principal succeeds and reports nothing removed."""
        report = assert_ok(await index.principals.delete_owner("ghost"))
        assert not report.principal_existed
        assert report.total_removed == 0

    @pytest.mark.asyncio
    async def test_hook_writes_commit_with_cascade(self, index, store):
        """Writes staged by the hook land in the same commit."""
        await populate(index)
        calls = []

        def audit(view, owner_id):
            calls.append(owner_id)
            view.set(AUDIT_PREFIX + (owner_id,), {"sessions": 2})

        report = assert_ok(await index.principals.delete_owner("u1", hook=audit))
        assert calls == ["u1"]
        entry = assert_ok(await store.get(AUDIT_PREFIX + ("u1",)))
        assert entry.value == {"sessions": 2}
        assert entry.version == report.versionstamp

    @pytest.mark.asyncio
    async def test_async_hook(self, index, store):
        """Coroutine hooks are awaited."""
        await populate(index, sessions=1, keys=0)

        async def audit(view, owner_id):
            view.set(AUDIT_PREFIX + (owner_id,), True)

        assert_ok(await index.principals.delete_owner("u1", hook=audit))
        assert assert_ok(await store.get(AUDIT_PREFIX + ("u1",))).value is True

    @pytest.mark.asyncio
    async def test_hook_failure_aborts(self, index, store):
        """A raising hook aborts the cascade; nothing is deleted."""
        await populate(index)
        commits = store.commits

        def failing(view, owner_id):
            view.set(AUDIT_PREFIX + (owner_id,), True)
            raise RuntimeError("audit sink down")

        error = assert_err(await index.principals.delete_owner("u1", hook=failing))
        assert error.code is ErrorCode.CASCADE_HOOK_FAILED
        assert isinstance(error.cause, RuntimeError)
        assert store.commits == commits

        assert assert_ok(await index.principals.get("u1")) is not None
        assert len(assert_ok(await index.sessions.get_by_owner("u1"))) == 2
        assert not assert_ok(await store.get(AUDIT_PREFIX + ("u1",))).exists

    @pytest.mark.asyncio
    async def test_view_sealed_after_hook(self, index):
        """A view retained by the hook cannot be used later."""
        await populate(index, sessions=1, keys=0)
        kept = []
        assert_ok(await index.principals.delete_owner("u1", hook=lambda view, _: kept.append(view)))

        with pytest.raises(StoreError) as info:
            kept[0].set(("late",), 1)
        assert info.value.code is ErrorCode.TRANSACTION_CLOSED

    @pytest.mark.asyncio
    async def test_hook_guard_conflict(self, index, store):
        """A failing hook-staged check makes the whole cascade conflict."""
        await populate(index, sessions=1, keys=0)
        assert_ok(await store.atomic().set(("lock", "u1"), True).commit())

        def guarded(view, owner_id):
            view.require_absent(("lock", owner_id))

        error = assert_err(await index.principals.delete_owner("u1", hook=guarded))
        assert error.code is ErrorCode.CONFLICT
        assert assert_ok(await index.principals.get("u1")) is not None
        assert len(assert_ok(await index.sessions.get_by_owner("u1"))) == 1

    @pytest.mark.asyncio
    async def test_sharded_cascade(self, clock, forward_mode):
        """Above the mutation limit dependents are removed in shards first."""
        store = InMemoryKVStore(max_mutations=7, clock=clock)
        index = build_index(store, clock, forward_mode=forward_mode)
        await populate(index, sessions=3, keys=3)

        calls = []
        report = assert_ok(await index.principals.delete_owner(
            "u1", hook=lambda view, owner_id: calls.append(owner_id),
        ))
        assert report.sharded
        assert report.total_removed == 6
        assert calls == ["u1"]
        assert assert_ok(await index.principals.get("u1")) is None
        assert await store.count(("auth",)) == 0
