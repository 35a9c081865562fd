"""
Unit Tests: Index Engine

Tests:
    - Create preconditions and atomic linking of all three structures
    - Reads by id and by owner
    - Update/extend_expiry rules
    - Delete and sharded delete_all_by_owner
    - Concurrent writers
    - Store-native TTL

Every test runs against both forward representations.
"""

import asyncio

import pytest

from kvlink.core.config import ExpiryMode, ForwardMode
from kvlink.core.errors import ErrorCode
from kvlink.storage.memory import InMemoryKVStore
from kvlink.tests.conftest import (
    START_MS,
    api_key,
    assert_err,
    assert_ok,
    build_index,
    session,
)


async def linked_state(engine, dependent_id, owner_id):
    """(primary exists, reverse exists, id in forward[owner])"""
    primary = assert_ok(await engine.store.get(engine.keys.primary_key(dependent_id)))
    reverse = assert_ok(await engine.store.get(engine.keys.reverse_key(dependent_id)))
    members = assert_ok(await engine.read_members(owner_id))
    return primary.exists, reverse.exists, dependent_id in members


async def assert_linked(engine, dependent_id, owner_id):
    assert await linked_state(engine, dependent_id, owner_id) == (True, True, True)


async def assert_unlinked(engine, dependent_id, owner_id):
    assert await linked_state(engine, dependent_id, owner_id) == (False, False, False)


async def add_user(index, user_id="u1"):
    return assert_ok(await index.principals.create({"id": user_id, "username": user_id}))


# =============================================================================
# CREATE TESTS
# =============================================================================
class TestCreate:
    """Tests for create preconditions and linking."""

    @pytest.mark.asyncio
    async def test_create_links_all_structures(self, index):
        """A created record is reachable by id, owner and reverse pointer."""
        await add_user(index)
        record = assert_ok(await index.sessions.create(session("s1")))
        assert record["id"] == "s1"
        await assert_linked(index.sessions, "s1", "u1")
        owner = assert_ok(await index.sessions.store.get(index.sessions.keys.reverse_key("s1")))
        assert owner.value == "u1"

    @pytest.mark.asyncio
    async def test_missing_owner(self, index):
        """No owner field fails with MISSING_OWNER before any read."""
        error = assert_err(await index.sessions.create({"id": "s1", "expires_at": START_MS}))
        assert error.code is ErrorCode.MISSING_OWNER

    @pytest.mark.asyncio
    async def test_empty_owner(self, index):
        """An empty owner id is treated as missing."""
        error = assert_err(await index.keys.create(api_key("k1", user_id="")))
        assert error.code is ErrorCode.MISSING_OWNER

    @pytest.mark.asyncio
    async def test_owner_not_found(self, index):
        """An unknown owner fails with OWNER_NOT_FOUND and writes nothing."""
        error = assert_err(await index.sessions.create(session("s1", user_id="ghost")))
        assert error.code is ErrorCode.OWNER_NOT_FOUND
        assert error.context["owner_id"] == "ghost"
        await assert_unlinked(index.sessions, "s1", "ghost")

    @pytest.mark.asyncio
    async def test_duplicate_id(self, index):
        """A second record with the same id fails with DUPLICATE_ID."""
        await add_user(index)
        await add_user(index, "u2")
        original = assert_ok(await index.keys.create(api_key("k1", label="first")))
        error = assert_err(await index.keys.create(api_key("k1", user_id="u2", label="second")))
        assert error.code is ErrorCode.DUPLICATE_ID
        assert "k1" not in assert_ok(await index.keys.read_members("u2"))
        assert assert_ok(await index.keys.get("k1")) == original
        await assert_linked(index.keys, "k1", "u1")

    @pytest.mark.asyncio
    async def test_missing_owner_wins_over_duplicate(self, index):
        """Precondition order: owner checks come before the duplicate check."""
        await add_user(index)
        assert_ok(await index.keys.create(api_key("k1")))
        error = assert_err(await index.keys.create(api_key("k1", user_id="ghost")))
        assert error.code is ErrorCode.OWNER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_invalid_id(self, index):
        """Records need a non-empty string id."""
        await add_user(index)
        error = assert_err(await index.keys.create({"user_id": "u1"}))
        assert error.code is ErrorCode.INVALID_ATTRIBUTES

    @pytest.mark.asyncio
    async def test_invalid_expiry(self, index):
        """Session expiry must be integer epoch milliseconds."""
        await add_user(index)
        error = assert_err(await index.sessions.create(session("s1", expires_at="tomorrow")))
        assert error.code is ErrorCode.INVALID_ATTRIBUTES

    @pytest.mark.asyncio
    async def test_missing_owner_wins_over_bad_expiry(self, index):
        """Owner checks run before attribute validation."""
        record = session("s1", user_id="", expires_at="tomorrow")
        assert assert_err(await index.sessions.create(record)).code is ErrorCode.MISSING_OWNER
        record = session("s1", user_id="ghost", expires_at="tomorrow")
        assert assert_err(await index.sessions.create(record)).code is ErrorCode.OWNER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_duplicate_wins_over_bad_expiry(self, index):
        """An existing id is reported before a malformed expiry."""
        await add_user(index)
        assert_ok(await index.sessions.create(session("s1")))
        error = assert_err(await index.sessions.create(session("s1", expires_at="tomorrow")))
        assert error.code is ErrorCode.DUPLICATE_ID

    @pytest.mark.asyncio
    async def test_concurrent_create_same_id(self, index):
        """Of two concurrent creates of one id, exactly one wins."""
        await add_user(index)
        await add_user(index, "u2")
        results = await asyncio.gather(
            index.keys.create(api_key("k1", user_id="u1")),
            index.keys.create(api_key("k1", user_id="u2")),
        )
        winners = [r for r in results if r.is_ok()]
        losers = [r for r in results if r.is_err()]
        assert len(winners) == 1
        assert losers[0].error.code in (ErrorCode.CONFLICT, ErrorCode.DUPLICATE_ID)

        owner = winners[0].unwrap()["user_id"]
        other = "u2" if owner == "u1" else "u1"
        await assert_linked(index.keys, "k1", owner)
        assert "k1" not in assert_ok(await index.keys.read_members(other))

    @pytest.mark.asyncio
    async def test_concurrent_create_same_owner(self, index, forward_mode):
        """Sentinel writers never conflict; set writers never lose a member."""
        await add_user(index)
        results = await asyncio.gather(*(
            index.keys.create(api_key(f"k{i}")) for i in range(4)
        ))
        created = {r.unwrap()["id"] for r in results if r.is_ok()}
        members = set(assert_ok(await index.keys.read_members("u1")).member_ids)

        assert members == created
        if forward_mode is ForwardMode.SENTINEL:
            assert len(created) == 4
        for result in results:
            if result.is_err():
                assert result.error.code is ErrorCode.CONFLICT
                assert result.error.retryable

    @pytest.mark.asyncio
    async def test_create_after_owner_deleted(self, index):
        """Creating under a deleted principal fails with OWNER_NOT_FOUND."""
        await add_user(index)
        assert_ok(await index.principals.delete_owner("u1"))
        error = assert_err(await index.sessions.create(session("s1")))
        assert error.code is ErrorCode.OWNER_NOT_FOUND


# =============================================================================
# READ TESTS
# =============================================================================
class TestReads:
    """Tests for get and get_by_owner."""

    @pytest.mark.asyncio
    async def test_get_absent(self, index):
        """Absent ids read as Ok(None)."""
        assert assert_ok(await index.sessions.get("nope")) is None

    @pytest.mark.asyncio
    async def test_get_by_owner(self, index):
        """get_by_owner returns every record of the owner and no others."""
        await add_user(index)
        await add_user(index, "u2")
        for i in range(12):
            assert_ok(await index.keys.create(api_key(f"k{i}")))
        assert_ok(await index.keys.create(api_key("other", user_id="u2")))

        records = assert_ok(await index.keys.get_by_owner("u1"))
        assert sorted(r["id"] for r in records) == sorted(f"k{i}" for i in range(12))

    @pytest.mark.asyncio
    async def test_get_by_owner_empty(self, index):
        """An owner without dependents yields an empty list."""
        assert assert_ok(await index.sessions.get_by_owner("u1")) == []

    @pytest.mark.asyncio
    async def test_get_by_owner_skips_missing_primary(self, index):
        """A forward entry whose primary is gone is filtered out."""
        await add_user(index)
        assert_ok(await index.keys.create(api_key("k1")))
        assert_ok(await index.keys.create(api_key("k2")))
        engine = index.keys
        assert_ok(await engine.store.atomic().delete(engine.keys.primary_key("k1")).commit())

        records = assert_ok(await engine.get_by_owner("u1"))
        assert [r["id"] for r in records] == ["k2"]


# =============================================================================
# UPDATE TESTS
# =============================================================================
class TestUpdate:
    """Tests for update and extend_expiry."""

    @pytest.mark.asyncio
    async def test_update_merges(self, index):
        """update shallow-merges and leaves the indexes untouched."""
        await add_user(index)
        assert_ok(await index.keys.create(api_key("k1", scopes=["read"])))
        merged = assert_ok(await index.keys.update("k1", {"label": "ci"}))
        assert merged["label"] == "ci"
        assert merged["scopes"] == ["read"]
        assert assert_ok(await index.keys.get("k1"))["label"] == "ci"
        await assert_linked(index.keys, "k1", "u1")

    @pytest.mark.asyncio
    async def test_update_missing(self, index):
        """Updating an absent record fails with NOT_FOUND."""
        error = assert_err(await index.keys.update("k1", {"label": "x"}))
        assert error.code is ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_update_rejects_index_fields(self, index):
        """The id and owner fields cannot be changed by update."""
        await add_user(index)
        assert_ok(await index.keys.create(api_key("k1")))
        for partial in ({"id": "k2"}, {"user_id": "u2"}):
            error = assert_err(await index.keys.update("k1", partial))
            assert error.code is ErrorCode.INVALID_ATTRIBUTES

    @pytest.mark.asyncio
    async def test_update_after_delete(self, index):
        """An update issued after delete reports NOT_FOUND and resurrects nothing."""
        await add_user(index)
        assert_ok(await index.sessions.create(session("s1")))
        assert assert_ok(await index.sessions.delete("s1"))
        error = assert_err(await index.sessions.update("s1", {"expires_at": START_MS + 1}))
        assert error.code is ErrorCode.NOT_FOUND
        await assert_unlinked(index.sessions, "s1", "u1")

    @pytest.mark.asyncio
    async def test_extend_expiry(self, index):
        """extend_expiry changes only the expiry field."""
        await add_user(index)
        assert_ok(await index.sessions.create(session("s1", ip="10.0.0.1")))
        record = assert_ok(await index.sessions.extend_expiry("s1", START_MS + 120_000))
        assert record["expires_at"] == START_MS + 120_000
        assert record["ip"] == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_extend_expiry_non_expiring_kind(self, index):
        """Keys never expire, so extend_expiry is rejected."""
        await add_user(index)
        assert_ok(await index.keys.create(api_key("k1")))
        error = assert_err(await index.keys.extend_expiry("k1", START_MS))
        assert error.code is ErrorCode.INVALID_ATTRIBUTES


class TestStrictUpdates:
    """Tests for version-checked updates."""

    @pytest.mark.asyncio
    async def test_stale_update_conflicts(self, store, clock):
        """With strict_updates, a write between read and commit conflicts."""
        index = build_index(store, clock, strict_updates=True)
        await add_user(index)
        assert_ok(await index.keys.create(api_key("k1")))

        results = await asyncio.gather(
            index.keys.update("k1", {"label": "a"}),
            index.keys.update("k1", {"label": "b"}),
        )
        assert sorted(r.is_ok() for r in results) == [False, True]
        loser = next(r for r in results if r.is_err())
        assert loser.error.code is ErrorCode.CONFLICT
        assert index.keys.metrics.conflicts == 1


# =============================================================================
# DELETE TESTS
# =============================================================================
class TestDelete:
    """Tests for delete and delete_all_by_owner."""

    @pytest.mark.asyncio
    async def test_delete(self, index):
        """delete unlinks all three structures and returns True."""
        await add_user(index)
        assert_ok(await index.sessions.create(session("s1")))
        assert assert_ok(await index.sessions.delete("s1")) is True
        await assert_unlinked(index.sessions, "s1", "u1")
        assert index.sessions.metrics.deletes == 1

    @pytest.mark.asyncio
    async def test_delete_absent(self, index, store):
        """Deleting an absent id returns False without committing."""
        commits = store.commits
        assert assert_ok(await index.sessions.delete("nope")) is False
        assert store.commits == commits

    @pytest.mark.asyncio
    async def test_delete_keeps_siblings(self, index):
        """Deleting one record leaves the owner's other records linked."""
        await add_user(index)
        assert_ok(await index.keys.create(api_key("k1")))
        assert_ok(await index.keys.create(api_key("k2")))
        assert_ok(await index.keys.delete("k1"))
        await assert_linked(index.keys, "k2", "u1")

    @pytest.mark.asyncio
    async def test_recreate_after_delete(self, index):
        """An id can be created and deleted repeatedly; links track every step."""
        await add_user(index)
        for round_no in range(3):
            assert_ok(await index.keys.create(api_key("k1", label=f"round {round_no}")))
            await assert_linked(index.keys, "k1", "u1")
            assert assert_ok(await index.keys.get("k1"))["label"] == f"round {round_no}"
            assert assert_ok(await index.keys.delete("k1")) is True
            await assert_unlinked(index.keys, "k1", "u1")
        assert assert_ok(await index.keys.get_by_owner("u1")) == []

    @pytest.mark.asyncio
    async def test_recreate_with_sibling(self, index):
        """Re-creating an id beside a surviving sibling keeps both linked."""
        await add_user(index)
        assert_ok(await index.keys.create(api_key("k0")))
        for _ in range(2):
            assert_ok(await index.keys.create(api_key("k1")))
            await assert_linked(index.keys, "k1", "u1")
            assert_ok(await index.keys.delete("k1"))
            await assert_unlinked(index.keys, "k1", "u1")
            await assert_linked(index.keys, "k0", "u1")

    @pytest.mark.asyncio
    async def test_delete_all_by_owner(self, index):
        """Every dependent of the owner is removed; other owners untouched."""
        await add_user(index)
        await add_user(index, "u2")
        for i in range(5):
            assert_ok(await index.sessions.create(session(f"s{i}")))
        assert_ok(await index.sessions.create(session("keep", user_id="u2")))

        assert assert_ok(await index.sessions.delete_all_by_owner("u1")) == 5
        for i in range(5):
            await assert_unlinked(index.sessions, f"s{i}", "u1")
        await assert_linked(index.sessions, "keep", "u2")
        assert assert_ok(await index.sessions.delete_all_by_owner("u1")) == 0

    @pytest.mark.asyncio
    async def test_delete_all_by_owner_shards(self, clock, forward_mode):
        """Cascades larger than the mutation limit split into shards."""
        store = InMemoryKVStore(max_mutations=7, clock=clock)
        index = build_index(store, clock, forward_mode=forward_mode)
        await add_user(index)
        for i in range(9):
            assert_ok(await index.keys.create(api_key(f"k{i}")))

        assert assert_ok(await index.keys.delete_all_by_owner("u1")) == 9
        assert index.keys.metrics.shards >= 3
        for i in range(9):
            await assert_unlinked(index.keys, f"k{i}", "u1")


# =============================================================================
# NATIVE TTL TESTS
# =============================================================================
class TestNativeExpiry:
    """Tests for ExpiryMode.NATIVE sessions."""

    @pytest.mark.asyncio
    async def test_primary_and_reverse_expire(self, store, clock):
        """Under native expiry the store drops primary and reverse at expires_at."""
        index = build_index(store, clock, session_expiry=ExpiryMode.NATIVE)
        await add_user(index)
        assert_ok(await index.sessions.create(session("s1", expires_at=START_MS + 1_000)))

        clock.advance(1_000)
        assert assert_ok(await index.sessions.get("s1")) is None
        assert assert_ok(await index.sessions.get_by_owner("u1")) == []
        assert assert_ok(await index.sessions.delete("s1")) is False

    @pytest.mark.asyncio
    async def test_extend_expiry_moves_ttl(self, store, clock):
        """Extending expiry pushes the store TTL out as well."""
        index = build_index(store, clock, session_expiry=ExpiryMode.NATIVE)
        await add_user(index)
        assert_ok(await index.sessions.create(session("s1", expires_at=START_MS + 1_000)))
        assert_ok(await index.sessions.extend_expiry("s1", START_MS + 5_000))

        clock.advance(2_000)
        assert assert_ok(await index.sessions.get("s1")) is not None
        reverse = assert_ok(await store.get(index.sessions.keys.reverse_key("s1")))
        assert reverse.value == "u1"
