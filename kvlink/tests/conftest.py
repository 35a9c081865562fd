"""Shared fixtures: fixed clock, in-memory store, wired auth index."""

from __future__ import annotations

import pytest

from kvlink.core.config import EngineConfig, ForwardMode
from kvlink.index.registry import create_auth_index
from kvlink.storage.memory import InMemoryKVStore

START_MS = 1_700_000_000_000


class FixedClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def assert_ok(result):
    """Unwrap an Ok result, failing with the error otherwise."""
    if result.is_err():
        raise AssertionError(f"Expected Ok, got {result.error}")
    return result.unwrap()


def assert_err(result):
    """Return the error of an Err result."""
    if result.is_ok():
        raise AssertionError(f"Expected Err, got Ok({result.unwrap()!r})")
    return result.error


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store(clock):
    return InMemoryKVStore(clock=clock)


@pytest.fixture(params=[ForwardMode.SENTINEL, ForwardMode.SET], ids=["sentinel", "set"])
def forward_mode(request):
    return request.param


@pytest.fixture
def index(store, clock, forward_mode):
    """Auth index over the in-memory store, parametrized by forward mode."""
    return create_auth_index(store, EngineConfig(forward_mode=forward_mode), clock=clock)


def build_index(store, clock, **engine_options):
    return create_auth_index(store, EngineConfig(**engine_options), clock=clock)


def session(session_id: str, user_id: str = "u1", expires_at: int = START_MS + 60_000, **extra):
    record = {"id": session_id, "user_id": user_id, "expires_at": expires_at}
    record.update(extra)
    return record


def api_key(key_id: str, user_id: str = "u1", **extra):
    record = {"id": key_id, "user_id": user_id, "label": f"key {key_id}"}
    record.update(extra)
    return record


