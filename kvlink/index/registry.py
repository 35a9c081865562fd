"""
Registry: wires the default auth layout (users, sessions, keys).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from kvlink.core import constants as C
from kvlink.core.config import EngineConfig, ExpiryMode
from kvlink.core.types import now_millis
from kvlink.index.engine import DependentKind, IndexEngine
from kvlink.index.keyspace import KEY_LAYOUT, SESSION_LAYOUT, KeySpace
from kvlink.index.principal import PrincipalStore
from kvlink.storage.protocols import StoreClient


@dataclass(frozen=True)
class AuthIndex:
    """Principal store plus the session and key engines sharing one key space."""

    principals: PrincipalStore
    sessions: IndexEngine
    keys: IndexEngine

    def engine(self, kind: str) -> IndexEngine:
        engines = self.principals.engines
        if kind not in engines:
            raise KeyError(f"Unknown dependent kind: {kind}")
        return engines[kind]


def session_kind(expiry_mode: ExpiryMode = ExpiryMode.SWEEP) -> DependentKind:
    return DependentKind(
        name=C.SESSION_KIND,
        layout=SESSION_LAYOUT,
        expiry_mode=expiry_mode,
    )


def key_kind() -> DependentKind:
    return DependentKind(
        name=C.KEY_KIND,
        layout=KEY_LAYOUT,
        expiry_mode=ExpiryMode.NONE,
    )


def create_auth_index(
    store: StoreClient,
    config: Optional[EngineConfig] = None,
    keyspace: Optional[KeySpace] = None,
    clock: Callable[[], int] = now_millis,
) -> AuthIndex:
    """
    Build the principal store and register the session and key engines.

    Sessions expire per ``config.session_expiry``; keys never expire.
    """
    config = config or EngineConfig()
    keyspace = keyspace or KeySpace()

    sessions = IndexEngine(store, keyspace, session_kind(config.session_expiry), config, clock)
    keys = IndexEngine(store, keyspace, key_kind(), config, clock)

    principals = PrincipalStore(store, keyspace, config)
    principals.register(sessions)
    principals.register(keys)

    return AuthIndex(principals=principals, sessions=sessions, keys=keys)
