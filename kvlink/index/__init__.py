"""
Index Module: Owner/Dependent Indexes over a Flat Key-Value Store

Components:
    - KeySpace: pure key builders for principals and dependent kinds
    - ForwardIndex: sentinel or set representation of owner -> members
    - IndexEngine: create/read/update/delete for one dependent kind
    - PrincipalStore: principal CRUD and cascade deletion with a hook
    - ExpirySweeper: expiry deletion and index repair passes
"""

from kvlink.index.keyspace import (
    KEY_LAYOUT,
    SESSION_LAYOUT,
    DependentKeys,
    KeySpace,
    KindLayout,
)
from kvlink.index.forward import (
    ForwardIndex,
    ForwardSnapshot,
    SentinelForwardIndex,
    SetForwardIndex,
    create_forward_index,
)
from kvlink.index.engine import (
    DependentKind,
    IndexEngine,
    IndexMetrics,
    Record,
)
from kvlink.index.principal import (
    CascadeHook,
    CascadeReport,
    InitialDependent,
    PrincipalStore,
)
from kvlink.index.sweeper import (
    ExpirySweeper,
    PruneReport,
    SweepReport,
    SweeperState,
)
from kvlink.index.registry import (
    AuthIndex,
    create_auth_index,
    key_kind,
    session_kind,
)

__all__ = [
    # Keys
    "KEY_LAYOUT",
    "SESSION_LAYOUT",
    "DependentKeys",
    "KeySpace",
    "KindLayout",
    # Forward index
    "ForwardIndex",
    "ForwardSnapshot",
    "SentinelForwardIndex",
    "SetForwardIndex",
    "create_forward_index",
    # Engine
    "DependentKind",
    "IndexEngine",
    "IndexMetrics",
    "Record",
    # Principals
    "CascadeHook",
    "CascadeReport",
    "InitialDependent",
    "PrincipalStore",
    # Sweeper
    "ExpirySweeper",
    "PruneReport",
    "SweepReport",
    "SweeperState",
    # Registry
    "AuthIndex",
    "create_auth_index",
    "key_kind",
    "session_kind",
]
