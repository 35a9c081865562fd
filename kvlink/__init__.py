"""
kvlink: Consistent Owner/Dependent Indexes over a Flat Key-Value Store

Maintains principal records (users) and dependent records (sessions,
API keys) in a store that offers only point reads, prefix scans and
atomic multi-key commits with absent/version checks:

- Index Engine: primary, forward and reverse structures kept in step
  by single atomic commits
- Principal Store: owner CRUD and cascade deletion with a caller hook
  staged into the same commit
- Expiry Sweeper: version-guarded removal of expired dependents
- Storage: in-memory store for tests, Redis store for production

Author: kvlink maintainers
License: MIT
"""

__version__ = "1.0.0"
__author__ = "kvlink maintainers"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from kvlink.core.types import (
    Result,
    Ok,
    Err,
    Key,
)
from kvlink.core.errors import (
    ErrorCode,
    KVLinkError,
    IndexEngineError,
    StoreError,
    CascadeError,
)
from kvlink.core.config import (
    KVLinkConfig,
    EngineConfig,
    ForwardMode,
    ExpiryMode,
)

# Storage exports
from kvlink.storage import (
    InMemoryKVStore,
    StagingView,
    StoreClient,
    Transaction,
    create_store,
)

# Index exports
from kvlink.index import (
    AuthIndex,
    CascadeReport,
    DependentKind,
    ExpirySweeper,
    IndexEngine,
    InitialDependent,
    KeySpace,
    PrincipalStore,
    create_auth_index,
)

# Reliability exports
from kvlink.reliability import RetryPolicy, retry_result

__all__ = [
    # Version
    "__version__",
    # Core
    "Result",
    "Ok",
    "Err",
    "Key",
    "ErrorCode",
    "KVLinkError",
    "IndexEngineError",
    "StoreError",
    "CascadeError",
    "KVLinkConfig",
    "EngineConfig",
    "ForwardMode",
    "ExpiryMode",
    # Storage
    "InMemoryKVStore",
    "StagingView",
    "StoreClient",
    "Transaction",
    "create_store",
    # Index
    "AuthIndex",
    "CascadeReport",
    "DependentKind",
    "ExpirySweeper",
    "IndexEngine",
    "InitialDependent",
    "KeySpace",
    "PrincipalStore",
    "create_auth_index",
    # Reliability
    "RetryPolicy",
    "retry_result",
]
