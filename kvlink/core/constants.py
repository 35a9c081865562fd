"""
System-Wide Constants for kvlink

All magic numbers, default key prefixes, and configuration defaults
centralized here.
"""

from typing import Final

# =============================================================================
# SIZE AND TIME UNITS
# =============================================================================
KB: Final[int] = 1024

SECOND_MS: Final[int] = 1000
MINUTE_MS: Final[int] = 60 * SECOND_MS
HOUR_MS: Final[int] = 60 * MINUTE_MS

# =============================================================================
# DEFAULT KEY LAYOUT
# =============================================================================
DEFAULT_ROOT_PREFIX: Final[tuple[str, ...]] = ("auth",)
PRINCIPAL_PREFIX: Final[tuple[str, ...]] = ("user",)

SESSION_KIND: Final[str] = "session"
SESSION_PRIMARY_PREFIX: Final[tuple[str, ...]] = ("session",)
SESSION_FORWARD_PREFIX: Final[tuple[str, ...]] = ("user_sessions",)
SESSION_REVERSE_PREFIX: Final[tuple[str, ...]] = ("session_user",)

KEY_KIND: Final[str] = "key"
KEY_PRIMARY_PREFIX: Final[tuple[str, ...]] = ("key",)
KEY_FORWARD_PREFIX: Final[tuple[str, ...]] = ("user_keys",)
KEY_REVERSE_PREFIX: Final[tuple[str, ...]] = ("key_user",)

DEFAULT_OWNER_FIELD: Final[str] = "user_id"
DEFAULT_EXPIRY_FIELD: Final[str] = "expires_at"
ID_FIELD: Final[str] = "id"

# =============================================================================
# ENGINE LIMITS
# =============================================================================
MAX_MUTATIONS_PER_TRANSACTION: Final[int] = 1000
GET_MANY_BATCH_SIZE: Final[int] = 10

# =============================================================================
# SWEEPER
# =============================================================================
SWEEP_SCAN_PAGE_SIZE: Final[int] = 500

# =============================================================================
# STORE
# =============================================================================
VERSIONSTAMP_WIDTH: Final[int] = 20
DEFAULT_SCAN_LIMIT: Final[int] = 100
COMPRESSION_THRESHOLD_BYTES: Final[int] = 1 * KB

# =============================================================================
# RELIABILITY
# =============================================================================
RETRY_BASE_MS: Final[int] = 20
RETRY_MAX_DELAY_MS: Final[int] = 2 * SECOND_MS
RETRY_MAX_ATTEMPTS: Final[int] = 5
