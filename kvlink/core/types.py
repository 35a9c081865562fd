"""
Core Type Definitions for kvlink

Implements the Result/Either monad used for zero-exception control flow
across the index engine, plus the key and timestamp primitives shared by
every store client.

Design Principles:
- Never use null for absence of an error (use Result)
- Engine operations return Err instead of raising
- Keys are immutable tuples of string parts, compared lexicographically

Complexity: O(1) for all type operations
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import (
    Any,
    ClassVar,
    Generic,
    Literal,
    TypeVar,
    Union,
)

# =============================================================================
# TYPE VARIABLES FOR GENERIC CONTAINERS
# =============================================================================
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type


# =============================================================================
# RESULT MONAD: ZERO-EXCEPTION CONTROL FLOW
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    Success variant of Result monad.

    Immutable, hashable container for successful computation results.
    """

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        """
        Extract value. Safe to call after is_ok() check.

        Returns:
            T: The wrapped success value
        """
        return self.value

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Failure variant of Result monad.

    Carries the typed error for exhaustive handling by the caller.
    """

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Attempting to unwrap an error is a programming error.

        Raises:
            RuntimeError: Always, with error context
        """
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# Union type for pattern matching
Result = Union[Ok[T], Err[E]]


# =============================================================================
# KEYS
# =============================================================================
# A physical store key: an ordered tuple of string parts. Prefix scans
# match every key whose leading parts equal the prefix.
Key = tuple[str, ...]


def key_has_prefix(key: Key, prefix: Key) -> bool:
    """True when the leading parts of ``key`` equal ``prefix``."""
    return len(key) >= len(prefix) and key[: len(prefix)] == prefix


# =============================================================================
# TIMESTAMP WITH NANOSECOND PRECISION
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """
    High-precision timestamp for error correlation and store bookkeeping.

    Stores nanoseconds since Unix epoch. Record expiry fields are epoch
    milliseconds, so ``millis`` is the usual bridge.
    """

    nanos: int

    NANOS_PER_MILLI: ClassVar[int] = 1_000_000

    @classmethod
    def now(cls) -> Timestamp:
        return cls(nanos=time.time_ns())

    @property
    def millis(self) -> int:
        """Convert to milliseconds (truncating)."""
        return self.nanos // self.NANOS_PER_MILLI

    def __repr__(self) -> str:
        return f"Timestamp({self.nanos}ns)"


def now_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return Timestamp.now().millis
