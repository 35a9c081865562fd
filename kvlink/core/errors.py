"""
Exhaustive Error Hierarchy for kvlink

Design Principles:
- Engine operations never raise for expected failures (use Result types)
- Every failure carries a stable error code for programmatic handling
- Never swallow store errors; surface them unchanged to the caller
- Carry full error context for debugging and audit trails

Each error type includes:
- Unique error code for programmatic handling
- Human-readable message for logging
- Optional cause chain for root cause analysis
- Timestamp for correlation with logs

Usage:
    result = await sessions.create(record)
    match result:
        case Ok(value):
            process(value)
        case Err(error) if error.code is ErrorCode.DUPLICATE_ID:
            handle_duplicate(error)
        case Err(error) if error.retryable:
            schedule_retry(error)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from kvlink.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Index precondition errors
    - 2xxx: Store errors
    - 3xxx: Cascade errors
    - 6xxx: Reliability errors
    - 9xxx: Internal/configuration errors
    """

    # Index precondition errors (1xxx)
    MISSING_OWNER = 1001
    OWNER_NOT_FOUND = 1002
    DUPLICATE_ID = 1003
    NOT_FOUND = 1004
    INVALID_ATTRIBUTES = 1005

    # Store errors (2xxx)
    CONFLICT = 2001
    STORE_UNAVAILABLE = 2002
    TRANSACTION_CLOSED = 2003
    TRANSACTION_TOO_LARGE = 2004
    VALUE_NOT_ENCODABLE = 2005

    # Cascade errors (3xxx)
    CASCADE_HOOK_FAILED = 3001

    # Reliability errors (6xxx)
    RETRY_EXHAUSTED = 6001

    # Internal errors (9xxx)
    CONFIGURATION_ERROR = 9001


_RETRYABLE_CODES = frozenset({ErrorCode.CONFLICT, ErrorCode.STORE_UNAVAILABLE})


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class KVLinkError(Exception):
    """
    Base class for all kvlink errors.

    Provides common infrastructure for error handling:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Timestamp for correlation
    - Cause chain for root cause analysis
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """True when re-issuing the same operation may succeed."""
        return self.code in _RETRYABLE_CODES

    def with_context(self, **kwargs: Any) -> KVLinkError:
        """
        Add context to error (returns new instance of the same class).

        Context is useful for debugging but should not
        contain sensitive information.
        """
        return type(self)(
            code=self.code,
            message=self.message,
            error_id=self.error_id,
            timestamp=self.timestamp,
            cause=self.cause,
            context={**self.context, **kwargs},
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize error to dictionary for structured logging."""
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# INDEX ENGINE ERRORS (PRECONDITIONS)
# =============================================================================
@dataclass
class IndexEngineError(KVLinkError):
    """
    Precondition failures detected by reads before a transaction is built.

    None of these are retryable: the caller's input or the current
    store contents must change first.
    """

    @classmethod
    def missing_owner(cls, kind: str, owner_field: str) -> IndexEngineError:
        """Dependent record carries no owner reference."""
        return cls(
            code=ErrorCode.MISSING_OWNER,
            message=f"{kind} record has no value for '{owner_field}'",
            context={"kind": kind, "owner_field": owner_field},
        )

    @classmethod
    def owner_not_found(cls, kind: str, owner_id: str) -> IndexEngineError:
        """Referenced principal does not exist."""
        return cls(
            code=ErrorCode.OWNER_NOT_FOUND,
            message=f"Owner '{owner_id}' of {kind} does not exist",
            context={"kind": kind, "owner_id": owner_id},
        )

    @classmethod
    def duplicate_id(cls, kind: str, record_id: str) -> IndexEngineError:
        """A record with this id already exists."""
        return cls(
            code=ErrorCode.DUPLICATE_ID,
            message=f"{kind} '{record_id}' already exists",
            context={"kind": kind, "id": record_id},
        )

    @classmethod
    def not_found(cls, kind: str, record_id: str) -> IndexEngineError:
        return cls(
            code=ErrorCode.NOT_FOUND,
            message=f"{kind} '{record_id}' not found",
            context={"kind": kind, "id": record_id},
        )

    @classmethod
    def invalid_attributes(
        cls,
        kind: str,
        fields: list[str],
        reason: str,
    ) -> IndexEngineError:
        """Payload touches fields the engine owns, or lacks required ones."""
        return cls(
            code=ErrorCode.INVALID_ATTRIBUTES,
            message=f"Invalid {kind} attributes {fields}: {reason}",
            context={"kind": kind, "fields": fields, "reason": reason},
        )


# =============================================================================
# STORE ERRORS
# =============================================================================
@dataclass
class StoreError(KVLinkError):
    """
    Errors from the underlying key-value store.

    Covers failed commit checks, connectivity, and transaction misuse.
    """

    @classmethod
    def conflict(
        cls,
        operation: str,
        keys: Optional[list[str]] = None,
    ) -> StoreError:
        """A commit check failed; nothing was applied."""
        return cls(
            code=ErrorCode.CONFLICT,
            message=f"Commit check failed during '{operation}'",
            context={"operation": operation, "keys": keys or []},
        )

    @classmethod
    def unavailable(
        cls,
        operation: str,
        cause: Optional[BaseException] = None,
    ) -> StoreError:
        """Store could not be reached or failed the request."""
        return cls(
            code=ErrorCode.STORE_UNAVAILABLE,
            message=f"Store unavailable during '{operation}': {cause}",
            cause=cause,
            context={"operation": operation},
        )

    @classmethod
    def transaction_closed(cls, state: str) -> StoreError:
        """Transaction was used after commit, discard, or sealing."""
        return cls(
            code=ErrorCode.TRANSACTION_CLOSED,
            message=f"Transaction is {state}; no further operations allowed",
            context={"state": state},
        )

    @classmethod
    def transaction_too_large(cls, mutations: int, limit: int) -> StoreError:
        return cls(
            code=ErrorCode.TRANSACTION_TOO_LARGE,
            message=f"Transaction has {mutations} mutations, store limit is {limit}",
            context={"mutations": mutations, "limit": limit},
        )

    @classmethod
    def value_not_encodable(cls, key: str, cause: BaseException) -> StoreError:
        """A staged value has no JSON representation; nothing was sent."""
        return cls(
            code=ErrorCode.VALUE_NOT_ENCODABLE,
            message=f"Value for {key} cannot be encoded: {cause}",
            cause=cause,
            context={"key": key},
        )


# =============================================================================
# CASCADE ERRORS
# =============================================================================
@dataclass
class CascadeError(KVLinkError):
    """Errors raised while deleting a principal together with its dependents."""

    @classmethod
    def hook_failed(
        cls,
        owner_id: str,
        cause: BaseException,
    ) -> CascadeError:
        """Caller hook raised; the staged transaction was discarded."""
        return cls(
            code=ErrorCode.CASCADE_HOOK_FAILED,
            message=f"Cascade hook failed for owner '{owner_id}': {cause}",
            cause=cause,
            context={"owner_id": owner_id},
        )


# =============================================================================
# RELIABILITY ERRORS
# =============================================================================
@dataclass
class ReliabilityError(KVLinkError):
    """Errors from the caller-side retry helper."""

    @classmethod
    def retry_exhausted(
        cls,
        attempts: int,
        last_error: KVLinkError,
    ) -> ReliabilityError:
        """All retry attempts exhausted."""
        return cls(
            code=ErrorCode.RETRY_EXHAUSTED,
            message=f"Retry exhausted after {attempts} attempts: {last_error}",
            cause=last_error,
            context={"attempts": attempts, "last_code": last_error.code.name},
        )


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================
@dataclass
class ConfigurationError(KVLinkError):
    """Invalid or incomplete configuration."""

    @classmethod
    def invalid(cls, setting: str, reason: str) -> ConfigurationError:
        return cls(
            code=ErrorCode.CONFIGURATION_ERROR,
            message=f"Invalid configuration '{setting}': {reason}",
            context={"setting": setting, "reason": reason},
        )
