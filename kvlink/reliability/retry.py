"""
Retry Policy: Exponential Backoff with Jitter

The index engine never retries; a Conflict or StoreUnavailable result is
handed back to the caller unchanged. This module is the caller-side
helper for operations that are safe to re-issue:

- Exponential backoff: base × 2^n, capped
- Full jitter: random(0, backoff) to prevent thundering herd
- Only errors whose ``retryable`` flag is set are retried
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from kvlink.core import constants as C
from kvlink.core.errors import KVLinkError, ReliabilityError
from kvlink.core.types import Err, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry configuration."""

    max_attempts: int = C.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = C.RETRY_MAX_DELAY_MS
    exponential_base: float = 2.0
    jitter: bool = True  # Full jitter

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()


@dataclass
class RetryStats:
    """Retry attempt statistics."""
    total_attempts: int = 0
    total_delay_ms: float = 0.0
    last_error: Optional[KVLinkError] = None


async def retry_result(
    func: Callable[[], Awaitable[Result[T, KVLinkError]]],
    policy: Optional[RetryPolicy] = None,
    stats: Optional[RetryStats] = None,
) -> Result[T, KVLinkError]:
    """
    Re-issue a Result-returning operation while it fails retryably.

    Args:
        func: Zero-argument coroutine factory; called once per attempt
        policy: Retry configuration (default if None)
        stats: Optional accumulator for attempt statistics

    Returns:
        The first Ok, the first non-retryable Err unchanged, or
        Err(ReliabilityError.retry_exhausted) wrapping the last error.
    """
    if policy is None:
        policy = RetryPolicy.default()
    if stats is None:
        stats = RetryStats()

    attempt = 0
    while True:
        stats.total_attempts += 1
        result = await func()

        if result.is_ok():
            return result

        error = result.error
        stats.last_error = error
        if not error.retryable:
            return result
        if attempt + 1 >= policy.max_attempts:
            return Err(ReliabilityError.retry_exhausted(
                attempts=stats.total_attempts,
                last_error=error,
            ))

        delay = calculate_backoff(
            attempt=attempt,
            base_delay_ms=policy.base_delay_ms,
            max_delay_ms=policy.max_delay_ms,
            exponential_base=policy.exponential_base,
            jitter=policy.jitter,
        )
        stats.total_delay_ms += delay
        logger.debug(
            f"Attempt {attempt + 1} failed with {error.code.name}, retrying in {delay:.1f}ms"
        )
        await asyncio.sleep(delay / 1000)
        attempt += 1


def calculate_backoff(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    exponential_base: float,
    jitter: bool,
) -> float:
    """
    Calculate backoff delay with optional jitter.

    Full jitter: random(0, min(cap, base * 2^attempt))
    """
    delay = min(max_delay_ms, base_delay_ms * (exponential_base ** attempt))

    if jitter:
        delay = random.uniform(0, delay)

    return delay
