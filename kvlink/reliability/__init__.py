"""Reliability: caller-side retry with exponential backoff."""

from kvlink.reliability.retry import (
    RetryPolicy,
    RetryStats,
    calculate_backoff,
    retry_result,
)

__all__ = ["RetryPolicy", "RetryStats", "calculate_backoff", "retry_result"]
