"""Rate limiting and retry infrastructure for outbound requests."""

from .backoff import (
    BackoffPolicy,
    DecorrelatedBackoff,
    ExponentialBackoff,
    FibonacciBackoff,
    LinearBackoff,
    NoBackoff,
    create_backoff,
)
from .classify import FailureType, classify_failure, is_retryable, parse_retry_after
from .limiter import (
    CompositeRateLimiter,
    RateLimiterRegistry,
    RateLimitStatus,
    SlidingWindowLimiter,
)
from .retry import RetryAttempt, RetryPolicy

__all__ = [
    # Limiters
    "SlidingWindowLimiter",
    "CompositeRateLimiter",
    "RateLimiterRegistry",
    "RateLimitStatus",
    # Backoff policies
    "BackoffPolicy",
    "ExponentialBackoff",
    "LinearBackoff",
    "FibonacciBackoff",
    "DecorrelatedBackoff",
    "NoBackoff",
    "create_backoff",
    # Retry
    "RetryPolicy",
    "RetryAttempt",
    # Utilities
    "FailureType",
    "classify_failure",
    "is_retryable",
    "parse_retry_after",
]
