"""Retry strategies, backoff policies and the resilience runner."""

from taskloop.resilience.backoff import (
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    RateLimitBackoff,
)
from taskloop.resilience.classification import (
    AttemptTimeoutError,
    ErrorClass,
    RateLimitError,
    classify_error,
    is_rate_limit_error,
)
from taskloop.resilience.retry import RetryOptions, StandardRetryStrategy, is_retryable
from taskloop.resilience.runner import (
    ResilienceConfig,
    ResilienceRunner,
    ResilienceRunnerOptions,
    ResilienceStats,
    RetryAttempt,
    RetryResult,
    make_resilient,
)

__all__ = [
    "AttemptTimeoutError",
    "ConstantBackoff",
    "ErrorClass",
    "ExponentialBackoff",
    "LinearBackoff",
    "RateLimitBackoff",
    "RateLimitError",
    "ResilienceConfig",
    "ResilienceRunner",
    "ResilienceRunnerOptions",
    "ResilienceStats",
    "RetryAttempt",
    "RetryOptions",
    "RetryResult",
    "StandardRetryStrategy",
    "classify_error",
    "is_rate_limit_error",
    "is_retryable",
    "make_resilient",
]
