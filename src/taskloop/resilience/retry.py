"""Retry strategy deciding whether a failed attempt is worth repeating."""

from __future__ import annotations

from dataclasses import dataclass, field

from taskloop.resilience.backoff import DEFAULT_RATE_LIMIT_WAIT_MS
from taskloop.resilience.classification import classify_error


@dataclass(slots=True)
class RetryOptions:
    """Knobs for ``StandardRetryStrategy``."""

    max_attempts: int = 3
    retry_on_rate_limit: bool = True
    retry_on_transient: bool = True
    retry_on_all_errors: bool = False
    retryable_errors: tuple[str, ...] = field(default_factory=tuple)
    rate_limit_wait_ms: int = DEFAULT_RATE_LIMIT_WAIT_MS


def is_retryable(error: BaseException | str | None, options: RetryOptions) -> bool:
    """Apply the retry classification rules for the given options."""

    return classify_error(
        error,
        retry_on_rate_limit=options.retry_on_rate_limit,
        retry_on_transient=options.retry_on_transient,
        retry_on_all_errors=options.retry_on_all_errors,
        retryable_errors=options.retryable_errors,
    ).retryable


class StandardRetryStrategy:
    """Attempt cap plus rate-limit/transient/allow-list classification."""

    def __init__(self, options: RetryOptions | None = None) -> None:
        self.options = options or RetryOptions()

    @property
    def max_attempts(self) -> int:
        return self.options.max_attempts

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        if attempt >= self.options.max_attempts:
            return False
        return is_retryable(error, self.options)
