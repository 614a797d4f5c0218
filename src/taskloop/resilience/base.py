"""Policy interfaces for the resilience engine."""

from __future__ import annotations

from typing import Protocol


class BackoffPolicy(Protocol):
    """Maps an attempt number (and the error that caused it) to a wait."""

    def calculate_delay(self, attempt: int, error: BaseException | None = None) -> int:
        """Return the delay in milliseconds before the next attempt."""


class RetryStrategy(Protocol):
    """Decides whether a failed operation should be attempted again."""

    @property
    def max_attempts(self) -> int:
        """Hard cap on attempts, including the first one."""

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Return True when attempt ``attempt`` failing with ``error`` may be retried."""
