"""Backoff policies: attempt number (and error) to delay in milliseconds."""

from __future__ import annotations

import math
import random

from taskloop.resilience.base import BackoffPolicy
from taskloop.resilience.classification import is_rate_limit_error

DEFAULT_RATE_LIMIT_WAIT_MS = 30_000
JITTER_FACTOR = 0.2


def _apply_jitter(delay: float, rng: random.Random) -> float:
    spread = delay * JITTER_FACTOR
    return delay + rng.uniform(-spread, spread)


class ExponentialBackoff:
    """``min(max_delay, base * multiplier ** (attempt - 1))`` with optional jitter."""

    def __init__(
        self,
        *,
        base_delay_ms: int = 1_000,
        max_delay_ms: int = 60_000,
        multiplier: float = 2.0,
        jitter: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.multiplier = multiplier
        self.jitter = jitter
        self._random = rng or random.Random()  # noqa: S311

    def calculate_delay(self, attempt: int, error: BaseException | None = None) -> int:
        delay = self.base_delay_ms * self.multiplier ** max(attempt - 1, 0)
        if self.jitter:
            delay = _apply_jitter(delay, self._random)
        return max(0, math.floor(min(delay, self.max_delay_ms)))


class LinearBackoff:
    """``min(max_delay, base * attempt)`` with optional jitter."""

    def __init__(
        self,
        *,
        base_delay_ms: int = 1_000,
        max_delay_ms: int = 30_000,
        jitter: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter = jitter
        self._random = rng or random.Random()  # noqa: S311

    def calculate_delay(self, attempt: int, error: BaseException | None = None) -> int:
        delay: float = self.base_delay_ms * attempt
        if self.jitter:
            delay = _apply_jitter(delay, self._random)
        return max(0, min(math.floor(delay), self.max_delay_ms))


class ConstantBackoff:
    """Same delay for every attempt."""

    def __init__(self, delay_ms: int = 1_000) -> None:
        self.delay_ms = delay_ms

    def calculate_delay(self, attempt: int, error: BaseException | None = None) -> int:
        return self.delay_ms


class RateLimitBackoff:
    """Fixed wait for rate-limited errors regardless of attempt; else the fallback (or 0)."""

    def __init__(
        self,
        rate_limit_wait_ms: int = DEFAULT_RATE_LIMIT_WAIT_MS,
        fallback: BackoffPolicy | None = None,
    ) -> None:
        self.rate_limit_wait_ms = rate_limit_wait_ms
        self.fallback = fallback

    def calculate_delay(self, attempt: int, error: BaseException | None = None) -> int:
        if error is not None and is_rate_limit_error(error):
            return self.rate_limit_wait_ms
        if self.fallback is None:
            return 0
        return self.fallback.calculate_delay(attempt, error)
