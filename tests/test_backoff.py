from __future__ import annotations

import random

import allure
import pytest

from taskloop.resilience.backoff import (
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    RateLimitBackoff,
)
from taskloop.resilience.classification import RateLimitError

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Backoff Policies"),
]


def test_exponential_backoff_doubles_until_the_cap() -> None:
    policy = ExponentialBackoff(base_delay_ms=100, max_delay_ms=1_000, jitter=False)

    delays = [policy.calculate_delay(attempt) for attempt in range(1, 7)]

    assert delays == [100, 200, 400, 800, 1_000, 1_000]


def test_exponential_backoff_honours_custom_multiplier() -> None:
    policy = ExponentialBackoff(base_delay_ms=10, multiplier=3.0, jitter=False)

    assert policy.calculate_delay(3) == 90


@pytest.mark.parametrize("seed", [1, 7, 42, 1234])
def test_exponential_jitter_stays_within_twenty_percent(seed: int) -> None:
    policy = ExponentialBackoff(base_delay_ms=1_000, max_delay_ms=60_000, rng=random.Random(seed))

    for attempt in range(1, 5):
        nominal = 1_000 * 2 ** (attempt - 1)
        delay = policy.calculate_delay(attempt)
        assert nominal * 0.8 - 1 <= delay <= nominal * 1.2


def test_linear_backoff_grows_by_base_and_clamps() -> None:
    policy = LinearBackoff(base_delay_ms=1_000, max_delay_ms=2_500, jitter=False)

    assert [policy.calculate_delay(attempt) for attempt in (1, 2, 3, 4)] == [
        1_000,
        2_000,
        2_500,
        2_500,
    ]


def test_constant_backoff_ignores_attempt_and_error() -> None:
    policy = ConstantBackoff(250)

    assert policy.calculate_delay(1) == 250
    assert policy.calculate_delay(9, RuntimeError("boom")) == 250


def test_rate_limit_backoff_uses_fixed_wait_for_rate_limited_errors() -> None:
    policy = RateLimitBackoff(45_000, fallback=ConstantBackoff(5))

    assert policy.calculate_delay(1, RateLimitError()) == 45_000
    assert policy.calculate_delay(4, RuntimeError("HTTP 429 Too Many Requests")) == 45_000


def test_rate_limit_backoff_delegates_other_errors_to_fallback() -> None:
    with_fallback = RateLimitBackoff(45_000, fallback=ConstantBackoff(5))
    without_fallback = RateLimitBackoff(45_000)

    assert with_fallback.calculate_delay(2, RuntimeError("connection reset")) == 5
    assert with_fallback.calculate_delay(2) == 5
    assert without_fallback.calculate_delay(2, RuntimeError("connection reset")) == 0
