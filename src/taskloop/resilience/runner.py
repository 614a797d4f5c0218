"""Retry-with-backoff executor for arbitrary async operations."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from taskloop.resilience.backoff import ExponentialBackoff, RateLimitBackoff
from taskloop.resilience.base import BackoffPolicy, RetryStrategy
from taskloop.resilience.classification import AttemptTimeoutError
from taskloop.resilience.retry import RetryOptions, StandardRetryStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
RetryObserver = Callable[[int, BaseException, int], None]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class ResilienceRunnerOptions:
    """Flat knobs used to build the runner's default ``ResilienceConfig``."""

    max_attempts: int = 3
    retry_on_rate_limit: bool = True
    retry_on_transient: bool = True
    retry_on_all_errors: bool = False
    retryable_errors: tuple[str, ...] = ()
    rate_limit_wait_ms: int = 30_000
    base_delay_ms: int = 1_000
    max_delay_ms: int = 60_000
    multiplier: float = 2.0
    jitter: bool = True
    attempt_timeout_ms: int | None = None


@dataclass(slots=True)
class ResilienceConfig:
    """Strategy, backoff and observers applied to one ``execute`` call."""

    retry_strategy: RetryStrategy
    backoff_policy: BackoffPolicy
    rate_limit_wait_ms: int = 30_000
    attempt_timeout_ms: int | None = None
    on_retry: RetryObserver | None = None
    on_complete: Callable[[RetryResult[Any]], None] | None = None


@dataclass(slots=True)
class RetryAttempt:
    """One attempt in a ``RetryResult`` history."""

    attempt: int
    success: bool
    delay_ms: int
    timestamp: datetime
    error: BaseException | None = None


@dataclass(slots=True)
class RetryResult(Generic[T]):
    """Outcome of ``ResilienceRunner.execute``; never raised, always returned."""

    success: bool
    attempts: int
    total_duration_ms: int
    result: T | None = None
    attempt_history: list[RetryAttempt] = field(default_factory=list)
    final_error: BaseException | None = None


@dataclass(slots=True)
class ResilienceStats:
    """Rolling counters for one runner instance."""

    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    total_attempts: int = 0
    average_attempts_per_operation: float = 0.0


def build_config(options: ResilienceRunnerOptions) -> ResilienceConfig:
    """Standard strategy plus rate-limit-aware exponential backoff."""

    retry_options = RetryOptions(
        max_attempts=options.max_attempts,
        retry_on_rate_limit=options.retry_on_rate_limit,
        retry_on_transient=options.retry_on_transient,
        retry_on_all_errors=options.retry_on_all_errors,
        retryable_errors=tuple(options.retryable_errors),
        rate_limit_wait_ms=options.rate_limit_wait_ms,
    )
    exponential = ExponentialBackoff(
        base_delay_ms=options.base_delay_ms,
        max_delay_ms=options.max_delay_ms,
        multiplier=options.multiplier,
        jitter=options.jitter,
    )
    return ResilienceConfig(
        retry_strategy=StandardRetryStrategy(retry_options),
        backoff_policy=RateLimitBackoff(options.rate_limit_wait_ms, exponential),
        rate_limit_wait_ms=options.rate_limit_wait_ms,
        attempt_timeout_ms=options.attempt_timeout_ms,
    )


class ResilienceRunner:
    """Run operations under a retry strategy and backoff policy."""

    def __init__(
        self,
        options: ResilienceRunnerOptions | None = None,
        *,
        sleep: Sleep | None = None,
    ) -> None:
        self.options = options or ResilienceRunnerOptions()
        self._default_config = build_config(self.options)
        self._sleep = sleep or asyncio.sleep
        self._stats = ResilienceStats()

    @property
    def default_config(self) -> ResilienceConfig:
        return self._default_config

    @property
    def rate_limit_wait_ms(self) -> int:
        return self.options.rate_limit_wait_ms

    def set_default_config(self, **overrides: Any) -> None:
        self._default_config = replace(self._default_config, **overrides)

    def get_stats(self) -> ResilienceStats:
        return replace(self._stats)

    def reset_stats(self) -> None:
        self._stats = ResilienceStats()

    async def execute(
        self,
        operation: Operation[T],
        config: ResilienceConfig | None = None,
    ) -> RetryResult[T]:
        """Run ``operation`` until it succeeds, the strategy gives up, or attempts run out."""

        active = config or self._default_config
        strategy = active.retry_strategy
        self._stats.total_operations += 1
        history: list[RetryAttempt] = []
        started = time.monotonic()
        attempt = 0
        last_error: BaseException | None = None

        while attempt < strategy.max_attempts:
            attempt += 1
            self._stats.total_attempts += 1
            delay_ms = 0
            if attempt > 1:
                delay_ms = active.backoff_policy.calculate_delay(attempt - 1, last_error)
                if active.on_retry is not None and last_error is not None:
                    active.on_retry(attempt, last_error, delay_ms)
                logger.debug("Retrying attempt %s in %sms after: %s", attempt, delay_ms, last_error)
                await self._sleep(delay_ms / 1000)

            try:
                value = await _run_attempt(operation, active.attempt_timeout_ms)
            except Exception as error:  # noqa: BLE001
                last_error = error
                history.append(
                    RetryAttempt(
                        attempt=attempt,
                        success=False,
                        delay_ms=delay_ms,
                        timestamp=datetime.now(tz=UTC),
                        error=error,
                    ),
                )
                if not strategy.should_retry(attempt, error):
                    break
                continue

            history.append(
                RetryAttempt(
                    attempt=attempt,
                    success=True,
                    delay_ms=delay_ms,
                    timestamp=datetime.now(tz=UTC),
                ),
            )
            self._stats.successful_operations += 1
            self._update_average()
            result: RetryResult[T] = RetryResult(
                success=True,
                attempts=attempt,
                total_duration_ms=_elapsed_ms(started),
                result=value,
                attempt_history=history,
            )
            if active.on_complete is not None:
                active.on_complete(result)
            return result

        self._stats.failed_operations += 1
        self._update_average()
        if last_error is not None:
            logger.warning("Operation failed after %s attempt(s): %s", attempt, last_error)
        failed: RetryResult[T] = RetryResult(
            success=False,
            attempts=attempt,
            total_duration_ms=_elapsed_ms(started),
            attempt_history=history,
            final_error=last_error,
        )
        if active.on_complete is not None:
            active.on_complete(failed)
        return failed

    async def execute_sync(
        self,
        operation: Callable[[], T],
        config: ResilienceConfig | None = None,
    ) -> RetryResult[T]:
        """Same as ``execute`` for a plain callable."""

        async def _call() -> T:
            return operation()

        return await self.execute(_call, config)

    async def run(self, operation: Operation[T]) -> T:
        """Return the operation's value, raising the final error on failure."""

        result = await self.execute(operation)
        if result.success:
            return result.result  # type: ignore[return-value]
        if result.final_error is not None:
            raise result.final_error
        raise RuntimeError("Resilience execution failed")

    def _update_average(self) -> None:
        self._stats.average_attempts_per_operation = (
            self._stats.total_attempts / self._stats.total_operations
        )


def make_resilient(
    options: ResilienceRunnerOptions | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate a coroutine function so each call goes through ``ResilienceRunner.run``."""

    runner = ResilienceRunner(options)

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await runner.run(lambda: func(*args, **kwargs))

        return wrapper

    return decorator


async def _run_attempt(operation: Operation[T], timeout_ms: int | None) -> T:
    if not timeout_ms or timeout_ms <= 0:
        return await operation()

    task = asyncio.ensure_future(operation())
    done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
    if task in done:
        return task.result()
    # The attempt is abandoned, not cancelled; its outcome is discarded.
    task.add_done_callback(_discard_outcome)
    raise AttemptTimeoutError(timeout_ms)


def _discard_outcome(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        task.exception()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
