from __future__ import annotations

from enum import Enum

import allure
import pytest

from taskloop.errors import RemoteStoreError
from taskloop.resilience.classification import (
    AttemptTimeoutError,
    ErrorClass,
    RateLimitError,
    classify_error,
    error_code,
    error_message,
    is_rate_limit_error,
)
from taskloop.resilience.retry import RetryOptions, StandardRetryStrategy, is_retryable

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Error Classification & Retry Strategy"),
]


class _Codes(Enum):
    THROTTLED = "RATE_EXCEEDED"


class _CodedError(RuntimeError):
    def __init__(self, message: str, code: object) -> None:
        super().__init__(message)
        self.code = code


@pytest.mark.parametrize(
    "error",
    [
        RuntimeError("API rate limit exceeded for user"),
        RuntimeError("HTTP 429"),
        RuntimeError("Too many requests, slow down"),
        RuntimeError("RESOURCE_EXHAUSTED: try later"),
        RuntimeError("Quota exceeded for project"),
        RuntimeError("billing limit reached"),
        _CodedError("throttled", 429),
        _CodedError("throttled", _Codes.THROTTLED),
        RateLimitError(),
    ],
)
def test_rate_limit_signatures_are_detected(error: BaseException) -> None:
    assert is_rate_limit_error(error)
    assert classify_error(error).error_class is ErrorClass.RATE_LIMIT


def test_rate_limit_is_not_retried_when_disabled() -> None:
    classification = classify_error(RateLimitError(), retry_on_rate_limit=False)

    assert classification.error_class is ErrorClass.RATE_LIMIT
    assert classification.retryable is False


@pytest.mark.parametrize(
    ("message", "pattern"),
    [
        ("read ECONNRESET", "econnreset"),
        ("connection refused by host", "connection refused"),
        ("GitHub API 503: Service Unavailable", "503"),
        ("upstream returned Bad Gateway", "bad gateway"),
        ("timeout: ReadTimeout: timed out", "timeout"),
    ],
)
def test_transient_errors_are_retryable(message: str, pattern: str) -> None:
    classification = classify_error(RuntimeError(message))

    assert classification.error_class is ErrorClass.TRANSIENT
    assert classification.retryable is True
    assert classification.matched_pattern == pattern


def test_transient_errors_are_terminal_when_transient_retry_disabled() -> None:
    classification = classify_error(RuntimeError("ECONNRESET"), retry_on_transient=False)

    assert classification.retryable is False


def test_remote_store_error_code_is_matched_against_transient_set() -> None:
    error = RemoteStoreError("upstream said no", code=502)

    assert classify_error(error).error_class is ErrorClass.TRANSIENT


def test_client_errors_are_not_retryable() -> None:
    error = RemoteStoreError("GitHub API 404: Not Found", code=404)

    assert classify_error(error).error_class is ErrorClass.NON_RETRYABLE
    assert not is_retryable(error, RetryOptions())


def test_allow_list_matches_message_substring_and_code() -> None:
    by_message = classify_error(ValueError("Custom Flaky Thing"), retryable_errors=("flaky",))
    by_code = classify_error(_CodedError("nope", "E_BUSY"), retryable_errors=("E_BUSY",))

    assert by_message.error_class is ErrorClass.ALLOW_LISTED
    assert by_message.matched_pattern == "flaky"
    assert by_code.error_class is ErrorClass.ALLOW_LISTED


def test_all_errors_mode_retries_anything() -> None:
    classification = classify_error(ValueError("bad input"), retry_on_all_errors=True)

    assert classification.error_class is ErrorClass.ALL_ERRORS
    assert classification.retryable is True


def test_missing_error_is_never_retryable() -> None:
    assert classify_error(None).retryable is False


def test_empty_message_falls_back_to_class_name() -> None:
    assert error_message(KeyError()) == "keyerror"
    assert error_message(RuntimeError("Boom")) == "boom"
    assert error_code(RuntimeError("no code")) is None
    assert error_code(_CodedError("x", 503)) == "503"


def test_attempt_timeout_message_names_the_budget() -> None:
    error = AttemptTimeoutError(250)

    assert str(error) == "Operation timed out after 250ms"
    assert error.timeout_ms == 250


def test_strategy_stops_at_max_attempts() -> None:
    strategy = StandardRetryStrategy(RetryOptions(max_attempts=3))
    error = RuntimeError("503 Service Unavailable")

    assert strategy.max_attempts == 3
    assert strategy.should_retry(1, error) is True
    assert strategy.should_retry(2, error) is True
    assert strategy.should_retry(3, error) is False


def test_strategy_with_every_retry_flag_off_never_retries() -> None:
    strategy = StandardRetryStrategy(
        RetryOptions(
            max_attempts=5,
            retry_on_rate_limit=False,
            retry_on_transient=False,
            retry_on_all_errors=False,
        ),
    )

    assert strategy.should_retry(1, RateLimitError()) is False
    assert strategy.should_retry(1, RuntimeError("ECONNRESET")) is False
    assert strategy.should_retry(1, ValueError("bad input")) is False
