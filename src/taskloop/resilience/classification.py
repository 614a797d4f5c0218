"""Deterministic error classification for retry policy."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

_RATE_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"rate.*limit",
        r"429",
        r"too.*many.*request",
        r"resource.*exhausted",
        r"quota.*exceed",
        r"billing.*limit",
        r"over.*quota",
        r"over.*query.*limit",
    )
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "econnreset",
    "etimeout",
    "connection refused",
    "connection reset",
    "network error",
    "network unreachable",
    "enotfound",
    "socket hang up",
    "internal server error",
    "500",
    "502",
    "503",
    "504",
    "eai_again",
    "econnrefused",
    "etimedout",
    "408",
    "gateway timeout",
    "bad gateway",
    "service unavailable",
    "timeout",
)


class ErrorClass(str, Enum):
    """Normalized error classes used by the retry strategy."""

    ALL_ERRORS = "all_errors"
    ALLOW_LISTED = "allow_listed"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"


class RateLimitError(RuntimeError):
    """Explicit rate-limit signal raised by callers that already know."""

    def __init__(self, message: str = "rate limit exceeded", code: int | str = 429) -> None:
        super().__init__(message)
        self.code = code


class AttemptTimeoutError(TimeoutError):
    """One attempt exceeded its per-attempt timeout."""

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Operation timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


@dataclass(slots=True)
class ErrorClassification:
    """Classification result with the rule that decided it."""

    error_class: ErrorClass
    retryable: bool
    matched_pattern: str | None = None


def error_message(error: BaseException | str | None) -> str:
    """Lower-cased message of an error; the class name when the message is empty."""

    if error is None:
        return ""
    if isinstance(error, str):
        return error.lower()
    return (str(error) or type(error).__name__).lower()


def error_code(error: BaseException | str | None) -> str | None:
    """Lower-cased ``code`` attribute of an error, if it carries one."""

    if error is None or isinstance(error, str):
        return None
    code = getattr(error, "code", None)
    if code is None:
        return None
    if isinstance(code, Enum):
        code = code.value
    return str(code).lower()


def is_rate_limit_output(output: str) -> bool:
    """Return True when free text looks like a rate-limit or quota response."""

    if not output:
        return False
    return any(pattern.search(output) for pattern in _RATE_LIMIT_PATTERNS)


def is_rate_limit_error(error: BaseException | str | None) -> bool:
    """Return True when an error signals rate limiting."""

    if error is None:
        return False
    if isinstance(error, RateLimitError):
        return True
    if is_rate_limit_output(error_message(error)):
        return True
    code = error_code(error)
    return code is not None and (code == "429" or "rate" in code)


def classify_error(  # noqa: PLR0913
    error: BaseException | str | None,
    *,
    retry_on_rate_limit: bool = True,
    retry_on_transient: bool = True,
    retry_on_all_errors: bool = False,
    retryable_errors: Sequence[str] = (),
) -> ErrorClassification:
    """Classify an error into a retry class; order of rules is significant."""

    if error is None:
        return ErrorClassification(error_class=ErrorClass.NON_RETRYABLE, retryable=False)
    if retry_on_all_errors:
        return ErrorClassification(error_class=ErrorClass.ALL_ERRORS, retryable=True)

    message = error_message(error)
    code = error_code(error)

    for pattern in retryable_errors:
        needle = pattern.lower()
        if needle in message or (code is not None and code == needle):
            return ErrorClassification(
                error_class=ErrorClass.ALLOW_LISTED,
                retryable=True,
                matched_pattern=pattern,
            )

    if is_rate_limit_error(error):
        return ErrorClassification(error_class=ErrorClass.RATE_LIMIT, retryable=retry_on_rate_limit)

    if retry_on_transient:
        pattern = _first_match(message, _TRANSIENT_PATTERNS)
        if pattern is None and code is not None and code in _TRANSIENT_PATTERNS:
            pattern = code
        if pattern is not None:
            return ErrorClassification(
                error_class=ErrorClass.TRANSIENT,
                retryable=True,
                matched_pattern=pattern,
            )

    return ErrorClassification(error_class=ErrorClass.NON_RETRYABLE, retryable=False)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
