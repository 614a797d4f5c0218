"""Typed errors with machine-readable codes and remediation hints."""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable error codes surfaced to operators and callers."""

    LOCK_CONFLICT = "ERR_LOCK_CONFLICT"
    FILE_NOT_FOUND = "ERR_FILE_NOT_FOUND"
    FILE_READ = "ERR_FILE_READ"
    FILE_WRITE = "ERR_FILE_WRITE"
    CONFIG_INVALID = "ERR_CONFIG_INVALID"
    BACKEND_INVALID = "ERR_BACKEND_INVALID"
    BACKEND_REQUEST = "ERR_BACKEND_REQUEST"
    TASK_NOT_FOUND = "ERR_TASK_NOT_FOUND"
    TASK_INVALID = "ERR_TASK_INVALID"
    TASK_DEPS = "ERR_TASK_DEPS"
    UNKNOWN = "ERR_UNKNOWN"


class TaskloopError(RuntimeError):
    """Base error carrying a code and a list of suggestions."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestions: list[str] | tuple[str, ...] = (),
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestions = list(suggestions)


class LockConflictError(TaskloopError):
    """Lock could not be acquired before the deadline."""

    def __init__(self, lock_path: str, *, waited_ms: int) -> None:
        super().__init__(
            ErrorCode.LOCK_CONFLICT,
            f"Failed to acquire file lock {lock_path} after {waited_ms}ms",
            [
                "Another process may be accessing the tasks file",
                f"Check if a stale lock exists: {lock_path}",
                "Manually remove the lock file if safe",
            ],
        )
        self.lock_path = lock_path


class TaskFileError(TaskloopError):
    """Tasks document could not be read, parsed or written."""


class RemoteStoreError(RuntimeError):
    """Remote tracker request failed.

    ``code`` is the HTTP status as a string (``"429"``, ``"503"``) or the
    transport exception name, so retry classification can match on it.
    """

    def __init__(self, message: str, *, code: int | str) -> None:
        super().__init__(message)
        self.code = str(code)


def format_error(error: BaseException) -> list[str]:
    """Render an error as CLI lines."""

    if isinstance(error, RemoteStoreError):
        return [f"{ErrorCode.BACKEND_REQUEST.value}: {error} (code={error.code})"]
    if isinstance(error, TaskloopError):
        lines = [f"{error.code.value}: {error.message}"]
        lines.extend(f"  hint: {suggestion}" for suggestion in error.suggestions)
        return lines
    return [f"{ErrorCode.UNKNOWN.value}: {error}"]
