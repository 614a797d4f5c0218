"""Runtime configuration for task stores, locking and retry policy."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from taskloop.errors import ErrorCode, TaskloopError

SUPPORTED_BACKENDS: tuple[str, ...] = ("json", "github")


@dataclass(slots=True)
class BackendSettings:
    """Which backlog backend to use and where the JSON document lives."""

    kind: str = "json"
    tasks_file: Path = Path(".specs/tasks/tasks.json")
    tasks_dir: Path | None = None


@dataclass(slots=True)
class LockSettings:
    """Advisory lock file timings for the JSON backend."""

    timeout_ms: int = 5_000
    stale_ms: int = 30_000
    retry_delay_ms: int = 100


@dataclass(slots=True)
class GitHubSettings:
    """GitHub Issues backend settings."""

    repo: str = ""
    token: str | None = None
    api_url: str = "https://api.github.com"
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class ResilienceSettings:
    """Retry and backoff defaults for outbound calls."""

    max_attempts: int = 3
    retry_on_rate_limit: bool = True
    retry_on_transient: bool = True
    retry_on_all_errors: bool = False
    base_delay_ms: int = 1_000
    max_delay_ms: int = 60_000
    multiplier: float = 2.0
    jitter: bool = True
    rate_limit_wait_ms: int = 30_000
    attempt_timeout_ms: int | None = None


@dataclass(slots=True)
class WorkerSettings:
    """Automation loop knobs consumed by the reference worker."""

    retry_cooldown_ms: int | None = None
    quarantine_after: int = 3
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    backend: BackendSettings = field(default_factory=BackendSettings)
    lock: LockSettings = field(default_factory=LockSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)
    resilience: ResilienceSettings = field(default_factory=ResilienceSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, tasks_file: Path | None = None) -> Settings:
        """Load settings from environment with local-development defaults."""

        tasks_dir_raw = os.getenv("TASKLOOP_TASKS_DIR", "").strip()
        cooldown_raw = os.getenv("TASKLOOP_RETRY_COOLDOWN_MS", "").strip()
        attempt_timeout_raw = os.getenv("TASKLOOP_ATTEMPT_TIMEOUT_MS", "").strip()
        return cls(
            backend=BackendSettings(
                kind=os.getenv("TASKLOOP_BACKEND", "json").strip().lower(),
                tasks_file=tasks_file
                or Path(os.getenv("TASKLOOP_TASKS_FILE", ".specs/tasks/tasks.json")),
                tasks_dir=Path(tasks_dir_raw) if tasks_dir_raw else None,
            ),
            lock=LockSettings(
                timeout_ms=_env_int("TASKLOOP_LOCK_TIMEOUT_MS", 5_000),
                stale_ms=_env_int("TASKLOOP_LOCK_STALE_MS", 30_000),
                retry_delay_ms=_env_int("TASKLOOP_LOCK_RETRY_DELAY_MS", 100),
            ),
            github=GitHubSettings(
                repo=os.getenv("TASKLOOP_GITHUB_REPO", "").strip(),
                token=os.getenv("TASKLOOP_GITHUB_TOKEN") or os.getenv("GITHUB_TOKEN") or None,
                api_url=os.getenv("TASKLOOP_GITHUB_API_URL", "https://api.github.com").rstrip("/"),
                request_timeout_seconds=float(
                    os.getenv("TASKLOOP_GITHUB_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
            ),
            resilience=ResilienceSettings(
                max_attempts=_env_int("TASKLOOP_RETRY_MAX_ATTEMPTS", 3),
                retry_on_rate_limit=_env_bool("TASKLOOP_RETRY_ON_RATE_LIMIT", default=True),
                retry_on_transient=_env_bool("TASKLOOP_RETRY_ON_TRANSIENT", default=True),
                retry_on_all_errors=_env_bool("TASKLOOP_RETRY_ON_ALL_ERRORS", default=False),
                base_delay_ms=_env_int("TASKLOOP_RETRY_BASE_DELAY_MS", 1_000),
                max_delay_ms=_env_int("TASKLOOP_RETRY_MAX_DELAY_MS", 60_000),
                multiplier=float(os.getenv("TASKLOOP_RETRY_MULTIPLIER", "2.0")),
                jitter=_env_bool("TASKLOOP_RETRY_JITTER", default=True),
                rate_limit_wait_ms=_env_int("TASKLOOP_RATE_LIMIT_WAIT_MS", 30_000),
                attempt_timeout_ms=int(attempt_timeout_raw) if attempt_timeout_raw else None,
            ),
            worker=WorkerSettings(
                retry_cooldown_ms=int(cooldown_raw) if cooldown_raw else None,
                quarantine_after=_env_int("TASKLOOP_QUARANTINE_AFTER", 3),
                poll_interval_seconds=float(os.getenv("TASKLOOP_POLL_INTERVAL_SECONDS", "2.0")),
            ),
        )

    def validate(self) -> None:
        """Raise a configuration error if settings cannot drive a store."""

        if self.backend.kind not in SUPPORTED_BACKENDS:
            raise TaskloopError(
                ErrorCode.BACKEND_INVALID,
                f"Unsupported backend: {self.backend.kind!r}",
                [
                    f"Set TASKLOOP_BACKEND to one of: {', '.join(SUPPORTED_BACKENDS)}",
                ],
            )
        if self.backend.kind == "github":
            _validate_repo(self.github.repo)
            _validate_api_url(self.github.api_url)
        for name, value in (
            ("TASKLOOP_LOCK_TIMEOUT_MS", self.lock.timeout_ms),
            ("TASKLOOP_LOCK_STALE_MS", self.lock.stale_ms),
            ("TASKLOOP_RETRY_MAX_ATTEMPTS", self.resilience.max_attempts),
        ):
            if value <= 0:
                raise TaskloopError(ErrorCode.CONFIG_INVALID, f"{name} must be > 0.")
        for name, value in (
            ("TASKLOOP_LOCK_RETRY_DELAY_MS", self.lock.retry_delay_ms),
            ("TASKLOOP_RETRY_BASE_DELAY_MS", self.resilience.base_delay_ms),
            ("TASKLOOP_RATE_LIMIT_WAIT_MS", self.resilience.rate_limit_wait_ms),
        ):
            if value < 0:
                raise TaskloopError(ErrorCode.CONFIG_INVALID, f"{name} must be >= 0.")
        if self.worker.quarantine_after < 0:
            raise TaskloopError(
                ErrorCode.CONFIG_INVALID,
                "TASKLOOP_QUARANTINE_AFTER must be >= 0 (0 disables quarantine).",
            )


def _validate_repo(value: str) -> None:
    owner, _, name = value.partition("/")
    if not owner or not name or "/" in name:
        raise TaskloopError(
            ErrorCode.CONFIG_INVALID,
            f"Invalid GitHub repository: {value!r}. Expected 'owner/repo'.",
            ["Set TASKLOOP_GITHUB_REPO=owner/repo"],
        )


def _validate_api_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise TaskloopError(
            ErrorCode.CONFIG_INVALID,
            f"Invalid GitHub API URL: {value!r}. Expected an absolute http(s) URL.",
        )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise TaskloopError(
            ErrorCode.CONFIG_INVALID,
            f"Invalid integer value for {name}: {value!r}",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise TaskloopError(
        ErrorCode.CONFIG_INVALID,
        f"Invalid boolean value for {name}: {value!r}",
    )
