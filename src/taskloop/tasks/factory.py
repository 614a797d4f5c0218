"""Backend selection from settings."""

from __future__ import annotations

from taskloop.config import SUPPORTED_BACKENDS, ResilienceSettings, Settings
from taskloop.errors import ErrorCode, TaskloopError
from taskloop.resilience.runner import ResilienceRunner, ResilienceRunnerOptions
from taskloop.tasks.contracts import TaskStore
from taskloop.tasks.file_store import FileTaskStore
from taskloop.tasks.github_store import GitHubIssueStore


def create_resilience_runner(settings: ResilienceSettings) -> ResilienceRunner:
    return ResilienceRunner(
        ResilienceRunnerOptions(
            max_attempts=settings.max_attempts,
            retry_on_rate_limit=settings.retry_on_rate_limit,
            retry_on_transient=settings.retry_on_transient,
            retry_on_all_errors=settings.retry_on_all_errors,
            rate_limit_wait_ms=settings.rate_limit_wait_ms,
            base_delay_ms=settings.base_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            multiplier=settings.multiplier,
            jitter=settings.jitter,
            attempt_timeout_ms=settings.attempt_timeout_ms,
        ),
    )


def create_task_store(settings: Settings) -> TaskStore:
    """Build the configured backend; the set of kinds is closed."""

    settings.validate()
    kind = settings.backend.kind
    if kind == "json":
        return FileTaskStore(
            settings.backend.tasks_file,
            tasks_dir=settings.backend.tasks_dir,
            lock_timeout_ms=settings.lock.timeout_ms,
            lock_stale_ms=settings.lock.stale_ms,
            lock_retry_delay_ms=settings.lock.retry_delay_ms,
        )
    if kind == "github":
        return GitHubIssueStore(
            settings.github.repo,
            token=settings.github.token,
            api_url=settings.github.api_url,
            timeout_seconds=settings.github.request_timeout_seconds,
            runner=create_resilience_runner(settings.resilience),
        )
    raise TaskloopError(
        ErrorCode.BACKEND_INVALID,
        f"Unsupported backend: {kind!r}",
        [f"Supported backends: {', '.join(SUPPORTED_BACKENDS)}"],
    )
