"""Automation loop: claim, execute, record outcome."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from typing import Protocol

from taskloop.resilience.runner import ResilienceRunner
from taskloop.tasks.contracts import TaskStore
from taskloop.tasks.models import FindTaskOptions, Task

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecutionOutcome:
    """What an executor reports for one task."""

    success: bool
    error: str | None = None
    output: str | None = None


class TaskExecutor(Protocol):
    """Runs the work for one task, typically by spawning an external process."""

    async def execute(self, task: Task) -> ExecutionOutcome:
        """Execute ``task``; raise for failures worth retrying."""


class CommandExecutor:
    """Runs a command template once per task.

    ``{task_id}`` and ``{title}`` placeholders are substituted per argument
    after shell-style splitting; the task id, title and description are also
    exported as ``TASKLOOP_TASK_*`` environment variables. Exit code 0 means
    success.
    """

    def __init__(self, command: str, *, timeout_seconds: float | None = None) -> None:
        self.argv_template = shlex.split(command)
        if not self.argv_template:
            raise ValueError("Worker command must not be empty.")
        self.timeout_seconds = timeout_seconds

    def render(self, task: Task) -> list[str]:
        return [
            part.replace("{task_id}", task.id).replace("{title}", task.title)
            for part in self.argv_template
        ]

    async def execute(self, task: Task) -> ExecutionOutcome:
        env = {
            **os.environ,
            "TASKLOOP_TASK_ID": task.id,
            "TASKLOOP_TASK_TITLE": task.title,
            "TASKLOOP_TASK_DESCRIPTION": task.description,
        }
        process = await asyncio.create_subprocess_exec(
            *self.render(task),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            return ExecutionOutcome(
                success=False,
                error=f"Command timed out after {self.timeout_seconds}s",
            )

        output = _tail(stdout)
        if process.returncode == 0:
            return ExecutionOutcome(success=True, output=output)
        return ExecutionOutcome(
            success=False,
            error=_tail(stderr) or f"Command exited with code {process.returncode}",
            output=output,
        )


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    quarantined: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.quarantined += other.quarantined
        self.idle_polls += other.idle_polls


class TaskWorker:
    """Consumes eligible tasks one at a time.

    A failing task is marked failed (and quarantined after
    ``quarantine_after`` failures); the loop keeps going either way.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        executor: TaskExecutor,
        runner: ResilienceRunner | None = None,
        options: FindTaskOptions | None = None,
        quarantine_after: int = 3,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.store = store
        self.executor = executor
        self.runner = runner or ResilienceRunner()
        self.options = options or FindTaskOptions()
        self.quarantine_after = quarantine_after
        self.poll_interval_seconds = poll_interval_seconds
        self.current_task_id: str | None = None
        self._stop_requested = False

    def request_stop(self) -> None:
        self._stop_requested = True

    async def recover(self) -> int:
        """Return tasks left in-progress by a crashed run to pending."""

        moved = await self.store.reset_all_in_progress()
        if moved:
            logger.info("Recovered %s interrupted task(s)", moved)
        return moved

    async def run_once(self) -> WorkerRunSummary:
        """Process at most one task."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        task = await self.store.claim_task(self.options)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self.current_task_id = task.id
        try:
            result = await self.runner.execute(lambda: self.executor.execute(task))
            if result.success and result.result is not None and result.result.success:
                await self._complete(task, result.result)
                summary.succeeded = 1
                return summary

            if result.success and result.result is not None:
                error = result.result.error or "Task execution reported failure"
            else:
                error = str(result.final_error) if result.final_error else "Task execution failed"
            summary.failed = 1
            if await self._fail(task, error):
                summary.quarantined = 1
            return summary
        finally:
            self.current_task_id = None

    async def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
        recover: bool = True,
    ) -> WorkerRunSummary:
        """Run until the backlog is idle, ``max_tasks`` are done, or a stop is requested."""

        if recover:
            await self.recover()
        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        while True:
            if self._stop_requested:
                return aggregate
            if max_tasks is not None and aggregate.processed >= max_tasks:
                return aggregate

            summary = await self.run_once()
            aggregate.add(summary)

            if summary.processed == 0:
                consecutive_idle += 1
                if consecutive_idle >= max_idle_polls:
                    return aggregate
                await asyncio.sleep(self.poll_interval_seconds)
                continue
            consecutive_idle = 0

    async def _complete(self, task: Task, outcome: ExecutionOutcome) -> None:
        update = await self.store.mark_completed(task.id, outcome.output)
        if not update.success:
            logger.warning("Could not mark %s completed: %s", task.id, update.error)
        else:
            logger.info("Task %s completed", task.id)

    async def _fail(self, task: Task, error: str) -> bool:
        """Record the failure; return True when the task was quarantined."""

        update = await self.store.mark_failed(task.id, error)
        if not update.success:
            logger.warning("Could not mark %s failed: %s", task.id, update.error)
            return False
        logger.warning("Task %s failed: %s", task.id, error)
        if self.quarantine_after <= 0:
            return False

        refreshed = await self.store.get_task(task.id)
        failures = refreshed.failure_count if refreshed is not None else task.failure_count + 1
        if failures < self.quarantine_after:
            return False
        reason = f"Quarantined after {failures} failures: {error}"
        quarantine = await self.store.mark_quarantined(task.id, reason)
        if not quarantine.success:
            logger.warning("Could not quarantine %s: %s", task.id, quarantine.error)
            return False
        logger.warning("Task %s quarantined after %s failures", task.id, failures)
        return True


def _tail(data: bytes, limit: int = 2_000) -> str | None:
    text = data.decode("utf-8", errors="replace").strip()
    return text[-limit:] or None
