"""Controllers for task backlog CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from taskloop.config import Settings
from taskloop.tasks.contracts import TaskStore
from taskloop.tasks.factory import create_resilience_runner, create_task_store
from taskloop.tasks.models import FindTaskOptions, NewTask, Priority, Task, TaskStatus
from taskloop.tasks.worker import CommandExecutor, TaskWorker, WorkerRunSummary

T = TypeVar("T")


@dataclass(slots=True)
class TasksListCommand:
    """CLI input for task listing."""

    tasks_file: Path | None
    status: str | None = None
    pending_only: bool = False
    feature: str | None = None
    include_blocked: bool = False


@dataclass(slots=True)
class TaskShowCommand:
    """CLI input for task inspection."""

    tasks_file: Path | None
    task_id: str


@dataclass(slots=True)
class TaskNextCommand:
    """CLI input for previewing (or claiming) the next eligible task."""

    tasks_file: Path | None
    feature: str | None = None
    priority: str | None = None
    retry_cooldown_ms: int | None = None
    start_from: str | None = None
    claim: bool = False


@dataclass(slots=True)
class TaskNewCommand:
    """CLI input for task creation."""

    tasks_file: Path | None
    title: str
    description: str = ""
    priority: str = Priority.MEDIUM.value
    feature: str | None = None
    parent_id: str | None = None
    depends_on: tuple[str, ...] = field(default_factory=tuple)


@dataclass(slots=True)
class TaskResetCommand:
    """CLI input for resetting one task, or every in-progress task."""

    tasks_file: Path | None
    task_id: str | None = None
    all_in_progress: bool = False


@dataclass(slots=True)
class TaskPriorityCommand:
    """CLI input for priority changes."""

    tasks_file: Path | None
    task_id: str
    priority: str


@dataclass(slots=True)
class TaskDependencyCommand:
    """CLI input for adding or removing a dependency edge."""

    tasks_file: Path | None
    task_id: str
    depends_on_id: str


@dataclass(slots=True)
class TaskWorkCommand:
    """CLI input for running the worker loop."""

    tasks_file: Path | None
    command: str
    once: bool = False
    max_tasks: int | None = None
    feature: str | None = None
    timeout_seconds: float | None = None


@dataclass(slots=True)
class TasksBackendCommand:
    """CLI input for backend-wide commands (ping, dead-letter)."""

    tasks_file: Path | None


class TasksCliController:
    """Task backlog command handlers; each returns the lines to print."""

    def list_tasks(self, command: TasksListCommand) -> list[str]:
        async def _list(store: TaskStore) -> list[Task]:
            if command.pending_only:
                return await store.list_pending_tasks(
                    FindTaskOptions(
                        feature=command.feature,
                        include_blocked=command.include_blocked,
                    ),
                )
            tasks = await store.list_tasks(_parse_status(command.status))
            if command.feature:
                tasks = [task for task in tasks if task.feature == command.feature]
            return tasks

        tasks = _run(command.tasks_file, _list)
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def show_task(self, command: TaskShowCommand) -> list[str]:
        async def _show(store: TaskStore) -> tuple[Task | None, bool]:
            task = await store.get_task(command.task_id)
            if task is None:
                return None, False
            return task, await store.are_dependencies_met(task.id)

        task, deps_met = _run(command.tasks_file, _show)
        if task is None:
            return [f"Task not found: {command.task_id}"]

        lines = [
            f"Task: {task.id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Feature: {task.feature or '-'}",
            f"Parent: {task.parent_id or '-'}",
            f"Depends on: {', '.join(task.depends_on) or '-'}",
            f"Dependencies met: {'yes' if deps_met else 'no'}",
            f"Failures: {task.failure_count}",
            f"Last error: {task.last_error or '-'}",
        ]
        warning = task.metadata.get("descriptionWarning")
        if warning:
            lines.append(f"Warning: {warning}")
        lines.append(f"Events: {len(task.events)}")
        for event in task.events:
            lines.append(f"  {event.timestamp.isoformat()} {event.type}: {event.message}")
        return lines

    def next_task(self, command: TaskNextCommand) -> list[str]:
        options = FindTaskOptions(
            feature=command.feature,
            priority=Priority(command.priority) if command.priority else None,
            retry_cooldown_ms=command.retry_cooldown_ms,
            start_from=command.start_from,
        )

        async def _next(store: TaskStore) -> Task | None:
            if command.claim:
                return await store.claim_task(options)
            return await store.find_next_task(options)

        task = _run(command.tasks_file, _next)
        if task is None:
            return ["No eligible task."]
        verb = "Claimed" if command.claim else "Next"
        return [f"{verb}: {_task_line(task).strip()}"]

    def new_task(self, command: TaskNewCommand) -> list[str]:
        spec = NewTask(
            title=command.title,
            description=command.description,
            priority=Priority(command.priority),
            feature=command.feature,
            depends_on=list(command.depends_on),
        )

        async def _create(store: TaskStore) -> Task:
            if command.parent_id:
                return await store.create_sub_task(command.parent_id, spec)
            return await store.create_task(spec)

        task = _run(command.tasks_file, _create)
        return [f"Task created: {task.id}"]

    def reset_task(self, command: TaskResetCommand) -> list[str]:
        if command.all_in_progress:
            moved = _run(command.tasks_file, lambda store: store.reset_all_in_progress())
            return [f"Tasks reset: {moved}"]
        if not command.task_id:
            raise ValueError("Provide a task id or --all-in-progress.")
        task_id = command.task_id
        result = _run(command.tasks_file, lambda store: store.reset_to_pending(task_id))
        if not result.success:
            return [f"Reset failed: {result.error}"]
        return [f"Task reset: {task_id}"]

    def set_priority(self, command: TaskPriorityCommand) -> list[str]:
        priority = Priority(command.priority)
        result = _run(
            command.tasks_file,
            lambda store: store.set_priority(command.task_id, priority),
        )
        if not result.success:
            return [f"Priority update failed: {result.error}"]
        return [f"Priority of {command.task_id} set to {priority.value}"]

    def add_dependency(self, command: TaskDependencyCommand) -> list[str]:
        result = _run(
            command.tasks_file,
            lambda store: store.add_dependency(command.task_id, command.depends_on_id),
        )
        if not result.success:
            return [f"Dependency update failed: {result.error}"]
        return [f"{command.task_id} now depends on {command.depends_on_id}"]

    def remove_dependency(self, command: TaskDependencyCommand) -> list[str]:
        result = _run(
            command.tasks_file,
            lambda store: store.remove_dependency(command.task_id, command.depends_on_id),
        )
        if not result.success:
            return [f"Dependency update failed: {result.error}"]
        return [f"{command.task_id} no longer depends on {command.depends_on_id}"]

    def dead_letter(self, command: TasksBackendCommand) -> list[str]:
        tasks = _run(command.tasks_file, lambda store: store.list_tasks(TaskStatus.QUARANTINED))
        lines = [f"Quarantined tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.id} failures={task.failure_count} reason={task.last_error or '-'}",
            )
        return lines

    def ping(self, command: TasksBackendCommand) -> tuple[bool, list[str]]:
        result = _run(command.tasks_file, lambda store: store.ping())
        if result.ok:
            return True, [f"Backend OK ({result.latency_ms}ms)"]
        return False, [f"Backend unavailable ({result.latency_ms}ms): {result.error}"]

    def run_worker(self, command: TaskWorkCommand) -> list[str]:
        settings = Settings.from_env(tasks_file=command.tasks_file)
        executor = CommandExecutor(command.command, timeout_seconds=command.timeout_seconds)

        async def _work(store: TaskStore) -> WorkerRunSummary:
            worker = TaskWorker(
                store=store,
                executor=executor,
                runner=create_resilience_runner(settings.resilience),
                options=FindTaskOptions(
                    feature=command.feature,
                    retry_cooldown_ms=settings.worker.retry_cooldown_ms,
                ),
                quarantine_after=settings.worker.quarantine_after,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
            )
            if command.once:
                return await worker.run_once()
            return await worker.run_loop(max_tasks=command.max_tasks)

        summary = _run_with(settings, _work)
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} quarantined={summary.quarantined} "
            f"idle_polls={summary.idle_polls}",
        ]


@asynccontextmanager
async def _store(settings: Settings) -> AsyncIterator[TaskStore]:
    store = create_task_store(settings)
    try:
        yield store
    finally:
        await store.close()


def _run(tasks_file: Path | None, operation: Callable[[TaskStore], Awaitable[T]]) -> T:
    return _run_with(Settings.from_env(tasks_file=tasks_file), operation)


def _run_with(settings: Settings, operation: Callable[[TaskStore], Awaitable[T]]) -> T:
    async def _main() -> T:
        async with _store(settings) as store:
            return await operation(store)

    return asyncio.run(_main())


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value)
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {value!r}") from error


def _task_line(task: Task) -> str:
    blocked = f" depends_on={','.join(task.depends_on)}" if task.depends_on else ""
    return (
        f"  {task.id} status={task.status.value} priority={task.priority.value} "
        f"feature={task.feature or '-'} title={task.title}{blocked}"
    )
