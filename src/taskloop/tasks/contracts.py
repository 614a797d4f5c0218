"""Task Store interface shared by the JSON and GitHub backends."""

from __future__ import annotations

from typing import Protocol

from taskloop.tasks.models import (
    FindTaskOptions,
    NewTask,
    PingResult,
    Priority,
    Task,
    TaskStatus,
    UpdateResult,
)


class TaskStore(Protocol):
    """Protocol implemented by backlog backends.

    Mutations that return ``UpdateResult`` report validation and storage
    failures through it. Claims, creation and reads raise typed errors.
    """

    name: str

    async def find_next_task(self, options: FindTaskOptions | None = None) -> Task | None:
        """Return the first eligible task without claiming it."""

    async def claim_task(self, options: FindTaskOptions | None = None) -> Task | None:
        """Select and mark in-progress the first eligible task."""

    async def get_task(self, task_id: str) -> Task | None:
        """Return one task with its description, or None when unknown."""

    async def list_pending_tasks(self, options: FindTaskOptions | None = None) -> list[Task]:
        """Return all eligible tasks in pick order."""

    async def count_pending(self, options: FindTaskOptions | None = None) -> int:
        """Return the number of eligible tasks."""

    async def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        """Return every task, optionally restricted to one status."""

    async def mark_in_progress(self, task_id: str) -> UpdateResult:
        """Move a task to in-progress."""

    async def mark_completed(self, task_id: str, comment: str | None = None) -> UpdateResult:
        """Move a task to completed."""

    async def mark_failed(self, task_id: str, error: str) -> UpdateResult:
        """Move a task to failed and record the error."""

    async def mark_quarantined(self, task_id: str, reason: str) -> UpdateResult:
        """Move a task to quarantined and record the reason."""

    async def reset_to_pending(self, task_id: str) -> UpdateResult:
        """Return a task to pending from any status."""

    async def reset_all_in_progress(self) -> int:
        """Reset every in-progress task to pending; returns how many moved."""

    async def add_comment(self, task_id: str, comment: str) -> UpdateResult:
        """Append a free-form note to the task's history."""

    async def get_sub_tasks(self, task_id: str) -> list[Task]:
        """Return tasks whose parent is ``task_id``."""

    async def get_dependencies(self, task_id: str) -> list[Task]:
        """Return existing tasks that ``task_id`` depends on."""

    async def get_dependents(self, task_id: str) -> list[Task]:
        """Return tasks that depend on ``task_id``."""

    async def are_dependencies_met(self, task_id: str) -> bool:
        """True when every dependency of ``task_id`` is completed."""

    async def create_task(self, task: NewTask) -> Task:
        """Persist a new top-level (or explicitly parented) task."""

    async def create_sub_task(self, parent_id: str, task: NewTask) -> Task:
        """Persist a new task under ``parent_id``."""

    async def add_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        """Make ``task_id`` wait for ``depends_on_id``."""

    async def remove_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        """Drop one dependency edge."""

    async def set_priority(self, task_id: str, priority: Priority) -> UpdateResult:
        """Change a task's priority."""

    async def ping(self) -> PingResult:
        """Check that the backend is reachable."""

    async def close(self) -> None:
        """Release backend resources."""
