"""Eligibility, ordering and dependency gating for task selection."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime

from taskloop.tasks.lifecycle import is_retry_eligible
from taskloop.tasks.models import FindTaskOptions, Task, TaskStatus


def dependencies_met(task: Task, status_by_id: Mapping[str, TaskStatus]) -> bool:
    """True when every dependency exists and is completed; dangling ids are unmet."""

    return all(status_by_id.get(dep_id) is TaskStatus.COMPLETED for dep_id in task.depends_on)


def select_tasks(
    tasks: Iterable[Task],
    options: FindTaskOptions | None = None,
    *,
    status_by_id: Mapping[str, TaskStatus] | None = None,
    now: datetime | None = None,
) -> list[Task]:
    """Return eligible tasks in pick order.

    ``status_by_id`` resolves dependency targets; when omitted it is built
    from ``tasks`` itself.
    """

    options = options or FindTaskOptions()
    pool = list(tasks)
    if status_by_id is None:
        status_by_id = {task.id: task.status for task in pool}

    candidates = [
        task
        for task in pool
        if task.status is TaskStatus.PENDING
        or is_retry_eligible(task, options.retry_cooldown_ms, now=now)
    ]
    if options.feature:
        candidates = [task for task in candidates if task.feature == options.feature]
    if options.priority is not None:
        candidates = [task for task in candidates if task.priority is options.priority]
    if options.parent_id:
        candidates = [task for task in candidates if task.parent_id == options.parent_id]
    if options.top_level_only:
        candidates = [task for task in candidates if not task.parent_id]

    # sorted() is stable, so equal ranks keep document order.
    candidates = sorted(candidates, key=lambda task: task.priority.rank)

    if not options.include_blocked:
        candidates = [task for task in candidates if dependencies_met(task, status_by_id)]

    if options.start_from:
        for index, task in enumerate(candidates):
            if task.id == options.start_from:
                candidates = candidates[index:]
                break
    return candidates


def pick_next(
    tasks: Iterable[Task],
    options: FindTaskOptions | None = None,
    *,
    status_by_id: Mapping[str, TaskStatus] | None = None,
    now: datetime | None = None,
) -> Task | None:
    selected = select_tasks(tasks, options, status_by_id=status_by_id, now=now)
    return selected[0] if selected else None
