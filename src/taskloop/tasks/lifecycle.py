"""Task lifecycle state machine."""

from __future__ import annotations

from datetime import datetime

from taskloop.errors import ErrorCode, TaskloopError
from taskloop.tasks.models import Task, TaskEvent, TaskStatus, utc_now

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.QUARANTINED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.QUARANTINED},
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.QUARANTINED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.QUARANTINED: frozenset(),
}


class TransitionError(TaskloopError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, task_id: str, old: TaskStatus, new: TaskStatus) -> None:
        super().__init__(
            ErrorCode.TASK_INVALID,
            f"Task {task_id} cannot move from {old.value} to {new.value}",
            ["Use reset to return a task to pending first"],
        )
        self.old_status = old
        self.new_status = new


def can_transition(old: TaskStatus, new: TaskStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[old]


def transition(
    task: Task,
    new_status: TaskStatus,
    *,
    error: str | None = None,
    comment: str | None = None,
    now: datetime | None = None,
) -> TaskEvent:
    """Move ``task`` to ``new_status`` in place and append the matching event.

    ``error`` is the failure message for ``failed`` and the reason for
    ``quarantined``; ``comment`` is an optional completion note.
    """

    old_status = task.status
    if not can_transition(old_status, new_status):
        raise TransitionError(task.id, old_status, new_status)

    moment = now or utc_now()
    stamps = task.timestamps
    metadata: dict[str, object] = {
        "old_status": old_status.value,
        "new_status": new_status.value,
    }

    if new_status is TaskStatus.IN_PROGRESS:
        if stamps.started_at is None:
            stamps.started_at = moment
            event_type, message = "started", "Task started"
        else:
            stamps.resumed_at = moment
            event_type, message = "resumed", "Task resumed"
        metadata["phase"] = event_type
    elif new_status is TaskStatus.COMPLETED:
        stamps.completed_at = moment
        task.failure_count = 0
        task.last_error = None
        event_type = "completed"
        message = comment or "Task completed"
    elif new_status is TaskStatus.FAILED:
        stamps.failed_at = moment
        task.failure_count += 1
        task.last_error = error
        event_type = "failed"
        message = f"Task failed: {error}" if error else "Task failed"
        metadata["failure_count"] = task.failure_count
    else:
        stamps.quarantined_at = moment
        task.last_error = error
        event_type = "quarantined"
        message = f"Task quarantined: {error}" if error else "Task quarantined"

    task.status = new_status
    stamps.updated_at = moment
    event = TaskEvent(timestamp=moment, type=event_type, message=message, metadata=metadata)
    task.events.append(event)
    return event


def reset(task: Task, *, now: datetime | None = None) -> TaskEvent:
    """Return ``task`` to pending from any status, keeping ``created_at``."""

    moment = now or utc_now()
    old_status = task.status
    stamps = task.timestamps
    stamps.started_at = None
    stamps.resumed_at = None
    stamps.completed_at = None
    stamps.failed_at = None
    stamps.quarantined_at = None
    stamps.updated_at = moment
    task.status = TaskStatus.PENDING
    event = TaskEvent(
        timestamp=moment,
        type="reset",
        message=f"Task reset from {old_status.value} to pending",
        metadata={"old_status": old_status.value, "new_status": TaskStatus.PENDING.value},
    )
    task.events.append(event)
    return event


def is_retry_eligible(
    task: Task,
    retry_cooldown_ms: int | None,
    *,
    now: datetime | None = None,
) -> bool:
    """A failed task is eligible again once its cooldown has strictly elapsed."""

    if task.status is not TaskStatus.FAILED or retry_cooldown_ms is None:
        return False
    failed_at = task.timestamps.failed_at
    if failed_at is None:
        return False
    elapsed_ms = ((now or utc_now()) - failed_at).total_seconds() * 1000
    return elapsed_ms > retry_cooldown_ms
