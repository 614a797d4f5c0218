"""Domain models for the task backlog."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    QUARANTINED = "quarantined"


class Priority(str, Enum):
    """Scheduling priority; lower rank is picked first."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    BACKGROUND = "background"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.HIGH: 0,
    Priority.MEDIUM: 1,
    Priority.LOW: 2,
    Priority.BACKGROUND: 3,
}

_TIMESTAMP_KEYS = {
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "started_at": "startedAt",
    "resumed_at": "resumedAt",
    "completed_at": "completedAt",
    "failed_at": "failedAt",
    "quarantined_at": "quarantinedAt",
}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""

    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_priority(value: str | Priority | None) -> Priority:
    """Missing priority means medium."""

    if value is None or value == "":
        return Priority.MEDIUM
    return Priority(value)


@dataclass(slots=True)
class TaskTimestamps:
    """Lifecycle timestamps; all optional except ``created_at`` on new tasks."""

    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    resumed_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    quarantined_at: datetime | None = None

    def to_dict(self) -> dict[str, str]:
        payload: dict[str, str] = {}
        for attr, key in _TIMESTAMP_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                payload[key] = format_timestamp(value)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> TaskTimestamps:
        payload = payload or {}
        return cls(
            **{attr: parse_timestamp(payload.get(key)) for attr, key in _TIMESTAMP_KEYS.items()},
        )


@dataclass(slots=True)
class TaskEvent:
    """Audit trail entry; events are appended, never rewritten."""

    timestamp: datetime
    type: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": format_timestamp(self.timestamp),
            "type": self.type,
            "message": self.message,
        }
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskEvent:
        return cls(
            timestamp=parse_timestamp(payload.get("timestamp")) or utc_now(),
            type=str(payload.get("type", "")),
            message=str(payload.get("message", "")),
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(slots=True)
class Task:
    """Unit of work tracked through its lifecycle."""

    id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    priority: Priority = Priority.MEDIUM
    description: str = ""
    feature: str | None = None
    parent_id: str | None = None
    depends_on: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    failure_count: int = 0
    last_error: str | None = None
    timestamps: TaskTimestamps = field(default_factory=TaskTimestamps)
    events: list[TaskEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a camelCase JSON entry; title and description live in ``<id>.md``."""

        payload: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "priority": self.priority.value,
        }
        if self.feature:
            payload["feature"] = self.feature
        if self.parent_id:
            payload["parentId"] = self.parent_id
        if self.depends_on:
            payload["dependsOn"] = list(self.depends_on)
        if self.failure_count:
            payload["failureCount"] = self.failure_count
        if self.last_error is not None:
            payload["lastError"] = self.last_error
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        timestamps = self.timestamps.to_dict()
        if timestamps:
            payload["timestamps"] = timestamps
        if self.events:
            payload["events"] = [event.to_dict() for event in self.events]
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        task_id = str(payload["id"])
        return cls(
            id=task_id,
            title=str(payload.get("title") or task_id),
            status=TaskStatus(payload.get("status", TaskStatus.PENDING.value)),
            priority=parse_priority(payload.get("priority")),
            feature=payload.get("feature") or None,
            parent_id=payload.get("parentId") or None,
            depends_on=dedupe_ids(payload.get("dependsOn") or []),
            metadata=dict(payload.get("metadata") or {}),
            failure_count=int(payload.get("failureCount") or 0),
            last_error=payload.get("lastError"),
            timestamps=TaskTimestamps.from_dict(payload.get("timestamps")),
            events=[TaskEvent.from_dict(item) for item in payload.get("events") or []],
        )


@dataclass(slots=True)
class NewTask:
    """Input payload for ``create_task`` / ``create_sub_task``."""

    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    feature: str | None = None
    parent_id: str | None = None
    depends_on: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FindTaskOptions:
    """Filter for selection queries."""

    feature: str | None = None
    priority: Priority | None = None
    parent_id: str | None = None
    top_level_only: bool = False
    include_blocked: bool = False
    retry_cooldown_ms: int | None = None
    start_from: str | None = None


@dataclass(slots=True)
class UpdateResult:
    """Outcome of a mutation; failures are reported, not raised."""

    success: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> UpdateResult:
        return cls(success=True)

    @classmethod
    def fail(cls, error: str) -> UpdateResult:
        return cls(success=False, error=error)


@dataclass(slots=True)
class PingResult:
    """Backend health check result."""

    ok: bool
    latency_ms: int
    error: str | None = None


def dedupe_ids(ids: list[str] | tuple[str, ...]) -> list[str]:
    """Drop duplicate ids, keeping first occurrence order."""

    seen: set[str] = set()
    ordered: list[str] = []
    for task_id in ids:
        value = str(task_id)
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered
