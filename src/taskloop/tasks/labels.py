"""GitHub label vocabulary and issue-body reference parsing."""

from __future__ import annotations

import re
from typing import Any

from taskloop.tasks.models import Priority, Task, TaskStatus, TaskTimestamps, parse_timestamp

LOOPWORK_TASK = "loopwork-task"
STATUS_PENDING = "loopwork:pending"
STATUS_IN_PROGRESS = "loopwork:in-progress"
STATUS_FAILED = "loopwork:failed"
STATUS_QUARANTINED = "loopwork:quarantined"
SUB_TASK = "loopwork:sub-task"
PRIORITY_PREFIX = "priority:"
FEATURE_PREFIX = "feat:"

STATUS_LABELS: dict[TaskStatus, str] = {
    TaskStatus.PENDING: STATUS_PENDING,
    TaskStatus.IN_PROGRESS: STATUS_IN_PROGRESS,
    TaskStatus.FAILED: STATUS_FAILED,
    TaskStatus.QUARANTINED: STATUS_QUARANTINED,
}
PRIORITY_LABELS: dict[Priority, str] = {
    priority: f"{PRIORITY_PREFIX}{priority.value}" for priority in Priority
}

PARENT_PATTERN = re.compile(
    r"(?:^|\n)\s*(?:Parent|parent):\s*"
    r"(?:#?(\d+)|([A-Z]+-\d+-\d+[a-z]?)|(?:[\w-]+/[\w-]+)?#(\d+))",
    re.IGNORECASE,
)
DEPENDS_PATTERN = re.compile(
    r"(?:^|\n)\s*(?:Depends on|depends on|Dependencies|dependencies):\s*(.+?)(?:\n|$)",
    re.IGNORECASE,
)
_ISSUE_REF_RE = re.compile(r"(?:[\w-]+/[\w-]+)?#(\d+)")
_HASH_RE = re.compile(r"#(\d+)")


def issue_task_id(number: int) -> str:
    return f"GH-{number}"


def parse_issue_number(task_id: str) -> int | None:
    """Accept ``GH-12``, ``12`` and ``#12``."""

    value = task_id.strip()
    if value.upper().startswith("GH-"):
        value = value[3:]
    if value.isdigit():
        return int(value)
    match = _HASH_RE.search(value)
    if match:
        return int(match.group(1))
    return None


def status_from_labels(labels: list[str], state: str) -> TaskStatus:
    if STATUS_QUARANTINED in labels:
        return TaskStatus.QUARANTINED
    if STATUS_IN_PROGRESS in labels:
        return TaskStatus.IN_PROGRESS
    if STATUS_FAILED in labels:
        return TaskStatus.FAILED
    if state == "closed":
        return TaskStatus.COMPLETED
    return TaskStatus.PENDING


def priority_from_labels(labels: list[str]) -> Priority:
    for priority in (Priority.HIGH, Priority.LOW, Priority.BACKGROUND):
        if PRIORITY_LABELS[priority] in labels:
            return priority
    return Priority.MEDIUM


def feature_from_labels(labels: list[str]) -> str | None:
    for label in labels:
        if label.startswith(FEATURE_PREFIX):
            return label[len(FEATURE_PREFIX) :]
    return None


def parse_parent(body: str) -> str | None:
    match = PARENT_PATTERN.search(body)
    if match is None:
        return None
    number, task_ref, repo_number = match.groups()
    if number:
        return issue_task_id(int(number))
    if task_ref:
        return task_ref
    if repo_number:
        return issue_task_id(int(repo_number))
    return None


def parse_dependencies(body: str) -> list[str]:
    match = DEPENDS_PATTERN.search(body)
    if match is None:
        return []
    dependencies: list[str] = []
    for token in re.split(r"[,\s]+", match.group(1)):
        if not token:
            continue
        reference = _ISSUE_REF_RE.search(token)
        if reference:
            dep_id = issue_task_id(int(reference.group(1)))
        elif token.lstrip("#").isdigit():
            dep_id = issue_task_id(int(token.lstrip("#")))
        else:
            dep_id = token
        if dep_id not in dependencies:
            dependencies.append(dep_id)
    return dependencies


def format_reference(task_id: str) -> str:
    """``GH-12`` becomes ``#12``; other ids are written as-is."""

    number = parse_issue_number(task_id) if task_id.upper().startswith("GH-") else None
    return f"#{number}" if number is not None else task_id


def build_body(description: str, *, parent_id: str | None, depends_on: list[str]) -> str:
    header: list[str] = []
    if parent_id:
        header.append(f"Parent: {format_reference(parent_id)}")
    if depends_on:
        header.append(f"Depends on: {', '.join(format_reference(dep) for dep in depends_on)}")
    if not header:
        return description
    return "\n".join(header) + "\n\n" + description


def replace_dependencies(body: str, depends_on: list[str]) -> str:
    """Rewrite (or insert, or drop) the ``Depends on:`` line of an issue body."""

    if depends_on:
        line = f"Depends on: {', '.join(format_reference(dep) for dep in depends_on)}"
        if DEPENDS_PATTERN.search(body):
            return DEPENDS_PATTERN.sub(lambda _: f"\n{line}\n", body, count=1).lstrip("\n")
        return f"{line}\n\n{body}"
    return DEPENDS_PATTERN.sub("\n", body, count=1).lstrip("\n")


def labels_for_new_task(
    *,
    priority: Priority,
    feature: str | None,
    is_sub_task: bool,
) -> list[str]:
    labels = [LOOPWORK_TASK, STATUS_PENDING, PRIORITY_LABELS[priority]]
    if feature:
        labels.append(f"{FEATURE_PREFIX}{feature}")
    if is_sub_task:
        labels.append(SUB_TASK)
    return labels


def issue_to_task(issue: dict[str, Any]) -> Task:
    """Map a GitHub issue payload onto a ``Task``."""

    labels = [
        label["name"] if isinstance(label, dict) else str(label)
        for label in issue.get("labels", [])
    ]
    body = issue.get("body") or ""
    status = status_from_labels(labels, issue.get("state", "open"))
    updated_at = parse_timestamp(issue.get("updated_at"))
    closed_at = parse_timestamp(issue.get("closed_at"))
    timestamps = TaskTimestamps(
        created_at=parse_timestamp(issue.get("created_at")),
        updated_at=updated_at,
        completed_at=closed_at if status is TaskStatus.COMPLETED else None,
        # The failed label is applied together with the failure comment.
        failed_at=updated_at if status is TaskStatus.FAILED else None,
    )
    return Task(
        id=issue_task_id(int(issue["number"])),
        title=str(issue.get("title", "")),
        description=body,
        status=status,
        priority=priority_from_labels(labels),
        feature=feature_from_labels(labels),
        parent_id=parse_parent(body),
        depends_on=parse_dependencies(body),
        metadata={
            "issueNumber": issue["number"],
            "url": issue.get("html_url") or issue.get("url"),
            "labels": labels,
        },
        timestamps=timestamps,
    )
