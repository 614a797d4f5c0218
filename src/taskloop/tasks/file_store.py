"""JSON-document task store with companion markdown and log files."""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from taskloop.errors import ErrorCode, TaskFileError, TaskloopError
from taskloop.tasks import lifecycle
from taskloop.tasks.file_lock import (
    DEFAULT_LOCK_TIMEOUT_MS,
    LOCK_RETRY_DELAY_MS,
    LOCK_STALE_TIMEOUT_MS,
    FileLock,
)
from taskloop.tasks.models import (
    FindTaskOptions,
    NewTask,
    PingResult,
    Priority,
    Task,
    TaskEvent,
    TaskStatus,
    TaskTimestamps,
    UpdateResult,
    dedupe_ids,
    format_timestamp,
    utc_now,
)
from taskloop.tasks.selection import dependencies_met, pick_next, select_tasks

logger = logging.getLogger(__name__)

MIN_DESCRIPTION_CHARS = 10
MAX_SUB_TASKS = 26

_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
# Entry keys rebuilt from ``Task.to_dict``; anything else in an entry is preserved.
_MANAGED_KEYS = frozenset(
    {
        "id",
        "status",
        "priority",
        "feature",
        "parentId",
        "dependsOn",
        "failureCount",
        "lastError",
        "metadata",
        "timestamps",
        "events",
    },
)

Document = dict[str, Any]


class FileTaskStore:
    """Task store backed by one JSON document guarded by an advisory lock file.

    Every mutation runs load -> mutate -> rewrite inside the lock. Reads take
    no lock. The rewrite is a plain overwrite and is not crash-atomic.
    """

    name = "json"

    def __init__(  # noqa: PLR0913
        self,
        tasks_file: Path,
        *,
        tasks_dir: Path | None = None,
        lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
        lock_stale_ms: int = LOCK_STALE_TIMEOUT_MS,
        lock_retry_delay_ms: int = LOCK_RETRY_DELAY_MS,
    ) -> None:
        self.tasks_file = Path(tasks_file)
        self.tasks_dir = Path(tasks_dir) if tasks_dir is not None else self.tasks_file.parent
        self.lock = FileLock(
            self.tasks_file.with_name(f"{self.tasks_file.name}.lock"),
            timeout_ms=lock_timeout_ms,
            stale_ms=lock_stale_ms,
            retry_delay_ms=lock_retry_delay_ms,
        )

    # -- reads ---------------------------------------------------------------

    async def find_next_task(self, options: FindTaskOptions | None = None) -> Task | None:
        document = self._load_document()
        if document is None:
            return None
        selected = pick_next(self._summaries(document), options)
        if selected is None:
            return None
        return self._full_task(self._entry(document, selected.id), document)

    async def list_pending_tasks(self, options: FindTaskOptions | None = None) -> list[Task]:
        document = self._load_document()
        if document is None:
            return []
        selected = select_tasks(self._summaries(document), options)
        return [
            self._full_task(self._entry(document, task.id), document, warn=False)
            for task in selected
        ]

    async def count_pending(self, options: FindTaskOptions | None = None) -> int:
        document = self._load_document()
        if document is None:
            return 0
        return len(select_tasks(self._summaries(document), options))

    async def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        document = self._load_document()
        if document is None:
            return []
        return [
            self._full_task(entry, document, warn=False)
            for entry in _entries(document)
            if status is None or entry.get("status") == status.value
        ]

    async def get_task(self, task_id: str) -> Task | None:
        document = self._load_document()
        if document is None:
            return None
        entry = self._entry(document, task_id)
        if entry is None:
            return None
        return self._full_task(entry, document)

    async def get_sub_tasks(self, task_id: str) -> list[Task]:
        document = self._load_document()
        if document is None:
            return []
        return [
            self._full_task(entry, document, warn=False)
            for entry in _entries(document)
            if entry.get("parentId") == task_id
        ]

    async def get_dependencies(self, task_id: str) -> list[Task]:
        document = self._load_document()
        if document is None:
            return []
        entry = self._entry(document, task_id)
        if entry is None:
            return []
        dependencies = []
        for dep_id in entry.get("dependsOn") or []:
            dep_entry = self._entry(document, dep_id)
            if dep_entry is not None:
                dependencies.append(self._full_task(dep_entry, document, warn=False))
        return dependencies

    async def get_dependents(self, task_id: str) -> list[Task]:
        document = self._load_document()
        if document is None:
            return []
        return [
            self._full_task(entry, document, warn=False)
            for entry in _entries(document)
            if task_id in (entry.get("dependsOn") or [])
        ]

    async def are_dependencies_met(self, task_id: str) -> bool:
        document = self._load_document()
        if document is None:
            return False
        summaries = self._summaries(document)
        task = next((item for item in summaries if item.id == task_id), None)
        if task is None:
            logger.warning("Dependency check for unknown task %s", task_id)
            return False
        return dependencies_met(task, {item.id: item.status for item in summaries})

    async def ping(self) -> PingResult:
        started = time.monotonic()
        if not self.tasks_file.exists():
            return PingResult(
                ok=False,
                latency_ms=_elapsed_ms(started),
                error="Tasks file not found",
            )
        try:
            self._load_document()
        except TaskFileError as error:
            return PingResult(ok=False, latency_ms=_elapsed_ms(started), error=error.message)
        return PingResult(ok=True, latency_ms=_elapsed_ms(started))

    async def close(self) -> None:
        return None

    # -- claim & lifecycle ---------------------------------------------------

    async def claim_task(self, options: FindTaskOptions | None = None) -> Task | None:
        """Select and mark in-progress in one locked critical section."""

        if not self.tasks_file.exists():
            return None
        async with self.lock.hold():
            document = self._load_document()
            if document is None:
                return None
            selected = pick_next(self._summaries(document), options)
            if selected is None:
                return None
            lifecycle.transition(selected, TaskStatus.IN_PROGRESS)
            entry = self._store_task(document, selected)
            self._save_document(document)
        logger.info("Claimed task %s", selected.id)
        return self._full_task(entry, document)

    async def mark_in_progress(self, task_id: str) -> UpdateResult:
        return await self._mutate(
            task_id,
            lambda task: lifecycle.transition(task, TaskStatus.IN_PROGRESS),
        )

    async def mark_completed(self, task_id: str, comment: str | None = None) -> UpdateResult:
        result = await self._mutate(
            task_id,
            lambda task: lifecycle.transition(task, TaskStatus.COMPLETED, comment=comment),
        )
        if result.success and comment:
            self._append_log(task_id, f"COMPLETED: {comment}")
        return result

    async def mark_failed(self, task_id: str, error: str) -> UpdateResult:
        result = await self._mutate(
            task_id,
            lambda task: lifecycle.transition(task, TaskStatus.FAILED, error=error),
        )
        if result.success:
            self._append_log(task_id, f"FAILED: {error}")
        return result

    async def mark_quarantined(self, task_id: str, reason: str) -> UpdateResult:
        result = await self._mutate(
            task_id,
            lambda task: lifecycle.transition(task, TaskStatus.QUARANTINED, error=reason),
        )
        if result.success:
            self._append_log(task_id, f"QUARANTINED: {reason}")
        return result

    async def reset_to_pending(self, task_id: str) -> UpdateResult:
        return await self._mutate(task_id, lifecycle.reset)

    async def reset_all_in_progress(self) -> int:
        if not self.tasks_file.exists():
            return 0
        async with self.lock.hold():
            document = self._load_document()
            if document is None:
                return 0
            moved = 0
            for task in self._summaries(document):
                if task.status is TaskStatus.IN_PROGRESS:
                    lifecycle.reset(task)
                    self._store_task(document, task)
                    moved += 1
            if moved:
                self._save_document(document)
        if moved:
            logger.info("Reset %s in-progress task(s) to pending", moved)
        return moved

    async def add_comment(self, task_id: str, comment: str) -> UpdateResult:
        def _append_event(task: Task) -> None:
            task.events.append(TaskEvent(timestamp=utc_now(), type="log", message=comment))

        result = await self._mutate(task_id, _append_event)
        if result.success:
            self._append_log(task_id, comment)
        return result

    # -- edits ---------------------------------------------------------------

    async def add_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        if task_id == depends_on_id:
            return UpdateResult.fail(f"Task {task_id} cannot depend on itself")

        def _add(task: Task, document: Document) -> None:
            if self._entry(document, depends_on_id) is None:
                raise TaskloopError(ErrorCode.TASK_DEPS, f"Dependency {depends_on_id} not found")
            if depends_on_id not in task.depends_on:
                task.depends_on.append(depends_on_id)
                task.timestamps.updated_at = utc_now()

        return await self._mutate_with_document(task_id, _add)

    async def remove_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        def _remove(task: Task) -> None:
            if depends_on_id in task.depends_on:
                task.depends_on.remove(depends_on_id)
                task.timestamps.updated_at = utc_now()

        return await self._mutate(task_id, _remove)

    async def set_priority(self, task_id: str, priority: Priority) -> UpdateResult:
        def _set(task: Task) -> None:
            task.priority = Priority(priority)
            task.timestamps.updated_at = utc_now()

        return await self._mutate(task_id, _set)

    async def create_task(self, task: NewTask) -> Task:
        self.tasks_file.parent.mkdir(parents=True, exist_ok=True)
        async with self.lock.hold():
            document = self._load_document() or {"tasks": []}
            if task.parent_id and self._entry(document, task.parent_id) is None:
                raise TaskloopError(
                    ErrorCode.TASK_NOT_FOUND,
                    f"Parent task {task.parent_id} not found",
                )
            task_id = _next_task_id(document, task.feature)
            created = self._new_task(task_id, task, parent_id=task.parent_id, feature=task.feature)
            entry = self._store_task(document, created)
            self._save_document(document)
            self._write_description(task_id, task)
        logger.info("Created task %s", task_id)
        return self._full_task(entry, document)

    async def create_sub_task(self, parent_id: str, task: NewTask) -> Task:
        if not self.tasks_file.exists():
            raise TaskloopError(
                ErrorCode.TASK_NOT_FOUND,
                f"Parent task {parent_id} not found",
                [f"Tasks file does not exist: {self.tasks_file}"],
            )
        async with self.lock.hold():
            document = self._load_document() or {"tasks": []}
            parent = self._entry(document, parent_id)
            if parent is None:
                raise TaskloopError(ErrorCode.TASK_NOT_FOUND, f"Parent task {parent_id} not found")
            task_id = _next_sub_task_id(document, parent_id)
            created = self._new_task(
                task_id,
                task,
                parent_id=parent_id,
                feature=task.feature or parent.get("feature"),
            )
            entry = self._store_task(document, created)
            self._save_document(document)
            self._write_description(task_id, task)
        logger.info("Created sub-task %s under %s", task_id, parent_id)
        return self._full_task(entry, document)

    # -- internals -----------------------------------------------------------

    async def _mutate(self, task_id: str, apply: Callable[[Task], object]) -> UpdateResult:
        return await self._mutate_with_document(task_id, lambda task, _document: apply(task))

    async def _mutate_with_document(
        self,
        task_id: str,
        apply: Callable[[Task, Document], object],
    ) -> UpdateResult:
        if not self.tasks_file.exists():
            return UpdateResult.fail("Tasks file not found")
        try:
            async with self.lock.hold():
                document = self._load_document()
                if document is None:
                    return UpdateResult.fail("Tasks file not found")
                entry = self._entry(document, task_id)
                if entry is None:
                    return UpdateResult.fail(f"Task {task_id} not found")
                task = _parse_entry(entry)
                apply(task, document)
                self._store_task(document, task)
                self._save_document(document)
        except TaskloopError as error:
            logger.warning("Update of task %s rejected: %s", task_id, error.message)
            return UpdateResult.fail(error.message)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while updating task %s", task_id)
            return UpdateResult.fail(str(error) or type(error).__name__)
        return UpdateResult.ok()

    def _load_document(self) -> Document | None:
        if not self.tasks_file.exists():
            return None
        try:
            document = json.loads(self.tasks_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as error:
            logger.error("Failed to load tasks file %s: %s", self.tasks_file, error)
            raise TaskFileError(
                ErrorCode.FILE_READ,
                f"Cannot read or parse tasks file: {self.tasks_file}",
                [
                    "Check that the file exists and contains valid JSON",
                    "Verify file permissions allow reading",
                    "Review the file format matches the expected schema",
                ],
            ) from error
        if not isinstance(document, dict) or not isinstance(document.get("tasks", []), list):
            raise TaskFileError(
                ErrorCode.FILE_READ,
                f"Tasks file has an unexpected shape: {self.tasks_file}",
                ['Expected an object with a "tasks" array'],
            )
        document.setdefault("tasks", [])
        return document

    def _save_document(self, document: Document) -> None:
        try:
            self.tasks_file.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
        except OSError as error:
            logger.error("Failed to save tasks file %s: %s", self.tasks_file, error)
            raise TaskFileError(
                ErrorCode.FILE_WRITE,
                f"Cannot write to tasks file: {self.tasks_file}",
                [
                    "Check file permissions allow writing",
                    "Verify the directory exists",
                    "Ensure disk space is available",
                ],
            ) from error

    def _entry(self, document: Document, task_id: str) -> dict[str, Any] | None:
        for entry in _entries(document):
            if entry.get("id") == task_id:
                return entry
        return None

    def _summaries(self, document: Document) -> list[Task]:
        """Parsed entries; unparseable ones are skipped with a warning."""

        tasks: list[Task] = []
        for entry in _entries(document):
            try:
                tasks.append(_parse_entry(entry))
            except TaskFileError as error:
                logger.warning("Skipping entry in %s: %s", self.tasks_file, error.message)
        return tasks

    def _store_task(self, document: Document, task: Task) -> dict[str, Any]:
        tasks = document["tasks"]
        for index, entry in enumerate(tasks):
            if entry.get("id") == task.id:
                extra = {key: value for key, value in entry.items() if key not in _MANAGED_KEYS}
                tasks[index] = {**task.to_dict(), **extra}
                return tasks[index]
        tasks.append(task.to_dict())
        return tasks[-1]

    def _new_task(
        self,
        task_id: str,
        spec: NewTask,
        *,
        parent_id: str | None,
        feature: str | None,
    ) -> Task:
        now = utc_now()
        return Task(
            id=task_id,
            title=spec.title,
            status=TaskStatus.PENDING,
            priority=Priority(spec.priority),
            description=spec.description,
            feature=feature,
            parent_id=parent_id,
            depends_on=dedupe_ids(spec.depends_on),
            timestamps=TaskTimestamps(created_at=now, updated_at=now),
            events=[TaskEvent(timestamp=now, type="created", message="Task created")],
        )

    def _description_path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{task_id}.md"

    def _log_path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{task_id}.log"

    def _write_description(self, task_id: str, spec: NewTask) -> None:
        path = self._description_path(task_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"# {spec.title}\n\n{spec.description}", encoding="utf-8")
        except OSError as error:
            raise TaskFileError(
                ErrorCode.FILE_WRITE,
                f"Cannot write description file: {path}",
                ["Check permissions on the tasks directory"],
            ) from error

    def _full_task(self, entry: dict[str, Any], document: Document, *, warn: bool = True) -> Task:
        task = _parse_entry(entry)
        path = self._description_path(task.id)
        warning: str | None = None
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            warning = f"Description file not found: {path}"
        except OSError as error:
            warning = f"Error reading description file: {error}"
        else:
            title, description = _split_description(content)
            if title:
                task.title = title
            task.description = description
            if len(content.strip()) < MIN_DESCRIPTION_CHARS:
                warning = f"Description file is empty or too short: {path}"

        task.metadata["descriptionFile"] = str(path)
        feature_info = (document.get("features") or {}).get(task.feature or "")
        if isinstance(feature_info, dict) and feature_info.get("name"):
            task.metadata["featureName"] = feature_info["name"]
        if warning:
            task.metadata["descriptionWarning"] = warning
            if warn:
                logger.warning("%s (task %s)", warning, task.id)
        return task

    def _append_log(self, task_id: str, text: str) -> None:
        path = self._log_path(task_id)
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(f"[{format_timestamp(utc_now())}] {text}\n")
        except OSError as error:
            logger.warning("Failed to write log for %s: %s", task_id, error)


def _parse_entry(entry: dict[str, Any]) -> Task:
    try:
        return Task.from_dict(entry)
    except (KeyError, TypeError, ValueError) as error:
        raise TaskFileError(
            ErrorCode.FILE_READ,
            f"Invalid task entry {entry.get('id', '<no id>')}: {error}",
            ["Check the entry's id, status and priority fields"],
        ) from error


def _entries(document: Document) -> list[dict[str, Any]]:
    return [entry for entry in document.get("tasks", []) if isinstance(entry, dict)]


def _split_description(content: str) -> tuple[str | None, str]:
    match = _TITLE_RE.search(content)
    if match is None:
        return None, content.strip()
    remainder = content[: match.start()] + content[match.end() :]
    return match.group(1).strip(), remainder.strip()


def _next_task_id(document: Document, feature: str | None) -> str:
    prefix = feature.upper() if feature else "TASK"
    existing = {entry.get("id") for entry in _entries(document)}
    number = 1
    while f"{prefix}-{number:03d}" in existing:
        number += 1
    return f"{prefix}-{number:03d}"


def _next_sub_task_id(document: Document, parent_id: str) -> str:
    """``<parent><letter>`` counting existing children; skips letters already taken."""

    entries = _entries(document)
    existing = {entry.get("id") for entry in entries}
    index = sum(1 for entry in entries if entry.get("parentId") == parent_id)
    while index < MAX_SUB_TASKS:
        candidate = f"{parent_id}{chr(ord('a') + index)}"
        if candidate not in existing:
            return candidate
        index += 1
    raise TaskloopError(
        ErrorCode.TASK_INVALID,
        f"Task {parent_id} has no free sub-task letters left",
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
