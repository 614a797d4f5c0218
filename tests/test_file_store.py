from __future__ import annotations

import asyncio
import json
import multiprocessing
from pathlib import Path

import allure
import pytest

from taskloop.errors import ErrorCode, TaskFileError, TaskloopError
from taskloop.tasks.file_store import FileTaskStore
from taskloop.tasks.models import FindTaskOptions, NewTask, Priority, TaskStatus

pytestmark = [
    allure.epic("Task Backlog"),
    allure.feature("JSON File Store"),
]


def _store(tasks_file: Path) -> FileTaskStore:
    return FileTaskStore(tasks_file, lock_timeout_ms=10_000, lock_retry_delay_ms=5)


def _raw_entry(tasks_file: Path, task_id: str) -> dict:
    document = json.loads(tasks_file.read_text(encoding="utf-8"))
    return next(entry for entry in document["tasks"] if entry["id"] == task_id)


def _claim_in_subprocess(tasks_file: str) -> str | None:
    task = asyncio.run(_store(Path(tasks_file)).claim_task())
    return task.id if task is not None else None


@pytest.mark.asyncio
async def test_create_task_assigns_sequential_ids_and_writes_description(tasks_file: Path):
    store = _store(tasks_file)

    first = await store.create_task(NewTask(title="Write docs", description="Explain config"))
    second = await store.create_task(NewTask(title="Fix bug", description="Null check missing"))
    feature = await store.create_task(NewTask(title="Login", feature="auth"))

    assert (first.id, second.id, feature.id) == ("TASK-001", "TASK-002", "AUTH-001")
    assert first.title == "Write docs"
    assert first.description == "Explain config"
    assert first.status is TaskStatus.PENDING
    assert [event.type for event in first.events] == ["created"]
    md = (tasks_file.parent / "TASK-001.md").read_text(encoding="utf-8")
    assert md == "# Write docs\n\nExplain config"
    assert "title" not in _raw_entry(tasks_file, "TASK-001")
    assert _raw_entry(tasks_file, "AUTH-001")["feature"] == "auth"


@pytest.mark.asyncio
async def test_sub_tasks_get_letter_suffixes_and_inherit_feature(tasks_file: Path):
    store = _store(tasks_file)
    parent = await store.create_task(NewTask(title="Login flow", feature="auth"))

    first = await store.create_sub_task(parent.id, NewTask(title="Form"))
    second = await store.create_sub_task(parent.id, NewTask(title="Session", feature="session"))

    assert (first.id, second.id) == ("AUTH-001a", "AUTH-001b")
    assert first.parent_id == "AUTH-001"
    assert first.feature == "auth"
    assert second.feature == "session"
    assert [task.id for task in await store.get_sub_tasks(parent.id)] == ["AUTH-001a", "AUTH-001b"]


@pytest.mark.asyncio
async def test_create_sub_task_for_missing_parent_raises(tasks_file: Path, write_tasks):
    store = _store(tasks_file)

    with pytest.raises(TaskloopError) as missing_file:
        await store.create_sub_task("TASK-001", NewTask(title="Orphan"))
    write_tasks([{"id": "TASK-001", "status": "pending"}])
    with pytest.raises(TaskloopError) as missing_parent:
        await store.create_sub_task("TASK-404", NewTask(title="Orphan"))

    assert missing_file.value.code is ErrorCode.TASK_NOT_FOUND
    assert missing_parent.value.code is ErrorCode.TASK_NOT_FOUND


@pytest.mark.asyncio
async def test_claim_picks_highest_priority_and_persists_in_progress(
    tasks_file: Path,
    write_tasks,
):
    write_tasks(
        [
            {"id": "T-1", "status": "pending", "priority": "low"},
            {"id": "T-2", "status": "pending", "priority": "high"},
            {"id": "T-3", "status": "pending"},
        ],
    )
    store = _store(tasks_file)

    claimed = await store.claim_task()
    following = await store.find_next_task()

    assert claimed.id == "T-2"
    assert claimed.status is TaskStatus.IN_PROGRESS
    assert _raw_entry(tasks_file, "T-2")["status"] == "in-progress"
    assert "startedAt" in _raw_entry(tasks_file, "T-2")["timestamps"]
    assert following.id == "T-3"
    assert not tasks_file.with_name("tasks.json.lock").exists()


@pytest.mark.asyncio
async def test_claim_on_missing_file_or_empty_backlog_returns_none(tasks_file: Path, write_tasks):
    store = _store(tasks_file)

    assert await store.claim_task() is None
    write_tasks([{"id": "T-1", "status": "completed"}])
    assert await store.claim_task() is None


@pytest.mark.asyncio
async def test_failure_count_increments_and_log_records_failure(tasks_file: Path, write_tasks):
    write_tasks([{"id": "T-1", "status": "pending"}])
    store = _store(tasks_file)

    await store.claim_task()
    assert (await store.mark_failed("T-1", "boom")).success
    assert (await store.mark_in_progress("T-1")).success
    assert (await store.mark_failed("T-1", "boom again")).success
    task = await store.get_task("T-1")

    assert task.status is TaskStatus.FAILED
    assert task.failure_count == 2
    assert task.last_error == "boom again"
    assert [event.type for event in task.events] == ["started", "failed", "resumed", "failed"]
    log = (tasks_file.parent / "T-1.log").read_text(encoding="utf-8")
    assert "FAILED: boom\n" in log
    assert "FAILED: boom again\n" in log
    assert log.startswith("[")


@pytest.mark.asyncio
async def test_completion_resets_failures_and_logs_comment(tasks_file: Path, write_tasks):
    write_tasks([{"id": "T-1", "status": "failed", "failureCount": 2, "lastError": "flaky"}])
    store = _store(tasks_file)

    await store.mark_in_progress("T-1")
    result = await store.mark_completed("T-1", "all green")
    entry = _raw_entry(tasks_file, "T-1")

    assert result.success
    assert entry["status"] == "completed"
    assert "failureCount" not in entry
    assert "lastError" not in entry
    assert "COMPLETED: all green" in (tasks_file.parent / "T-1.log").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_disallowed_transition_is_reported_not_raised(tasks_file: Path, write_tasks):
    write_tasks([{"id": "T-1", "status": "pending"}])
    store = _store(tasks_file)

    result = await store.mark_completed("T-1")

    assert result.success is False
    assert "cannot move from pending to completed" in result.error
    assert _raw_entry(tasks_file, "T-1")["status"] == "pending"


@pytest.mark.asyncio
async def test_mutations_report_missing_file_and_unknown_task(tasks_file: Path, write_tasks):
    store = _store(tasks_file)

    assert (await store.mark_failed("T-1", "x")).error == "Tasks file not found"
    write_tasks([{"id": "T-1", "status": "pending"}])
    assert (await store.mark_in_progress("T-9")).error == "Task T-9 not found"


@pytest.mark.asyncio
async def test_reset_preserves_created_at(tasks_file: Path):
    store = _store(tasks_file)
    created = await store.create_task(NewTask(title="Refactor", description="Split modules"))
    created_at = _raw_entry(tasks_file, created.id)["timestamps"]["createdAt"]
    await store.claim_task()
    await store.mark_failed(created.id, "lint")

    result = await store.reset_to_pending(created.id)
    entry = _raw_entry(tasks_file, created.id)

    assert result.success
    assert entry["status"] == "pending"
    assert entry["timestamps"]["createdAt"] == created_at
    assert "startedAt" not in entry["timestamps"]
    assert "failedAt" not in entry["timestamps"]
    assert entry["events"][-1]["message"] == "Task reset from failed to pending"


@pytest.mark.asyncio
async def test_events_survive_reload_unchanged(tasks_file: Path):
    store = _store(tasks_file)
    created = await store.create_task(NewTask(title="Cache", description="Add an LRU cache"))
    await store.claim_task()
    await store.add_comment(created.id, "halfway there")
    await store.mark_failed(created.id, "timeout")

    before = await store.get_task(created.id)
    after = await _store(tasks_file).get_task(created.id)

    assert [event.to_dict() for event in before.events] == [
        event.to_dict() for event in after.events
    ]
    assert [event.to_dict() for event in after.events] == _raw_entry(tasks_file, created.id)[
        "events"
    ]
    assert [event.type for event in after.events] == ["created", "started", "log", "failed"]


@pytest.mark.asyncio
async def test_reset_all_in_progress_returns_count(tasks_file: Path, write_tasks):
    write_tasks(
        [
            {"id": "T-1", "status": "in-progress"},
            {"id": "T-2", "status": "pending"},
            {"id": "T-3", "status": "in-progress"},
        ],
    )
    store = _store(tasks_file)

    assert await store.reset_all_in_progress() == 2
    assert await store.reset_all_in_progress() == 0
    assert [task.id for task in await store.list_tasks(TaskStatus.PENDING)] == [
        "T-1",
        "T-2",
        "T-3",
    ]


@pytest.mark.asyncio
async def test_corrupt_document_raises_file_read_error(tasks_file: Path):
    tasks_file.parent.mkdir(parents=True)
    tasks_file.write_text("{not json", encoding="utf-8")
    store = _store(tasks_file)

    with pytest.raises(TaskFileError) as excinfo:
        await store.list_tasks()
    ping = await store.ping()
    update = await store.mark_in_progress("T-1")

    assert excinfo.value.code is ErrorCode.FILE_READ
    assert ping.ok is False
    assert update.success is False


@pytest.mark.asyncio
async def test_missing_document_is_an_empty_backlog(tasks_file: Path):
    store = _store(tasks_file)

    assert await store.find_next_task() is None
    assert await store.list_tasks() == []
    assert await store.count_pending() == 0
    assert await store.reset_all_in_progress() == 0
    assert (await store.ping()).error == "Tasks file not found"


@pytest.mark.asyncio
async def test_description_file_supplies_title_and_warnings(tasks_file: Path, write_tasks):
    write_tasks(
        [
            {"id": "T-1", "status": "pending"},
            {"id": "T-2", "status": "pending"},
            {"id": "T-3", "status": "pending"},
        ],
        descriptions={
            "T-2": "# Hi",
            "T-3": "# Migrate storage\n\nMove the backlog to the new volume.\n",
        },
    )
    store = _store(tasks_file)

    missing = await store.get_task("T-1")
    short = await store.get_task("T-2")
    full = await store.get_task("T-3")

    assert missing.title == "T-1"
    assert missing.metadata["descriptionWarning"].startswith("Description file not found")
    assert short.title == "Hi"
    assert "too short" in short.metadata["descriptionWarning"]
    assert full.title == "Migrate storage"
    assert full.description == "Move the backlog to the new volume."
    assert "descriptionWarning" not in full.metadata
    assert full.metadata["descriptionFile"] == str(tasks_file.parent / "T-3.md")


@pytest.mark.asyncio
async def test_unknown_keys_and_feature_names_are_preserved(tasks_file: Path, write_tasks):
    write_tasks(
        [{"id": "AUTH-001", "status": "pending", "feature": "auth", "estimate": "2d"}],
        features={"auth": {"name": "Authentication"}},
    )
    store = _store(tasks_file)

    assert (await store.set_priority("AUTH-001", Priority.HIGH)).success
    task = await store.get_task("AUTH-001")
    document = json.loads(tasks_file.read_text(encoding="utf-8"))

    assert task.priority is Priority.HIGH
    assert task.metadata["featureName"] == "Authentication"
    assert document["features"] == {"auth": {"name": "Authentication"}}
    assert document["tasks"][0]["estimate"] == "2d"
    assert "featureName" not in document["tasks"][0].get("metadata", {})


@pytest.mark.asyncio
async def test_dependency_edits_and_checks(tasks_file: Path, write_tasks):
    write_tasks(
        [
            {"id": "T-1", "status": "completed"},
            {"id": "T-2", "status": "pending"},
            {"id": "T-3", "status": "pending", "dependsOn": ["GHOST-1"]},
        ],
    )
    store = _store(tasks_file)

    assert (await store.add_dependency("T-2", "T-2")).success is False
    missing = await store.add_dependency("T-2", "T-404")
    added = await store.add_dependency("T-2", "T-1")
    again = await store.add_dependency("T-2", "T-1")

    assert missing.error == "Dependency T-404 not found"
    assert added.success and again.success
    assert _raw_entry(tasks_file, "T-2")["dependsOn"] == ["T-1"]
    assert await store.are_dependencies_met("T-2") is True
    assert await store.are_dependencies_met("T-3") is False
    assert await store.are_dependencies_met("T-404") is False
    assert [task.id for task in await store.get_dependencies("T-2")] == ["T-1"]
    assert [task.id for task in await store.get_dependents("T-1")] == ["T-2"]

    assert (await store.remove_dependency("T-2", "T-1")).success
    assert "dependsOn" not in _raw_entry(tasks_file, "T-2")


@pytest.mark.asyncio
async def test_pending_listing_applies_dependency_gate(tasks_file: Path, write_tasks):
    write_tasks(
        [
            {"id": "T-1", "status": "in-progress"},
            {"id": "T-2", "status": "pending", "priority": "high", "dependsOn": ["T-1"]},
            {"id": "T-3", "status": "pending", "priority": "low"},
        ],
    )
    store = _store(tasks_file)

    assert [task.id for task in await store.list_pending_tasks()] == ["T-3"]
    assert await store.count_pending(FindTaskOptions(include_blocked=True)) == 2


def test_concurrent_claims_across_processes_never_duplicate(tasks_file: Path, write_tasks):
    ids = [f"T-{number}" for number in range(1, 7)]
    write_tasks([{"id": task_id, "status": "pending"} for task_id in ids])

    context = multiprocessing.get_context("spawn")
    with context.Pool(processes=3) as pool:
        claimed = pool.map(_claim_in_subprocess, [str(tasks_file)] * len(ids))

    assert sorted(claimed) == sorted(ids)
    document = json.loads(tasks_file.read_text(encoding="utf-8"))
    assert {entry["status"] for entry in document["tasks"]} == {"in-progress"}


@pytest.mark.asyncio
async def test_concurrent_claims_of_single_task_have_one_winner(tasks_file: Path, write_tasks):
    write_tasks([{"id": "T-1", "status": "pending"}])

    results = await asyncio.gather(_store(tasks_file).claim_task(), _store(tasks_file).claim_task())

    winners = [task for task in results if task is not None]
    assert [task.id for task in winners] == ["T-1"]
    assert results.count(None) == 1


@pytest.mark.asyncio
async def test_invalid_priority_update_is_reported_not_raised(tasks_file: Path, write_tasks):
    write_tasks([{"id": "T-1", "status": "pending", "priority": "low"}])
    store = _store(tasks_file)

    result = await store.set_priority("T-1", "urgent")

    assert result.success is False
    assert "urgent" in result.error
    assert _raw_entry(tasks_file, "T-1")["priority"] == "low"
    assert not tasks_file.with_name("tasks.json.lock").exists()


@pytest.mark.asyncio
async def test_hand_edited_entries_with_unknown_values_are_skipped(tasks_file: Path, write_tasks):
    write_tasks(
        [
            {"id": "T-1", "status": "done"},
            {"id": "T-2", "status": "pending", "priority": "urgent"},
            {"id": "T-3", "status": "pending"},
        ],
    )
    store = _store(tasks_file)

    assert [task.id for task in await store.list_pending_tasks()] == ["T-3"]
    assert await store.count_pending() == 1
    claimed = await store.claim_task()
    update = await store.mark_completed("T-1")
    with pytest.raises(TaskFileError) as excinfo:
        await store.get_task("T-1")

    assert claimed.id == "T-3"
    assert update.success is False
    assert "Invalid task entry T-1" in update.error
    assert excinfo.value.code is ErrorCode.FILE_READ
    assert _raw_entry(tasks_file, "T-1")["status"] == "done"
