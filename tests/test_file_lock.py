from __future__ import annotations

import os
import time
from pathlib import Path

import allure
import pytest

from taskloop.errors import ErrorCode, LockConflictError
from taskloop.tasks import file_lock
from taskloop.tasks.file_lock import FileLock

pytestmark = [
    allure.epic("Task Backlog"),
    allure.feature("File Lock"),
]

FOREIGN_PID = 424242


def _make_lock(path: Path, **overrides) -> FileLock:
    params = {"timeout_ms": 200, "stale_ms": 30_000, "retry_delay_ms": 5}
    params.update(overrides)
    return FileLock(path, **params)


@pytest.mark.asyncio
async def test_acquire_writes_pid_and_release_removes_file(tmp_path: Path) -> None:
    lock_path = tmp_path / "tasks.json.lock"
    lock = _make_lock(lock_path)

    await lock.acquire()
    assert lock_path.read_text(encoding="utf-8") == str(os.getpid())

    lock.release()
    assert not lock_path.exists()


def test_release_leaves_lock_held_by_another_pid(tmp_path: Path) -> None:
    lock_path = tmp_path / "tasks.json.lock"
    lock_path.write_text(str(FOREIGN_PID), encoding="utf-8")

    _make_lock(lock_path).release()

    assert lock_path.read_text(encoding="utf-8") == str(FOREIGN_PID)


@pytest.mark.asyncio
async def test_stale_lock_is_reclaimed_even_if_holder_looks_alive(
    tmp_path: Path,
    monkeypatch,
) -> None:
    monkeypatch.setattr(file_lock, "is_process_alive", lambda pid: True)
    lock_path = tmp_path / "tasks.json.lock"
    lock_path.write_text(str(FOREIGN_PID), encoding="utf-8")
    old = time.time() - 60
    os.utime(lock_path, (old, old))

    await _make_lock(lock_path, stale_ms=30_000).acquire()

    assert lock_path.read_text(encoding="utf-8") == str(os.getpid())


@pytest.mark.asyncio
async def test_lock_of_dead_holder_is_reclaimed(tmp_path: Path, monkeypatch) -> None:
    probed: list[int] = []

    def _dead(pid: int) -> bool:
        probed.append(pid)
        return False

    monkeypatch.setattr(file_lock, "is_process_alive", _dead)
    lock_path = tmp_path / "tasks.json.lock"
    lock_path.write_text(str(FOREIGN_PID), encoding="utf-8")

    await _make_lock(lock_path).acquire()

    assert probed == [FOREIGN_PID]
    assert lock_path.read_text(encoding="utf-8") == str(os.getpid())


@pytest.mark.asyncio
async def test_unreadable_holder_is_reclaimed(tmp_path: Path) -> None:
    lock_path = tmp_path / "tasks.json.lock"
    lock_path.write_text("not-a-pid", encoding="utf-8")

    await _make_lock(lock_path).acquire()

    assert lock_path.read_text(encoding="utf-8") == str(os.getpid())


@pytest.mark.asyncio
async def test_live_holder_times_out_with_lock_conflict(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(file_lock, "is_process_alive", lambda pid: True)
    lock_path = tmp_path / "tasks.json.lock"
    lock_path.write_text(str(FOREIGN_PID), encoding="utf-8")

    with pytest.raises(LockConflictError) as excinfo:
        await _make_lock(lock_path, timeout_ms=50).acquire()

    assert excinfo.value.code is ErrorCode.LOCK_CONFLICT
    assert str(lock_path) in excinfo.value.message
    assert any("stale lock" in hint for hint in excinfo.value.suggestions)
    assert lock_path.read_text(encoding="utf-8") == str(FOREIGN_PID)


@pytest.mark.asyncio
async def test_empty_holder_is_waited_on_not_reclaimed(tmp_path: Path) -> None:
    lock_path = tmp_path / "tasks.json.lock"
    lock_path.write_text("", encoding="utf-8")

    with pytest.raises(LockConflictError):
        await _make_lock(lock_path, timeout_ms=30).acquire()

    assert lock_path.read_text(encoding="utf-8") == ""


@pytest.mark.asyncio
async def test_hold_releases_on_error(tmp_path: Path) -> None:
    lock_path = tmp_path / "tasks.json.lock"
    lock = _make_lock(lock_path)

    with pytest.raises(RuntimeError, match="inside"):
        async with lock.hold():
            assert lock_path.exists()
            raise RuntimeError("inside")

    assert not lock_path.exists()


def test_current_process_is_alive_and_nonsense_pid_is_not() -> None:
    assert file_lock.is_process_alive(os.getpid()) is True
    assert file_lock.is_process_alive(0) is False
    assert file_lock.is_process_alive(-5) is False
