"""Shared test fixtures."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from taskloop.resilience.runner import ResilienceRunner, ResilienceRunnerOptions


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Tests never pick up a developer's TASKLOOP_* or GITHUB_TOKEN settings."""

    for name in list(os.environ):
        if name.startswith("TASKLOOP_") or name == "GITHUB_TOKEN":
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """The CLI replaces root handlers; put the originals back after each test."""

    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture()
def tasks_file(tmp_path: Path) -> Path:
    return tmp_path / "tasks" / "tasks.json"


@pytest.fixture()
def write_tasks(tasks_file: Path) -> Callable[..., Path]:
    """Write a tasks document (and optional ``<id>.md`` files) next to ``tasks_file``."""

    def _write(
        entries: list[dict[str, Any]],
        *,
        descriptions: dict[str, str] | None = None,
        **extra: Any,
    ) -> Path:
        tasks_file.parent.mkdir(parents=True, exist_ok=True)
        tasks_file.write_text(json.dumps({"tasks": entries, **extra}, indent=2), encoding="utf-8")
        for task_id, content in (descriptions or {}).items():
            (tasks_file.parent / f"{task_id}.md").write_text(content, encoding="utf-8")
        return tasks_file

    return _write


@pytest.fixture()
def recorded_sleeps() -> list[float]:
    return []


@pytest.fixture()
def fast_runner(recorded_sleeps: list[float]) -> Callable[..., ResilienceRunner]:
    """Runner factory with jitter off and a sleep that only records the delay."""

    async def _sleep(seconds: float) -> None:
        recorded_sleeps.append(seconds)

    def _build(**overrides: Any) -> ResilienceRunner:
        options = ResilienceRunnerOptions(jitter=False, **overrides)
        return ResilienceRunner(options, sleep=_sleep)

    return _build
