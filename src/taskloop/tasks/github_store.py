"""Task store backed by GitHub Issues labels and state."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from taskloop.errors import ErrorCode, RemoteStoreError, TaskloopError
from taskloop.resilience.classification import AttemptTimeoutError
from taskloop.resilience.runner import ResilienceRunner
from taskloop.tasks import labels as gh
from taskloop.tasks.lifecycle import can_transition
from taskloop.tasks.models import (
    FindTaskOptions,
    NewTask,
    PingResult,
    Priority,
    Task,
    TaskStatus,
    UpdateResult,
)
from taskloop.tasks.selection import dependencies_met, select_tasks

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
PAGE_SIZE = 100
MAX_PAGES = 10
_REMOTE_ERRORS = (RemoteStoreError, AttemptTimeoutError)


@dataclass(slots=True)
class QuotaInfo:
    """Core REST API rate-limit window."""

    limit: int
    remaining: int
    reset_at: datetime | None


class GitHubIssueStore:
    """Task store mapping statuses and priorities onto issue labels.

    Each HTTP call goes through the resilience runner on its own. Status
    changes are a sequence of label removals and additions; a failure in the
    middle can leave an issue with mixed labels.
    """

    name = "github"

    def __init__(  # noqa: PLR0913
        self,
        repo: str,
        *,
        token: str | None = None,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        runner: ResilienceRunner | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.repo = repo
        self._runner = runner or ResilienceRunner()
        self._owns_client = client is None
        if client is None:
            headers = {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
            if token:
                headers["Authorization"] = f"Bearer {token}"
            client = httpx.AsyncClient(
                base_url=api_url,
                headers=headers,
                timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            )
        self._client = client

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- reads ---------------------------------------------------------------

    async def get_task(self, task_id: str) -> Task | None:
        number = gh.parse_issue_number(task_id)
        if number is None:
            return None
        issue = await self._get_issue(number)
        return gh.issue_to_task(issue) if issue is not None else None

    async def find_next_task(self, options: FindTaskOptions | None = None) -> Task | None:
        selected = await self._select(options)
        return selected[0] if selected else None

    async def list_pending_tasks(self, options: FindTaskOptions | None = None) -> list[Task]:
        return await self._select(options)

    async def count_pending(self, options: FindTaskOptions | None = None) -> int:
        return len(await self._select(options))

    async def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        state = "all" if status in (None, TaskStatus.COMPLETED) else "open"
        tasks = [gh.issue_to_task(issue) for issue in await self._list_issues(state=state)]
        if status is None:
            return tasks
        return [task for task in tasks if task.status is status]

    async def get_sub_tasks(self, task_id: str) -> list[Task]:
        parent_number = gh.parse_issue_number(task_id)
        tasks = [gh.issue_to_task(issue) for issue in await self._list_issues()]
        return [
            task
            for task in tasks
            if task.parent_id
            and (
                task.parent_id == task_id
                or (
                    parent_number is not None
                    and gh.parse_issue_number(task.parent_id) == parent_number
                )
            )
        ]

    async def get_dependencies(self, task_id: str) -> list[Task]:
        task = await self.get_task(task_id)
        if task is None:
            return []
        dependencies = []
        for dep_id in task.depends_on:
            dependency = await self.get_task(dep_id)
            if dependency is not None:
                dependencies.append(dependency)
        return dependencies

    async def get_dependents(self, task_id: str) -> list[Task]:
        tasks = [gh.issue_to_task(issue) for issue in await self._list_issues()]
        return [task for task in tasks if task_id in task.depends_on]

    async def are_dependencies_met(self, task_id: str) -> bool:
        task = await self.get_task(task_id)
        if task is None:
            return False
        statuses = await self._resolve_statuses(task.depends_on, {})
        return dependencies_met(task, statuses)

    async def ping(self) -> PingResult:
        started = time.monotonic()
        try:
            await self._request("GET", "/rate_limit")
        except _REMOTE_ERRORS as error:
            return PingResult(ok=False, latency_ms=_elapsed_ms(started), error=str(error))
        return PingResult(ok=True, latency_ms=_elapsed_ms(started))

    async def get_quota_info(self) -> QuotaInfo:
        payload = await self._request("GET", "/rate_limit")
        core = (payload or {}).get("resources", {}).get("core", {})
        reset = core.get("reset")
        return QuotaInfo(
            limit=int(core.get("limit", 0)),
            remaining=int(core.get("remaining", 0)),
            reset_at=datetime.fromtimestamp(reset, tz=UTC) if reset else None,
        )

    # -- claim & lifecycle ---------------------------------------------------

    async def claim_task(self, options: FindTaskOptions | None = None) -> Task | None:
        """Find then mark in-progress; not atomic across processes."""

        task = await self.find_next_task(options)
        if task is None:
            return None
        result = await self.mark_in_progress(task.id)
        if not result.success:
            logger.warning("Claim of %s failed: %s", task.id, result.error)
            return None
        logger.info("Claimed task %s", task.id)
        return await self.get_task(task.id)

    async def mark_in_progress(self, task_id: str) -> UpdateResult:
        async def _apply(number: int, _task: Task) -> None:
            await self._remove_labels(number, [gh.STATUS_PENDING, gh.STATUS_FAILED])
            await self._add_labels(number, [gh.STATUS_IN_PROGRESS])

        return await self._transition(task_id, TaskStatus.IN_PROGRESS, _apply)

    async def mark_completed(self, task_id: str, comment: str | None = None) -> UpdateResult:
        async def _apply(number: int, _task: Task) -> None:
            await self._remove_labels(number, [gh.STATUS_IN_PROGRESS])
            await self._comment(number, comment or "Completed by taskloop")
            await self._request(
                "PATCH",
                self._issue_path(number),
                json={"state": "closed", "state_reason": "completed"},
            )

        return await self._transition(task_id, TaskStatus.COMPLETED, _apply)

    async def mark_failed(self, task_id: str, error: str) -> UpdateResult:
        async def _apply(number: int, _task: Task) -> None:
            await self._remove_labels(number, [gh.STATUS_IN_PROGRESS])
            await self._add_labels(number, [gh.STATUS_FAILED])
            await self._comment(number, f"**Task Failed**\n\n```\n{error}\n```")

        return await self._transition(task_id, TaskStatus.FAILED, _apply)

    async def mark_quarantined(self, task_id: str, reason: str) -> UpdateResult:
        async def _apply(number: int, _task: Task) -> None:
            await self._remove_labels(
                number,
                [gh.STATUS_PENDING, gh.STATUS_IN_PROGRESS, gh.STATUS_FAILED],
            )
            await self._add_labels(number, [gh.STATUS_QUARANTINED])
            await self._comment(number, f"**Task Quarantined**\n\n{reason}")

        return await self._transition(task_id, TaskStatus.QUARANTINED, _apply)

    async def reset_to_pending(self, task_id: str) -> UpdateResult:
        number = gh.parse_issue_number(task_id)
        if number is None:
            return UpdateResult.fail(f"Invalid task ID: {task_id}")
        try:
            issue = await self._get_issue(number)
            if issue is None:
                return UpdateResult.fail(f"Task {task_id} not found")
            await self._remove_labels(
                number,
                [gh.STATUS_FAILED, gh.STATUS_IN_PROGRESS, gh.STATUS_QUARANTINED],
            )
            await self._add_labels(number, [gh.STATUS_PENDING])
            if issue.get("state") == "closed":
                await self._request("PATCH", self._issue_path(number), json={"state": "open"})
        except _REMOTE_ERRORS as error:
            return UpdateResult.fail(str(error))
        except Exception as error:  # noqa: BLE001
            return _unexpected_failure(task_id, error)
        return UpdateResult.ok()

    async def reset_all_in_progress(self) -> int:
        moved = 0
        for issue in await self._list_issues(extra_labels=[gh.STATUS_IN_PROGRESS]):
            result = await self.reset_to_pending(gh.issue_task_id(int(issue["number"])))
            if result.success:
                moved += 1
        return moved

    async def add_comment(self, task_id: str, comment: str) -> UpdateResult:
        number = gh.parse_issue_number(task_id)
        if number is None:
            return UpdateResult.fail(f"Invalid task ID: {task_id}")
        try:
            await self._comment(number, comment)
        except _REMOTE_ERRORS as error:
            return UpdateResult.fail(str(error))
        except Exception as error:  # noqa: BLE001
            return _unexpected_failure(task_id, error)
        return UpdateResult.ok()

    # -- edits ---------------------------------------------------------------

    async def create_task(self, task: NewTask) -> Task:
        body = gh.build_body(task.description, parent_id=task.parent_id, depends_on=task.depends_on)
        issue = await self._request(
            "POST",
            f"/repos/{self.repo}/issues",
            json={
                "title": task.title,
                "body": body,
                "labels": gh.labels_for_new_task(
                    priority=Priority(task.priority),
                    feature=task.feature,
                    is_sub_task=bool(task.parent_id),
                ),
            },
        )
        created = gh.issue_to_task(issue)
        logger.info("Created issue task %s", created.id)
        return created

    async def create_sub_task(self, parent_id: str, task: NewTask) -> Task:
        parent_number = gh.parse_issue_number(parent_id)
        if parent_number is None:
            raise TaskloopError(
                ErrorCode.TASK_INVALID,
                "Invalid parent task ID",
                [
                    f"Parent ID '{parent_id}' cannot be parsed",
                    "Expected format: GH-123, 123 or #123",
                ],
            )
        parent = await self._get_issue(parent_number)
        if parent is None:
            raise TaskloopError(ErrorCode.TASK_NOT_FOUND, f"Parent task {parent_id} not found")
        return await self.create_task(
            NewTask(
                title=task.title,
                description=task.description,
                priority=task.priority,
                feature=task.feature or gh.feature_from_labels(
                    [label["name"] for label in parent.get("labels", [])],
                ),
                parent_id=gh.issue_task_id(parent_number),
                depends_on=list(task.depends_on),
            ),
        )

    async def add_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        if task_id == depends_on_id:
            return UpdateResult.fail(f"Task {task_id} cannot depend on itself")
        try:
            task = await self.get_task(task_id)
            if task is None:
                return UpdateResult.fail(f"Task {task_id} not found")
            if depends_on_id in task.depends_on:
                return UpdateResult.ok()
            if await self.get_task(depends_on_id) is None:
                return UpdateResult.fail(f"Dependency {depends_on_id} not found")
            body = gh.replace_dependencies(task.description, [*task.depends_on, depends_on_id])
            await self._update_body(task, body)
        except _REMOTE_ERRORS as error:
            return UpdateResult.fail(str(error))
        except Exception as error:  # noqa: BLE001
            return _unexpected_failure(task_id, error)
        return UpdateResult.ok()

    async def remove_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        try:
            task = await self.get_task(task_id)
            if task is None:
                return UpdateResult.fail(f"Task {task_id} not found")
            remaining = [dep for dep in task.depends_on if dep != depends_on_id]
            if remaining != task.depends_on:
                await self._update_body(task, gh.replace_dependencies(task.description, remaining))
        except _REMOTE_ERRORS as error:
            return UpdateResult.fail(str(error))
        except Exception as error:  # noqa: BLE001
            return _unexpected_failure(task_id, error)
        return UpdateResult.ok()

    async def set_priority(self, task_id: str, priority: Priority) -> UpdateResult:
        number = gh.parse_issue_number(task_id)
        if number is None:
            return UpdateResult.fail(f"Invalid task ID: {task_id}")
        try:
            target = gh.PRIORITY_LABELS[Priority(priority)]
            await self._remove_labels(
                number,
                [label for label in gh.PRIORITY_LABELS.values() if label != target],
            )
            await self._add_labels(number, [target])
        except _REMOTE_ERRORS as error:
            return UpdateResult.fail(str(error))
        except Exception as error:  # noqa: BLE001
            return _unexpected_failure(task_id, error)
        return UpdateResult.ok()

    # -- internals -----------------------------------------------------------

    async def _transition(
        self,
        task_id: str,
        new_status: TaskStatus,
        apply: Callable[[int, Task], Coroutine[Any, Any, None]],
    ) -> UpdateResult:
        number = gh.parse_issue_number(task_id)
        if number is None:
            return UpdateResult.fail(f"Invalid task ID: {task_id}")
        try:
            task = await self.get_task(task_id)
            if task is None:
                return UpdateResult.fail(f"Task {task_id} not found")
            if not can_transition(task.status, new_status):
                return UpdateResult.fail(
                    f"Task {task_id} cannot move from {task.status.value} to {new_status.value}",
                )
            await apply(number, task)
        except _REMOTE_ERRORS as error:
            logger.warning("Transition of %s to %s failed: %s", task_id, new_status.value, error)
            return UpdateResult.fail(str(error))
        except Exception as error:  # noqa: BLE001
            return _unexpected_failure(task_id, error)
        return UpdateResult.ok()

    async def _select(self, options: FindTaskOptions | None) -> list[Task]:
        tasks = [gh.issue_to_task(issue) for issue in await self._list_issues()]
        known = {task.id: task.status for task in tasks}
        referenced = [dep for task in tasks for dep in task.depends_on if dep not in known]
        statuses = await self._resolve_statuses(referenced, known)
        return select_tasks(tasks, options, status_by_id=statuses)

    async def _resolve_statuses(
        self,
        task_ids: list[str],
        known: dict[str, TaskStatus],
    ) -> dict[str, TaskStatus]:
        """Fetch statuses of dependency targets missing from ``known``; dangling ids stay absent."""

        statuses = dict(known)
        for task_id in task_ids:
            if task_id in statuses:
                continue
            task = await self.get_task(task_id)
            if task is not None:
                statuses[task_id] = task.status
        return statuses

    async def _list_issues(
        self,
        *,
        state: str = "open",
        extra_labels: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        labels = ",".join([gh.LOOPWORK_TASK, *(extra_labels or [])])
        issues: list[dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            batch = await self._request(
                "GET",
                f"/repos/{self.repo}/issues",
                params={"state": state, "labels": labels, "per_page": PAGE_SIZE, "page": page},
            )
            batch = batch or []
            issues.extend(item for item in batch if "pull_request" not in item)
            if len(batch) < PAGE_SIZE:
                break
        return issues

    async def _get_issue(self, number: int) -> dict[str, Any] | None:
        return await self._request("GET", self._issue_path(number), allow_404=True)

    async def _add_labels(self, number: int, names: list[str]) -> None:
        await self._request("POST", f"{self._issue_path(number)}/labels", json={"labels": names})

    async def _remove_labels(self, number: int, names: list[str]) -> None:
        for name in names:
            await self._request(
                "DELETE",
                f"{self._issue_path(number)}/labels/{quote(name, safe='')}",
                allow_404=True,
            )

    async def _comment(self, number: int, body: str) -> None:
        await self._request("POST", f"{self._issue_path(number)}/comments", json={"body": body})

    async def _update_body(self, task: Task, body: str) -> None:
        number = gh.parse_issue_number(task.id)
        await self._request("PATCH", self._issue_path(number or 0), json={"body": body})

    def _issue_path(self, number: int) -> str:
        return f"/repos/{self.repo}/issues/{number}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_404: bool = False,
    ) -> Any:
        async def _call() -> Any:
            try:
                response = await self._client.request(method, path, params=params, json=json)
            except httpx.HTTPError as exc:
                raise RemoteStoreError(
                    f"{_transport_kind(exc)}: {type(exc).__name__}: {exc}",
                    code=type(exc).__name__,
                ) from exc
            if allow_404 and response.status_code == 404:
                return None
            if response.is_error:
                raise RemoteStoreError(
                    f"GitHub API {response.status_code}: {_api_message(response)}",
                    code=response.status_code,
                )
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        return await self._runner.run(_call)


def _unexpected_failure(task_id: str, error: Exception) -> UpdateResult:
    logger.exception("Unexpected error while updating task %s", task_id)
    return UpdateResult.fail(str(error) or type(error).__name__)


def _transport_kind(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return "network error"
    return "transport error"


def _api_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.reason_phrase


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
