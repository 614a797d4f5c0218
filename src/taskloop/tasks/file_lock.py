"""Advisory lock file with stale and dead-holder recovery."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path

from taskloop.errors import ErrorCode, LockConflictError, TaskFileError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_MS = 5_000
LOCK_STALE_TIMEOUT_MS = 30_000
LOCK_RETRY_DELAY_MS = 100


class LockState(str, Enum):
    """Acquisition states; ACQUIRED and TIMED_OUT are terminal."""

    CREATE = "create"
    INSPECT = "inspect"
    RECLAIM = "reclaim"
    WAIT = "wait"
    ACQUIRED = "acquired"
    TIMED_OUT = "timed_out"


def is_process_alive(pid: int) -> bool:
    """Signal-0 probe; only meaningful for processes on this host."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class FileLock:
    """Exclusive-create lock file holding the owner's pid as plain text.

    Acquisition runs CREATE -> INSPECT -> RECLAIM | WAIT until it reaches
    ACQUIRED or the wall-clock deadline turns it into TIMED_OUT. RECLAIM
    unlinks without re-checking the holder, so two processes reclaiming the
    same stale lock can delete a lock the other has just created.
    """

    def __init__(  # noqa: PLR0913
        self,
        path: Path,
        *,
        timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
        stale_ms: int = LOCK_STALE_TIMEOUT_MS,
        retry_delay_ms: int = LOCK_RETRY_DELAY_MS,
        pid: int | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.path = Path(path)
        self.timeout_ms = timeout_ms
        self.stale_ms = stale_ms
        self.retry_delay_ms = retry_delay_ms
        self.pid = pid if pid is not None else os.getpid()
        self._sleep = sleep or asyncio.sleep

    async def acquire(self) -> None:
        """Block (cooperatively) until the lock is ours or raise ``LockConflictError``."""

        started = time.monotonic()
        deadline = started + self.timeout_ms / 1000
        state = LockState.CREATE
        while True:
            if state is LockState.CREATE:
                if time.monotonic() >= deadline:
                    state = LockState.TIMED_OUT
                    continue
                state = self._try_create()
            elif state is LockState.INSPECT:
                state = self._inspect()
            elif state is LockState.RECLAIM:
                self._remove_foreign_lock()
                state = LockState.CREATE
            elif state is LockState.WAIT:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    state = LockState.TIMED_OUT
                    continue
                await self._sleep(min(self.retry_delay_ms / 1000, remaining))
                state = LockState.CREATE
            elif state is LockState.ACQUIRED:
                logger.debug("Acquired lock %s", self.path)
                return
            else:
                waited_ms = int((time.monotonic() - started) * 1000)
                raise LockConflictError(str(self.path), waited_ms=waited_ms)

    def release(self) -> None:
        """Delete the lock file only if it still names this pid; never raises."""

        try:
            holder = self.path.read_text(encoding="utf-8").strip()
            if int(holder) == self.pid:
                self.path.unlink()
                logger.debug("Released lock %s", self.path)
            else:
                logger.warning("Lock %s now held by pid %s; leaving it in place", self.path, holder)
        except (OSError, ValueError) as error:
            logger.warning("Failed to release lock file %s: %s", self.path, error)

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[FileLock]:
        """Scoped acquisition; the lock is released on every exit path."""

        await self.acquire()
        try:
            yield self
        finally:
            self.release()

    def _try_create(self) -> LockState:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return LockState.INSPECT
        except OSError as error:
            raise TaskFileError(
                ErrorCode.FILE_WRITE,
                f"Cannot create lock file {self.path}: {error}",
                ["Verify the tasks directory exists and is writable"],
            ) from error
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(str(self.pid))
        return LockState.ACQUIRED

    def _inspect(self) -> LockState:
        try:
            holder = self.path.read_text(encoding="utf-8").strip()
            age_ms = (time.time() - self.path.stat().st_mtime) * 1000
        except FileNotFoundError:
            return LockState.CREATE
        except OSError as error:
            logger.warning("Failed to read lock file %s: %s", self.path, error)
            return LockState.RECLAIM

        # Age is checked before the pid probe.
        if age_ms > self.stale_ms:
            logger.warning("Reclaiming stale lock %s (age %dms)", self.path, age_ms)
            return LockState.RECLAIM
        if not holder:
            # Holder created the file but has not written its pid yet.
            return LockState.WAIT
        try:
            holder_pid = int(holder)
        except ValueError:
            logger.warning("Lock file %s has unreadable holder %r", self.path, holder)
            return LockState.RECLAIM
        if not is_process_alive(holder_pid):
            logger.warning("Reclaiming lock %s from dead pid %s", self.path, holder_pid)
            return LockState.RECLAIM
        return LockState.WAIT

    def _remove_foreign_lock(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as error:
            logger.warning("Failed to remove stale lock file %s: %s", self.path, error)
