"""
Lock Primitives for Shared Durable State

Two named primitives:

- ``AsyncMutex``: in-process FIFO mutex serializing coroutines of this
  process.
- ``FileLock``: cross-process advisory lock backed by an ``O_EXCL`` lock
  file. A lock file older than its TTL is considered abandoned and is
  stolen.

``DurableLock`` holds both, mutex first. Every read-modify-write of a file
shared between gateway processes must run under a ``DurableLock``.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import structlog

from chatgate.core.domain.config_schema import LockSettings
from chatgate.core.domain.errors import LockTimeoutError

logger = structlog.get_logger(__name__)

# A lock file with unreadable content younger than this is assumed to be
# mid-write by its owner.
_INVALID_CONTENT_GRACE_SEC = 1.0


class AsyncMutex:
    """Named in-process mutex (FIFO, as ``asyncio.Lock`` wakes waiters in order)."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._lock = asyncio.Lock()

    def locked(self) -> bool:
        return self._lock.locked()

    async def __aenter__(self) -> "AsyncMutex":
        await self._lock.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._lock.release()


class FileLock:
    """Cross-process advisory lock with steal-on-stale semantics.

    The lock file holds ``{"pid", "token", "ts_utc"}``. Staleness is judged
    by the file's mtime so a crashed owner never blocks others longer than
    ``stale_sec``.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        stale_sec: float = 30.0,
        timeout_sec: float = 5.0,
        poll_interval_sec: float = 0.03,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self.stale_sec = stale_sec
        self.timeout_sec = timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self._clock = clock
        self._token: str | None = None

    @property
    def held(self) -> bool:
        return self._token is not None

    async def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = self._clock() + self.timeout_sec
        while True:
            if self._try_create():
                return
            if self._is_stale(self.path):
                self._steal()
                continue
            if self._clock() >= deadline:
                raise LockTimeoutError(
                    f"Timed out waiting for lock {self.path}", lock_path=str(self.path)
                )
            await asyncio.sleep(self.poll_interval_sec)

    def release(self) -> None:
        if self._token is None:
            return
        token, self._token = self._token, None
        try:
            owner = json.loads(self.path.read_text(encoding="utf-8")).get("token")
        except FileNotFoundError:
            return
        except (OSError, ValueError):
            owner = None
        if owner == token:
            self.path.unlink(missing_ok=True)
        else:
            logger.warning("file_lock.lost_ownership", path=str(self.path))

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        token = uuid.uuid4().hex
        payload = {
            "pid": os.getpid(),
            "token": token,
            "ts_utc": datetime.now(timezone.utc).isoformat(),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle)
        self._token = token
        return True

    def _steal(self) -> None:
        """Move a stale lock file aside, then drop it.

        The rename is atomic, so of two waiters that judged the same file
        stale only one moves it. A waiter that loses the race moves the
        winner's fresh lock instead and restores it.
        """
        tombstone = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, tombstone)
        except FileNotFoundError:
            return
        if self._is_stale(tombstone):
            logger.warning("file_lock.stale_stolen", path=str(self.path))
        else:
            try:
                os.link(tombstone, self.path)
            except FileExistsError:
                logger.warning("file_lock.restore_conflict", path=str(self.path))
        tombstone.unlink(missing_ok=True)

    def _is_stale(self, path: Path) -> bool:
        try:
            age = self._clock() - path.stat().st_mtime
        except FileNotFoundError:
            return False
        if age > self.stale_sec:
            return True
        if age < _INVALID_CONTENT_GRACE_SEC:
            return False
        try:
            json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return False
        except (OSError, ValueError):
            return True
        return False

    async def __aenter__(self) -> "FileLock":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.release()


class DurableLock:
    """In-process mutex plus cross-process file lock, acquired in that order."""

    def __init__(self, mutex: AsyncMutex, file_lock: FileLock) -> None:
        self.mutex = mutex
        self.file_lock = file_lock

    async def __aenter__(self) -> "DurableLock":
        await self.mutex.__aenter__()
        try:
            await self.file_lock.acquire()
        except BaseException:
            await self.mutex.__aexit__(None, None, None)
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        try:
            self.file_lock.release()
        finally:
            await self.mutex.__aexit__(*exc_info)


class LockManager:
    """Hands out ``DurableLock`` instances sharing one mutex per lock name."""

    def __init__(self, lock_dir: str | Path, settings: LockSettings | None = None) -> None:
        self.lock_dir = Path(lock_dir)
        self.settings = settings or LockSettings()
        self._mutexes: dict[str, AsyncMutex] = {}

    def mutex(self, name: str) -> AsyncMutex:
        if name not in self._mutexes:
            self._mutexes[name] = AsyncMutex(name)
        return self._mutexes[name]

    def durable(self, name: str, *, stale_sec: float | None = None) -> DurableLock:
        file_lock = FileLock(
            self.lock_dir / f"{name}.lock",
            stale_sec=stale_sec if stale_sec is not None else self.settings.stale_sec,
            timeout_sec=self.settings.timeout_sec,
            poll_interval_sec=self.settings.poll_interval_sec,
        )
        return DurableLock(self.mutex(name), file_lock)
