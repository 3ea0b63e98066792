"""
File-Based Task Store

Write-once task records stored as ``{storage_dir}/tasks/{task_id}.json``.
A record is created by the first ``put`` for a task id and is read-only
afterwards; later ``put`` calls return the existing record unchanged.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Any

import structlog

from chatgate.core.domain.errors import TaskStoreError
from chatgate.infrastructure.persistence.json_io import read_json, write_json_atomic
from chatgate.infrastructure.persistence.locks import LockManager

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


def task_file_name(task_id: str) -> str:
    """Map a task id onto a collision-free file name."""
    safe = _UNSAFE.sub("_", task_id)[:160]
    if safe != task_id:
        digest = hashlib.sha1(task_id.encode("utf-8")).hexdigest()[:10]
        safe = f"{safe}-{digest}"
    return f"{safe}.json"


class FileTaskStore:
    """TaskStoreProtocol implementation backed by one JSON file per task."""

    LOCK_NAME = "task_store"

    def __init__(self, storage_dir: str | Path, locks: LockManager) -> None:
        self.tasks_dir = Path(storage_dir) / "tasks"
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        self.locks = locks
        self.logger = structlog.get_logger().bind(component="task_store")

    def _path(self, task_id: str) -> Path:
        if not task_id:
            raise TaskStoreError("task_id must not be empty")
        return self.tasks_dir / task_file_name(task_id)

    async def get(self, task_id: str) -> dict[str, Any] | None:
        data = await read_json(self._path(task_id))
        if data is None:
            return None
        if not isinstance(data, dict) or "response" not in data:
            raise TaskStoreError("Task record is malformed", task_id=task_id)
        return data["response"]

    async def put(self, task_id: str, response: dict[str, Any]) -> dict[str, Any]:
        path = self._path(task_id)
        async with self.locks.durable(self.LOCK_NAME):
            existing = await read_json(path)
            if isinstance(existing, dict) and "response" in existing:
                self.logger.debug("task_store.put_ignored", task_id=task_id)
                return existing["response"]
            try:
                await write_json_atomic(path, {"task_id": task_id, "response": response})
            except (OSError, TypeError) as exc:
                raise TaskStoreError(f"Failed to write task: {exc}", task_id=task_id) from exc
        self.logger.debug("task_store.stored", task_id=task_id, ok=response.get("ok"))
        return response
