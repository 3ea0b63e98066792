"""
Task Dispatcher

At-most-once execution of LLM tasks keyed by a caller supplied task id.
The first submission generates and stores the response; every later
submission with the same id returns the stored body. Failures are stored
the same way, so a failed task is only re-run under a new id.
"""

from __future__ import annotations

import asyncio
import json
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import structlog

from chatgate.core.domain.result import Err, Ok, Result
from chatgate.core.interfaces.llm import LLMProviderProtocol
from chatgate.core.interfaces.persistence import TaskStoreProtocol

SUPPORTED_STAGES = ("analyze", "suggest")
MAX_CONTEXT_CHARS = 8000


@dataclass(frozen=True)
class TaskResult:
    """Stored response plus whether it came from the store."""

    response: dict[str, Any]
    cached: bool

    @property
    def ok(self) -> bool:
        return bool(self.response.get("ok"))

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.response)
        if self.cached:
            payload["cached"] = True
        return payload


def render_prompt(prompt: str, context: dict[str, Any]) -> str:
    rendered = json.dumps(context, ensure_ascii=False, default=str)[:MAX_CONTEXT_CHARS]
    return f"CONTEXT:\n{rendered}\n\nPROMPT:\n{prompt}"


class KeyedLocks:
    """One asyncio lock per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[key] - 1
            if remaining:
                self._users[key] = remaining
            else:
                del self._users[key]
                self._locks.pop(key, None)


class TaskDispatcher:
    """Idempotent front for ``LLMProviderProtocol``.

    A per-task lock serializes concurrent submissions for the same id, so
    only one of them reaches the provider.
    """

    def __init__(
        self,
        provider: LLMProviderProtocol,
        store: TaskStoreProtocol,
        *,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.locks = locks if locks is not None else KeyedLocks()
        self.logger = structlog.get_logger().bind(component="task_dispatcher")

    async def submit(
        self,
        task_id: str,
        *,
        stage: str,
        prompt: str,
        context: dict[str, Any] | None = None,
    ) -> Result[TaskResult]:
        task_id = (task_id or "").strip()
        stage = (stage or "").strip()
        prompt = (prompt or "").strip()
        if not task_id:
            return Err("missing_task_id")
        if stage not in SUPPORTED_STAGES:
            return Err("unsupported_stage", stage)
        if not prompt:
            return Err("missing_prompt")

        async with self.locks.hold(task_id):
            cached = await self.store.get(task_id)
            if cached is not None:
                self.logger.debug("task.cache_hit", task_id=task_id, ok=cached.get("ok"))
                return Ok(TaskResult(response=cached, cached=True))
            response = await self._generate(task_id, stage, prompt, context or {})
            stored = await self.store.put(task_id, response)
            return Ok(TaskResult(response=stored, cached=stored is not response))

    async def _generate(
        self, task_id: str, stage: str, prompt: str, context: dict[str, Any]
    ) -> dict[str, Any]:
        started = time.monotonic()
        ts_utc = datetime.now(timezone.utc).isoformat()
        try:
            output = await self.provider.generate(
                render_prompt(prompt, context), stage=stage, context=context
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.warning("task.generate_failed", task_id=task_id, stage=stage, error=str(exc))
            return {
                "ok": False,
                "task_id": task_id,
                "stage": stage,
                "error": f"llm_failed: {exc}",
                "ts_utc": ts_utc,
            }
        latency_ms = int((time.monotonic() - started) * 1000)
        self.logger.info("task.generated", task_id=task_id, stage=stage, latency_ms=latency_ms)
        return {
            "ok": True,
            "task_id": task_id,
            "stage": stage,
            "ts_utc": ts_utc,
            "latency_ms": latency_ms,
            "summary": output,
        }
