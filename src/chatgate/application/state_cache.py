"""
Per-Chat State Cache

Short-lived memory of the last alert text seen in each chat (so a private
"explain" without a reply still has something to work on) and of the last
explain trace (target of 👍/👎 feedback). Owned by ``GatewayContext``;
optionally persists last alerts to ``state_last_alerts.json``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Generic, TypeVar

import structlog

from chatgate.core.domain.config_schema import StateCacheSettings
from chatgate.infrastructure.persistence.json_io import read_json, write_json_atomic
from chatgate.infrastructure.persistence.locks import LockManager

logger = structlog.get_logger(__name__)

LAST_ALERTS_FILE = "state_last_alerts.json"
LAST_ALERTS_LOCK = "state_last_alerts"

V = TypeVar("V")


def clip_text(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


@dataclass
class _Entry(Generic[V]):
    ts: float
    value: V


class TTLMap(Generic[V]):
    """Small dict with per-entry TTL and oldest-first eviction."""

    def __init__(self, ttl_sec: float, max_items: int, clock: Callable[[], float]) -> None:
        self.ttl_sec = ttl_sec
        self.max_items = max_items
        self._clock = clock
        self._items: dict[str, _Entry[V]] = {}

    def __len__(self) -> int:
        return len(self._items)

    def get(self, key: str) -> V | None:
        entry = self._items.get(key)
        if entry is None:
            return None
        if self._clock() - entry.ts > self.ttl_sec:
            del self._items[key]
            return None
        return entry.value

    def set(self, key: str, value: V, ts: float | None = None) -> None:
        now = self._clock()
        self._items[key] = _Entry(ts=now if ts is None else ts, value=value)
        self.prune(now)

    def prune(self, now: float | None = None) -> None:
        now = self._clock() if now is None else now
        for key in [k for k, e in self._items.items() if now - e.ts > self.ttl_sec]:
            del self._items[key]
        overflow = len(self._items) - self.max_items
        if overflow > 0:
            oldest = sorted(self._items.items(), key=lambda kv: kv[1].ts)[:overflow]
            for key, _ in oldest:
                del self._items[key]

    def items(self) -> list[tuple[str, float, V]]:
        return [(key, entry.ts, entry.value) for key, entry in self._items.items()]


class StateCache:
    def __init__(
        self,
        settings: StateCacheSettings,
        storage_dir: str | Path | None = None,
        *,
        locks: LockManager | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.locks = locks if locks is not None else (
            LockManager(Path(storage_dir) / "locks") if storage_dir else None
        )
        self.path = Path(storage_dir) / LAST_ALERTS_FILE if storage_dir else None
        self._alerts: TTLMap[str] = TTLMap(
            settings.last_alert_ttl_sec, settings.last_alert_max_items, clock
        )
        self._explains: TTLMap[str] = TTLMap(
            settings.last_explain_ttl_sec, settings.last_explain_max_items, clock
        )
        self._dirty = False

    @property
    def persistent(self) -> bool:
        return self.settings.persist_last_alerts and self.path is not None

    async def load(self) -> None:
        """Restore persisted last alerts; a corrupt file is ignored."""
        if not self.persistent:
            return
        data = await read_json(self.path)
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, dict):
            return
        for chat_id, entry in items.items():
            if not isinstance(entry, dict):
                continue
            try:
                ts = float(entry.get("ts") or 0)
            except (TypeError, ValueError):
                continue
            text = clip_text(str(entry.get("raw_text") or ""), self.settings.last_alert_max_chars)
            if ts and text:
                self._alerts.set(str(chat_id), text, ts=ts)
        logger.info("state_cache.loaded", last_alerts=len(self._alerts))

    async def flush(self) -> None:
        if not self.persistent or not self._dirty:
            return
        async with self.locks.durable(LAST_ALERTS_LOCK):
            if self._dirty:
                await self._write()

    async def _write(self) -> None:
        # Alerts recorded while this write is in flight mark the cache dirty again.
        self._dirty = False
        self._alerts.prune()
        payload = {
            "version": 1,
            "updated_at_utc": datetime.now(timezone.utc).isoformat(),
            "items": {
                chat_id: {"ts": ts, "raw_text": text} for chat_id, ts, text in self._alerts.items()
            },
        }
        try:
            await write_json_atomic(self.path, payload)
        except OSError:
            self._dirty = True
            raise

    def last_alert(self, chat_id: str) -> str:
        return self._alerts.get(chat_id) or ""

    async def set_last_alert(self, chat_id: str, raw_text: str) -> None:
        self._alerts.set(chat_id, clip_text(raw_text, self.settings.last_alert_max_chars))
        self._dirty = True
        await self.flush()

    def last_explain_trace(self, chat_id: str) -> str | None:
        return self._explains.get(chat_id)

    def set_last_explain_trace(self, chat_id: str, trace_id: str) -> None:
        self._explains.set(chat_id, trace_id)
