"""Persisted per-channel chat allow-list (``auth_{channel}.json``)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog

from chatgate.infrastructure.persistence.json_io import read_json, write_json_atomic
from chatgate.infrastructure.persistence.locks import LockManager

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AllowlistState:
    owner_chat_id: str
    allowed: tuple[str, ...]
    updated_at_utc: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "owner_chat_id": self.owner_chat_id,
            "allowed": list(self.allowed),
            "updated_at_utc": self.updated_at_utc,
        }


class AllowlistStore:
    """Loads, caches and mutates the allow-list of each channel.

    The owner chat is always part of the list. Reads are served from the
    in-memory cache so gates can stay synchronous; mutations re-read the
    file under a durable lock before writing.
    """

    def __init__(self, storage_dir: str | Path, locks: LockManager) -> None:
        self.storage_dir = Path(storage_dir)
        self.locks = locks
        self._cache: dict[str, AllowlistState] = {}

    def _path(self, channel: str) -> Path:
        return self.storage_dir / f"auth_{channel}.json"

    async def load(self, channel: str, owner_chat_id: str) -> AllowlistState:
        state = self._parse(await read_json(self._path(channel)), owner_chat_id)
        self._cache[channel] = state
        return state

    def allowed_chat_ids(self, channel: str) -> frozenset[str]:
        state = self._cache.get(channel)
        return frozenset(state.allowed) if state else frozenset()

    def state(self, channel: str) -> AllowlistState | None:
        return self._cache.get(channel)

    async def add(self, channel: str, owner_chat_id: str, chat_id: str) -> AllowlistState:
        return await self._mutate(channel, owner_chat_id, add=chat_id)

    async def remove(self, channel: str, owner_chat_id: str, chat_id: str) -> AllowlistState:
        return await self._mutate(channel, owner_chat_id, remove=chat_id)

    async def _mutate(
        self,
        channel: str,
        owner_chat_id: str,
        *,
        add: str | None = None,
        remove: str | None = None,
    ) -> AllowlistState:
        path = self._path(channel)
        async with self.locks.durable(f"auth_{channel}"):
            current = self._parse(await read_json(path), owner_chat_id)
            allowed = list(current.allowed)
            if add and add not in allowed:
                allowed.append(add)
            if remove and remove != current.owner_chat_id:
                allowed = [c for c in allowed if c != remove]
            state = AllowlistState(
                owner_chat_id=current.owner_chat_id,
                allowed=tuple(allowed),
                updated_at_utc=datetime.now(timezone.utc).isoformat(),
            )
            await write_json_atomic(path, state.to_dict())
        self._cache[channel] = state
        logger.info("allowlist.updated", channel=channel, added=add, removed=remove, size=len(allowed))
        return state

    @staticmethod
    def _parse(raw: object, owner_chat_id: str) -> AllowlistState:
        data = raw if isinstance(raw, dict) else {}
        owner = str(data.get("owner_chat_id") or owner_chat_id or "")
        allowed: list[str] = []
        for item in data.get("allowed") or []:
            value = str(item).strip()
            if value and value not in allowed:
                allowed.append(value)
        if owner and owner not in allowed:
            allowed.insert(0, owner)
        return AllowlistState(
            owner_chat_id=owner,
            allowed=tuple(allowed),
            updated_at_utc=str(data.get("updated_at_utc") or ""),
        )
