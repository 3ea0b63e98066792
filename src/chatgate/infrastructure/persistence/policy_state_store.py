"""
Push Policy State Store

Owns ``push_policy_state.json`` (the live alert push policy read by the
alerting pipeline) and ``strategy_history.jsonl`` (one snapshot per change,
used for rollback). Updates are read-modify-write under a durable lock.
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import structlog

from chatgate.core.domain.result import Err, Ok, Result
from chatgate.infrastructure.persistence.json_io import (
    append_jsonl,
    read_json,
    read_jsonl,
    write_json_atomic,
)
from chatgate.infrastructure.persistence.locks import LockManager

logger = structlog.get_logger(__name__)

STATE_FILE = "push_policy_state.json"
HISTORY_FILE = "strategy_history.jsonl"
LOCK_NAME = "strategy"

StateMutator = Callable[[dict[str, Any]], Result[dict[str, Any]]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def empty_state() -> dict[str, Any]:
    return {
        "version": 1,
        "updated_at_utc": _now_iso(),
        "targets": {},
        "control": {},
        "gates": {},
        "history": {},
        "history_events": [],
    }


class PolicyStateStore:
    def __init__(
        self,
        state_dir: str | Path,
        locks: LockManager,
        *,
        lock_ttl_sec: float = 600.0,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.state_path = self.state_dir / STATE_FILE
        self.history_path = self.state_dir / HISTORY_FILE
        self.locks = locks
        self.lock_ttl_sec = lock_ttl_sec

    async def read(self) -> dict[str, Any]:
        data = await read_json(self.state_path)
        return data if isinstance(data, dict) else empty_state()

    async def update(self, mutator: StateMutator) -> Result[dict[str, Any]]:
        """Apply ``mutator`` to a copy of the current state and persist it.

        The mutator returns ``Ok(next_state)`` or an ``Err`` that aborts the
        update without writing. A history snapshot is appended before the
        state file is replaced.
        """
        async with self.locks.durable(LOCK_NAME, stale_sec=self.lock_ttl_sec):
            prev_state = await self.read()
            outcome = mutator(copy.deepcopy(prev_state))
            if isinstance(outcome, Err):
                return outcome
            next_state = outcome.value
            snapshot = {"ts_utc": _now_iso(), "prev_state": prev_state, "next_state": next_state}
            await append_jsonl(self.history_path, snapshot)
            await write_json_atomic(self.state_path, next_state)
        logger.info("policy_state.updated", version=next_state.get("version"))
        return Ok(next_state)

    async def rollback(self) -> Result[dict[str, Any]]:
        """Restore ``prev_state`` of the latest history snapshot."""
        async with self.locks.durable(LOCK_NAME, stale_sec=self.lock_ttl_sec):
            if not self.history_path.exists():
                return Err("missing_history", "no strategy history found")
            entries = await read_jsonl(self.history_path)
            if not entries:
                return Err("empty_history", "strategy history is empty")
            prev_state = entries[-1].get("prev_state")
            if not isinstance(prev_state, dict):
                return Err("invalid_history", "latest snapshot has no prev_state")
            await write_json_atomic(self.state_path, prev_state)
        logger.info("policy_state.rolled_back", version=prev_state.get("version"))
        return Ok(prev_state)
