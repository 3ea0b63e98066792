"""Unit tests for the push policy state store."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from chatgate.core.domain.result import Err, Ok, Result
from chatgate.infrastructure.persistence.locks import LockManager
from chatgate.infrastructure.persistence.policy_state_store import PolicyStateStore


@pytest.fixture
def store(tmp_path: Path) -> PolicyStateStore:
    return PolicyStateStore(tmp_path / "state", LockManager(tmp_path / "locks"))


def bump(state: dict[str, Any]) -> Result[dict[str, Any]]:
    state["version"] = int(state.get("version", 1)) + 1
    state.setdefault("gates", {})["min_priority"] = "HIGH"
    return Ok(state)


@pytest.mark.asyncio
async def test_read_without_file_returns_empty_state(store: PolicyStateStore):
    state = await store.read()

    assert state["version"] == 1
    assert state["gates"] == {}
    assert state["history_events"] == []


@pytest.mark.asyncio
async def test_update_writes_state_and_history(store: PolicyStateStore):
    outcome = await store.update(bump)

    assert isinstance(outcome, Ok)
    assert outcome.value["version"] == 2
    saved = json.loads(store.state_path.read_text(encoding="utf-8"))
    assert saved["gates"]["min_priority"] == "HIGH"

    lines = store.history_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    snapshot = json.loads(lines[0])
    assert snapshot["prev_state"]["version"] == 1
    assert snapshot["next_state"]["version"] == 2


@pytest.mark.asyncio
async def test_mutator_error_aborts_without_writing(store: PolicyStateStore):
    outcome = await store.update(lambda state: Err("invalid_params", "bad value"))

    assert isinstance(outcome, Err)
    assert outcome.kind == "invalid_params"
    assert not store.state_path.exists()
    assert not store.history_path.exists()


@pytest.mark.asyncio
async def test_mutator_works_on_a_copy(store: PolicyStateStore):
    await store.update(bump)
    seen: list[dict[str, Any]] = []

    def capture(state: dict[str, Any]) -> Result[dict[str, Any]]:
        seen.append(state)
        state["gates"]["min_priority"] = "LOW"
        return Err("abort")

    await store.update(capture)

    assert (await store.read())["gates"]["min_priority"] == "HIGH"


@pytest.mark.asyncio
async def test_rollback_restores_previous_state(store: PolicyStateStore):
    await store.update(bump)
    await store.update(bump)

    outcome = await store.rollback()

    assert isinstance(outcome, Ok)
    assert outcome.value["version"] == 2
    assert (await store.read())["version"] == 2


@pytest.mark.asyncio
async def test_rollback_without_history(store: PolicyStateStore):
    outcome = await store.rollback()

    assert isinstance(outcome, Err)
    assert outcome.kind == "missing_history"


@pytest.mark.asyncio
async def test_rollback_with_empty_history(store: PolicyStateStore):
    store.state_dir.mkdir(parents=True)
    store.history_path.write_text("\n", encoding="utf-8")

    outcome = await store.rollback()

    assert isinstance(outcome, Err)
    assert outcome.kind == "empty_history"
