"""Unit tests for the file lock and durable lock primitives."""

from __future__ import annotations

import asyncio
import json
import os
import time
from pathlib import Path

import pytest

from chatgate.core.domain.config_schema import LockSettings
from chatgate.core.domain.errors import LockTimeoutError
from chatgate.infrastructure.persistence.locks import AsyncMutex, FileLock, LockManager


@pytest.mark.asyncio
async def test_file_lock_creates_and_removes_lock_file(tmp_path: Path):
    path = tmp_path / "locks" / "state.lock"
    lock = FileLock(path)

    async with lock:
        assert lock.held
        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["pid"] == os.getpid()
        assert payload["token"]

    assert not lock.held
    assert not path.exists()


@pytest.mark.asyncio
async def test_file_lock_times_out_while_held(tmp_path: Path):
    path = tmp_path / "state.lock"
    holder = FileLock(path)
    await holder.acquire()

    waiter = FileLock(path, timeout_sec=0.1, poll_interval_sec=0.01)
    with pytest.raises(LockTimeoutError) as exc_info:
        await waiter.acquire()

    assert exc_info.value.code == "lock_timeout"
    assert path.exists()
    holder.release()


@pytest.mark.asyncio
async def test_file_lock_steals_stale_lock(tmp_path: Path):
    path = tmp_path / "state.lock"
    path.write_text(json.dumps({"pid": 1, "token": "old"}), encoding="utf-8")
    old = time.time() - 120
    os.utime(path, (old, old))

    lock = FileLock(path, stale_sec=30, timeout_sec=0.5)
    await lock.acquire()

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["token"] != "old"
    lock.release()
    assert not path.exists()
    assert list(tmp_path.glob("*.stale")) == []


@pytest.mark.asyncio
async def test_file_lock_steals_unreadable_lock_after_grace(tmp_path: Path):
    path = tmp_path / "state.lock"
    path.write_text("{not json", encoding="utf-8")
    old = time.time() - 5
    os.utime(path, (old, old))

    lock = FileLock(path, stale_sec=30, timeout_sec=0.5)
    await lock.acquire()

    assert lock.held
    lock.release()


@pytest.mark.asyncio
async def test_late_steal_restores_fresh_lock(tmp_path: Path):
    # Two waiters saw the same stale file; the first already replaced it.
    path = tmp_path / "state.lock"
    winner = FileLock(path)
    await winner.acquire()
    token = json.loads(path.read_text(encoding="utf-8"))["token"]

    FileLock(path)._steal()

    assert json.loads(path.read_text(encoding="utf-8"))["token"] == token
    assert list(tmp_path.glob("*.stale")) == []
    winner.release()
    assert not path.exists()


@pytest.mark.asyncio
async def test_release_keeps_file_owned_by_someone_else(tmp_path: Path):
    path = tmp_path / "state.lock"
    lock = FileLock(path)
    await lock.acquire()
    path.write_text(json.dumps({"pid": 1, "token": "thief"}), encoding="utf-8")

    lock.release()

    assert path.exists()
    assert not lock.held


@pytest.mark.asyncio
async def test_durable_lock_serializes_coroutines(tmp_path: Path):
    manager = LockManager(tmp_path, LockSettings(timeout_sec=2.0, poll_interval_sec=0.01))
    order: list[str] = []

    async def worker(name: str) -> None:
        async with manager.durable("shared"):
            order.append(f"{name}:start")
            await asyncio.sleep(0.02)
            order.append(f"{name}:end")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a:start", "a:end", "b:start", "b:end"]
    assert not (tmp_path / "shared.lock").exists()


@pytest.mark.asyncio
async def test_durable_lock_releases_mutex_when_file_lock_times_out(tmp_path: Path):
    manager = LockManager(tmp_path, LockSettings(timeout_sec=0.05, poll_interval_sec=0.01))
    (tmp_path / "busy.lock").write_text(json.dumps({"token": "other"}), encoding="utf-8")

    with pytest.raises(LockTimeoutError):
        async with manager.durable("busy"):
            pass

    assert not manager.mutex("busy").locked()


def test_lock_manager_reuses_mutex_per_name(tmp_path: Path):
    manager = LockManager(tmp_path)

    assert manager.mutex("a") is manager.mutex("a")
    assert manager.mutex("a") is not manager.mutex("b")
    assert isinstance(manager.mutex("a"), AsyncMutex)


def test_durable_lock_uses_custom_stale_ttl(tmp_path: Path):
    manager = LockManager(tmp_path)

    lock = manager.durable("strategy", stale_sec=600)

    assert lock.file_lock.stale_sec == 600
    assert lock.file_lock.path == tmp_path / "strategy.lock"
