"""Unit tests for the monthly JSONL audit ledger."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from chatgate.infrastructure.audit.ledger import FileLedger

FIXED = datetime(2024, 5, 17, 8, 30, tzinfo=timezone.utc)


def read_lines(path: Path) -> list[dict[str, Any]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_path_is_per_month(tmp_path: Path):
    ledger = FileLedger(tmp_path)

    assert ledger.path_for(FIXED).name == "ledger_2024-05.jsonl"


@pytest.mark.asyncio
async def test_append_stamps_time_and_meta(tmp_path: Path):
    ledger = FileLedger(
        tmp_path,
        meta_provider=lambda: {"capabilities_version": "7", "capabilities_hash": None},
        now=lambda: FIXED,
    )

    await ledger.append({"cmd": "explain", "ok": True})

    [record] = read_lines(tmp_path / "ledger_2024-05.jsonl")
    assert record == {
        "ts_utc": FIXED.isoformat(),
        "capabilities_version": "7",
        "cmd": "explain",
        "ok": True,
    }


@pytest.mark.asyncio
async def test_record_fields_win_over_meta(tmp_path: Path):
    ledger = FileLedger(tmp_path, meta_provider=lambda: {"source": "meta"}, now=lambda: FIXED)

    await ledger.append({"source": "record"})

    assert read_lines(ledger.path_for(FIXED))[0]["source"] == "record"


@pytest.mark.asyncio
async def test_redactor_runs_before_write(tmp_path: Path):
    def redact(entry: dict[str, Any]) -> dict[str, Any]:
        return {k: ("***" if k == "text" else v) for k, v in entry.items()}

    ledger = FileLedger(tmp_path, redactor=redact, now=lambda: FIXED)

    await ledger.append({"cmd": "feedback", "text": "secret"})

    assert read_lines(ledger.path_for(FIXED))[0]["text"] == "***"


@pytest.mark.asyncio
async def test_concurrent_appends_keep_whole_lines(tmp_path: Path):
    ledger = FileLedger(tmp_path, now=lambda: FIXED)

    await asyncio.gather(*(ledger.append({"cmd": "notify", "n": i}) for i in range(20)))

    records = read_lines(ledger.path_for(FIXED))
    assert sorted(r["n"] for r in records) == list(range(20))


@pytest.mark.asyncio
async def test_write_failure_is_logged_not_raised(tmp_path: Path):
    blocker = tmp_path / "data"
    blocker.write_text("not a directory", encoding="utf-8")
    ledger = FileLedger(blocker, now=lambda: FIXED)

    await ledger.append({"cmd": "explain"})

    assert blocker.is_file()
