"""
JSON I/O Utilities

Async JSON helpers built on aiofiles. Writes go to a temporary file in the
target directory and are moved into place with ``os.replace`` so readers
never observe a partial document.
"""

from __future__ import annotations

import json
import os
import uuid
from pathlib import Path
from typing import Any

import aiofiles
import structlog

logger = structlog.get_logger(__name__)


async def read_json(path: Path) -> Any | None:
    """Return the parsed document, or None when the file is missing or corrupt."""
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            raw = await f.read()
    except FileNotFoundError:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("json_io.corrupt_file", path=str(path), error=str(exc))
        return None


async def write_json_atomic(path: Path, data: Any) -> None:
    """Serialize ``data`` to ``path`` atomically.

    Raises:
        OSError: If the file cannot be written.
        TypeError: If ``data`` is not JSON serializable.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, indent=2, ensure_ascii=False)
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(payload)
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


async def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    """Append one JSON line to ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
    async with aiofiles.open(path, "a", encoding="utf-8") as f:
        await f.write(line)


async def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Return every parseable object line of ``path`` (missing file: empty)."""
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            raw = await f.read()
    except FileNotFoundError:
        return []
    records: list[dict[str, Any]] = []
    for line in raw.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            records.append(obj)
    return records
