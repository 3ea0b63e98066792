"""
Audit Ledger

Append-only JSON-lines sink, one file per UTC month
(``{storage_dir}/ledger_YYYY-MM.jsonl``). Every record is stamped with
``ts_utc`` and the capability registry audit meta. Redaction and retention
belong to an external collaborator; an optional ``redactor`` hook is applied
before the write.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import structlog

from chatgate.infrastructure.persistence.json_io import append_jsonl
from chatgate.infrastructure.persistence.locks import AsyncMutex

Redactor = Callable[[dict[str, Any]], dict[str, Any]]
MetaProvider = Callable[[], dict[str, Any]]


class FileLedger:
    """LedgerProtocol implementation writing monthly JSONL files.

    Lines are appended in ``O_APPEND`` mode under an in-process mutex, so
    concurrent writers never interleave partial lines.
    """

    def __init__(
        self,
        storage_dir: str | Path,
        *,
        meta_provider: MetaProvider | None = None,
        redactor: Redactor | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.storage_dir = Path(storage_dir)
        self._meta_provider = meta_provider
        self._redactor = redactor
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._mutex = AsyncMutex("ledger")
        self.logger = structlog.get_logger().bind(component="ledger")

    def path_for(self, when: datetime) -> Path:
        return self.storage_dir / f"ledger_{when:%Y-%m}.jsonl"

    async def append(self, record: dict[str, Any]) -> None:
        now = self._now()
        entry: dict[str, Any] = {"ts_utc": now.isoformat()}
        if self._meta_provider is not None:
            entry.update({k: v for k, v in self._meta_provider().items() if v is not None})
        entry.update(record)
        if self._redactor is not None:
            entry = self._redactor(entry)
        try:
            async with self._mutex:
                await append_jsonl(self.path_for(now), entry)
        except OSError as exc:
            self.logger.error("ledger.append_failed", error=str(exc), cmd=record.get("cmd"))
