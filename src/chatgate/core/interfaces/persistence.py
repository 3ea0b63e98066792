"""Protocols for durable gateway state."""

from __future__ import annotations

from typing import Any, Protocol


class TaskStoreProtocol(Protocol):
    """Write-once key/value store for task responses."""

    async def get(self, task_id: str) -> dict[str, Any] | None:
        ...

    async def put(self, task_id: str, response: dict[str, Any]) -> dict[str, Any]:
        """Store ``response`` unless a record exists; return the stored record."""
        ...


class LedgerProtocol(Protocol):
    """Append-only audit sink."""

    async def append(self, record: dict[str, Any]) -> None:
        ...
