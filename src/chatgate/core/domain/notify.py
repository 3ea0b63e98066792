"""
Notification Models

Request schema for outbound notifications and the value objects produced by
the priority gate. ``DeliveryRecord`` is the per chat audit record returned
to callers and written to the ledger for every gate decision.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class NotifyTarget(str, Enum):
    TELEGRAM = "telegram"
    FEISHU = "feishu"

    @classmethod
    def parse(cls, raw: Any) -> "NotifyTarget | None":
        """Accept canonical names and the short aliases ``tg`` / ``fs``."""
        value = str(raw or "").strip().lower()
        if value in ("telegram", "tg"):
            return cls.TELEGRAM
        if value in ("feishu", "fs"):
            return cls.FEISHU
        return None


class GateSkipReason(str, Enum):
    MISSING_GATE_META = "missing_gate_meta"
    BELOW_MIN_PRIORITY = "below_min_priority"


class NotifyRequest(BaseModel):
    """Inbound notify payload.

    Legacy producers put ``delivery_priority``/``priority`` and the minimum
    priorities at the top level instead of under ``meta``; both are read.
    """

    model_config = ConfigDict(extra="allow")

    target: Optional[str] = Field(None, description="telegram, feishu or both")
    project_id: Optional[str] = None
    chat_id: Optional[Union[str, int]] = None
    chat_ids: Optional[Union[list[Union[str, int]], dict[str, Any]]] = None
    chat_ids_by_target: Optional[dict[str, Any]] = None
    text: str = ""
    image_path: Optional[str] = None
    caption: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    delivery_priority: Optional[str] = None
    priority: Optional[str] = None
    global_min_priority: Optional[str] = None
    channel_min_priority: Optional[str] = None


@dataclass(frozen=True)
class NotifyGateInfo:
    skip_gate: bool
    delivery_priority: str | None = None
    global_min_priority: str | None = None
    channel_min_priority: str | None = None


@dataclass(frozen=True)
class NotifyGateDecision:
    allowed: bool
    effective_min_priority: str | None = None
    skip_reason: GateSkipReason | None = None


@dataclass(frozen=True)
class TargetOverride:
    """Per chat minimum priority with the config source that declared it."""

    min_priority: str
    source: str


@dataclass
class DeliveryRecord:
    """Audit record for one channel x chat id gate decision."""

    target: str
    chat_id: str
    sent: bool
    delivery_priority: str | None = None
    global_min_priority: str | None = None
    channel_min_priority: str | None = None
    target_override_min_priority: str | None = None
    target_override_source: str | None = None
    effective_min_priority: str | None = None
    skip_reason: str | None = None
    gate_bypassed: bool = False
    error: str | None = None
    raw_priorities: dict[str, str | None] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class NotifyResult:
    ok: bool
    error: str | None = None
    project_id: str | None = None
    records: list[DeliveryRecord] = field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return sum(1 for r in self.records if r.sent)

    def to_dict(self) -> dict[str, Any]:
        sent: dict[str, dict[str, Any]] = {}
        for record in self.records:
            sent.setdefault(record.target, {})[record.chat_id] = record.to_dict()
        payload: dict[str, Any] = {"ok": self.ok, "sent": sent}
        if self.error:
            payload["error"] = self.error
        if self.project_id:
            payload["project_id"] = self.project_id
        return payload
