"""
Alert Query Handler

Read-only lookups into the alerting pipeline's daily JSONL outputs::

    /event [YYYY-MM-DD] [evt_id]         event_envelope_<date>.jsonl
    /evidence [YYYY-MM-DD] [evt_id]      evidence_pack_<date>.jsonl
    /gate [YYYY-MM-DD] [evt_id]          gate_decision_<date>.jsonl
    /eval|/evaluation [date] [evt_id]    evaluation_result_<date>.jsonl
    /reliability [date]                  reliability_<date>.jsonl
    /config                              schema versions in config_dir
    /health                              resolved directories

Without an event id the last record of the day is returned.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles
import yaml

from chatgate.application.handlers.common import audit, authorize
from chatgate.core.domain.capabilities import ALERTS_QUERY, INTENT_ALERT_QUERY
from chatgate.core.domain.config_schema import QuerySettings
from chatgate.core.domain.routing import IntentPipelineStep, MatchResult, RouteContext, StepResult
from chatgate.infrastructure.persistence.json_io import read_jsonl

if TYPE_CHECKING:
    from chatgate.application.context import GatewayContext

STEP_PRIORITY = 20
NOT_FOUND_MESSAGE = "No matching record (check the event id or date)."

_COMMAND = re.compile(
    r"^/(event|evidence|gate|eval|evaluation|reliability|config|health)(?:@[A-Za-z0-9_]+)?\b(.*)$",
    re.IGNORECASE | re.DOTALL,
)
_DATE = re.compile(r"\b(?:date[:=]\s*)?(\d{4}-\d{2}-\d{2})\b", re.IGNORECASE)
_EVENT_ID = re.compile(r"evt_[A-Za-z0-9_-]+", re.IGNORECASE)

# kind -> (settings dir attribute, file prefix, event id lookup supported)
_DAILY_FILES: dict[str, tuple[str, str, bool]] = {
    "event": ("event_dir", "event_envelope", True),
    "evidence": ("event_dir", "evidence_pack", True),
    "gate": ("event_dir", "gate_decision", True),
    "evaluation": ("metrics_dir", "evaluation_result", True),
    "reliability": ("metrics_dir", "reliability", False),
}

CONFIG_DOCUMENTS = (
    "event_envelope_schema",
    "evidence_pack_schema",
    "gate_decision_schema",
    "evaluation_result_schema",
    "reliability_policy",
    "explanation_schema",
    "explanation_templates",
)


@dataclass(frozen=True)
class QueryCommand:
    kind: str
    date: str
    event_id: str | None = None


def _today_utc() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def parse_query_command(text: str) -> QueryCommand | None:
    m = _COMMAND.match((text or "").strip())
    if not m:
        return None
    kind = m.group(1).lower()
    if kind == "eval":
        kind = "evaluation"
    arg = m.group(2).strip()
    date_match = _DATE.search(arg)
    id_match = _EVENT_ID.search(arg)
    return QueryCommand(
        kind=kind,
        date=date_match.group(1) if date_match else _today_utc(),
        event_id=id_match.group(0) if id_match else None,
    )


def format_payload(payload: Any, limit: int) -> str:
    raw = json.dumps(payload, indent=2, ensure_ascii=False, default=str)
    if len(raw) <= limit:
        return raw
    return raw[: max(0, limit - 20)] + "\n...(clipped)"


async def _yaml_version(path: Path) -> str:
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(await f.read())
    except (OSError, yaml.YAMLError):
        return "missing"
    version = str(doc.get("version") or "").strip() if isinstance(doc, dict) else ""
    return version or "missing"


class QueryHandler:
    def __init__(self, gateway: "GatewayContext") -> None:
        self.gateway = gateway

    @property
    def settings(self) -> QuerySettings:
        return self.gateway.settings.query

    def step(self) -> IntentPipelineStep:
        return IntentPipelineStep(
            name=INTENT_ALERT_QUERY, priority=STEP_PRIORITY, match=self.match, run=self.run
        )

    def match(self, ctx: RouteContext) -> MatchResult:
        if not self.gateway.capabilities.is_intent_enabled(INTENT_ALERT_QUERY):
            return MatchResult.no()
        command = parse_query_command(ctx.clean_text)
        if command is None:
            return MatchResult.no()
        return MatchResult(matched=True, data=command)

    async def run(self, ctx: RouteContext, command: QueryCommand) -> StepResult:
        decision = await authorize(self.gateway, ctx, ALERTS_QUERY, reject_cmd="alert_query_reject")
        if decision is None:
            return StepResult(handled=True)

        cmd = f"alert_query_{command.kind}"
        payload, error_code = await self.lookup(command)
        if error_code is not None:
            await self.gateway.reply(ctx.event, f"{error_code.removeprefix('missing_')} is not configured.")
            await audit(self.gateway, ctx, cmd, ok=False, error_code=error_code)
            return StepResult(handled=True)

        limit = min(self.settings.max_chars, decision.limits.max_chars)
        text = format_payload(payload, limit) if payload else NOT_FOUND_MESSAGE
        await self.gateway.reply(ctx.event, text, decision.limits)
        await audit(self.gateway, ctx, cmd, ok=bool(payload), date=command.date, event_id=command.event_id)
        return StepResult(handled=True)

    def _dir(self, attribute: str) -> Path | None:
        value = getattr(self.settings, attribute)
        if not value:
            return None
        path = Path(value)
        return path if path.is_dir() else None

    async def lookup(self, command: QueryCommand) -> tuple[Any, str | None]:
        """Return ``(payload, None)`` or ``(None, error_code)``."""
        if command.kind == "health":
            return {
                "event_dir": self.settings.event_dir,
                "metrics_dir": self.settings.metrics_dir,
                "config_dir": self.settings.config_dir,
                "date_utc": command.date,
            }, None

        if command.kind == "config":
            config_dir = self._dir("config_dir")
            if config_dir is None:
                return None, "missing_config_dir"
            return {
                name: await _yaml_version(config_dir / f"{name}.yaml") for name in CONFIG_DOCUMENTS
            }, None

        attribute, prefix, by_id = _DAILY_FILES[command.kind]
        directory = self._dir(attribute)
        if directory is None:
            return None, f"missing_{attribute}"
        records = await read_jsonl(directory / f"{prefix}_{command.date}.jsonl")
        if by_id and command.event_id:
            return next((r for r in records if r.get("event_id") == command.event_id), None), None
        return (records[-1] if records else None), None
