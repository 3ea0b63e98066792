"""
Dashboard Export Handler

Group messages carrying ``panel_id:<id>`` (optionally ``window_spec_id:<id>``)
export that dashboard panel as an image. The window spec falls back to the
project default. Exports are recorded in the task store under the adapter
request id, so a redelivered message does not render twice.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from chatgate.application.handlers.common import audit, authorize
from chatgate.core.domain.capabilities import INTENT_DASHBOARD_EXPORT, OPS_DASHBOARD_EXPORT
from chatgate.core.domain.errors import ChatGateError, error_code
from chatgate.core.domain.routing import IntentPipelineStep, MatchResult, RouteContext, StepResult

if TYPE_CHECKING:
    from chatgate.application.context import GatewayContext

logger = structlog.get_logger(__name__)

STEP_PRIORITY = 10
EXPORT_API_VERSION = "v1"

_PANEL_ID = re.compile(r"\bpanel(?:_id|id)?\s*[:=]\s*([A-Za-z0-9._-]+)\b", re.IGNORECASE)
_WINDOW_SPEC_ID = re.compile(
    r"\b(?:window_spec_id|windowspecid|wsid|window_spec)\s*[:=]\s*([A-Za-z0-9._:-]{6,80})\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class DashboardIntent:
    panel_id: str
    window_spec_id: str | None
    window_spec_id_source: str

    def params(self) -> dict[str, str]:
        params = {"panel_id": self.panel_id}
        if self.window_spec_id:
            params["window_spec_id"] = self.window_spec_id
        return params


def parse_dashboard_intent(text: str, default_window_spec_id: str | None = None) -> DashboardIntent | None:
    """Extract an explicit panel id; None when the text names no panel."""
    raw = (text or "").strip()
    panel = _PANEL_ID.search(raw)
    if not panel:
        return None
    explicit = _WINDOW_SPEC_ID.search(raw)
    if explicit:
        return DashboardIntent(panel.group(1), explicit.group(1), "explicit")
    default = (default_window_spec_id or "").strip() or None
    return DashboardIntent(panel.group(1), default, "default" if default else "missing")


class DashboardHandler:
    def __init__(self, gateway: "GatewayContext") -> None:
        self.gateway = gateway

    def step(self) -> IntentPipelineStep:
        return IntentPipelineStep(
            name=INTENT_DASHBOARD_EXPORT, priority=STEP_PRIORITY, match=self.match, run=self.run
        )

    def match(self, ctx: RouteContext) -> MatchResult:
        if not ctx.is_group or not ctx.raw_text:
            return MatchResult.no()
        if not self.gateway.capabilities.is_intent_enabled(INTENT_DASHBOARD_EXPORT):
            return MatchResult.no()
        intent = parse_dashboard_intent(ctx.raw_text, ctx.window_spec_id)
        if intent is None:
            return MatchResult.no()
        return MatchResult(matched=True, data=intent)

    async def run(self, ctx: RouteContext, intent: DashboardIntent) -> StepResult:
        return StepResult(handled=await self.export(ctx, intent))

    async def export(self, ctx: RouteContext, intent: DashboardIntent) -> bool:
        gateway = self.gateway
        decision = await authorize(gateway, ctx, OPS_DASHBOARD_EXPORT, reject_cmd="dashboard_export_reject")
        if decision is None:
            return True

        if not gateway.capabilities.is_panel_allowed(INTENT_DASHBOARD_EXPORT, intent.panel_id):
            await gateway.reply(ctx.event, f"Panel {intent.panel_id} is not available for export.")
            await audit(gateway, ctx, "dashboard_export_reject", panel_id=intent.panel_id, error_code="panel_not_allowed")
            return True
        if not intent.window_spec_id:
            await gateway.reply(ctx.event, "Missing window_spec_id (e.g. window_spec_id:ws_daily_24h).")
            await audit(gateway, ctx, "dashboard_export_reject", panel_id=intent.panel_id, error_code="missing_window_spec_id")
            return True
        if gateway.renderer is None:
            await gateway.reply(ctx.event, "Dashboard export is not configured.")
            await audit(gateway, ctx, "dashboard_export_reject", panel_id=intent.panel_id, error_code="renderer_unavailable")
            return True

        ids = ctx.request_ids
        task_id = f"dashboard:{ids.dispatch_request_id}" if ids else None
        if ids is not None and ids.expired:
            await gateway.reply(ctx.event, "This request has expired, please send it again.")
            await audit(gateway, ctx, "dashboard_export_reject", panel_id=intent.panel_id, error_code="request_id_expired")
            return True
        if task_id is None:
            await self._render(ctx, intent, None)
            return True
        async with gateway.task_locks.hold(task_id):
            if await gateway.task_store.get(task_id) is not None:
                logger.info("dashboard.duplicate_suppressed", task_id=task_id)
                return True
            await self._render(ctx, intent, task_id)
        return True

    async def _render(self, ctx: RouteContext, intent: DashboardIntent, task_id: str | None) -> None:
        gateway = self.gateway
        record: dict[str, Any] = {
            "ok": True,
            "panel_id": intent.panel_id,
            "window_spec_id": intent.window_spec_id,
            "window_spec_id_source": intent.window_spec_id_source,
            "export_api_version": EXPORT_API_VERSION,
        }
        try:
            image_path = await gateway.renderer.render("dashboard", intent.params())
        except ChatGateError as exc:
            record.update(ok=False, error=error_code(exc))
            await gateway.reply(ctx.event, f"Dashboard export failed ({error_code(exc)}).")
        else:
            record["image_path"] = image_path
            caption = f"{intent.panel_id} · {intent.window_spec_id}"
            await gateway.send_image(ctx.channel, ctx.chat_id, image_path, caption)

        if task_id:
            await gateway.task_store.put(task_id, record)
        await audit(gateway, ctx, "dashboard_export", **record)
