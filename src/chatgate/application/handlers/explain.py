"""
Explain / Summary Handler

Answers "explain" and "summary" requests about an alert. The alert text is
the replied-to message, or in private chats the last alert seen there. The
request passes the explain gate, then runs as an idempotent task keyed by
the adapter request id, so a redelivered message returns the cached answer
instead of calling the model again. A bare 👍 or 👎 afterwards rates the
last explanation.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

import structlog

from chatgate.application.explain_gate import check_explain_gate
from chatgate.application.handlers.common import audit
from chatgate.application.task_dispatcher import TaskResult
from chatgate.core.domain.capabilities import INTENT_EXPLAIN, INTENT_NEWS_SUMMARY
from chatgate.core.domain.gate import BlockKind
from chatgate.core.domain.result import Err
from chatgate.core.domain.routing import IntentPipelineStep, MatchResult, RouteContext, StepResult

if TYPE_CHECKING:
    from chatgate.application.context import GatewayContext

logger = structlog.get_logger(__name__)

STEP_PRIORITY = 10
MAX_ALERT_CHARS = 4000

MISSING_ALERT_GROUP = "Reply to an alert and mention me to get an explanation."
MISSING_ALERT_PRIVATE = "Reply to an alert first, then ask again (e.g. \"explain\")."
EXPIRED_MESSAGE = "This request has expired, please ask again."
UNAVAILABLE_MESSAGE = "Explanations are temporarily unavailable."
FAILED_MESSAGE = "Could not produce an explanation this time. Reply \"retry\" to try again."

EXPLAIN_PROMPT = (
    "Explain the following alert for an operator. Facts only, no predictions.\n\n"
    "ALERT:\n{alert}"
)
SUMMARY_PROMPT = "Summarize the following alert or news item in a few sentences.\n\nTEXT:\n{alert}"


class ExplainHandler:
    def __init__(self, gateway: "GatewayContext") -> None:
        self.gateway = gateway

    def steps(self) -> list[IntentPipelineStep]:
        return [
            IntentPipelineStep(
                name=INTENT_EXPLAIN,
                priority=STEP_PRIORITY,
                match=self.match_explain,
                run=self.run,
            ),
            IntentPipelineStep(
                name=INTENT_NEWS_SUMMARY,
                priority=0,
                match=self.match_summary,
                run=self.run,
            ),
        ]

    def match_explain(self, ctx: RouteContext) -> MatchResult:
        enabled = self.gateway.capabilities.is_intent_enabled(INTENT_EXPLAIN)
        return MatchResult(matched=ctx.wants_explain and enabled, data=INTENT_EXPLAIN)

    def match_summary(self, ctx: RouteContext) -> MatchResult:
        enabled = self.gateway.capabilities.is_intent_enabled(INTENT_NEWS_SUMMARY)
        return MatchResult(matched=ctx.wants_summary and enabled, data=INTENT_NEWS_SUMMARY)

    async def run(self, ctx: RouteContext, intent: str) -> StepResult:
        gateway = self.gateway
        gate = check_explain_gate(
            ctx, gateway.evaluator.policy, gateway.channel_access(ctx.channel)
        )
        if not gate.allowed:
            await audit(gateway, ctx, f"{intent}_reject", block=gate.block.value)
            if gate.block is BlockKind.IGNORE:
                return StepResult(handled=False)
            if gate.block is BlockKind.REPLY:
                await gateway.reply(ctx.event, gate.message or "")
            return StepResult(handled=True)

        alert = ctx.reply_text
        if not alert and not ctx.is_group:
            alert = gateway.state.last_alert(ctx.chat_id)
        if not alert:
            await gateway.reply(ctx.event, MISSING_ALERT_GROUP if ctx.is_group else MISSING_ALERT_PRIVATE)
            return StepResult(handled=True)

        ids = ctx.request_ids
        if ids is not None and ids.expired:
            await gateway.reply(ctx.event, EXPIRED_MESSAGE)
            await audit(gateway, ctx, f"{intent}_reject", error_code="request_id_expired")
            return StepResult(handled=True)

        if gateway.dispatcher is None:
            await gateway.reply(ctx.event, UNAVAILABLE_MESSAGE)
            await audit(gateway, ctx, f"{intent}_reject", error_code="llm_unavailable")
            return StepResult(handled=True)

        if ids is not None:
            task_id = f"{intent}:{ids.dispatch_request_id}"
        else:
            digest = hashlib.sha1(f"{ctx.chat_id}\n{alert}".encode("utf-8")).hexdigest()[:16]
            task_id = f"{intent}:{ctx.channel}:{digest}"

        template = EXPLAIN_PROMPT if intent == INTENT_EXPLAIN else SUMMARY_PROMPT
        outcome = await gateway.dispatcher.submit(
            task_id,
            stage="analyze",
            prompt=template.format(alert=alert[:MAX_ALERT_CHARS]),
            context={"channel": ctx.channel, "chat_type": ctx.chat_type, "intent": intent},
        )
        if isinstance(outcome, Err):
            logger.warning("explain.submit_rejected", task_id=task_id, error=str(outcome))
            await gateway.reply(ctx.event, FAILED_MESSAGE)
            await audit(gateway, ctx, intent, ok=False, error_code=outcome.kind, task_id=task_id)
            return StepResult(handled=True)

        result: TaskResult = outcome.value
        if result.ok:
            await gateway.reply(ctx.event, str(result.response.get("summary") or ""))
            gateway.state.set_last_explain_trace(ctx.chat_id, task_id)
        else:
            await gateway.reply(ctx.event, FAILED_MESSAGE)
        await audit(
            gateway,
            ctx,
            intent,
            ok=result.ok,
            cached=result.cached,
            task_id=task_id,
            error_code=None if result.ok else result.response.get("error"),
        )
        return StepResult(handled=True)


FEEDBACK_VOTES = {"👍": "up", "👎": "down"}
MISSING_FEEDBACK_MESSAGE = "Nothing to rate yet. Ask for an explanation first."
FEEDBACK_RECORDED_MESSAGE = "Thanks, feedback recorded."


class FeedbackHandler:
    """👍 / 👎 rate the last explanation sent to the chat."""

    def __init__(self, gateway: "GatewayContext") -> None:
        self.gateway = gateway

    def step(self) -> IntentPipelineStep:
        return IntentPipelineStep(name="explain_feedback", priority=5, match=self.match, run=self.run)

    def match(self, ctx: RouteContext) -> MatchResult:
        vote = FEEDBACK_VOTES.get(ctx.clean_text)
        return MatchResult(matched=vote is not None, data=vote)

    async def run(self, ctx: RouteContext, vote: str) -> StepResult:
        trace_id = self.gateway.state.last_explain_trace(ctx.chat_id)
        if trace_id is None:
            await self.gateway.reply(ctx.event, MISSING_FEEDBACK_MESSAGE)
            return StepResult(handled=True)
        await audit(self.gateway, ctx, "explain_feedback", trace_id=trace_id, vote=vote)
        await self.gateway.reply(ctx.event, FEEDBACK_RECORDED_MESSAGE)
        return StepResult(handled=True)
