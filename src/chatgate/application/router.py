"""
Message Router

Entry point for every normalized inbound message. Routing order:

1. Primary intent pipeline: strategy (30), alert query (20), dashboard
   export (10). The first step that handles the message wins.
2. Private chats remember the replied-to text as the chat's last alert.
3. Natural-language resolution for messages addressed to the bot, when a
   resolver is configured and the message has request ids and a project.
4. Group messages that are neither commands nor explain/summary requests
   stop here, silently.
5. Secondary pipeline: explain, summary, 👍/👎 feedback, general commands
   and ops commands.

A ``ChatGateError`` raised by a handler is answered with a short failure
message and written to the ledger with its error code.
"""

from __future__ import annotations

from typing import Any

import structlog

from chatgate.application.context import GatewayContext
from chatgate.application.handlers import (
    CommandHandler,
    DashboardHandler,
    ExplainHandler,
    FeedbackHandler,
    OpsHandler,
    QueryHandler,
    StrategyHandler,
)
from chatgate.application.handlers.common import audit
from chatgate.application.handlers.dashboard import DashboardIntent
from chatgate.application.handlers.query import QueryCommand, parse_query_command
from chatgate.application.handlers.strategy import StrategyCommand
from chatgate.application.intent_hints import build_route_context, wants_retry
from chatgate.application.intent_pipeline import IntentPipeline
from chatgate.core.domain.capabilities import (
    INTENT_ALERT_LEVEL_QUERY,
    INTENT_ALERT_LEVEL_SET,
    INTENT_ALERT_QUERY,
    INTENT_ALERT_STRATEGY,
    INTENT_DASHBOARD_EXPORT,
    INTENT_EXPLAIN,
    INTENT_NEWS_SUMMARY,
)
from chatgate.core.domain.errors import ChatGateError, error_code
from chatgate.core.domain.routing import MessageEvent, RouteContext
from chatgate.core.interfaces.llm import ResolvedIntent

RESOLVE_MIN_CONFIDENCE = 0.6
FAILURE_MESSAGE = "Something went wrong ({code}). Please try again later."
UNKNOWN_COMMAND_MESSAGE = "Unknown command. Send /help for the list of commands."
FEEDBACK_RECORDED_MESSAGE = "Thanks, feedback recorded."


class MessageRouter:
    """Routes ``MessageEvent``s to capability handlers.

    Implements ``MessageHandlerProtocol`` so channel adapters can hand every
    inbound message to ``handle``.
    """

    def __init__(self, gateway: GatewayContext) -> None:
        self.gateway = gateway
        self.strategy = StrategyHandler(gateway)
        self.query = QueryHandler(gateway)
        self.dashboard = DashboardHandler(gateway)
        self.explain = ExplainHandler(gateway)
        self.primary = IntentPipeline(
            [self.strategy.step(), self.query.step(), self.dashboard.step()]
        )
        self.secondary = IntentPipeline(
            [
                *self.explain.steps(),
                FeedbackHandler(gateway).step(),
                CommandHandler(gateway).step(),
                OpsHandler(gateway).step(),
            ]
        )
        self.logger = structlog.get_logger().bind(component="message_router")

    def context_for(self, event: MessageEvent) -> RouteContext:
        project = self.gateway.default_project()
        request_ids = self.gateway.request_ids.resolve(
            event.channel,
            event.chat_id,
            event.message_id,
            event.reply_to_id,
            explicit_retry=wants_retry(event.text),
        )
        return build_route_context(
            event,
            bot_username=self.gateway.bot_username(event.channel),
            project_id=project.project_id if project else None,
            window_spec_id=project.window_spec_id if project else None,
            request_ids=request_ids,
        )

    async def handle(self, event: MessageEvent) -> bool:
        """Route one message; True when some handler consumed it."""
        if not (event.text or "").strip() and not (event.reply_text or "").strip():
            return False
        ctx = self.context_for(event)
        try:
            return await self.route(ctx)
        except ChatGateError as exc:
            code = error_code(exc)
            self.logger.error(
                "router.handler_failed",
                chat_id=ctx.chat_id,
                error_code=code,
                error=exc.message,
            )
            await self.gateway.reply(event, FAILURE_MESSAGE.format(code=code))
            await audit(self.gateway, ctx, "handler_error", ok=False, error_code=code, error=exc.message)
            return True

    async def route(self, ctx: RouteContext) -> bool:
        if await self.primary.run(ctx):
            return True

        if not ctx.is_group and ctx.reply_text:
            await self.gateway.state.set_last_alert(ctx.chat_id, ctx.reply_text)

        if ctx.allow_resolve and ctx.request_ids is not None and ctx.project_id:
            if await self.resolve(ctx):
                return True

        if ctx.feedback_prefixed and ctx.resolve_text:
            await audit(self.gateway, ctx, "feedback", text=ctx.resolve_text)
            await self.gateway.reply(ctx.event, FEEDBACK_RECORDED_MESSAGE)
            return True

        if ctx.is_group and not ctx.is_command and not (ctx.wants_explain or ctx.wants_summary):
            return False

        if await self.secondary.run(ctx):
            return True

        if ctx.is_command and not ctx.is_group:
            await self.gateway.reply(ctx.event, UNKNOWN_COMMAND_MESSAGE)
            return True
        return False

    async def resolve(self, ctx: RouteContext) -> bool:
        """Map free text to an intent through the configured resolver."""
        resolver = self.gateway.resolver
        if resolver is None:
            return False
        try:
            resolved = await resolver.resolve(
                ctx.resolve_text,
                context={
                    "request_id": ctx.request_ids.dispatch_request_id if ctx.request_ids else None,
                    "channel": ctx.channel,
                    "chat_id": ctx.chat_id,
                    "user_id": ctx.user_id,
                    "project_id": ctx.project_id,
                },
            )
        except ChatGateError as exc:
            self.logger.warning("router.resolve_failed", chat_id=ctx.chat_id, error=exc.message)
            return False
        if resolved is None or resolved.confidence < RESOLVE_MIN_CONFIDENCE:
            return False
        if not self.gateway.capabilities.is_intent_enabled(resolved.intent):
            self.logger.info("router.resolved_intent_disabled", intent=resolved.intent)
            return False

        self.logger.info(
            "router.resolved",
            intent=resolved.intent,
            confidence=resolved.confidence,
            chat_id=ctx.chat_id,
        )
        return await self.dispatch_resolved(ctx, resolved)

    async def dispatch_resolved(self, ctx: RouteContext, resolved: ResolvedIntent) -> bool:
        params: dict[str, Any] = {str(k).lower(): v for k, v in resolved.params.items()}
        intent = resolved.intent
        if intent == INTENT_ALERT_LEVEL_QUERY:
            outcome = await self.strategy.run(ctx, StrategyCommand(action="status"))
        elif intent in (INTENT_ALERT_LEVEL_SET, INTENT_ALERT_STRATEGY):
            action = str(params.pop("action", "set")).lower()
            if action not in ("status", "set", "preview", "rollback"):
                action = "set"
            outcome = await self.strategy.run(ctx, StrategyCommand(action=action, params=params))
        elif intent == INTENT_ALERT_QUERY:
            command = self._query_command(params)
            if command is None:
                return False
            outcome = await self.query.run(ctx, command)
        elif intent == INTENT_DASHBOARD_EXPORT:
            panel_id = str(params.get("panel_id") or "").strip()
            if not panel_id:
                return False
            explicit = str(params.get("window_spec_id") or "").strip() or None
            window_spec_id = explicit or ctx.window_spec_id
            source = "explicit" if explicit else ("default" if window_spec_id else "missing")
            return await self.dashboard.export(ctx, DashboardIntent(panel_id, window_spec_id, source))
        elif intent in (INTENT_EXPLAIN, INTENT_NEWS_SUMMARY):
            outcome = await self.explain.run(ctx, intent)
        else:
            self.logger.debug("router.resolved_intent_unknown", intent=intent)
            return False
        return outcome.handled

    @staticmethod
    def _query_command(params: dict[str, Any]) -> QueryCommand | None:
        kind = str(params.get("kind") or "").strip().lower()
        if not kind:
            return None
        text = " ".join(
            str(part) for part in (f"/{kind}", params.get("date"), params.get("event_id")) if part
        )
        return parse_query_command(text)
