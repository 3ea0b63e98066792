"""General slash commands: help, identity, allow-list admin and model tasks."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from chatgate.application.handlers.common import audit, authorize
from chatgate.core.domain.capabilities import ALERTS_EXPLAIN
from chatgate.core.domain.result import Err
from chatgate.core.domain.routing import IntentPipelineStep, MatchResult, RouteContext, StepResult

if TYPE_CHECKING:
    from chatgate.application.context import GatewayContext

logger = structlog.get_logger(__name__)

HELP_TEXT = "\n".join(
    [
        "/help",
        "/whoami",
        "/status  /ps  /logs [name] [lines]",
        "/chart factor_timeline|daily_activity",
        "/strategy [preview|set|rollback] key=value",
        "/event /evidence /gate /eval /reliability [YYYY-MM-DD] [evt_id]",
        "/ask <question>",
        "/analyze <incident description>",
        "/suggest <incident description>",
        "/auth add|del <chat_id>, /auth list",
        "/feedback <text>",
        "Reply to an alert with \"explain\" or \"summary\".",
    ]
)
PERMISSION_DENIED_MESSAGE = "Permission denied."
TASK_FAILED_MESSAGE = "Task failed: {error}"

_COMMAND = re.compile(
    r"^/(help|start|whoami|auth|ask|analyze|suggest)(?:@[A-Za-z0-9_]+)?(?=\s|$)(.*)$",
    re.IGNORECASE | re.DOTALL,
)
TASK_STAGES = {"ask": "analyze", "analyze": "analyze", "suggest": "suggest"}


@dataclass(frozen=True)
class SlashCommand:
    name: str
    arg: str = ""


def parse_slash_command(text: str) -> SlashCommand | None:
    m = _COMMAND.match((text or "").strip())
    if not m:
        return None
    name = m.group(1).lower()
    return SlashCommand(name="help" if name == "start" else name, arg=m.group(2).strip())


class CommandHandler:
    def __init__(self, gateway: "GatewayContext") -> None:
        self.gateway = gateway

    def step(self) -> IntentPipelineStep:
        return IntentPipelineStep(name="commands", priority=0, match=self.match, run=self.run)

    def match(self, ctx: RouteContext) -> MatchResult:
        command = parse_slash_command(ctx.clean_text)
        if command is None:
            return MatchResult.no()
        return MatchResult(matched=True, data=command)

    async def run(self, ctx: RouteContext, command: SlashCommand) -> StepResult:
        if command.name == "whoami":
            await self.gateway.reply(
                ctx.event,
                f"chatId={ctx.chat_id}\nuserId={ctx.user_id}\nisGroup={str(ctx.is_group).lower()}",
            )
        elif command.name == "help":
            await self.gateway.reply(ctx.event, HELP_TEXT)
        elif command.name == "auth":
            await self.auth(ctx, command.arg)
            return StepResult(handled=True)
        else:
            await self.task(ctx, command)
            return StepResult(handled=True)
        await audit(self.gateway, ctx, command.name)
        return StepResult(handled=True)

    async def auth(self, ctx: RouteContext, arg: str) -> None:
        """``/auth add|del <chat_id>`` and ``/auth list``; owner in private chat only."""
        gateway = self.gateway
        if ctx.is_group or not gateway.access.is_owner(ctx):
            await gateway.reply(ctx.event, PERMISSION_DENIED_MESSAGE)
            await audit(gateway, ctx, "auth_reject")
            return

        parts = arg.split()
        action = parts[0].lower() if parts else ""
        owner_chat_id = gateway.settings.channel(ctx.channel).owner_chat_id
        if action == "list":
            state = gateway.allowlists.state(ctx.channel)
            allowed = list(state.allowed) if state else []
            await gateway.reply(ctx.event, "Allowed chats:\n" + ("\n".join(allowed) or "(none)"))
        elif action in ("add", "del") and len(parts) > 1:
            target = parts[1]
            if action == "add":
                state = await gateway.allowlists.add(ctx.channel, owner_chat_id, target)
            else:
                state = await gateway.allowlists.remove(ctx.channel, owner_chat_id, target)
            await gateway.reply(ctx.event, f"OK. {len(state.allowed)} chat(s) allowed.")
        else:
            await gateway.reply(ctx.event, "Usage: /auth add <chat_id> | /auth del <chat_id> | /auth list")
            return
        await audit(gateway, ctx, f"auth_{action}", target=parts[1] if len(parts) > 1 else None)

    async def task(self, ctx: RouteContext, command: SlashCommand) -> None:
        """``/ask``, ``/analyze`` and ``/suggest`` submit an idempotent model task."""
        gateway = self.gateway
        if not command.arg:
            await gateway.reply(ctx.event, f"Usage: /{command.name} <text>")
            return
        decision = await authorize(gateway, ctx, ALERTS_EXPLAIN, reject_cmd=f"{command.name}_reject")
        if decision is None:
            return
        if gateway.dispatcher is None:
            await gateway.reply(ctx.event, TASK_FAILED_MESSAGE.format(error="llm_unavailable"))
            return

        ids = ctx.request_ids
        if ids is not None:
            task_id = f"{command.name}:{ids.dispatch_request_id}"
        else:
            digest = hashlib.sha1(f"{ctx.chat_id}\n{command.arg}".encode("utf-8")).hexdigest()[:16]
            task_id = f"{command.name}:{ctx.channel}:{digest}"

        outcome = await gateway.dispatcher.submit(
            task_id,
            stage=TASK_STAGES[command.name],
            prompt=command.arg,
            context={"source": ctx.channel, "chat_id": ctx.chat_id},
        )
        if isinstance(outcome, Err):
            await gateway.reply(ctx.event, TASK_FAILED_MESSAGE.format(error=outcome.kind))
            await audit(gateway, ctx, command.name, ok=False, error_code=outcome.kind, task_id=task_id)
            return
        result = outcome.value
        if result.ok:
            await gateway.reply(ctx.event, str(result.response.get("summary") or ""), decision.limits)
        else:
            await gateway.reply(ctx.event, TASK_FAILED_MESSAGE.format(error=result.response.get("error")))
        await audit(gateway, ctx, command.name, ok=result.ok, cached=result.cached, task_id=task_id)
