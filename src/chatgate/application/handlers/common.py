"""Shared authorization and audit helpers for capability handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from chatgate.core.domain.policy import DenyReason, PolicyDecision
from chatgate.core.domain.routing import RouteContext

if TYPE_CHECKING:
    from chatgate.application.context import GatewayContext

logger = structlog.get_logger(__name__)

NOT_AUTHORIZED_MESSAGE = "Not authorized."


async def audit(gateway: "GatewayContext", ctx: RouteContext, cmd: str, **fields: Any) -> None:
    await gateway.audit({**ctx.audit_fields(), "cmd": cmd, **fields})


async def authorize(
    gateway: "GatewayContext",
    ctx: RouteContext,
    capability: str,
    *,
    reject_cmd: str,
) -> PolicyDecision | None:
    """Return the allowing decision, or reply/audit the deny and return None.

    A group message that fails a mention precondition is dropped silently.
    """
    decision = gateway.access.authorize(ctx, capability)
    if decision.allowed:
        return decision

    logger.info(
        "handler.denied",
        capability=capability,
        chat_id=ctx.chat_id,
        reason=decision.reason.value if decision.reason else None,
        rule=decision.rule,
    )
    silent = ctx.is_group and decision.reason is DenyReason.MISSING_MENTION
    if not silent:
        await gateway.reply(ctx.event, decision.deny_message or NOT_AUTHORIZED_MESSAGE)
    await audit(
        gateway,
        ctx,
        reject_cmd,
        capability=capability,
        reason=decision.reason.value if decision.reason else None,
        rule=decision.rule,
        policy_ok=gateway.access.policy_ok,
    )
    return None
