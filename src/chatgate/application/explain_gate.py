"""
Explain Gate

Gate for reply/mention gated capabilities such as "explain this alert".
It never collapses to a boolean: a block carries one of three UX contracts
(see ``BlockKind``).

Group chats consult the policy evaluator: a missing mention is ignored
silently, a missing reply gets a nudge, any other deny gets the rule's deny
message. Private chats only serve the owner and allow-listed chats; anyone
else is consumed without a reply.
"""

from __future__ import annotations

from typing import Mapping

from chatgate.application.access import ChannelAccess, policy_input
from chatgate.application.policy.evaluator import evaluate
from chatgate.core.domain.capabilities import ALERTS_EXPLAIN
from chatgate.core.domain.gate import GateDecision
from chatgate.core.domain.policy import DenyReason, PolicyConfig
from chatgate.core.domain.routing import RouteContext

MISSING_REPLY_MESSAGE = "Reply to the alert you want explained and mention me."
GENERIC_DENY_MESSAGE = "Explanations are not enabled for this chat."


def check_explain_gate(
    ctx: RouteContext,
    policy: PolicyConfig,
    access: ChannelAccess,
    *,
    capability: str = ALERTS_EXPLAIN,
    environ: Mapping[str, str] | None = None,
) -> GateDecision:
    """Decide whether an explain-style request may proceed. Pure."""
    if ctx.is_group:
        decision = evaluate(policy, policy_input(ctx, capability), environ=environ)
        if decision.reason is DenyReason.MISSING_MENTION:
            return GateDecision.ignore()
        if decision.reason is DenyReason.MISSING_REPLY:
            return GateDecision.reply(MISSING_REPLY_MESSAGE)
        if not decision.allowed:
            return GateDecision.reply(decision.deny_message or GENERIC_DENY_MESSAGE)
        return GateDecision.allow()

    if access.is_allowlisted(ctx.chat_id, ctx.user_id):
        return GateDecision.allow()
    return GateDecision.consume()
