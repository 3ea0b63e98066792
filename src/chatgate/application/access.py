"""
Access Control

Combines the policy evaluator with the independent allow-list check. When
the policy failed to load (``policy_ok=False``) evaluator decisions are not
trusted and every capability falls back to the allow-list.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Literal

from chatgate.application.policy.evaluator import PolicyEvaluator
from chatgate.core.domain.policy import DenyReason, Limits, PolicyDecision, PolicyInput
from chatgate.core.domain.routing import RouteContext

AllowlistMode = Literal["owner_only", "auth"]


@dataclass(frozen=True)
class ChannelAccess:
    """Owner identities and allow-list of one channel."""

    channel: str
    owner_chat_id: str = ""
    owner_user_id: str = ""
    allowlist_mode: AllowlistMode = "owner_only"
    allowed_chat_ids: frozenset[str] = frozenset()

    def is_owner(self, chat_id: str, user_id: str) -> bool:
        return bool(
            (self.owner_chat_id and chat_id == self.owner_chat_id)
            or (self.owner_user_id and user_id == self.owner_user_id)
        )

    def is_allowlisted(self, chat_id: str, user_id: str) -> bool:
        if self.is_owner(chat_id, user_id):
            return True
        return self.allowlist_mode == "auth" and chat_id in self.allowed_chat_ids


def policy_input(ctx: RouteContext, capability: str) -> PolicyInput:
    return PolicyInput(
        channel=ctx.channel,
        chat_id=ctx.chat_id,
        chat_type="group" if ctx.is_group else ctx.chat_type,
        user_id=ctx.user_id,
        capability=capability,
        mentions_bot=ctx.mentions_bot,
        has_reply=ctx.has_reply,
    )


class AccessControl:
    def __init__(
        self,
        evaluator: PolicyEvaluator,
        access_for: Callable[[str], ChannelAccess],
    ) -> None:
        self.evaluator = evaluator
        self._access_for = access_for

    @property
    def policy_ok(self) -> bool:
        return self.evaluator.policy_ok

    def channel_access(self, channel: str) -> ChannelAccess:
        return self._access_for(channel)

    def is_allowlisted(self, ctx: RouteContext) -> bool:
        return self._access_for(ctx.channel).is_allowlisted(ctx.chat_id, ctx.user_id)

    def is_owner(self, ctx: RouteContext) -> bool:
        return self._access_for(ctx.channel).is_owner(ctx.chat_id, ctx.user_id)

    def authorize(self, ctx: RouteContext, capability: str) -> PolicyDecision:
        """Evaluator decision when the policy is trusted, else the allow-list."""
        if self.policy_ok:
            return self.evaluator.evaluate(policy_input(ctx, capability))
        if self.is_allowlisted(ctx):
            return PolicyDecision(allowed=True, limits=Limits())
        return PolicyDecision(allowed=False, limits=Limits(), reason=DenyReason.NOT_ALLOWED)
