"""Inbound routing models: message events, route context and pipeline steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

GROUP_CHAT_TYPES = frozenset({"group", "supergroup"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MessageEvent:
    """Normalized inbound chat message produced by a channel adapter."""

    channel: str
    chat_id: str
    chat_type: str
    user_id: str
    text: str
    message_id: str | None = None
    reply_to_id: str | None = None
    reply_text: str | None = None
    mentions_bot: bool = False
    username: str | None = None
    received_at: datetime = field(default_factory=_utc_now)

    @property
    def is_group(self) -> bool:
        return self.chat_type in GROUP_CHAT_TYPES

    @property
    def has_reply(self) -> bool:
        return bool(self.reply_to_id or self.reply_text)


@dataclass(frozen=True)
class AdapterRequestIds:
    """Deterministic request ids for one inbound message.

    ``dispatch_request_id`` is ``request_id_base`` plus the attempt number.
    It only changes when the user explicitly asks for a retry.
    """

    request_id_base: str
    dispatch_request_id: str
    attempt: int
    expired: bool = False
    reused: bool = False


@dataclass(frozen=True)
class RouteContext:
    """Per message routing facts derived once before the pipeline runs."""

    event: MessageEvent
    raw_text: str
    clean_text: str
    is_group: bool
    mentions_bot: bool
    has_reply: bool
    resolve_text: str = ""
    wants_explain: bool = False
    wants_summary: bool = False
    feedback_prefixed: bool = False
    allow_resolve: bool = False
    explicit_retry: bool = False
    project_id: str | None = None
    window_spec_id: str | None = None
    request_ids: AdapterRequestIds | None = None

    @property
    def channel(self) -> str:
        return self.event.channel

    @property
    def chat_id(self) -> str:
        return self.event.chat_id

    @property
    def user_id(self) -> str:
        return self.event.user_id

    @property
    def chat_type(self) -> str:
        return self.event.chat_type

    @property
    def reply_text(self) -> str:
        return (self.event.reply_text or "").strip()

    @property
    def is_command(self) -> bool:
        return self.clean_text.startswith("/")

    def audit_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "channel": self.channel,
            "chat_id": self.chat_id,
            "user_id": self.user_id,
            "chat_type": self.chat_type,
            "project_id": self.project_id,
        }
        if self.request_ids is not None:
            fields["request_id"] = self.request_ids.dispatch_request_id
            fields["attempt"] = self.request_ids.attempt
        return fields


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    data: Any = None

    @classmethod
    def no(cls) -> "MatchResult":
        return cls(matched=False)


@dataclass(frozen=True)
class StepResult:
    handled: bool


@dataclass(frozen=True)
class IntentPipelineStep:
    """One pipeline entry. ``match`` is pure; ``run`` performs side effects."""

    name: str
    priority: int
    match: Callable[[RouteContext], MatchResult]
    run: Callable[[RouteContext, Any], Awaitable[StepResult]]
