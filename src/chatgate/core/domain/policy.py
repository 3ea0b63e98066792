"""
Access Policy Models

Pydantic schema for the declarative access policy document plus the frozen
value objects passed to and returned from the policy evaluator.

The document is validated once at load time (see
``chatgate.infrastructure.config.loader``) and is immutable afterwards.
Rule order is significant: the evaluator walks ``rules`` in declaration
order and the first rule whose ``match`` is satisfied decides.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

MatchValue = Union[str, list[str]]

DEFAULT_RPM = 30
DEFAULT_MAX_LINES = 60
DEFAULT_MAX_CHARS = 6000


def _stringify(value: Any) -> Any:
    """Chat and user ids arrive as YAML ints; the evaluator compares strings."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    return value


class RateLimitSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    rpm: Optional[int] = Field(None, ge=0, description="Requests per minute")


class OutputLimitsSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_lines: Optional[int] = Field(None, ge=1)
    max_chars: Optional[int] = Field(None, ge=1)


class RuleRequire(BaseModel):
    """Preconditions applied after a rule allows a capability."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mention_bot_for_explain: bool = False
    reply_required_for_explain: bool = False
    mention_bot_for_ops: bool = False


class RuleMatch(BaseModel):
    """Match predicate. Unset fields are wildcards; list values match any."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    channel: Optional[MatchValue] = None
    chat_id: Optional[MatchValue] = None
    chat_type: Optional[MatchValue] = None
    user_id: Optional[MatchValue] = None
    capability: Optional[MatchValue] = None

    @field_validator("channel", "chat_id", "chat_type", "user_id", "capability", mode="before")
    @classmethod
    def stringify_ids(cls, value: Any) -> Any:
        return _stringify(value)


class PolicyRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = ""
    match: RuleMatch = Field(default_factory=RuleMatch)
    allow: list[str] = Field(default_factory=list)
    require: RuleRequire = Field(default_factory=RuleRequire)
    rate_limit: Optional[RateLimitSchema] = None
    output_limits: Optional[OutputLimitsSchema] = None
    deny_message: Optional[str] = None


class PolicyDefaults(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    allow: list[str] = Field(default_factory=list)
    rate_limit: RateLimitSchema = Field(
        default_factory=lambda: RateLimitSchema(rpm=DEFAULT_RPM)
    )
    output_limits: OutputLimitsSchema = Field(
        default_factory=lambda: OutputLimitsSchema(
            max_lines=DEFAULT_MAX_LINES, max_chars=DEFAULT_MAX_CHARS
        )
    )


class Principals(BaseModel):
    """Owner identities and allow-list settings.

    Keys are free-form (``telegram_user_id``, ``feishu_chat_id``...) because
    rules reference them through ``${principals.owner.<key>}`` templates.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    owner: dict[str, Any] = Field(default_factory=dict)
    allowlist: dict[str, Any] = Field(default_factory=dict)


class PolicyConfig(BaseModel):
    """Validated access policy document."""

    model_config = ConfigDict(extra="allow", frozen=True)

    version: Union[int, str] = 1
    enabled: bool = True
    principals: Principals = Field(default_factory=Principals)
    capabilities: list[str] = Field(default_factory=list)
    default: PolicyDefaults = Field(default_factory=PolicyDefaults)
    rules: list[PolicyRule] = Field(default_factory=list)


class DenyReason(str, Enum):
    NOT_ALLOWED = "not_allowed"
    MISSING_MENTION = "missing_mention"
    MISSING_REPLY = "missing_reply"


@dataclass(frozen=True)
class PolicyInput:
    """Facts about one inbound message checked against the policy."""

    channel: str
    chat_id: str
    chat_type: str
    user_id: str
    capability: str
    mentions_bot: bool = False
    has_reply: bool = False


@dataclass(frozen=True)
class Limits:
    rpm: int = DEFAULT_RPM
    max_lines: int = DEFAULT_MAX_LINES
    max_chars: int = DEFAULT_MAX_CHARS


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of evaluating one capability request."""

    allowed: bool
    limits: Limits = Limits()
    deny_message: str | None = None
    reason: DenyReason | None = None
    require: RuleRequire | None = None
    rule: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "deny_message": self.deny_message,
            "reason": self.reason.value if self.reason else None,
            "rule": self.rule,
            "limits": {
                "rpm": self.limits.rpm,
                "max_lines": self.limits.max_lines,
                "max_chars": self.limits.max_chars,
            },
        }
