"""
Policy Evaluator

Decides whether a capability request is allowed under a declarative access
policy. Rules are checked strictly in declaration order and the first rule
whose ``match`` predicate is satisfied decides. Unset match fields are
wildcards; set fields must all match (AND semantics).

Match values may be templates:

- ``${a.b.c}`` resolves against the policy document itself, for example
  ``${principals.owner.telegram_user_id}``.
- ``${ENV:NAME}`` resolves against the process environment.

A template that resolves to nothing makes its field impossible to satisfy,
so the rule never matches.
"""

from __future__ import annotations

import os
import re
from typing import Any, Mapping

import structlog
from pydantic import BaseModel

from chatgate.core.domain.capabilities import ALERTS_EXPLAIN, is_ops_capability
from chatgate.core.domain.policy import (
    DEFAULT_MAX_CHARS,
    DEFAULT_MAX_LINES,
    DEFAULT_RPM,
    DenyReason,
    Limits,
    PolicyConfig,
    PolicyDecision,
    PolicyInput,
    PolicyRule,
)

logger = structlog.get_logger(__name__)

POLICY_DISABLED_MESSAGE = "policy_disabled"
WILDCARD = "*"

_TEMPLATE = re.compile(r"^\$\{\s*([^}]+?)\s*\}$")
_MATCH_FIELDS = ("channel", "chat_id", "chat_type", "user_id", "capability")


def _lookup(node: Any, path: str) -> Any:
    for part in path.split("."):
        if node is None:
            return None
        if isinstance(node, BaseModel):
            if part in type(node).model_fields:
                node = getattr(node, part)
            else:
                node = (node.model_extra or {}).get(part)
        elif isinstance(node, Mapping):
            node = node.get(part)
        else:
            return None
    return node


def resolve_template(
    value: str, policy: PolicyConfig, environ: Mapping[str, str]
) -> str | None:
    """Resolve a match value; None means the value can never match."""
    m = _TEMPLATE.match(value)
    if not m:
        return value
    ref = m.group(1)
    if ref.startswith("ENV:"):
        resolved = environ.get(ref[4:].strip())
    else:
        resolved = _lookup(policy, ref)
    if resolved is None or isinstance(resolved, (dict, list, BaseModel)):
        return None
    text = str(resolved).strip()
    return text or None


def _normalize_chat_type(value: str) -> str:
    return "group" if value == "supergroup" else value


def _field_matches(
    expected: str | list[str],
    actual: str,
    policy: PolicyConfig,
    environ: Mapping[str, str],
    *,
    chat_type: bool = False,
) -> bool:
    candidates = expected if isinstance(expected, list) else [expected]
    for candidate in candidates:
        resolved = resolve_template(candidate, policy, environ)
        if resolved is None:
            continue
        if chat_type:
            if _normalize_chat_type(resolved) == _normalize_chat_type(actual):
                return True
        elif resolved == actual:
            return True
    return False


def rule_matches(
    rule: PolicyRule,
    request: PolicyInput,
    policy: PolicyConfig,
    environ: Mapping[str, str],
) -> bool:
    for name in _MATCH_FIELDS:
        expected = getattr(rule.match, name)
        if expected is None:
            continue
        actual = str(getattr(request, name))
        if not _field_matches(expected, actual, policy, environ, chat_type=name == "chat_type"):
            return False
    return True


def _allows(allow: list[str], capability: str) -> bool:
    return WILDCARD in allow or capability in allow


def effective_limits(policy: PolicyConfig, rule: PolicyRule | None) -> Limits:
    defaults = policy.default
    rpm = defaults.rate_limit.rpm
    max_lines = defaults.output_limits.max_lines
    max_chars = defaults.output_limits.max_chars
    if rule is not None:
        if rule.rate_limit is not None and rule.rate_limit.rpm is not None:
            rpm = rule.rate_limit.rpm
        if rule.output_limits is not None:
            max_lines = rule.output_limits.max_lines or max_lines
            max_chars = rule.output_limits.max_chars or max_chars
    return Limits(
        rpm=DEFAULT_RPM if rpm is None else rpm,
        max_lines=max_lines or DEFAULT_MAX_LINES,
        max_chars=max_chars or DEFAULT_MAX_CHARS,
    )


def _check_preconditions(rule: PolicyRule, request: PolicyInput) -> DenyReason | None:
    require = rule.require
    if request.capability == ALERTS_EXPLAIN:
        if require.mention_bot_for_explain and not request.mentions_bot:
            return DenyReason.MISSING_MENTION
        if require.reply_required_for_explain and not request.has_reply:
            return DenyReason.MISSING_REPLY
    elif is_ops_capability(request.capability):
        if require.mention_bot_for_ops and not request.mentions_bot:
            return DenyReason.MISSING_MENTION
    return None


def evaluate(
    policy: PolicyConfig,
    request: PolicyInput,
    *,
    environ: Mapping[str, str] | None = None,
) -> PolicyDecision:
    """Evaluate ``request`` against ``policy``. Pure; no side effects.

    Args:
        policy: Validated policy document.
        request: Facts about the inbound message and requested capability.
        environ: Environment used for ``${ENV:NAME}`` templates
            (defaults to ``os.environ``).

    Returns:
        PolicyDecision. A failed precondition yields ``allowed=False`` with
        reason ``missing_mention``/``missing_reply`` and no deny message.
    """
    env = os.environ if environ is None else environ

    if not policy.enabled:
        return PolicyDecision(
            allowed=False,
            limits=effective_limits(policy, None),
            deny_message=POLICY_DISABLED_MESSAGE,
            reason=DenyReason.NOT_ALLOWED,
        )

    for rule in policy.rules:
        if not rule_matches(rule, request, policy, env):
            continue
        limits = effective_limits(policy, rule)
        if not _allows(rule.allow, request.capability):
            return PolicyDecision(
                allowed=False,
                limits=limits,
                deny_message=rule.deny_message,
                reason=DenyReason.NOT_ALLOWED,
                rule=rule.name or None,
            )
        failed = _check_preconditions(rule, request)
        if failed is not None:
            return PolicyDecision(
                allowed=False,
                limits=limits,
                reason=failed,
                require=rule.require,
                rule=rule.name or None,
            )
        return PolicyDecision(
            allowed=True, limits=limits, require=rule.require, rule=rule.name or None
        )

    allowed = _allows(policy.default.allow, request.capability)
    return PolicyDecision(
        allowed=allowed,
        limits=effective_limits(policy, None),
        reason=None if allowed else DenyReason.NOT_ALLOWED,
    )


class PolicyEvaluator:
    """Binds a policy (and its trust flag) and logs every decision.

    Example:
        >>> evaluator = PolicyEvaluator(loaded.policy, policy_ok=loaded.policy_ok)
        >>> decision = evaluator.evaluate(PolicyInput(...))
    """

    def __init__(
        self,
        policy: PolicyConfig,
        *,
        policy_ok: bool = True,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.policy = policy
        self.policy_ok = policy_ok
        self._environ = environ
        logger.info(
            "policy.evaluator.initialized",
            enabled=policy.enabled,
            rules=len(policy.rules),
            policy_ok=policy_ok,
        )

    def evaluate(self, request: PolicyInput) -> PolicyDecision:
        decision = evaluate(self.policy, request, environ=self._environ)
        logger.debug(
            "policy.evaluated",
            capability=request.capability,
            channel=request.channel,
            chat_type=request.chat_type,
            allowed=decision.allowed,
            reason=decision.reason.value if decision.reason else None,
            rule=decision.rule,
        )
        return decision
