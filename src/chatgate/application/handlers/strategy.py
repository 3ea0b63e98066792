"""
Alert Strategy Handler

``/strategy`` edits the live push policy state read by the alerting
pipeline::

    /strategy                              show the current gates
    /strategy preview min_priority=HIGH    report the changes, write nothing
    /strategy set max_alerts_per_hour=10   apply (``set`` is the default)
    /strategy {"min_priority": "CRITICAL"} JSON payloads work too
    /strategy rollback                     restore the previous snapshot

Every applied change bumps ``version`` and appends a history snapshot.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from chatgate.application.handlers.common import audit, authorize
from chatgate.core.domain.capabilities import ALERTS_STRATEGY, INTENT_ALERT_STRATEGY
from chatgate.core.domain.priority import PriorityOrder
from chatgate.core.domain.result import Err, Ok, Result
from chatgate.core.domain.routing import IntentPipelineStep, MatchResult, RouteContext, StepResult

if TYPE_CHECKING:
    from chatgate.application.context import GatewayContext

STEP_PRIORITY = 30

_COMMAND = re.compile(r"^(?:/strategy|策略|告警策略|alert_strategy)(?:@[A-Za-z0-9_]+)?(?=\s|$)", re.IGNORECASE)
_GROUP_COMMAND = re.compile(r"^/strategy(?:@[A-Za-z0-9_]+)?(?=\s|$)", re.IGNORECASE)
_ACTION = re.compile(r"^(set|apply|preview|rollback)\b", re.IGNORECASE)
_PAIR = re.compile(r"^([A-Za-z0-9_.-]+)=(.+)$")

_MIN_PRIORITY_KEYS = ("min_priority", "minpriority")
_MAX_ALERTS_KEYS = ("max_alerts_per_hour", "max_alerts_per_h")
_TARGET_KEYS = ("alerts_per_hour_target", "alerts_target")
_PUSH_LEVEL_KEYS = ("push_level", "pushlevel")
_SYNC_KEYS = ("sync_gates", "apply_derived", "sync")


@dataclass(frozen=True)
class StrategyCommand:
    action: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StrategyChange:
    next_state: dict[str, Any]
    changes: dict[str, tuple[Any, Any]]


def _json_payload(text: str) -> dict[str, Any] | None:
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _pairs(text: str) -> dict[str, str]:
    params: dict[str, str] = {}
    for part in text.split():
        m = _PAIR.match(part)
        if m:
            params[m.group(1).strip().lower()] = m.group(2)
    return params


def parse_strategy_command(text: str) -> StrategyCommand | None:
    """Parse ``text``; None when it is not a strategy command.

    A bare command maps to the ``status`` action.
    """
    raw = (text or "").strip()
    m = _COMMAND.match(raw)
    if not m:
        return None
    rest = raw[m.end():].strip()
    if not rest:
        return StrategyCommand(action="status")
    action_match = _ACTION.match(rest)
    action = action_match.group(1).lower() if action_match else "set"
    if action == "apply":
        action = "set"
    payload_text = rest[action_match.end():].strip() if action_match else rest
    payload = _json_payload(payload_text)
    params = {str(k).lower(): v for k, v in payload.items()} if payload is not None else _pairs(payload_text)
    return StrategyCommand(action=action, params=params)


def _pick(params: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in params and params[key] is not None:
            return params[key]
    return None


def _non_negative_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if number < 0 or not number.is_integer():
        return None
    return int(number)


def _truthy(value: Any) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def gates_from_push_level(push_level: float) -> dict[str, Any]:
    if push_level >= 80:
        return {"min_priority": "LOW", "max_alerts_per_hour": None}
    if push_level >= 60:
        return {"min_priority": "MEDIUM", "max_alerts_per_hour": 20}
    if push_level >= 40:
        return {"min_priority": "HIGH", "max_alerts_per_hour": 10}
    return {"min_priority": "CRITICAL", "max_alerts_per_hour": 5}


def apply_strategy_params(
    state: dict[str, Any], params: dict[str, Any], order: PriorityOrder
) -> Result[StrategyChange]:
    """Validate ``params`` and return the next state with a change list. Pure."""
    gates = dict(state.get("gates") or {})
    targets = dict(state.get("targets") or {})
    control = dict(state.get("control") or {})
    changes: dict[str, tuple[Any, Any]] = {}

    raw_min = _pick(params, _MIN_PRIORITY_KEYS)
    if raw_min is not None:
        level = order.normalize(raw_min)
        if level is None:
            return Err("invalid_min_priority", f"min_priority must be one of {', '.join(order.levels)}")
        changes["min_priority"] = (gates.get("min_priority"), level)
        gates["min_priority"] = level

    raw_max = _pick(params, _MAX_ALERTS_KEYS)
    if raw_max is not None:
        value = _non_negative_int(raw_max)
        if value is None:
            return Err("invalid_max_alerts_per_hour", "max_alerts_per_hour must be a non-negative integer")
        changes["max_alerts_per_hour"] = (gates.get("max_alerts_per_hour"), value)
        gates["max_alerts_per_hour"] = value

    raw_target = _pick(params, _TARGET_KEYS)
    if raw_target is not None:
        value = _non_negative_int(raw_target)
        if value is None:
            return Err("invalid_alerts_target", "alerts_per_hour_target must be a non-negative integer")
        changes["alerts_per_hour_target"] = (targets.get("alerts_per_hour_target"), value)
        targets["alerts_per_hour_target"] = value

    raw_push = _pick(params, _PUSH_LEVEL_KEYS)
    if raw_push is not None:
        try:
            push_level = float(str(raw_push).strip())
        except ValueError:
            push_level = -1.0
        if not 0 <= push_level <= 100:
            return Err("invalid_push_level", "push_level must be a number between 0 and 100")
        changes["push_level"] = (control.get("push_level"), push_level)
        control["push_level"] = push_level
        if _truthy(_pick(params, _SYNC_KEYS)):
            derived = gates_from_push_level(push_level)
            if raw_min is not None and gates["min_priority"] != derived["min_priority"]:
                return Err("conflict_min_priority_push_level", "min_priority conflicts with push_level")
            if raw_max is not None and gates["max_alerts_per_hour"] != derived["max_alerts_per_hour"]:
                return Err("conflict_max_alerts_per_hour", "max_alerts_per_hour conflicts with push_level")
            for key, value in derived.items():
                if gates.get(key) != value:
                    changes[key] = (gates.get(key), value)
                    gates[key] = value

    if not changes:
        return Err("no_changes", "no recognized strategy keys")

    now = datetime.now(timezone.utc).isoformat()
    next_state = dict(state)
    next_state.update(gates=gates, targets=targets, control=control, updated_at_utc=now)
    try:
        next_state["version"] = int(state.get("version") or 0) + 1
    except (TypeError, ValueError):
        next_state["version"] = 1
    events = list(state.get("history_events") or [])
    events.append({"ts_utc": now, "kind": "strategy_set", "changes": {k: list(v) for k, v in changes.items()}})
    next_state["history_events"] = events
    next_state["history"] = {
        **(state.get("history") or {}),
        "last_updated_by": "strategy",
        "last_updated_at_utc": now,
    }
    return Ok(StrategyChange(next_state=next_state, changes=changes))


def format_changes(changes: dict[str, tuple[Any, Any]]) -> str:
    if not changes:
        return "No changes."
    return "\n".join(f"- {key}: {prev} → {nxt}" for key, (prev, nxt) in changes.items())


def format_status(state: dict[str, Any]) -> str:
    gates = state.get("gates") or {}
    targets = state.get("targets") or {}
    control = state.get("control") or {}
    return "\n".join(
        [
            f"Strategy v{state.get('version', 1)} (updated {state.get('updated_at_utc', '-')})",
            f"- min_priority: {gates.get('min_priority', '-')}",
            f"- max_alerts_per_hour: {gates.get('max_alerts_per_hour', '-')}",
            f"- alerts_per_hour_target: {targets.get('alerts_per_hour_target', '-')}",
            f"- push_level: {control.get('push_level', '-')}",
        ]
    )


class StrategyHandler:
    def __init__(self, gateway: "GatewayContext") -> None:
        self.gateway = gateway

    def step(self) -> IntentPipelineStep:
        return IntentPipelineStep(
            name=INTENT_ALERT_STRATEGY, priority=STEP_PRIORITY, match=self.match, run=self.run
        )

    def match(self, ctx: RouteContext) -> MatchResult:
        if not self.gateway.capabilities.is_intent_enabled(INTENT_ALERT_STRATEGY):
            return MatchResult.no()
        if ctx.is_group and not _GROUP_COMMAND.match(ctx.clean_text):
            return MatchResult.no()
        command = parse_strategy_command(ctx.clean_text)
        if command is None:
            return MatchResult.no()
        return MatchResult(matched=True, data=command)

    async def run(self, ctx: RouteContext, command: StrategyCommand) -> StepResult:
        decision = await authorize(self.gateway, ctx, ALERTS_STRATEGY, reject_cmd="alert_strategy_reject")
        if decision is None:
            return StepResult(handled=True)

        store = self.gateway.policy_state
        order = self.gateway.order
        changes: dict[str, tuple[Any, Any]] = {}
        if command.action == "status":
            outcome: Result[Any] = Ok(await store.read())
            message = format_status(outcome.value)
        elif command.action == "rollback":
            outcome = await store.rollback()
            message = "Rolled back to the previous strategy."
        elif command.action == "preview":
            outcome = apply_strategy_params(await store.read(), command.params, order)
            if isinstance(outcome, Ok):
                changes = outcome.value.changes
            message = "Preview (not written):\n" + format_changes(changes)
        else:
            captured: dict[str, StrategyChange] = {}

            def mutate(state: dict[str, Any]) -> Result[dict[str, Any]]:
                result = apply_strategy_params(state, command.params, order)
                if isinstance(result, Err):
                    return result
                captured["change"] = result.value
                return Ok(result.value.next_state)

            outcome = await store.update(mutate)
            if "change" in captured:
                changes = captured["change"].changes
            message = "Strategy updated:\n" + format_changes(changes)

        if isinstance(outcome, Err):
            message = f"Strategy {command.action} failed: {outcome.detail or outcome.kind}"
        await self.gateway.reply(ctx.event, message, decision.limits)
        await audit(
            self.gateway,
            ctx,
            "alert_strategy",
            action=command.action,
            ok=outcome.ok,
            error_code=None if outcome.ok else outcome.kind,
            changes={k: list(v) for k, v in changes.items()} or None,
        )
        return StepResult(handled=True)
