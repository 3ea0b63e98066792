"""
Notification Priority Gate

Decides whether an outbound alert clears the layered minimum priority for a
target chat. Fails closed: a request without an explicit delivery priority
(and without ``skip_gate``) is never sent.

    effective_min = max(global_min, channel_min, per_chat_override)
    allowed       = rank(delivery_priority) >= rank(effective_min)
"""

from __future__ import annotations

from typing import Any

from chatgate.core.domain.notify import (
    GateSkipReason,
    NotifyGateDecision,
    NotifyGateInfo,
    NotifyRequest,
)
from chatgate.core.domain.priority import PriorityOrder

_TRUTHY = {"1", "true", "yes", "on"}


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value or "").strip().lower() in _TRUTHY


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and str(value).strip() != "":
            return value
    return None


def raw_priority_inputs(request: NotifyRequest) -> dict[str, str | None]:
    """Priority values as the producer sent them, before normalization."""
    meta = request.meta or {}
    raw = {
        "delivery_priority": _first(
            meta.get("delivery_priority"), request.delivery_priority, request.priority
        ),
        "global_min_priority": _first(
            meta.get("global_min_priority"), request.global_min_priority
        ),
        "channel_min_priority": _first(
            meta.get("channel_min_priority"), request.channel_min_priority
        ),
    }
    return {key: None if value is None else str(value) for key, value in raw.items()}


def extract_gate_info(request: NotifyRequest, order: PriorityOrder) -> NotifyGateInfo | None:
    """Read gate metadata from ``meta`` with legacy top-level fallbacks.

    Returns None when there is no recognizable delivery priority and
    ``skip_gate`` is not set.
    """
    raw = raw_priority_inputs(request)
    skip_gate = _truthy((request.meta or {}).get("skip_gate"))
    delivery = order.normalize(raw["delivery_priority"])
    if delivery is None:
        return NotifyGateInfo(skip_gate=True) if skip_gate else None

    global_min = order.normalize(raw["global_min_priority"]) or order.lowest
    channel_min = order.normalize(raw["channel_min_priority"]) or global_min
    return NotifyGateInfo(
        skip_gate=skip_gate,
        delivery_priority=delivery,
        global_min_priority=global_min,
        channel_min_priority=channel_min,
    )


def decide_gate(
    gate: NotifyGateInfo | None,
    override_min_priority: str | None,
    order: PriorityOrder,
) -> NotifyGateDecision:
    """Apply the gate for one target chat. Pure."""
    if gate is None:
        return NotifyGateDecision(allowed=False, skip_reason=GateSkipReason.MISSING_GATE_META)
    if gate.skip_gate:
        return NotifyGateDecision(allowed=True)

    effective_min = order.max_priority(
        gate.global_min_priority, gate.channel_min_priority, override_min_priority
    )
    allowed = order.rank(gate.delivery_priority) >= order.rank(effective_min)
    return NotifyGateDecision(
        allowed=allowed,
        effective_min_priority=effective_min,
        skip_reason=None if allowed else GateSkipReason.BELOW_MIN_PRIORITY,
    )
