"""
Per-Target Minimum Priority Overrides

Projects may raise or lower the delivery floor for individual chats. Two
shapes are accepted::

    # list form
    notify_overrides:
      - {target: telegram, chat_id: "-100123", min_priority: HIGH}

    # map form
    notify:
      overrides:
        telegram:
          "-100123": HIGH
          "-100456": {min_priority: CRITICAL}

Sources are read in the order ``notify_overrides``, ``notify.overrides``,
``notify.target_overrides``. Later sources replace earlier entries for the
same chat id as a whole. Entries with an unknown target or an unparseable
priority are logged and dropped.
"""

from __future__ import annotations

from typing import Any, Iterator

import structlog

from chatgate.core.domain.config_schema import ProjectEntry
from chatgate.core.domain.notify import NotifyTarget, TargetOverride
from chatgate.core.domain.priority import PriorityOrder

logger = structlog.get_logger(__name__)

TargetOverrides = dict[str, dict[str, TargetOverride]]

_TARGET_KEYS = ("target", "channel", "provider")
_CHAT_KEYS = ("chat_id", "chatId", "chat")
_PRIORITY_KEYS = ("min_priority", "minPriority", "priority")


def _pick(item: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None and str(value).strip() != "":
            return value
    return None


def _drop(source: str, reason: str, **fields: Any) -> None:
    logger.warning("notify.override.dropped", source=source, reason=reason, **fields)


def _entry(
    source: str,
    raw_target: Any,
    raw_chat: Any,
    raw_priority: Any,
    order: PriorityOrder,
) -> tuple[str, str, TargetOverride] | None:
    target = NotifyTarget.parse(raw_target)
    if target is None:
        _drop(source, "invalid_target", target=raw_target, chat_id=raw_chat)
        return None
    chat_id = str(raw_chat).strip() if raw_chat is not None else ""
    if not chat_id:
        _drop(source, "missing_chat_id", target=target.value)
        return None
    level = order.normalize(raw_priority)
    if level is None:
        _drop(source, "invalid_priority", target=target.value, chat_id=chat_id, priority=raw_priority)
        return None
    return target.value, chat_id, TargetOverride(min_priority=level, source=source)


def _parse_list(
    items: list[Any], source: str, order: PriorityOrder, default_target: Any = None
) -> Iterator[tuple[str, str, TargetOverride]]:
    for item in items:
        if not isinstance(item, dict):
            _drop(source, "not_a_mapping", item=repr(item)[:80])
            continue
        entry = _entry(
            source,
            _pick(item, _TARGET_KEYS) or default_target,
            _pick(item, _CHAT_KEYS),
            _pick(item, _PRIORITY_KEYS),
            order,
        )
        if entry is not None:
            yield entry


def _parse_source(
    raw: Any, source: str, order: PriorityOrder
) -> Iterator[tuple[str, str, TargetOverride]]:
    if raw is None:
        return
    if isinstance(raw, list):
        yield from _parse_list(raw, source, order)
        return
    if not isinstance(raw, dict):
        _drop(source, "unsupported_shape", kind=type(raw).__name__)
        return
    for raw_target, chats in raw.items():
        if isinstance(chats, list):
            yield from _parse_list(chats, source, order, default_target=raw_target)
            continue
        if not isinstance(chats, dict):
            _drop(source, "unsupported_shape", target=raw_target, kind=type(chats).__name__)
            continue
        for raw_chat, value in chats.items():
            priority = _pick(value, _PRIORITY_KEYS) if isinstance(value, dict) else value
            entry = _entry(source, raw_target, raw_chat, priority, order)
            if entry is not None:
                yield entry


def resolve_target_overrides(project: ProjectEntry, order: PriorityOrder) -> TargetOverrides:
    """Merge every override source of ``project`` (last write wins per chat)."""
    sources: list[tuple[str, Any]] = [
        ("notify_overrides", project.notify_overrides),
        ("notify.overrides", project.notify.overrides),
        ("notify.target_overrides", project.notify.target_overrides),
    ]
    merged: TargetOverrides = {target.value: {} for target in NotifyTarget}
    for source, raw in sources:
        for target, chat_id, override in _parse_source(raw, source, order):
            merged[target][chat_id] = override
    return merged


def lookup_override(
    overrides: TargetOverrides, target: str, chat_id: str
) -> TargetOverride | None:
    return overrides.get(target, {}).get(chat_id)
