"""Tests for per-chat minimum priority overrides."""

from chatgate.application.notify_overrides import lookup_override, resolve_target_overrides
from chatgate.core.domain.config_schema import ProjectEntry
from chatgate.core.domain.notify import TargetOverride
from chatgate.core.domain.priority import PriorityOrder

ORDER = PriorityOrder.default()


def _project(**kwargs) -> ProjectEntry:
    return ProjectEntry.model_validate({"project_id": "alpha", **kwargs})


def test_map_form():
    project = _project(notify={"overrides": {"telegram": {"-100": "high", "-200": {"min_priority": "critical"}}}})
    overrides = resolve_target_overrides(project, ORDER)
    assert overrides["telegram"]["-100"] == TargetOverride("HIGH", "notify.overrides")
    assert overrides["telegram"]["-200"].min_priority == "CRITICAL"
    assert overrides["feishu"] == {}


def test_list_form_with_aliases():
    project = _project(
        notify_overrides=[
            {"target": "tg", "chat_id": -100, "min_priority": "MEDIUM"},
            {"channel": "fs", "chatId": "oc_1", "minPriority": "LOW"},
        ]
    )
    overrides = resolve_target_overrides(project, ORDER)
    assert lookup_override(overrides, "telegram", "-100").source == "notify_overrides"
    assert lookup_override(overrides, "feishu", "oc_1").min_priority == "LOW"


def test_later_sources_replace_earlier_entries():
    project = _project(
        notify_overrides=[{"target": "telegram", "chat_id": "-100", "min_priority": "LOW"}],
        notify={
            "overrides": {"telegram": {"-100": "HIGH"}},
            "target_overrides": {"telegram": [{"chat_id": "-100", "priority": "CRITICAL"}]},
        },
    )
    override = lookup_override(resolve_target_overrides(project, ORDER), "telegram", "-100")
    assert override == TargetOverride("CRITICAL", "notify.target_overrides")


def test_malformed_entries_are_dropped():
    project = _project(
        notify_overrides=[
            "not a mapping",
            {"target": "slack", "chat_id": "1", "min_priority": "HIGH"},
            {"target": "telegram", "min_priority": "HIGH"},
            {"target": "telegram", "chat_id": "2", "min_priority": "urgent"},
            {"target": "telegram", "chat_id": "3", "min_priority": "HIGH"},
        ],
        notify={"overrides": "HIGH"},
    )
    overrides = resolve_target_overrides(project, ORDER)
    assert list(overrides["telegram"]) == ["3"]


def test_lookup_missing():
    overrides = resolve_target_overrides(_project(), ORDER)
    assert lookup_override(overrides, "telegram", "-1") is None
    assert lookup_override(overrides, "email", "-1") is None
