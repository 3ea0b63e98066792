"""Capability tokens and the intent toggle snapshot.

Token strings are the join key against policy rules and must not change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

ALERTS_EXPLAIN = "alerts.explain"
ALERTS_STRATEGY = "alerts.strategy"
ALERTS_QUERY = "alerts.query"
OPS_STATUS = "ops.status"
OPS_PS = "ops.ps"
OPS_LOGS = "ops.logs"
OPS_CHART_FACTOR_TIMELINE = "ops.chart.factor_timeline"
OPS_CHART_DAILY_ACTIVITY = "ops.chart.daily_activity"
OPS_DASHBOARD_EXPORT = "ops.dashboard.export"

ALL_CAPABILITIES: tuple[str, ...] = (
    ALERTS_EXPLAIN,
    ALERTS_STRATEGY,
    ALERTS_QUERY,
    OPS_STATUS,
    OPS_PS,
    OPS_LOGS,
    OPS_CHART_FACTOR_TIMELINE,
    OPS_CHART_DAILY_ACTIVITY,
    OPS_DASHBOARD_EXPORT,
)

OPS_PREFIX = "ops."

# Intent names used as keys in the toggle registry.
INTENT_ALERT_STRATEGY = "alert_strategy"
INTENT_ALERT_QUERY = "alert_query"
INTENT_DASHBOARD_EXPORT = "dashboard_export"
INTENT_ALERT_LEVEL_QUERY = "alert_level_query"
INTENT_ALERT_LEVEL_SET = "alert_level_set"
INTENT_EXPLAIN = "explain"
INTENT_NEWS_SUMMARY = "news_summary"


def is_ops_capability(capability: str) -> bool:
    return capability.startswith(OPS_PREFIX)


@dataclass(frozen=True)
class IntentToggle:
    enabled: bool = True
    panel_id_allowlist: tuple[str, ...] = ()


@dataclass(frozen=True)
class CapabilitySnapshot:
    """Immutable view of the toggle registry at one content hash."""

    version: str = ""
    retry_policy_version: str = ""
    content_hash: str = ""
    intents: Mapping[str, IntentToggle] = field(default_factory=dict)

    def is_intent_enabled(self, name: str) -> bool:
        toggle = self.intents.get(name)
        return True if toggle is None else toggle.enabled

    def is_panel_allowed(self, intent: str, panel_id: str) -> bool:
        toggle = self.intents.get(intent)
        if toggle is None or not toggle.panel_id_allowlist:
            return True
        return panel_id in toggle.panel_id_allowlist

    def audit_meta(self) -> dict[str, Any]:
        return {
            "capabilities_version": self.version or None,
            "capabilities_hash": self.content_hash or None,
            "retry_policy_version": self.retry_policy_version or None,
        }
