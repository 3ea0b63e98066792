"""
Configuration Schema Validation

Pydantic models for the gateway settings file, the project registry and the
capability toggle registry. Documents are validated once at load time and
are immutable afterwards; read sites never coerce values themselves.
"""

from __future__ import annotations

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatgate.core.domain.errors import PriorityError
from chatgate.core.domain.priority import DEFAULT_PRIORITY_LEVELS, PriorityOrder

DEFAULT_MODULE_LIMITS: dict[str, int] = {
    "telegram": 4,
    "feishu": 4,
    "notify": 3,
    "charts": 1,
}


def _str_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (str, int)):
        return [str(value)]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return value


# ---------------------------------------------------------------------------
# Capability toggle registry
# ---------------------------------------------------------------------------


class IntentToggleSchema(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    enabled: bool = True
    panel_id_allowlist: list[str] = Field(default_factory=list)

    @field_validator("panel_id_allowlist", mode="before")
    @classmethod
    def coerce_panels(cls, value: Any) -> Any:
        return _str_list(value)


class CapabilityToggleDocument(BaseModel):
    """Schema for the hot-reloaded capability toggle registry."""

    model_config = ConfigDict(extra="allow", frozen=True)

    version: Union[str, int] = ""
    retry_policy_version: Union[str, int] = ""
    intents: dict[str, IntentToggleSchema] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Project registry
# ---------------------------------------------------------------------------


class ProjectNotifyConfig(BaseModel):
    """Default notify targets of a project.

    ``overrides`` and ``target_overrides`` keep their raw shape; they are
    parsed by ``resolve_target_overrides`` which drops malformed entries.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    telegram_chat_ids: list[str] = Field(default_factory=list)
    feishu_chat_ids: list[str] = Field(default_factory=list)
    overrides: Any = None
    target_overrides: Any = None

    @field_validator("telegram_chat_ids", "feishu_chat_ids", mode="before")
    @classmethod
    def coerce_ids(cls, value: Any) -> Any:
        return _str_list(value)


class ProjectEntry(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    project_id: str = Field(..., min_length=1)
    name: str = ""
    notify: ProjectNotifyConfig = Field(default_factory=ProjectNotifyConfig)
    notify_overrides: Any = None
    on_demand: dict[str, Any] = Field(default_factory=dict)
    resources: dict[str, Any] = Field(default_factory=dict)

    @property
    def window_spec_id(self) -> str | None:
        value = self.on_demand.get("window_spec_id")
        return str(value) if value else None

    def resource_names(self, key: str) -> list[str]:
        """Process names allowed for an ops resource (``pm2_ps``, ``pm2_logs``)."""
        resource = self.resources.get(key) or {}
        names = resource.get("names") if isinstance(resource, dict) else None
        return [str(n) for n in names or [] if n]


# ---------------------------------------------------------------------------
# Gateway settings
# ---------------------------------------------------------------------------


class ChannelSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = True
    bot_token: Optional[str] = None
    bot_username: str = ""
    owner_chat_id: str = ""
    owner_user_id: str = ""
    allowlist_mode: Literal["owner_only", "auth"] = "owner_only"
    poll_timeout_sec: int = Field(30, ge=1, le=120)

    @field_validator("owner_chat_id", "owner_user_id", mode="before")
    @classmethod
    def coerce_ids(cls, value: Any) -> Any:
        return "" if value is None else str(value)


class ExecSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_global: int = Field(8, ge=1)
    modules: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_MODULE_LIMITS))
    default_module_limit: int = Field(2, ge=1)
    timeouts_sec: dict[str, float] = Field(default_factory=dict)
    default_timeout_sec: float = Field(60.0, gt=0)
    log_interval_sec: float = Field(60.0, gt=0)
    warn_queue: int = Field(10, ge=1)
    warn_wait_ms: int = Field(2000, ge=1)

    @field_validator("modules")
    @classmethod
    def validate_modules(cls, value: dict[str, int]) -> dict[str, int]:
        for name, limit in value.items():
            if limit < 1:
                raise ValueError(f"exec limit for module '{name}' must be >= 1")
        return value


class RateLimitSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    per_user_rpm: int = Field(20, ge=1)
    global_rpm: int = Field(120, ge=1)


class StateCacheSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    last_alert_ttl_sec: int = Field(24 * 60 * 60, ge=1)
    last_alert_max_items: int = Field(500, ge=1)
    last_alert_max_chars: int = Field(8000, ge=1)
    persist_last_alerts: bool = False
    last_explain_ttl_sec: int = Field(6 * 60 * 60, ge=1)
    last_explain_max_items: int = Field(500, ge=1)


class LockSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    stale_sec: float = Field(30.0, gt=0)
    timeout_sec: float = Field(5.0, gt=0)
    poll_interval_sec: float = Field(0.03, gt=0)
    strategy_ttl_sec: float = Field(600.0, ge=30)


class NotifySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = "127.0.0.1"
    port: int = Field(8787, ge=1, le=65535)
    token: Optional[str] = None
    allow_external: bool = False
    registry_check_interval_sec: float = Field(1.0, ge=0)


class QuerySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    event_dir: Optional[str] = None
    metrics_dir: Optional[str] = None
    config_dir: Optional[str] = None
    max_chars: int = Field(6000, ge=200)


class OpsSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    status_command: list[str] = Field(default_factory=lambda: ["pm2", "jlist"])
    ps_command: list[str] = Field(default_factory=lambda: ["pm2", "jlist"])
    logs_dir: Optional[str] = None
    log_tail_lines: int = Field(40, ge=1, le=500)


class RendererSettings(BaseModel):
    """Argv templates for chart and dashboard rendering subprocesses.

    Templates may reference ``{kind}``, ``{panel_id}``, ``{window_spec_id}``
    and ``{output}``; the command must write a PNG to ``{output}``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    chart_command: list[str] = Field(default_factory=list)
    dashboard_command: list[str] = Field(default_factory=list)
    output_dir: Optional[str] = None
    timeout_sec: float = Field(120.0, gt=0)


class LLMSettings(BaseModel):
    """Model used for explain, summary and ``/ask`` tasks. No model disables them."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    model: Optional[str] = None
    temperature: float = Field(0.2, ge=0, le=2)
    max_tokens: int = Field(800, ge=1)
    timeout_sec: float = Field(60.0, gt=0)
    max_attempts: int = Field(3, ge=1, le=10)
    backoff_multiplier: float = Field(2.0, ge=1)


class OnDemandSettings(BaseModel):
    """Remote natural-language intent resolver. No url disables resolution."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: Optional[str] = None
    token: Optional[str] = None
    timeout_sec: float = Field(8.0, gt=0)


class GatewaySettings(BaseModel):
    """Schema for ``gateway.yaml`` after environment overrides are applied."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    storage_dir: str = "./data"
    policy_path: str = "config/policy.yaml"
    projects_path: str = "config/projects.d"
    capabilities_path: Optional[str] = "config/capabilities.yaml"
    capabilities_refresh_sec: int = Field(30, ge=1)
    priority_levels: list[str] = Field(default_factory=lambda: list(DEFAULT_PRIORITY_LEVELS))
    default_project_id: Optional[str] = None
    dedupe_window_sec: int = Field(60, ge=1)
    log_level: str = "INFO"
    channels: dict[str, ChannelSettings] = Field(default_factory=dict)
    exec: ExecSettings = Field(default_factory=ExecSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    state: StateCacheSettings = Field(default_factory=StateCacheSettings)
    locks: LockSettings = Field(default_factory=LockSettings)
    notify: NotifySettings = Field(default_factory=NotifySettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    ops: OpsSettings = Field(default_factory=OpsSettings)
    renderer: RendererSettings = Field(default_factory=RendererSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    on_demand: OnDemandSettings = Field(default_factory=OnDemandSettings)

    @field_validator("priority_levels")
    @classmethod
    def validate_priority_levels(cls, value: list[str]) -> list[str]:
        try:
            return list(PriorityOrder.parse(value).levels)
        except PriorityError as exc:
            raise ValueError(exc.message) from exc

    @field_validator("capabilities_refresh_sec")
    @classmethod
    def clamp_refresh(cls, value: int) -> int:
        return max(5, value)

    @property
    def priority_order(self) -> PriorityOrder:
        return PriorityOrder(tuple(self.priority_levels))

    def channel(self, name: str) -> ChannelSettings:
        return self.channels.get(name) or ChannelSettings(enabled=False)
