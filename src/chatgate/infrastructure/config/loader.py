"""
Configuration Loading

Reads the YAML documents the gateway runs on and validates each once into an
immutable typed structure:

- ``load_settings``: ``gateway.yaml`` plus ``CHAT_GATEWAY_*`` environment
  overrides. Invalid settings raise ``ConfigError`` (fail fast at startup).
- ``load_policy``: the access policy. Never raises; on any failure a
  synthetic owner-private-chat-only policy is returned with
  ``policy_ok=False`` and enumerated error codes.
- ``ProjectRegistrySource``: the project registry (one file or a
  ``projects.d`` directory), reloaded only when file content changes.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import structlog
import yaml
from pydantic import ValidationError

from chatgate.core.domain.capabilities import ALERTS_EXPLAIN, ALL_CAPABILITIES
from chatgate.core.domain.config_schema import GatewaySettings, ProjectEntry
from chatgate.core.domain.errors import ConfigError
from chatgate.core.domain.policy import PolicyConfig

logger = structlog.get_logger(__name__)

CHANNELS = ("telegram", "feishu")

# env var -> dotted settings path
_ENV_OVERRIDES: dict[str, str] = {
    "CHAT_GATEWAY_STORAGE_DIR": "storage_dir",
    "CHAT_GATEWAY_POLICY_PATH": "policy_path",
    "CHAT_GATEWAY_PROJECTS_PATH": "projects_path",
    "CHAT_GATEWAY_CAPABILITIES_PATH": "capabilities_path",
    "CAPABILITIES_REFRESH_SEC": "capabilities_refresh_sec",
    "CHAT_GATEWAY_DEFAULT_PROJECT_ID": "default_project_id",
    "DEDUPE_WINDOW_SEC": "dedupe_window_sec",
    "LOGLEVEL": "log_level",
    "CHAT_GATEWAY_NOTIFY_TOKEN": "notify.token",
    "CHAT_GATEWAY_NOTIFY_HOST": "notify.host",
    "CHAT_GATEWAY_NOTIFY_PORT": "notify.port",
    "STRATEGY_LOCK_TTL_SEC": "locks.strategy_ttl_sec",
    "COGNITIVE_LOCK_STALE_MS": "locks.stale_sec",
    "CHAT_GATEWAY_LAST_ALERT_PERSIST": "state.persist_last_alerts",
    "TELEGRAM_BOT_TOKEN": "channels.telegram.bot_token",
    "TELEGRAM_BOT_USERNAME": "channels.telegram.bot_username",
    "OWNER_TELEGRAM_CHAT_ID": "channels.telegram.owner_chat_id",
    "OWNER_TELEGRAM_USER_ID": "channels.telegram.owner_user_id",
    "TELEGRAM_ALLOWLIST_MODE": "channels.telegram.allowlist_mode",
    "FEISHU_OWNER_CHAT_ID": "channels.feishu.owner_chat_id",
    "FEISHU_OWNER_USER_ID": "channels.feishu.owner_user_id",
    "FEISHU_ALLOWLIST_MODE": "channels.feishu.allowlist_mode",
    "CHAT_GATEWAY_LLM_MODEL": "llm.model",
    "CHAT_GATEWAY_ON_DEMAND_URL": "on_demand.url",
    "CHAT_GATEWAY_ON_DEMAND_TOKEN": "on_demand.token",
}


def _read_yaml(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def _set_dotted(target: dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    node = target
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def _env_value(env_name: str, dotted: str, raw: str) -> Any:
    if dotted == "locks.stale_sec":
        try:
            return float(raw) / 1000.0
        except ValueError as exc:
            raise ConfigError(
                f"{env_name} must be a number of milliseconds, got {raw!r}",
                details={"env": env_name},
            ) from exc
    if dotted == "state.persist_last_alerts":
        return raw.strip().lower() in ("1", "true", "yes")
    return raw


def _format_validation_errors(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    ]


# ---------------------------------------------------------------------------
# Gateway settings
# ---------------------------------------------------------------------------


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> GatewaySettings:
    """Load ``gateway.yaml`` (optional) and apply environment overrides.

    Raises:
        ConfigError: The file is missing, unparsable or fails validation.
    """
    env = os.environ if environ is None else environ
    raw: dict[str, Any] = {}
    if path is not None:
        settings_path = Path(path)
        if not settings_path.exists():
            raise ConfigError(f"Settings file not found: {settings_path}")
        try:
            loaded = _read_yaml(settings_path) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {settings_path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"Settings root must be a mapping: {settings_path}")
        raw = loaded

    for env_name, dotted in _ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None and value != "":
            _set_dotted(raw, dotted, _env_value(env_name, dotted, value))

    levels = env.get("CHAT_GATEWAY_PRIORITY_LEVELS")
    if levels:
        raw["priority_levels"] = [t for t in levels.replace(",", " ").split() if t]

    prefix = "CHAT_GATEWAY_EXEC_MAX_"
    for key, value in env.items():
        if not key.startswith(prefix) or not value.strip().isdigit():
            continue
        name = key[len(prefix):].lower()
        if name == "global":
            _set_dotted(raw, "exec.max_global", int(value))
        elif name:
            modules = raw.setdefault("exec", {}).setdefault("modules", {})
            modules[name] = int(value)

    try:
        settings = GatewaySettings.model_validate(raw)
    except ValidationError as exc:
        errors = _format_validation_errors(exc)
        raise ConfigError("Invalid gateway settings", details={"errors": errors}) from exc
    logger.info(
        "config.settings.loaded",
        path=str(path) if path else None,
        channels=sorted(settings.channels),
        priority_levels=settings.priority_levels,
    )
    return settings


# ---------------------------------------------------------------------------
# Access policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoadedPolicy:
    """Policy plus the trust flag dependents consult before using it."""

    policy: PolicyConfig
    policy_ok: bool
    errors: tuple[str, ...] = ()
    source: str | None = None


def owner_principals(settings: GatewaySettings) -> dict[str, str]:
    """Owner ids from settings, keyed the way policy templates address them."""
    owner: dict[str, str] = {}
    for channel in CHANNELS:
        cfg = settings.channel(channel)
        if cfg.owner_user_id:
            owner[f"{channel}_user_id"] = cfg.owner_user_id
        if cfg.owner_chat_id:
            owner[f"{channel}_chat_id"] = cfg.owner_chat_id
    return owner


def fallback_policy(owner: Mapping[str, str] | None = None) -> PolicyConfig:
    """Minimal policy: explain is allowed to the owner in private chat only."""
    rules = [
        {
            "name": f"owner_dm_fallback_{channel}",
            "match": {
                "channel": channel,
                "chat_type": "private",
                "user_id": f"${{principals.owner.{channel}_user_id}}",
            },
            "allow": [ALERTS_EXPLAIN],
        }
        for channel in CHANNELS
    ]
    return PolicyConfig.model_validate(
        {
            "version": "fallback",
            "enabled": True,
            "principals": {"owner": dict(owner or {})},
            "default": {"allow": []},
            "rules": rules,
        }
    )


def load_policy(path: str | Path, *, owner: Mapping[str, str] | None = None) -> LoadedPolicy:
    """Load and validate the access policy; never raises.

    Owner ids from settings fill ``principals.owner`` keys the document
    leaves unset.
    """
    policy_path = Path(path)
    errors: list[str] = []
    data: Any = None

    if not policy_path.exists():
        errors.append(f"policy_not_found:{policy_path}")
    else:
        try:
            data = _read_yaml(policy_path)
        except (OSError, yaml.YAMLError) as exc:
            errors.append(f"policy_parse_failed:{exc}")

    if not errors and not isinstance(data, dict):
        errors.append("policy_invalid:root_not_mapping")

    if not errors:
        principals = data.get("principals") or {}
        if isinstance(principals, dict):
            owner_doc = principals.get("owner") or {}
            if isinstance(owner_doc, dict):
                for key, value in (owner or {}).items():
                    owner_doc.setdefault(key, value)
                principals["owner"] = owner_doc
            data["principals"] = principals
        try:
            policy = PolicyConfig.model_validate(data)
        except ValidationError as exc:
            errors.extend(f"policy_invalid:{msg}" for msg in _format_validation_errors(exc))
        else:
            unknown = sorted(
                {cap for rule in policy.rules for cap in rule.allow}
                - set(ALL_CAPABILITIES)
                - {"*"}
            )
            if unknown:
                logger.warning("config.policy.unknown_capabilities", capabilities=unknown)
            logger.info(
                "config.policy.loaded",
                path=str(policy_path),
                rules=len(policy.rules),
                enabled=policy.enabled,
            )
            return LoadedPolicy(policy=policy, policy_ok=True, source=str(policy_path))

    logger.warning("config.policy.fallback", path=str(policy_path), errors=errors)
    return LoadedPolicy(
        policy=fallback_policy(owner),
        policy_ok=False,
        errors=tuple(errors),
        source=str(policy_path),
    )


# ---------------------------------------------------------------------------
# Project registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProjectRegistry:
    projects: Mapping[str, ProjectEntry] = field(default_factory=dict)
    content_hash: str = ""
    errors: tuple[str, ...] = ()

    def get(self, project_id: str | None) -> ProjectEntry | None:
        if not project_id:
            return None
        return self.projects.get(project_id)

    def default_project_id(self, configured: str | None = None) -> str | None:
        """Configured default if registered, else the only project, else None."""
        if configured:
            return configured if configured in self.projects else None
        if len(self.projects) == 1:
            return next(iter(self.projects))
        return None


def _registry_files(path: Path) -> list[Path]:
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.suffix in (".yml", ".yaml") and p.is_file())
    return [path] if path.exists() else []


def _iter_project_docs(doc: Any) -> list[Any]:
    if isinstance(doc, dict) and "projects" in doc:
        projects = doc["projects"]
        if isinstance(projects, dict):
            return [
                {"project_id": key, **value} if isinstance(value, dict) else value
                for key, value in projects.items()
            ]
        if isinstance(projects, list):
            return projects
        return [projects]
    return [doc]


def load_project_registry(path: str | Path) -> ProjectRegistry:
    """Read all project documents under ``path``; invalid ones are skipped."""
    registry_path = Path(path)
    files = _registry_files(registry_path)
    digest = hashlib.sha256()
    projects: dict[str, ProjectEntry] = {}
    errors: list[str] = []

    for file in files:
        try:
            content = file.read_bytes()
        except OSError as exc:
            errors.append(f"registry_unreadable:{file.name}:{exc}")
            continue
        digest.update(file.name.encode("utf-8"))
        digest.update(content)
        try:
            doc = yaml.safe_load(content) or {}
        except yaml.YAMLError as exc:
            errors.append(f"registry_parse_failed:{file.name}:{exc}")
            continue
        for item in _iter_project_docs(doc):
            try:
                entry = ProjectEntry.model_validate(item)
            except ValidationError as exc:
                detail = "; ".join(_format_validation_errors(exc))
                errors.append(f"registry_invalid:{file.name}:{detail}")
                continue
            if entry.project_id in projects:
                logger.warning(
                    "config.registry.duplicate_project",
                    project_id=entry.project_id,
                    file=file.name,
                )
            projects[entry.project_id] = entry

    if errors:
        logger.warning("config.registry.errors", path=str(registry_path), errors=errors)
    return ProjectRegistry(
        projects=projects,
        content_hash=digest.hexdigest() if files else "",
        errors=tuple(errors),
    )


class ProjectRegistrySource:
    """Keeps the current registry and reloads it when files change.

    A cheap mtime/size fingerprint is checked first; the registry is only
    replaced when the content hash actually differs.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fingerprint: tuple[tuple[str, int, int], ...] = ()
        self.registry = ProjectRegistry()
        self.reload(force=True)

    def _current_fingerprint(self) -> tuple[tuple[str, int, int], ...]:
        entries = []
        for file in _registry_files(self.path):
            try:
                stat = file.stat()
            except FileNotFoundError:
                continue
            entries.append((file.name, stat.st_mtime_ns, stat.st_size))
        return tuple(entries)

    def reload(self, *, force: bool = False) -> bool:
        """Return True when a different registry was installed."""
        fingerprint = self._current_fingerprint()
        if not force and fingerprint == self._fingerprint:
            return False
        self._fingerprint = fingerprint
        registry = load_project_registry(self.path)
        if not force and registry.content_hash == self.registry.content_hash:
            return False
        self.registry = registry
        logger.info(
            "config.registry.loaded",
            path=str(self.path),
            projects=len(registry.projects),
            content_hash=registry.content_hash[:12],
        )
        return True
