"""Unit tests for settings, policy and project registry loading."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
import yaml

from chatgate.core.domain.config_schema import GatewaySettings
from chatgate.core.domain.errors import ConfigError
from chatgate.infrastructure.config.loader import (
    ProjectRegistrySource,
    fallback_policy,
    load_policy,
    load_project_registry,
    load_settings,
    owner_principals,
)


def write_yaml(path: Path, data: object) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestLoadSettings:
    def test_defaults_without_file(self):
        settings = load_settings(None, environ={})

        assert settings.storage_dir == "./data"
        assert settings.priority_levels == ["LOW", "MEDIUM", "HIGH", "CRITICAL"]
        assert settings.exec.max_global == 8

    def test_reads_yaml_file(self, tmp_path: Path):
        path = write_yaml(
            tmp_path / "gateway.yaml",
            {"storage_dir": "/srv/data", "channels": {"telegram": {"owner_chat_id": 42}}},
        )

        settings = load_settings(path, environ={})

        assert settings.storage_dir == "/srv/data"
        assert settings.channel("telegram").owner_chat_id == "42"

    def test_environment_overrides_file(self, tmp_path: Path):
        path = write_yaml(tmp_path / "gateway.yaml", {"storage_dir": "/srv/data"})

        settings = load_settings(
            path,
            environ={
                "CHAT_GATEWAY_STORAGE_DIR": "/tmp/other",
                "TELEGRAM_BOT_USERNAME": "alerts_bot",
                "CHAT_GATEWAY_NOTIFY_PORT": "9000",
                "CHAT_GATEWAY_LAST_ALERT_PERSIST": "yes",
                "CHAT_GATEWAY_LLM_MODEL": "gpt-4o-mini",
            },
        )

        assert settings.storage_dir == "/tmp/other"
        assert settings.channel("telegram").bot_username == "alerts_bot"
        assert settings.notify.port == 9000
        assert settings.state.persist_last_alerts is True
        assert settings.llm.model == "gpt-4o-mini"

    def test_empty_environment_values_are_ignored(self):
        settings = load_settings(None, environ={"CHAT_GATEWAY_STORAGE_DIR": ""})

        assert settings.storage_dir == "./data"

    def test_lock_stale_is_given_in_milliseconds(self):
        settings = load_settings(None, environ={"COGNITIVE_LOCK_STALE_MS": "45000"})

        assert settings.locks.stale_sec == 45.0

    def test_malformed_lock_stale_names_the_variable(self):
        with pytest.raises(ConfigError) as exc_info:
            load_settings(None, environ={"COGNITIVE_LOCK_STALE_MS": "soon"})

        assert "COGNITIVE_LOCK_STALE_MS" in exc_info.value.message
        assert exc_info.value.details == {"env": "COGNITIVE_LOCK_STALE_MS"}

    def test_exec_limits_from_environment(self):
        settings = load_settings(
            None,
            environ={
                "CHAT_GATEWAY_EXEC_MAX_GLOBAL": "3",
                "CHAT_GATEWAY_EXEC_MAX_CHARTS": "2",
                "CHAT_GATEWAY_EXEC_MAX_BROKEN": "many",
            },
        )

        assert settings.exec.max_global == 3
        assert settings.exec.modules["charts"] == 2
        assert "broken" not in settings.exec.modules

    def test_priority_levels_from_environment(self):
        settings = load_settings(None, environ={"CHAT_GATEWAY_PRIORITY_LEVELS": "info, warn ,page"})

        assert settings.priority_levels == ["INFO", "WARN", "PAGE"]

    def test_duplicate_priority_levels_collapse(self):
        settings = load_settings(None, environ={"CHAT_GATEWAY_PRIORITY_LEVELS": "low,LOW high"})

        assert settings.priority_levels == ["LOW", "HIGH"]

    def test_invalid_exec_bound_is_rejected(self, tmp_path: Path):
        path = write_yaml(tmp_path / "gateway.yaml", {"exec": {"max_global": 0}})

        with pytest.raises(ConfigError) as exc_info:
            load_settings(path, environ={})

        assert exc_info.value.details["errors"][0].startswith("exec.max_global")

    def test_missing_file_raises(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            load_settings(tmp_path / "missing.yaml", environ={})

    def test_non_mapping_root_raises(self, tmp_path: Path):
        path = tmp_path / "gateway.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ConfigError):
            load_settings(path, environ={})

    def test_unknown_keys_are_rejected(self, tmp_path: Path):
        path = write_yaml(tmp_path / "gateway.yaml", {"storage_dri": "/typo"})

        with pytest.raises(ConfigError) as exc_info:
            load_settings(path, environ={})

        assert any("storage_dri" in err for err in exc_info.value.details["errors"])


def test_owner_principals_from_settings():
    settings = GatewaySettings.model_validate(
        {
            "channels": {
                "telegram": {"owner_chat_id": "42", "owner_user_id": "43"},
                "feishu": {"owner_chat_id": "oc_owner"},
            }
        }
    )

    assert owner_principals(settings) == {
        "telegram_user_id": "43",
        "telegram_chat_id": "42",
        "feishu_chat_id": "oc_owner",
    }


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class TestLoadPolicy:
    def test_valid_policy(self, policy_file: Path):
        loaded = load_policy(policy_file)

        assert loaded.policy_ok
        assert loaded.errors == ()
        assert [rule.name for rule in loaded.policy.rules] == [
            "owner_dm",
            "ops_group",
            "public_group",
        ]

    def test_missing_policy_falls_back(self, tmp_path: Path):
        loaded = load_policy(tmp_path / "nope.yaml", owner={"telegram_user_id": "42"})

        assert not loaded.policy_ok
        assert loaded.errors[0].startswith("policy_not_found:")
        assert loaded.policy.version == "fallback"
        assert loaded.policy.principals.owner == {"telegram_user_id": "42"}

    def test_unparsable_policy_falls_back(self, tmp_path: Path):
        path = tmp_path / "policy.yaml"
        path.write_text("rules: [unclosed\n", encoding="utf-8")

        loaded = load_policy(path)

        assert not loaded.policy_ok
        assert loaded.errors[0].startswith("policy_parse_failed:")

    def test_non_mapping_policy_falls_back(self, tmp_path: Path):
        path = tmp_path / "policy.yaml"
        path.write_text("just a string\n", encoding="utf-8")

        loaded = load_policy(path)

        assert loaded.errors == ("policy_invalid:root_not_mapping",)

    def test_schema_violation_falls_back(self, tmp_path: Path):
        path = write_yaml(tmp_path / "policy.yaml", {"rules": [{"name": "x", "bogus": 1}]})

        loaded = load_policy(path)

        assert not loaded.policy_ok
        assert all(err.startswith("policy_invalid:") for err in loaded.errors)

    def test_owner_fills_only_missing_principals(self, tmp_path: Path):
        path = write_yaml(
            tmp_path / "policy.yaml",
            {"principals": {"owner": {"telegram_user_id": "7"}}, "rules": []},
        )

        loaded = load_policy(path, owner={"telegram_user_id": "42", "telegram_chat_id": "42"})

        assert loaded.policy.principals.owner == {
            "telegram_user_id": "7",
            "telegram_chat_id": "42",
        }


def test_fallback_policy_allows_explain_to_owner_only():
    policy = fallback_policy({"telegram_user_id": "42"})

    assert policy.default.allow == []
    assert {rule.match.chat_type for rule in policy.rules} == {"private"}
    assert all(rule.allow == ["alerts.explain"] for rule in policy.rules)


# ---------------------------------------------------------------------------
# Project registry
# ---------------------------------------------------------------------------


class TestProjectRegistry:
    def test_loads_directory(self, projects_dir: Path):
        registry = load_project_registry(projects_dir)

        assert list(registry.projects) == ["alpha"]
        assert registry.get("alpha").window_spec_id == "ws_daily_24h"
        assert registry.content_hash
        assert registry.errors == ()

    def test_single_project_is_the_default(self, projects_dir: Path):
        registry = load_project_registry(projects_dir)

        assert registry.default_project_id() == "alpha"
        assert registry.default_project_id("alpha") == "alpha"
        assert registry.default_project_id("beta") is None

    def test_projects_mapping_form(self, tmp_path: Path):
        path = write_yaml(
            tmp_path / "projects.yaml",
            {"projects": {"alpha": {"name": "A"}, "beta": {"name": "B"}}},
        )

        registry = load_project_registry(path)

        assert sorted(registry.projects) == ["alpha", "beta"]
        assert registry.default_project_id() is None

    def test_projects_list_form(self, tmp_path: Path):
        path = write_yaml(
            tmp_path / "projects.yaml",
            {"projects": [{"project_id": "alpha"}, {"project_id": "beta"}]},
        )

        assert sorted(load_project_registry(path).projects) == ["alpha", "beta"]

    def test_invalid_entries_are_skipped(self, tmp_path: Path):
        path = write_yaml(
            tmp_path / "projects.yaml",
            {"projects": [{"project_id": "alpha"}, {"name": "no id"}]},
        )

        registry = load_project_registry(path)

        assert list(registry.projects) == ["alpha"]
        assert registry.errors[0].startswith("registry_invalid:projects.yaml:")

    def test_missing_path_is_empty(self, tmp_path: Path):
        registry = load_project_registry(tmp_path / "missing.d")

        assert registry.projects == {}
        assert registry.content_hash == ""

    def test_non_yaml_files_are_ignored(self, projects_dir: Path):
        (projects_dir / "README.md").write_text("# notes", encoding="utf-8")

        assert list(load_project_registry(projects_dir).projects) == ["alpha"]

    def test_lookup_with_empty_id(self, projects_dir: Path):
        assert load_project_registry(projects_dir).get(None) is None


class TestProjectRegistrySource:
    def test_reload_without_changes(self, projects_dir: Path):
        source = ProjectRegistrySource(projects_dir)

        assert source.reload() is False
        assert "alpha" in source.registry.projects

    def test_reload_picks_up_new_project(self, projects_dir: Path):
        source = ProjectRegistrySource(projects_dir)
        before = source.registry.content_hash

        write_yaml(projects_dir / "beta.yaml", {"project_id": "beta"})

        assert source.reload() is True
        assert sorted(source.registry.projects) == ["alpha", "beta"]
        assert source.registry.content_hash != before

    def test_touch_without_content_change_keeps_registry(self, projects_dir: Path):
        source = ProjectRegistrySource(projects_dir)
        registry = source.registry
        path = projects_dir / "alpha.yaml"
        stat = path.stat()
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))

        assert source.reload() is False
        assert source.registry is registry
