"""Test configuration and shared fixtures."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest
import yaml

from chatgate.application.context import GatewayContext
from chatgate.application.intent_hints import build_route_context
from chatgate.core.domain.config_schema import GatewaySettings
from chatgate.core.domain.routing import AdapterRequestIds, MessageEvent, RouteContext

OWNER_ID = "42"
OPS_GROUP_ID = "-100200"
BOT_USERNAME = "chatgate_bot"

POLICY_DOC: dict[str, Any] = {
    "version": 3,
    "enabled": True,
    "principals": {"owner": {"telegram_user_id": OWNER_ID, "telegram_chat_id": OWNER_ID}},
    "default": {"allow": []},
    "rules": [
        {
            "name": "owner_dm",
            "match": {
                "channel": "telegram",
                "chat_type": "private",
                "user_id": "${principals.owner.telegram_user_id}",
            },
            "allow": ["*"],
        },
        {
            "name": "ops_group",
            "match": {"channel": "telegram", "chat_type": "group", "chat_id": int(OPS_GROUP_ID)},
            "allow": ["alerts.explain", "alerts.query", "ops.status", "ops.dashboard.export"],
            "require": {
                "mention_bot_for_explain": True,
                "reply_required_for_explain": True,
                "mention_bot_for_ops": True,
            },
            "output_limits": {"max_lines": 5, "max_chars": 500},
        },
        {
            "name": "public_group",
            "match": {"channel": "telegram", "chat_type": "group"},
            "allow": [],
            "deny_message": "Not available here.",
        },
    ],
}

PROJECT_DOC: dict[str, Any] = {
    "project_id": "alpha",
    "name": "Alpha",
    "notify": {
        "telegram_chat_ids": [OPS_GROUP_ID, "-100300"],
        "feishu_chat_ids": ["oc_1"],
        "overrides": {"telegram": {"-100300": "HIGH"}},
    },
    "on_demand": {"window_spec_id": "ws_daily_24h"},
    "resources": {"pm2_ps": {"names": ["api", "worker"]}, "pm2_logs": {"names": ["api"]}},
}


@pytest.fixture
def policy_file(tmp_path: Path) -> Path:
    path = tmp_path / "policy.yaml"
    path.write_text(yaml.safe_dump(POLICY_DOC), encoding="utf-8")
    return path


@pytest.fixture
def projects_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "projects.d"
    directory.mkdir()
    (directory / "alpha.yaml").write_text(yaml.safe_dump(PROJECT_DOC), encoding="utf-8")
    return directory


@pytest.fixture
def settings(tmp_path: Path, policy_file: Path, projects_dir: Path) -> GatewaySettings:
    """Settings with one telegram channel owned by user 42."""
    return GatewaySettings.model_validate(
        {
            "storage_dir": str(tmp_path / "data"),
            "policy_path": str(policy_file),
            "projects_path": str(projects_dir),
            "capabilities_path": str(tmp_path / "capabilities.yaml"),
            "channels": {
                "telegram": {
                    "bot_token": "123:FAKE",
                    "bot_username": BOT_USERNAME,
                    "owner_chat_id": OWNER_ID,
                    "owner_user_id": OWNER_ID,
                    "allowlist_mode": "auth",
                }
            },
            "notify": {"allow_external": True},
            "ops": {"logs_dir": str(tmp_path / "logs")},
        }
    )


@pytest.fixture
def sender() -> AsyncMock:
    """Mock outbound sender for the telegram channel."""
    mock = AsyncMock()
    mock.channel = "telegram"
    return mock


@pytest.fixture
def llm() -> AsyncMock:
    """Mock LLM provider returning a fixed explanation."""
    provider = AsyncMock()
    provider.generate = AsyncMock(return_value="This alert means the queue is backed up.")
    return provider


@pytest.fixture
def gateway(settings: GatewaySettings, sender: AsyncMock, llm: AsyncMock) -> GatewayContext:
    return GatewayContext.build(settings, senders={"telegram": sender}, llm=llm, environ={})


@pytest.fixture
def make_event() -> Callable[..., MessageEvent]:
    def _make(
        text: str,
        *,
        chat_type: str = "private",
        chat_id: str = OWNER_ID,
        user_id: str = OWNER_ID,
        **kwargs: Any,
    ) -> MessageEvent:
        return MessageEvent(
            channel=kwargs.pop("channel", "telegram"),
            chat_id=chat_id,
            chat_type=chat_type,
            user_id=user_id,
            text=text,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_ctx(make_event: Callable[..., MessageEvent]) -> Callable[..., RouteContext]:
    def _make(
        text: str,
        *,
        project_id: str | None = "alpha",
        window_spec_id: str | None = None,
        request_ids: AdapterRequestIds | None = None,
        **kwargs: Any,
    ) -> RouteContext:
        return build_route_context(
            make_event(text, **kwargs),
            bot_username=BOT_USERNAME,
            project_id=project_id,
            window_spec_id=window_spec_id,
            request_ids=request_ids,
        )

    return _make


@pytest.fixture
def read_ledger(settings: GatewaySettings) -> Callable[[], list[dict[str, Any]]]:
    """Return every ledger record written so far."""

    def _read() -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        for path in sorted(Path(settings.storage_dir).glob("ledger_*.jsonl")):
            for line in path.read_text(encoding="utf-8").splitlines():
                if line.strip():
                    records.append(json.loads(line))
        return records

    return _read


@pytest.fixture
def replies(sender: AsyncMock) -> Callable[[], list[str]]:
    """Texts sent through the mock sender, in order."""

    def _texts() -> list[str]:
        return [call.args[1] for call in sender.send_text.await_args_list]

    return _texts
