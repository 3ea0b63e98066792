"""Tests for the small domain value objects."""

import pytest

from chatgate.core.domain.capabilities import CapabilitySnapshot, IntentToggle, is_ops_capability
from chatgate.core.domain.errors import ChatGateError, LLMError, SenderError, error_code
from chatgate.core.domain.gate import BlockKind, GateDecision
from chatgate.core.domain.notify import DeliveryRecord, NotifyResult, NotifyTarget
from chatgate.core.domain.result import Err, Ok
from chatgate.core.domain.routing import AdapterRequestIds, MessageEvent, RouteContext


def _event(**kwargs):
    values = {"channel": "telegram", "chat_id": "1", "chat_type": "private", "user_id": "7", "text": "hi"}
    values.update(kwargs)
    return MessageEvent(**values)


class TestGateDecision:
    def test_factories(self):
        assert GateDecision.allow().allowed is True
        assert GateDecision.ignore().block is BlockKind.IGNORE
        assert GateDecision.consume().block is BlockKind.CONSUME
        decision = GateDecision.reply("Reply to an alert first.")
        assert decision.block is BlockKind.REPLY
        assert decision.message == "Reply to an alert first."

    def test_allowed_with_block_is_invalid(self):
        with pytest.raises(ValueError):
            GateDecision(allowed=True, block=BlockKind.REPLY)

    def test_blocked_without_kind_is_invalid(self):
        with pytest.raises(ValueError):
            GateDecision(allowed=False)


def test_result_values():
    assert Ok(3).ok is True
    err = Err("missing_chat_id", "no chat configured")
    assert err.ok is False
    assert str(err) == "missing_chat_id: no chat configured"
    assert str(Err("unknown_project")) == "unknown_project"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("telegram", NotifyTarget.TELEGRAM),
        ("TG", NotifyTarget.TELEGRAM),
        ("fs", NotifyTarget.FEISHU),
        (" Feishu ", NotifyTarget.FEISHU),
        ("both", None),
        (None, None),
    ],
)
def test_notify_target_parse(raw, expected):
    assert NotifyTarget.parse(raw) is expected


def test_notify_result_groups_records_by_target():
    result = NotifyResult(
        ok=True,
        project_id="alpha",
        records=[
            DeliveryRecord(target="telegram", chat_id="1", sent=True),
            DeliveryRecord(target="telegram", chat_id="2", sent=False, skip_reason="below_min_priority"),
            DeliveryRecord(target="feishu", chat_id="oc_1", sent=True),
        ],
    )
    payload = result.to_dict()
    assert payload["ok"] is True
    assert payload["project_id"] == "alpha"
    assert set(payload["sent"]) == {"telegram", "feishu"}
    assert payload["sent"]["telegram"]["2"]["skip_reason"] == "below_min_priority"
    assert "error" not in payload
    assert result.sent_count == 2


class TestCapabilitySnapshot:
    def test_unknown_intent_is_enabled(self):
        assert CapabilitySnapshot().is_intent_enabled("explain") is True

    def test_disabled_intent(self):
        snapshot = CapabilitySnapshot(intents={"explain": IntentToggle(enabled=False)})
        assert snapshot.is_intent_enabled("explain") is False

    def test_panel_allowlist(self):
        snapshot = CapabilitySnapshot(
            intents={"dashboard_export": IntentToggle(panel_id_allowlist=("p1",))}
        )
        assert snapshot.is_panel_allowed("dashboard_export", "p1") is True
        assert snapshot.is_panel_allowed("dashboard_export", "p2") is False
        assert snapshot.is_panel_allowed("alert_query", "p2") is True

    def test_audit_meta_uses_none_for_blanks(self):
        meta = CapabilitySnapshot(version="3", content_hash="abc").audit_meta()
        assert meta == {
            "capabilities_version": "3",
            "capabilities_hash": "abc",
            "retry_policy_version": None,
        }


def test_ops_capability_prefix():
    assert is_ops_capability("ops.logs") is True
    assert is_ops_capability("alerts.explain") is False


class TestRouting:
    def test_supergroup_is_group(self):
        assert _event(chat_type="supergroup").is_group is True
        assert _event().is_group is False

    def test_has_reply(self):
        assert _event(reply_text="ALERT").has_reply is True
        assert _event(reply_to_id="9").has_reply is True
        assert _event().has_reply is False

    def test_audit_fields_include_request_ids(self):
        event = _event()
        ctx = RouteContext(
            event=event,
            raw_text="hi",
            clean_text="hi",
            is_group=False,
            mentions_bot=False,
            has_reply=False,
            project_id="alpha",
            request_ids=AdapterRequestIds("base", "base:2", attempt=2),
        )
        fields = ctx.audit_fields()
        assert fields["request_id"] == "base:2"
        assert fields["attempt"] == 2
        assert fields["project_id"] == "alpha"
        assert ctx.is_command is False


class TestErrors:
    def test_error_code(self):
        assert error_code(LLMError("boom", model="m")) == "llm_failed"
        assert error_code(ValueError("x")) == "ValueError"

    def test_sender_error_details(self):
        exc = SenderError("failed", channel="telegram")
        assert exc.details == {"channel": "telegram"}
        assert isinstance(exc, ChatGateError)
        assert str(exc) == "failed"
