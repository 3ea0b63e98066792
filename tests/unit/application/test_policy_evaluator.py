"""Tests for the declarative access policy evaluator."""

import pytest

from chatgate.application.policy.evaluator import (
    POLICY_DISABLED_MESSAGE,
    PolicyEvaluator,
    evaluate,
    resolve_template,
)
from chatgate.core.domain.policy import DenyReason, PolicyConfig, PolicyInput


@pytest.fixture
def policy() -> PolicyConfig:
    return PolicyConfig.model_validate(
        {
            "version": 3,
            "principals": {"owner": {"telegram_user_id": 42}},
            "default": {"allow": ["alerts.query"], "rate_limit": {"rpm": 12}},
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
                    "name": "env_admin",
                    "match": {"user_id": "${ENV:CHATGATE_ADMIN}"},
                    "allow": ["ops.logs"],
                },
                {
                    "name": "ops_group",
                    "match": {"channel": ["telegram", "feishu"], "chat_type": "group", "chat_id": -100200},
                    "allow": ["alerts.explain", "ops.status"],
                    "require": {
                        "mention_bot_for_explain": True,
                        "reply_required_for_explain": True,
                        "mention_bot_for_ops": True,
                    },
                    "output_limits": {"max_lines": 5},
                },
                {
                    "name": "other_groups",
                    "match": {"chat_type": "group"},
                    "allow": [],
                    "deny_message": "Not here.",
                },
            ],
        }
    )


def _request(**kwargs) -> PolicyInput:
    values = {
        "channel": "telegram",
        "chat_id": "42",
        "chat_type": "private",
        "user_id": "42",
        "capability": "alerts.explain",
    }
    values.update(kwargs)
    return PolicyInput(**values)


class TestRuleMatching:
    """First matching rule decides."""

    def test_owner_template_matches(self, policy):
        decision = evaluate(policy, _request(capability="ops.logs"), environ={})
        assert decision.allowed is True
        assert decision.rule == "owner_dm"

    def test_stranger_private_chat_falls_to_default(self, policy):
        decision = evaluate(policy, _request(user_id="7", chat_id="7"), environ={})
        assert decision.allowed is False
        assert decision.reason is DenyReason.NOT_ALLOWED
        assert decision.rule is None
        allowed = evaluate(policy, _request(user_id="7", chat_id="7", capability="alerts.query"), environ={})
        assert allowed.allowed is True
        assert allowed.limits.rpm == 12

    def test_env_template(self, policy):
        request = _request(user_id="7", chat_id="7", capability="ops.logs")
        assert evaluate(policy, request, environ={"CHATGATE_ADMIN": "7"}).rule == "env_admin"
        # An unset variable makes the rule impossible to satisfy.
        assert evaluate(policy, request, environ={}).allowed is False

    def test_supergroup_matches_group_rule(self, policy):
        decision = evaluate(
            policy,
            _request(chat_type="supergroup", chat_id="-100200", user_id="5", mentions_bot=True, has_reply=True),
            environ={},
        )
        assert decision.allowed is True
        assert decision.rule == "ops_group"
        assert decision.limits.max_lines == 5
        assert decision.limits.max_chars == 6000

    def test_list_match_values(self, policy):
        decision = evaluate(
            policy,
            _request(channel="feishu", chat_type="group", chat_id="-100200", user_id="5", capability="ops.status", mentions_bot=True),
            environ={},
        )
        assert decision.allowed is True

    def test_deny_message_from_rule(self, policy):
        decision = evaluate(policy, _request(chat_type="group", chat_id="-1", user_id="5"), environ={})
        assert decision.allowed is False
        assert decision.deny_message == "Not here."
        assert decision.rule == "other_groups"
        assert decision.require is None


OPEN_RULE = {
    "name": "open",
    "match": {"chat_type": "group"},
    "allow": ["alerts.query"],
    "rate_limit": {"rpm": 5},
    "output_limits": {"max_lines": 3, "max_chars": 300},
}
CLOSED_RULE = {
    "name": "closed",
    "match": {"chat_id": "-100200"},
    "allow": [],
    "deny_message": "Closed.",
    "rate_limit": {"rpm": 1},
}
UNRELATED_RULE = {"name": "unrelated", "match": {"channel": "feishu"}, "allow": ["*"]}


class TestRuleOrder:
    """Overlapping rules: declaration order alone picks the deciding rule."""

    @pytest.mark.parametrize(
        "rules, allowed, rule, deny_message, rpm",
        [
            ([OPEN_RULE, CLOSED_RULE], True, "open", None, 5),
            ([CLOSED_RULE, OPEN_RULE], False, "closed", "Closed.", 1),
        ],
    )
    def test_first_matching_rule_decides(self, rules, allowed, rule, deny_message, rpm):
        policy = PolicyConfig.model_validate({"rules": rules})
        request = _request(chat_type="group", chat_id="-100200", user_id="5", capability="alerts.query")

        decision = evaluate(policy, request, environ={})

        assert decision.allowed is allowed
        assert decision.rule == rule
        assert decision.deny_message == deny_message
        assert decision.limits.rpm == rpm

    @pytest.mark.parametrize(
        "rules",
        [
            [UNRELATED_RULE, CLOSED_RULE, OPEN_RULE],
            [CLOSED_RULE, UNRELATED_RULE, OPEN_RULE],
            [CLOSED_RULE, OPEN_RULE, UNRELATED_RULE],
        ],
    )
    def test_non_matching_rule_position_is_irrelevant(self, rules):
        baseline = PolicyConfig.model_validate({"rules": [CLOSED_RULE, OPEN_RULE]})
        policy = PolicyConfig.model_validate({"rules": rules})
        request = _request(chat_type="group", chat_id="-100200", user_id="5", capability="alerts.query")

        assert evaluate(policy, request, environ={}) == evaluate(baseline, request, environ={})


class TestPreconditions:
    def test_missing_mention(self, policy):
        decision = evaluate(
            policy,
            _request(chat_type="group", chat_id="-100200", user_id="5", has_reply=True),
            environ={},
        )
        assert decision.allowed is False
        assert decision.reason is DenyReason.MISSING_MENTION
        assert decision.deny_message is None

    def test_missing_reply(self, policy):
        decision = evaluate(
            policy,
            _request(chat_type="group", chat_id="-100200", user_id="5", mentions_bot=True),
            environ={},
        )
        assert decision.reason is DenyReason.MISSING_REPLY

    def test_ops_needs_mention(self, policy):
        decision = evaluate(
            policy,
            _request(chat_type="group", chat_id="-100200", user_id="5", capability="ops.status"),
            environ={},
        )
        assert decision.reason is DenyReason.MISSING_MENTION


def test_disabled_policy_denies_everything(policy):
    disabled = policy.model_copy(update={"enabled": False})
    decision = evaluate(disabled, _request(), environ={})
    assert decision.allowed is False
    assert decision.deny_message == POLICY_DISABLED_MESSAGE


def test_resolve_template(policy):
    assert resolve_template("plain", policy, {}) == "plain"
    assert resolve_template("${principals.owner.telegram_user_id}", policy, {}) == "42"
    assert resolve_template("${principals.owner.missing}", policy, {}) is None
    # Mappings never stand in for a scalar id.
    assert resolve_template("${principals.owner}", policy, {}) is None
    assert resolve_template("${ENV:X}", policy, {"X": " "}) is None


def test_evaluator_wraps_pure_function(policy):
    evaluator = PolicyEvaluator(policy, policy_ok=False, environ={})
    assert evaluator.policy_ok is False
    decision = evaluator.evaluate(_request())
    assert decision.to_dict()["rule"] == "owner_dm"
