"""Tests for read-only alert pipeline lookups."""

import json

import pytest

from chatgate.application.context import GatewayContext
from chatgate.application.handlers.query import (
    NOT_FOUND_MESSAGE,
    QueryCommand,
    QueryHandler,
    format_payload,
    parse_query_command,
)


@pytest.fixture
def event_dir(tmp_path):
    directory = tmp_path / "events"
    directory.mkdir()
    lines = [
        {"event_id": "evt_1", "symbol": "BTC", "tags": ["a", "b", "c", "d", "e", "f"]},
        {"event_id": "evt_2", "symbol": "ETH"},
    ]
    (directory / "event_envelope_2024-05-01.jsonl").write_text(
        "\n".join(json.dumps(line) for line in lines) + "\n", encoding="utf-8"
    )
    return directory


@pytest.fixture
def query_gateway(settings, sender, event_dir):
    configured = settings.model_copy(
        update={"query": settings.query.model_copy(update={"event_dir": str(event_dir)})}
    )
    return GatewayContext.build(configured, senders={"telegram": sender}, environ={})


class TestParseQueryCommand:
    def test_date_and_event_id(self):
        command = parse_query_command("/event 2024-05-01 evt_2")
        assert command == QueryCommand("event", "2024-05-01", "evt_2")

    def test_eval_alias_and_bot_suffix(self):
        command = parse_query_command("/eval@chatgate_bot date=2024-05-02")
        assert command.kind == "evaluation"
        assert command.date == "2024-05-02"
        assert command.event_id is None

    def test_defaults_to_today(self):
        command = parse_query_command("/gate")
        assert len(command.date) == 10

    def test_other_text(self):
        assert parse_query_command("/status") is None
        assert parse_query_command("event evt_1") is None


def test_format_payload_clips():
    assert format_payload({"a": 1}, 100) == '{\n  "a": 1\n}'
    clipped = format_payload({"a": "x" * 200}, 60)
    assert clipped.endswith("...(clipped)")
    assert len(clipped) <= 60


class TestQueryHandler:
    @pytest.mark.asyncio
    async def test_lookup_by_event_id(self, query_gateway, make_ctx, replies, read_ledger):
        handler = QueryHandler(query_gateway)
        ctx = make_ctx("/event 2024-05-01 evt_1")
        assert (await handler.run(ctx, handler.match(ctx).data)).handled
        assert '"symbol": "BTC"' in replies()[-1]
        record = read_ledger()[-1]
        assert record["cmd"] == "alert_query_event"
        assert record["ok"] is True
        assert record["event_id"] == "evt_1"

    @pytest.mark.asyncio
    async def test_last_record_without_event_id(self, query_gateway, make_ctx, replies):
        handler = QueryHandler(query_gateway)
        ctx = make_ctx("/event 2024-05-01")
        await handler.run(ctx, handler.match(ctx).data)
        assert '"evt_2"' in replies()[-1]

    @pytest.mark.asyncio
    async def test_not_found(self, query_gateway, make_ctx, replies):
        handler = QueryHandler(query_gateway)
        ctx = make_ctx("/event 2024-05-01 evt_9")
        await handler.run(ctx, handler.match(ctx).data)
        assert replies()[-1] == NOT_FOUND_MESSAGE

    @pytest.mark.asyncio
    async def test_unconfigured_directory(self, gateway, make_ctx, replies, read_ledger):
        handler = QueryHandler(gateway)
        ctx = make_ctx("/reliability")
        await handler.run(ctx, handler.match(ctx).data)
        assert replies()[-1] == "metrics_dir is not configured."
        assert read_ledger()[-1]["error_code"] == "missing_metrics_dir"

    @pytest.mark.asyncio
    async def test_health(self, query_gateway, make_ctx, replies, event_dir):
        handler = QueryHandler(query_gateway)
        ctx = make_ctx("/health")
        await handler.run(ctx, handler.match(ctx).data)
        assert str(event_dir) in replies()[-1]

    @pytest.mark.asyncio
    async def test_group_output_limits(self, query_gateway, make_ctx, replies):
        handler = QueryHandler(query_gateway)
        ctx = make_ctx("/event 2024-05-01 evt_1", chat_type="group", chat_id="-100200", user_id="5")
        await handler.run(ctx, handler.match(ctx).data)
        reply = replies()[-1]
        assert len(reply.splitlines()) <= 6
        assert reply.endswith("…(truncated)")
