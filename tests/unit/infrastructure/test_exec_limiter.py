"""Unit tests for the two-level execution limiter."""

from __future__ import annotations

import asyncio

import pytest

from chatgate.core.domain.config_schema import ExecSettings
from chatgate.core.domain.errors import ExecFailedError, ExecTimeoutError
from chatgate.infrastructure.runtime.exec_limiter import ExecLimiter, WaitMetrics


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> ExecLimiter:
    return ExecLimiter(ExecSettings(max_global=2, modules={"charts": 1}), clock=clock)


def test_module_limits_come_from_settings(limiter: ExecLimiter):
    assert limiter.module("charts").max == 1
    assert limiter.module("unknown").max == 2
    assert limiter.module("charts") is limiter.module("charts")


def test_timeout_falls_back_to_default():
    limiter = ExecLimiter(ExecSettings(timeouts_sec={"charts": 5.0}, default_timeout_sec=30.0))

    assert limiter.timeout_for("charts") == 5.0
    assert limiter.timeout_for("notify") == 30.0


@pytest.mark.asyncio
async def test_run_returns_factory_result(limiter: ExecLimiter):
    async def work() -> str:
        return "done"

    assert await limiter.run("notify", work) == "done"
    assert limiter.state()["global"]["in_flight"] == 0


@pytest.mark.asyncio
async def test_timeout_releases_both_slots(limiter: ExecLimiter):
    with pytest.raises(ExecTimeoutError) as exc_info:
        await limiter.run("charts", lambda: asyncio.sleep(1.0), timeout=0.05)

    assert exc_info.value.code == "exec_timeout"
    state = limiter.state()
    assert state["global"] == {"pending": 0, "in_flight": 0, "max": 2}
    assert state["charts"] == {"pending": 0, "in_flight": 0, "max": 1}


@pytest.mark.asyncio
async def test_factory_error_releases_slots(limiter: ExecLimiter):
    async def broken() -> None:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await limiter.run("charts", broken)

    assert limiter.state()["charts"]["in_flight"] == 0
    assert limiter.state()["global"]["in_flight"] == 0


@pytest.mark.asyncio
async def test_module_bound_serializes_work(limiter: ExecLimiter):
    running = 0
    peak = 0

    async def job() -> None:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    await asyncio.gather(*(limiter.run("charts", job) for _ in range(3)))

    assert peak == 1


@pytest.mark.asyncio
async def test_contention_is_flushed_once(limiter: ExecLimiter):
    async def job() -> None:
        await asyncio.sleep(0.01)

    await asyncio.gather(*(limiter.run("charts", job) for _ in range(3)))

    flushed = limiter.maybe_flush_metrics(force=True)
    assert len(flushed) == 1
    assert flushed[0]["module"] == "charts"
    assert flushed[0]["count"] == 3
    assert flushed[0]["max_queue"] >= 1
    assert limiter.maybe_flush_metrics(force=True) == []


@pytest.mark.asyncio
async def test_flush_waits_for_interval(limiter: ExecLimiter, clock: FakeClock):
    async def job() -> None:
        await asyncio.sleep(0.01)

    await asyncio.gather(*(limiter.run("charts", job) for _ in range(3)))
    assert limiter.maybe_flush_metrics() == []

    clock.now = 61.0
    assert [m["module"] for m in limiter.maybe_flush_metrics()] == ["charts"]


def test_uncontended_modules_are_not_reported(limiter: ExecLimiter):
    limiter._record("notify", 1.0, 0)

    assert limiter.maybe_flush_metrics(force=True) == []


def test_wait_metrics_buckets():
    metrics = WaitMetrics()
    metrics.record(50.0, 0)
    metrics.record(300.0, 2)
    metrics.record(5000.0, 1)

    snapshot = metrics.snapshot()
    assert snapshot["count"] == 3
    assert snapshot["max_wait_ms"] == 5000.0
    assert snapshot["max_queue"] == 2
    assert snapshot["last_queue"] == 1
    assert snapshot["buckets"] == {"lt_100ms": 1, "lt_500ms": 1, "lt_2000ms": 0, "gte_2000ms": 1}
    assert metrics.saw_contention


@pytest.mark.asyncio
async def test_exec_file_captures_output(limiter: ExecLimiter):
    output = await limiter.exec_file("ops", ["sh", "-c", "echo hello; echo oops >&2"])

    assert output.returncode == 0
    assert output.stdout.strip() == "hello"
    assert output.stderr.strip() == "oops"


@pytest.mark.asyncio
async def test_exec_file_raises_on_failure(limiter: ExecLimiter):
    with pytest.raises(ExecFailedError) as exc_info:
        await limiter.exec_file("ops", ["sh", "-c", "echo bad >&2; exit 3"])

    assert exc_info.value.returncode == 3
    assert exc_info.value.details["stderr"].strip() == "bad"


@pytest.mark.asyncio
async def test_exec_file_without_check_returns_status(limiter: ExecLimiter):
    output = await limiter.exec_file("ops", ["sh", "-c", "exit 2"], check=False)

    assert output.returncode == 2


@pytest.mark.asyncio
async def test_exec_file_kills_on_timeout(limiter: ExecLimiter):
    with pytest.raises(ExecTimeoutError):
        await limiter.exec_file("ops", ["sleep", "5"], timeout=0.1)

    assert limiter.state()["ops"]["in_flight"] == 0


@pytest.mark.asyncio
async def test_exec_file_rejects_empty_argv(limiter: ExecLimiter):
    with pytest.raises(ValueError):
        await limiter.exec_file("ops", [])
