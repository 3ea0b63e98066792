"""Unit tests for the sliding-window rate limiter."""

from __future__ import annotations

import pytest

from chatgate.infrastructure.runtime.rate_limiter import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def test_user_limit_blocks_after_quota(clock: FakeClock):
    limiter = SlidingWindowRateLimiter(per_user_rpm=2, global_rpm=100, clock=clock)

    assert limiter.check("telegram:1").allowed
    assert limiter.check("telegram:1").allowed
    verdict = limiter.check("telegram:1")

    assert not verdict.allowed
    assert verdict.scope == "user"
    assert verdict.retry_after_sec == pytest.approx(60.0)


def test_users_are_counted_separately(clock: FakeClock):
    limiter = SlidingWindowRateLimiter(per_user_rpm=1, global_rpm=100, clock=clock)

    assert limiter.check("telegram:1").allowed
    assert limiter.check("telegram:2").allowed
    assert not limiter.check("telegram:1").allowed


def test_global_limit_applies_across_users(clock: FakeClock):
    limiter = SlidingWindowRateLimiter(per_user_rpm=10, global_rpm=2, clock=clock)

    limiter.check("a")
    limiter.check("b")
    verdict = limiter.check("c")

    assert not verdict.allowed
    assert verdict.scope == "global"


def test_window_slides(clock: FakeClock):
    limiter = SlidingWindowRateLimiter(per_user_rpm=1, global_rpm=100, clock=clock)
    limiter.check("a")

    clock.now += 30
    verdict = limiter.check("a")
    assert not verdict.allowed
    assert verdict.retry_after_sec == pytest.approx(30.0)

    clock.now += 30
    assert limiter.check("a").allowed


def test_rejected_requests_do_not_consume_quota(clock: FakeClock):
    limiter = SlidingWindowRateLimiter(per_user_rpm=1, global_rpm=100, clock=clock)
    limiter.check("a")
    for _ in range(5):
        limiter.check("a")

    clock.now += 60
    assert limiter.check("a").allowed


def test_rule_can_only_tighten_user_limit(clock: FakeClock):
    limiter = SlidingWindowRateLimiter(per_user_rpm=2, global_rpm=100, clock=clock)

    assert limiter.check("a", user_rpm=1).allowed
    assert not limiter.check("a", user_rpm=1).allowed

    assert limiter.check("b", user_rpm=50).allowed
    assert limiter.check("b", user_rpm=50).allowed
    assert not limiter.check("b", user_rpm=50).allowed
