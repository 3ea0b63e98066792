"""Per-user and global sliding-window rate limiter."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

WINDOW_SEC = 60.0


@dataclass(frozen=True)
class RateLimitVerdict:
    allowed: bool
    scope: str | None = None
    retry_after_sec: float = 0.0


class SlidingWindowRateLimiter:
    """Counts requests in the last minute per user and across all users."""

    def __init__(
        self,
        per_user_rpm: int,
        global_rpm: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.per_user_rpm = per_user_rpm
        self.global_rpm = global_rpm
        self._clock = clock
        self._global: deque[float] = deque()
        self._users: dict[str, deque[float]] = {}

    def check(self, user_key: str, *, user_rpm: int | None = None) -> RateLimitVerdict:
        """Record a request and report whether it fits both windows.

        ``user_rpm`` lets a policy rule tighten the per-user limit.
        """
        now = self._clock()
        self._evict(self._global, now)
        user_window = self._users.setdefault(user_key, deque())
        self._evict(user_window, now)

        limit = self.per_user_rpm if user_rpm is None else min(user_rpm, self.per_user_rpm)
        if len(self._global) >= self.global_rpm:
            return RateLimitVerdict(False, "global", self._retry_after(self._global, now))
        if len(user_window) >= limit:
            return RateLimitVerdict(False, "user", self._retry_after(user_window, now))

        self._global.append(now)
        user_window.append(now)
        return RateLimitVerdict(True)

    @staticmethod
    def _evict(window: deque[float], now: float) -> None:
        while window and now - window[0] >= WINDOW_SEC:
            window.popleft()

    @staticmethod
    def _retry_after(window: deque[float], now: float) -> float:
        if not window:
            return 0.0
        return max(0.0, WINDOW_SEC - (now - window[0]))
