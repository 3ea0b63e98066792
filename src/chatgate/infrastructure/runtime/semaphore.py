"""
FIFO Counting Semaphore

Bounded-concurrency primitive used by the exec limiter. Unlike
``asyncio.Semaphore`` it exposes its queue depth and in-flight count and
hands each released slot directly to the oldest waiter, so a late arrival
can never overtake a queued task.

Invariant: ``available + in_flight == max`` at every suspension point.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Callable

Release = Callable[[], None]


@dataclass(frozen=True)
class SemaphoreState:
    pending: int
    in_flight: int
    max: int

    def to_dict(self) -> dict[str, int]:
        return {"pending": self.pending, "in_flight": self.in_flight, "max": self.max}


class Semaphore:
    """Counting semaphore with a FIFO waiter queue.

    ``acquire()`` returns an idempotent release callable.

    Example:
        >>> sem = Semaphore(2, name="charts")
        >>> release = await sem.acquire()
        >>> try:
        ...     await render()
        ... finally:
        ...     release()
    """

    def __init__(self, max_concurrency: int, *, name: str = "") -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.name = name
        self._max = max_concurrency
        self._available = max_concurrency
        self._in_flight = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def max(self) -> int:
        return self._max

    @property
    def available(self) -> int:
        return self._available

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def state(self) -> SemaphoreState:
        return SemaphoreState(
            pending=len(self._waiters), in_flight=self._in_flight, max=self._max
        )

    async def acquire(self) -> Release:
        if self._available > 0 and not self._waiters:
            self._available -= 1
            self._in_flight += 1
            return self._make_release()

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation; pass it on.
                self._release_slot()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise
        return self._make_release()

    def _make_release(self) -> Release:
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._release_slot()

        return release

    def _release_slot(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Slot ownership moves to the waiter; counters are unchanged.
                waiter.set_result(None)
                return
        self._in_flight -= 1
        self._available += 1
