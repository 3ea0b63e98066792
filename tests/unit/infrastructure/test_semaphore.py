"""Unit tests for the FIFO counting semaphore."""

from __future__ import annotations

import asyncio

import pytest

from chatgate.infrastructure.runtime.semaphore import Semaphore


def test_rejects_non_positive_bound():
    with pytest.raises(ValueError):
        Semaphore(0)


@pytest.mark.asyncio
async def test_acquire_and_release_update_counters():
    sem = Semaphore(2, name="charts")

    release = await sem.acquire()

    assert sem.state().to_dict() == {"pending": 0, "in_flight": 1, "max": 2}
    release()
    assert sem.available == 2
    assert sem.in_flight == 0


@pytest.mark.asyncio
async def test_release_is_idempotent():
    sem = Semaphore(1)
    release = await sem.acquire()

    release()
    release()

    assert sem.available == 1
    assert sem.in_flight == 0


@pytest.mark.asyncio
async def test_in_flight_never_exceeds_bound():
    sem = Semaphore(2)
    peak = 0
    running = 0

    async def job() -> None:
        nonlocal peak, running
        release = await sem.acquire()
        try:
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
        finally:
            release()

    await asyncio.gather(*(job() for _ in range(6)))

    assert peak == 2
    assert sem.state().to_dict() == {"pending": 0, "in_flight": 0, "max": 2}


@pytest.mark.asyncio
async def test_waiters_are_served_in_arrival_order():
    sem = Semaphore(1)
    first = await sem.acquire()
    order: list[int] = []

    async def waiter(index: int) -> None:
        release = await sem.acquire()
        order.append(index)
        release()

    tasks = [asyncio.create_task(waiter(i)) for i in range(3)]
    await asyncio.sleep(0)
    assert sem.state().pending == 3

    first()
    await asyncio.gather(*tasks)

    assert order == [0, 1, 2]


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_queue():
    sem = Semaphore(1)
    release = await sem.acquire()

    task = asyncio.create_task(sem.acquire())
    await asyncio.sleep(0)
    assert sem.state().pending == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert sem.state().pending == 0
    release()
    assert sem.available == 1
    assert sem.in_flight == 0


@pytest.mark.asyncio
async def test_slot_handed_to_cancelled_waiter_is_passed_on():
    sem = Semaphore(1)
    release = await sem.acquire()

    doomed = asyncio.create_task(sem.acquire())
    await asyncio.sleep(0)
    survivor = asyncio.create_task(sem.acquire())
    await asyncio.sleep(0)

    # Hand the slot to ``doomed`` and cancel it before it resumes.
    release()
    doomed.cancel()
    with pytest.raises(asyncio.CancelledError):
        await doomed

    survivor_release = await asyncio.wait_for(survivor, timeout=1.0)
    assert sem.in_flight == 1
    survivor_release()
    assert sem.available == 1
