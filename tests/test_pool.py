"""Tests for warren.orchestration.pool — bounded slots with FIFO handoff."""

from __future__ import annotations

import asyncio

import pytest

from warren.errors import BusyError
from warren.orchestration.pool import ConcurrencyPool


@pytest.mark.asyncio
async def test_slot_releases_on_exit():
    pool = ConcurrencyPool("session", 2)
    async with pool.slot():
        assert pool.active == 1
        assert pool.available == 1
    assert pool.active == 0


@pytest.mark.asyncio
async def test_slot_releases_on_error():
    pool = ConcurrencyPool("session", 1)
    with pytest.raises(RuntimeError, match="boom"):
        async with pool.slot():
            raise RuntimeError("boom")
    assert pool.active == 0


@pytest.mark.asyncio
async def test_fail_fast_when_saturated():
    pool = ConcurrencyPool("delegation", 1)
    async with pool.slot(wait=False):
        with pytest.raises(BusyError, match="All 1 delegation slots are busy"):
            async with pool.slot(wait=False):
                pass
        assert pool.active == 1
    assert pool.active == 0


@pytest.mark.asyncio
async def test_waiters_woken_in_fifo_order():
    pool = ConcurrencyPool("session", 1)
    order: list[int] = []

    async def worker(n: int) -> None:
        async with pool.slot():
            order.append(n)
            await asyncio.sleep(0)

    await pool.acquire()
    tasks = [asyncio.create_task(worker(n)) for n in range(4)]
    await asyncio.sleep(0)
    assert pool.waiting == 4
    pool.release()
    await asyncio.gather(*tasks)

    assert order == [0, 1, 2, 3]
    assert pool.active == 0


@pytest.mark.asyncio
async def test_never_exceeds_limit():
    pool = ConcurrencyPool("session", 3)
    current = 0
    peak = 0

    async def worker() -> None:
        nonlocal current, peak
        async with pool.slot():
            current += 1
            peak = max(peak, current)
            await asyncio.sleep(0.01)
            current -= 1

    await asyncio.gather(*(worker() for _ in range(10)))
    assert peak == 3
    assert pool.active == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_slot():
    pool = ConcurrencyPool("session", 1)
    await pool.acquire()

    waiter = asyncio.create_task(pool.acquire())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    pool.release()
    assert pool.active == 0
    assert pool.waiting == 0
    assert pool.try_acquire() is True


def test_over_release_raises():
    pool = ConcurrencyPool("session", 1)
    with pytest.raises(RuntimeError, match="released more often"):
        pool.release()


def test_snapshot_and_minimum_limit():
    pool = ConcurrencyPool("delegation", 0)
    assert pool.limit == 1
    assert pool.snapshot() == {"active": 0, "limit": 1, "waiting": 0}
