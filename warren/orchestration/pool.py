"""
Concurrency Pool — bounded slots for isolated sessions.

Two pools exist at runtime: the global session pool used by ordinary
conversation turns and the (smaller) delegation pool used only by
delegation-spawned sessions. They never share slots.

All mutation happens on the event loop thread, so the counter needs no lock.
Slots are handed directly to the oldest waiter on release, which keeps the
wake-up order FIFO and stops a late arrival from barging past the queue.
"""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog

from warren.errors import BusyError

logger = structlog.get_logger(__name__)


class ConcurrencyPool:
    """A counting pool with FIFO waiters and scoped release."""

    def __init__(self, name: str, limit: int) -> None:
        self.name = name
        self._limit = max(1, int(limit))
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    @property
    def available(self) -> int:
        return self._limit - self._active

    def try_acquire(self) -> bool:
        """Take a slot if one is free right now. Never waits."""
        if self._active < self._limit and not self.waiting:
            self._active += 1
            return True
        return False

    async def acquire(self) -> None:
        """Wait (without spinning) until a slot is free, then take it."""
        if self.try_acquire():
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # The slot was handed to us just before cancellation; pass it on.
                self.release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Return a slot, waking the oldest waiter if there is one."""
        if self._active <= 0:
            raise RuntimeError(f"{self.name} pool released more often than acquired")
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # Ownership moves to the waiter; the active count is unchanged.
                fut.set_result(None)
                return
        self._active -= 1

    @asynccontextmanager
    async def slot(self, *, wait: bool = True) -> AsyncIterator[None]:
        """Hold one slot for the duration of the block.

        With ``wait=False`` a saturated pool raises BusyError immediately.
        """
        if wait:
            await self.acquire()
        elif not self.try_acquire():
            logger.info("pool.saturated", pool=self.name, active=self._active, limit=self._limit)
            raise BusyError(
                f"All {self._limit} {self.name} slots are busy, try again later"
            )
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {"active": self._active, "limit": self._limit, "waiting": self.waiting}
