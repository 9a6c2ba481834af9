"""
Group Run-Queue — one agent turn per conversation at a time.

Each group has a FIFO of pending turns and at most one drain task. The drain
task takes a slot from the global session pool for every turn it runs and
gives it back between turns, so a chatty group cannot hold a slot hostage
while other groups wait.

Delegated sessions never pass through here; they are independent child runs
with no session state of the target group to protect.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable

import structlog

from warren.orchestration.pool import ConcurrencyPool

logger = structlog.get_logger(__name__)

TurnWork = Callable[[], Awaitable[Any]]


class GroupRunQueue:
    """Serializes turns per group; bounds parallelism across groups."""

    def __init__(self, pool: ConcurrencyPool) -> None:
        self._pool = pool
        self._queues: dict[str, deque[tuple[TurnWork, asyncio.Future[Any]]]] = {}
        self._drainers: dict[str, asyncio.Task] = {}
        self._running: set[str] = set()

    @property
    def pool(self) -> ConcurrencyPool:
        return self._pool

    def enqueue_turn(self, group_folder: str, work: TurnWork) -> asyncio.Future[Any]:
        """Append *work* to the group's FIFO and return a future for its result."""
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        queue = self._queues.setdefault(group_folder, deque())
        queue.append((work, fut))

        if group_folder not in self._drainers:
            self._drainers[group_folder] = asyncio.create_task(
                self._drain(group_folder),
                name=f"turns:{group_folder}",
            )
        logger.debug("run_queue.enqueued", group=group_folder, pending=len(queue))
        return fut

    def is_running(self, group_folder: str) -> bool:
        return group_folder in self._running

    def pending(self, group_folder: str) -> int:
        return len(self._queues.get(group_folder, ()))

    async def _drain(self, group_folder: str) -> None:
        queue = self._queues[group_folder]
        try:
            while queue:
                work, fut = queue.popleft()
                if fut.cancelled():
                    continue
                async with self._pool.slot():
                    self._running.add(group_folder)
                    try:
                        result = await work()
                    except asyncio.CancelledError:
                        fut.cancel()
                        raise
                    except Exception as exc:
                        logger.error(
                            "run_queue.turn_failed",
                            group=group_folder,
                            error=str(exc),
                            exc_info=True,
                        )
                        if not fut.done():
                            fut.set_exception(exc)
                    else:
                        if not fut.done():
                            fut.set_result(result)
                    finally:
                        self._running.discard(group_folder)
        finally:
            self._drainers.pop(group_folder, None)
            if not queue:
                self._queues.pop(group_folder, None)

    async def shutdown(self) -> None:
        """Cancel queued and running turns."""
        drainers = list(self._drainers.values())
        for task in drainers:
            task.cancel()
        for queue in self._queues.values():
            for _work, fut in queue:
                fut.cancel()
        if drainers:
            await asyncio.gather(*drainers, return_exceptions=True)
        self._queues.clear()
        self._drainers.clear()
