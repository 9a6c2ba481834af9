"""
Delegation Client — the tool an agent session calls to delegate.

Runs inside a session container against the group's own IPC mount
(``/workspace/ipc``). ``delegate()`` drops a task artifact, then polls for the
matching outcome. It is the only place a session blocks on the host, and it
does so by polling files, never by holding a host-side lock.

The agent always gets back plain text: the delegated answer, or a short
"Delegation failed: ..." line.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Optional

import structlog

from warren.orchestration.models import (
    DEFAULT_TIMEOUT_SECONDS,
    MAX_TIMEOUT_SECONDS,
    DelegateRequest,
    DelegationOutcome,
    RequestRecord,
    RequestState,
    new_request_id,
)
from warren.orchestration.result_channel import Clock, ResultChannel, Sleeper
from warren.orchestration.task_channel import RESULTS_DIRNAME, TASKS_DIRNAME, write_task

logger = structlog.get_logger(__name__)

DEFAULT_IPC_DIR = Path("/workspace/ipc")
FAILURE_PREFIX = "Delegation failed: "


class DelegationClient:
    """Requester side of the task/result protocol for one group."""

    def __init__(
        self,
        source_group: str,
        ipc_dir: Path = DEFAULT_IPC_DIR,
        *,
        poll_interval: float = 0.5,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._source_group = source_group
        self._tasks_dir = ipc_dir / TASKS_DIRNAME
        self._results = ResultChannel(ipc_dir / RESULTS_DIRNAME, clock=clock, sleep=sleep)
        self._poll_interval = poll_interval
        self._clock = clock
        self._records: dict[str, RequestRecord] = {}

    def start(self) -> int:
        """Sweep outcomes left over from a previous run. Call once per session start."""
        self._tasks_dir.mkdir(parents=True, exist_ok=True)
        self._results.results_dir.mkdir(parents=True, exist_ok=True)
        return self._results.cleanup_stale()

    def record(self, request_id: str) -> Optional[RequestRecord]:
        return self._records.get(request_id)

    async def request(
        self,
        target_group: str,
        prompt: str,
        timeout_seconds: Optional[int] = None,
    ) -> tuple[str, DelegationOutcome]:
        """Submit a delegation and wait for its outcome. Returns (request_id, outcome)."""
        timeout = DEFAULT_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        timeout = max(1, min(MAX_TIMEOUT_SECONDS, int(timeout)))
        request = DelegateRequest(
            request_id=new_request_id(),
            source_group=self._source_group,
            target_group=target_group,
            prompt=prompt,
            timeout_seconds=timeout,
        )
        record = RequestRecord(request_id=request.request_id)
        self._records[request.request_id] = record

        write_task(self._tasks_dir, request)
        logger.info(
            "delegation_client.submitted",
            request_id=request.request_id,
            target=target_group,
            timeout=timeout,
        )

        outcome = await self._results.poll(
            request.request_id,
            poll_interval=self._poll_interval,
            timeout=timeout,
        )

        now = self._clock()
        if outcome is None:
            # The host may still finish and write the file; start() sweeps it later.
            record.advance(RequestState.EXPIRED, now)
            logger.info("delegation_client.gave_up", request_id=request.request_id, timeout=timeout)
            return request.request_id, DelegationOutcome.failure(
                f"Timed out after {timeout}s waiting for '{target_group}'",
                target_group=target_group,
            )

        record.advance(RequestState.COMPLETED if outcome.ok else RequestState.FAILED, now)
        record.advance(RequestState.CONSUMED, now)
        if not outcome.target_group:
            outcome.target_group = target_group
        return request.request_id, outcome

    async def delegate(
        self,
        target_group: str,
        prompt: str,
        timeout_seconds: Optional[int] = None,
    ) -> str:
        """Tool surface: the delegated answer text or a short error string."""
        try:
            _request_id, outcome = await self.request(target_group, prompt, timeout_seconds)
        except Exception as exc:
            logger.error("delegation_client.error", target=target_group, error=str(exc), exc_info=True)
            return f"{FAILURE_PREFIX}could not submit request to '{target_group}'"
        if outcome.ok:
            return outcome.result or ""
        return f"{FAILURE_PREFIX}{outcome.error or 'unknown error'}"
