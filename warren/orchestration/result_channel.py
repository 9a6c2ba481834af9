"""
Result Channel — the answer travelling back to the waiting session.

The host writes exactly one outcome file per request into the requester's
``results`` directory. The requester polls that directory, and when the file
appears it reads and deletes it (consume-once).

The requester's wait is only an observer. Giving up does not cancel anything
on the host, so an outcome may land after nobody is waiting for it; such
stale files are swept the next time the requester's environment starts.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import ValidationError

from warren.errors import ProtocolError
from warren.orchestration.models import MAX_TIMEOUT_SECONDS, DelegationOutcome

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

# Past the longest wait any requester can still be in.
STALE_AFTER_SECONDS = MAX_TIMEOUT_SECONDS + 60


def outcome_path(results_dir: Path, request_id: str) -> Path:
    return results_dir / f"{request_id}.json"


def write_outcome(results_dir: Path, request_id: str, outcome: DelegationOutcome) -> Path:
    """Publish *outcome* for *request_id*, refusing to overwrite an existing one.

    The payload is written to a temp file and hard-linked into place; ``link``
    fails if the target exists, so two writers can never both succeed.
    """
    results_dir.mkdir(parents=True, exist_ok=True)
    target = outcome_path(results_dir, request_id)
    fd, tmp_path = tempfile.mkstemp(dir=results_dir, prefix=".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(outcome.to_artifact(), f)
        try:
            os.link(tmp_path, target)
        except FileExistsError:
            raise ProtocolError(f"Outcome for {request_id} was already written") from None
    finally:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
    return target


class ResultChannel:
    """Requester-side reader for one group's results directory."""

    def __init__(
        self,
        results_dir: Path,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
        wall_clock: Clock = time.time,
    ) -> None:
        self._dir = results_dir
        self._clock = clock
        self._sleep = sleep
        self._wall_clock = wall_clock

    @property
    def results_dir(self) -> Path:
        return self._dir

    def take(self, request_id: str) -> Optional[DelegationOutcome]:
        """Consume the outcome for *request_id* if it has arrived."""
        path = outcome_path(self._dir, request_id)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        # Only delete what was actually read; the host links the file in one step.
        path.unlink(missing_ok=True)

        try:
            return DelegationOutcome.model_validate(json.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("result_channel.malformed", request_id=request_id, error=str(exc))
            return DelegationOutcome.failure("Malformed delegation result", target_group="")

    async def poll(
        self,
        request_id: str,
        *,
        poll_interval: float,
        timeout: float,
    ) -> Optional[DelegationOutcome]:
        """Poll until the outcome appears; None once *timeout* seconds pass."""
        deadline = self._clock() + timeout
        while True:
            outcome = self.take(request_id)
            if outcome is not None:
                return outcome
            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.info("result_channel.wait_timeout", request_id=request_id, timeout=timeout)
                return None
            await self._sleep(min(poll_interval, remaining))

    async def await_result(
        self,
        request_id: str,
        *,
        poll_interval: float,
        timeout: float,
        target_group: str = "",
    ) -> DelegationOutcome:
        """Like poll(), but a timeout becomes a client-side error outcome."""
        outcome = await self.poll(request_id, poll_interval=poll_interval, timeout=timeout)
        if outcome is None:
            return DelegationOutcome.failure(
                f"Timed out after {timeout:g}s waiting for a result from "
                f"'{target_group or 'target'}'",
                target_group=target_group,
            )
        if not outcome.target_group:
            outcome.target_group = target_group
        return outcome

    def cleanup_stale(self, max_age: float = STALE_AFTER_SECONDS) -> int:
        """Delete outcomes nobody consumed, plus leftover temp files.

        Every session of a group shares this directory, and a sibling session
        may still be waiting on a fresh outcome (or the host may be mid-write),
        so only files older than *max_age* seconds are touched.
        """
        if not self._dir.is_dir():
            return 0
        cutoff = self._wall_clock() - max_age
        removed = 0
        for path in self._dir.iterdir():
            if path.suffix not in {".json", ".tmp"}:
                continue
            try:
                if path.stat().st_mtime > cutoff:
                    continue
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.info("result_channel.stale_cleaned", count=removed, dir=str(self._dir))
        return removed
