"""
Task Channel — one-shot requests from isolated sessions to the host.

Every group owns an IPC directory that is mounted into its containers::

    <ipc_root>/<group>/tasks/<requestId>.json     session → host
    <ipc_root>/<group>/results/<requestId>.json   host → session

Writers create the artifact under a temporary name and rename it into place,
so a watcher never reads half a file. The watcher claims an artifact by
renaming it to a private hidden name first; ``rename`` either succeeds for
exactly one claimer or fails with FileNotFoundError, so no request is handed
out twice. Claiming deletes the artifact: delivery is at-most-once.

The directory an artifact is found in is the authoritative source group. A
session cannot write into another group's directory, so it cannot delegate
on someone else's behalf by lying in the payload.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import structlog

from warren.errors import ProtocolError
from warren.orchestration.models import TaskRequest, parse_task

logger = structlog.get_logger(__name__)

TASKS_DIRNAME = "tasks"
RESULTS_DIRNAME = "results"
_ARTIFACT_SUFFIX = ".json"


def atomic_write_json(directory: Path, name: str, payload: Any) -> Path:
    """Write *payload* to ``directory/name`` via tempfile + rename."""
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / name
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        os.replace(tmp_path, target)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return target


def is_artifact(path: Path) -> bool:
    """Visible ``*.json`` files only; temp and claimed files are hidden."""
    return path.suffix == _ARTIFACT_SUFFIX and not path.name.startswith(".")


def write_task(tasks_dir: Path, request: TaskRequest) -> Path:
    """Durably drop a task artifact where the host watcher will find it."""
    return atomic_write_json(tasks_dir, f"{request.request_id}{_ARTIFACT_SUFFIX}", request.to_artifact())


@dataclass
class ClaimedTask:
    """A request taken off the task channel by the host."""

    source_group: str
    request: TaskRequest
    claimed_at: float = field(default_factory=time.time)


class TaskChannel:
    """Host-side view of every group's task directory."""

    def __init__(self, ipc_root: Path) -> None:
        self._root = ipc_root

    @property
    def root(self) -> Path:
        return self._root

    def group_dir(self, group_folder: str) -> Path:
        return self._root / group_folder

    def tasks_dir(self, group_folder: str) -> Path:
        return self.group_dir(group_folder) / TASKS_DIRNAME

    def results_dir(self, group_folder: str) -> Path:
        return self.group_dir(group_folder) / RESULTS_DIRNAME

    def ensure_group(self, group_folder: str) -> Path:
        self.tasks_dir(group_folder).mkdir(parents=True, exist_ok=True)
        self.results_dir(group_folder).mkdir(parents=True, exist_ok=True)
        return self.group_dir(group_folder)

    def submit(self, source_group: str, request: TaskRequest) -> Path:
        path = write_task(self.tasks_dir(source_group), request)
        logger.debug(
            "task_channel.submitted",
            group=source_group,
            request_id=request.request_id,
            type=request.type,
        )
        return path

    def pending(self) -> list[tuple[str, Path]]:
        """List unclaimed artifacts as (source_group, path), oldest first."""
        if not self._root.is_dir():
            return []
        found: list[tuple[float, str, str, Path]] = []
        for group_dir in self._root.iterdir():
            tasks_dir = group_dir / TASKS_DIRNAME
            if not tasks_dir.is_dir():
                continue
            for path in tasks_dir.iterdir():
                if not is_artifact(path):
                    continue
                try:
                    mtime = path.stat().st_mtime
                except FileNotFoundError:
                    continue
                found.append((mtime, group_dir.name, path.name, path))
        found.sort()
        return [(group, path) for _mtime, group, _name, path in found]

    def claim_next(self) -> Optional[ClaimedTask]:
        """Claim and remove the oldest valid request, or return None.

        Malformed artifacts are logged and dropped along the way.
        """
        for source_group, path in self.pending():
            claimed_path = path.with_name(f".{path.stem}.{uuid.uuid4().hex[:8]}.claimed")
            try:
                os.rename(path, claimed_path)
            except FileNotFoundError:
                # Another claimer won the race for this artifact.
                continue

            try:
                raw = claimed_path.read_bytes()
            finally:
                claimed_path.unlink(missing_ok=True)

            try:
                request = self._decode(source_group, raw)
            except ProtocolError as exc:
                logger.warning(
                    "task_channel.dropped_malformed",
                    group=source_group,
                    file=path.name,
                    error=exc.message,
                )
                continue

            logger.info(
                "task_channel.claimed",
                group=source_group,
                request_id=request.request_id,
                type=request.type,
            )
            return ClaimedTask(source_group=source_group, request=request)
        return None

    @staticmethod
    def _decode(source_group: str, raw: bytes) -> TaskRequest:
        try:
            data = json.loads(raw.decode("utf-8"))
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"Task artifact is not valid UTF-8: {exc.reason}") from exc
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Task artifact is not valid JSON: {exc.msg}") from exc
        request = parse_task(data)
        claimed_source = getattr(request, "source_group", None)
        if claimed_source is not None and claimed_source != source_group:
            raise ProtocolError(
                f"sourceGroup {claimed_source!r} does not match directory {source_group!r}"
            )
        return request


TaskHandler = Callable[[ClaimedTask], Awaitable[Any]]


class TaskWatcher:
    """Polls the task channel and dispatches each claim as its own task.

    Handlers run concurrently; a slow delegation never delays the next poll.
    """

    def __init__(self, channel: TaskChannel, poll_interval: float = 1.0) -> None:
        self._channel = channel
        self._poll_interval = max(0.01, float(poll_interval))
        self._handlers: dict[str, TaskHandler] = {}
        self._inflight: set[asyncio.Task] = set()
        self._loop_task: asyncio.Task | None = None

    def register(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def poll_once(self) -> int:
        """Claim everything currently pending. Returns the number dispatched."""
        dispatched = 0
        while True:
            claim = self._channel.claim_next()
            if claim is None:
                return dispatched
            handler = self._handlers.get(claim.request.type)
            if handler is None:
                logger.warning(
                    "task_watcher.no_handler",
                    type=claim.request.type,
                    request_id=claim.request.request_id,
                )
                continue
            task = asyncio.create_task(
                handler(claim),
                name=f"task:{claim.request.request_id}",
            )
            self._inflight.add(task)
            task.add_done_callback(self._on_done)
            dispatched += 1

    def _on_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("task_watcher.handler_failed", task=task.get_name(), error=str(exc))

    def start(self) -> None:
        if self._loop_task is not None:
            return
        self._loop_task = asyncio.create_task(self._run(), name="task_watcher")
        logger.info(
            "task_watcher.started",
            root=str(self._channel.root),
            interval=self._poll_interval,
        )

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Stop polling and give in-flight handlers a moment to finish."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._inflight:
            pending = list(self._inflight)
            _done, still_running = await asyncio.wait(pending, timeout=drain_timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("task_watcher.shutdown_timeout", remaining=len(still_running))

    async def _run(self) -> None:
        while True:
            try:
                self.poll_once()
            except Exception:
                logger.error("task_watcher.poll_failed", exc_info=True)
            await asyncio.sleep(self._poll_interval)
