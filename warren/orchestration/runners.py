"""
Session Runners — The Execution Backends.

A runner takes a SessionSpec, starts one isolated agent session, streams its
output fragments to a callback, and returns a SessionRunResult. The agent
engine inside the container is not Warren's concern; the runner only speaks
the container's stdio protocol:

    stdin   one JSON object: prompt, groupFolder, chatJid, isMain,
            sessionId (resume) or null, isDelegation
    stdout  line-delimited JSON events
              {"type": "output", "text": "..."}             per fragment
              {"type": "result", "status": "success"|"error",
               "summary": "...", "sessionId": "...", "error": "..."}

Expected failures (no Docker, non-zero exit, timeout) come back as a result
with an error status rather than an exception.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog

from warren.orchestration.models import OutputCallback, SessionRunResult, SessionSpec

logger = structlog.get_logger(__name__)

_STDERR_TAIL = 500


async def emit_output(on_output: Optional[OutputCallback], text: str) -> None:
    """Invoke a sync or async output callback."""
    if on_output is None:
        return
    maybe = on_output(text)
    if inspect.isawaitable(maybe):
        await maybe


class SessionRunnerBase(ABC):
    """Abstract base for session execution backends."""

    @abstractmethod
    async def run(
        self,
        spec: SessionSpec,
        on_output: Optional[OutputCallback] = None,
    ) -> SessionRunResult:
        """Execute one session and return its result."""

    async def terminate(self, session_name: str) -> None:
        """Force a running session to stop. Default: nothing to do."""


class ContainerSessionRunner(SessionRunnerBase):
    """Run a session in a Docker container with a JSON-lines stdio protocol."""

    def __init__(self, container_manager: Any):  # ContainerManager
        self._containers = container_manager
        self._running: dict[str, asyncio.subprocess.Process] = {}

    @property
    def running(self) -> list[str]:
        return list(self._running)

    async def run(
        self,
        spec: SessionSpec,
        on_output: Optional[OutputCallback] = None,
    ) -> SessionRunResult:
        start = time.monotonic()
        name = spec.session_name

        if not await self._containers.check_available():
            logger.error("session.docker_unavailable", session=name, group=spec.group_folder)
            return SessionRunResult(
                session_name=name,
                status="error",
                error="Docker is not available",
            )

        logger.info(
            "session.start",
            session=name,
            group=spec.group_folder,
            delegation=spec.is_delegation,
            resume=bool(spec.resume_session_id),
        )

        proc: Optional[asyncio.subprocess.Process] = None
        try:
            _container, proc = await self._containers.run_container(spec)
            self._running[name] = proc

            payload = {
                "prompt": spec.prompt,
                "groupFolder": spec.group_folder,
                "chatJid": spec.chat_jid,
                "isMain": spec.is_main,
                "sessionId": spec.resume_session_id,
                "isDelegation": spec.is_delegation,
            }
            proc.stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
            await proc.stdin.drain()
            proc.stdin.close()

            result = await asyncio.wait_for(
                self._pump(spec, proc, on_output),
                timeout=spec.timeout_seconds,
            )
            result.elapsed_seconds = round(time.monotonic() - start, 2)
            logger.info(
                "session.complete",
                session=name,
                status=result.status,
                outputs=result.outputs,
                elapsed=result.elapsed_seconds,
            )
            return result

        except asyncio.TimeoutError:
            logger.warning("session.timeout", session=name, timeout=spec.timeout_seconds)
            await self._containers.kill_container(name)
            return SessionRunResult(
                session_name=name,
                status="timeout",
                error=f"Session timed out after {spec.timeout_seconds:g}s",
                elapsed_seconds=round(time.monotonic() - start, 2),
            )

        except asyncio.CancelledError:
            logger.warning("session.cancelled", session=name)
            await self._containers.kill_container(name)
            raise

        except Exception as exc:
            logger.error("session.error", session=name, error=str(exc), exc_info=True)
            if proc is not None:
                await self._containers.kill_container(name)
            return SessionRunResult(
                session_name=name,
                status="error",
                error=str(exc) or type(exc).__name__,
                elapsed_seconds=round(time.monotonic() - start, 2),
            )

        finally:
            self._running.pop(name, None)

    async def terminate(self, session_name: str) -> None:
        await self._containers.kill_container(session_name)

    async def _pump(
        self,
        spec: SessionSpec,
        proc: asyncio.subprocess.Process,
        on_output: Optional[OutputCallback],
    ) -> SessionRunResult:
        """Read stdout events until the container exits."""
        outputs = 0
        final: dict[str, Any] = {}
        # Drain stderr alongside stdout so a chatty container cannot fill the pipe.
        stderr_task = asyncio.ensure_future(proc.stderr.read()) if proc.stderr is not None else None

        try:
            async for raw_line in proc.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("session.stdout", session=spec.session_name, line=line[:200])
                    continue
                if not isinstance(event, dict):
                    continue
                kind = event.get("type")
                if kind == "output":
                    text = event.get("text")
                    if isinstance(text, str) and text:
                        outputs += 1
                        await emit_output(on_output, text)
                elif kind == "result":
                    final = event

            returncode = await proc.wait()
            stderr = await stderr_task if stderr_task is not None else b""
        finally:
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()

        if final:
            status = "success" if final.get("status", "success") == "success" else "error"
            return SessionRunResult(
                session_name=spec.session_name,
                status=status,
                summary=final.get("summary") or None,
                session_id=final.get("sessionId") or None,
                error=final.get("error") or None,
                outputs=outputs,
            )

        if returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-_STDERR_TAIL:].strip()
            return SessionRunResult(
                session_name=spec.session_name,
                status="error",
                error=f"Container exited with code {returncode}" + (f": {tail}" if tail else ""),
                outputs=outputs,
            )

        return SessionRunResult(session_name=spec.session_name, outputs=outputs)
