"""
Delegation Coordinator — one group's agent asking another group's agent.

A session drops a ``delegate`` task into its IPC directory; the task watcher
hands the claim here. The coordinator:

  - Authorizes the (source, target) pair before touching any resource
  - Takes a slot from the delegation pool, failing fast when it is full
  - Runs a fresh, non-resumed session for the target group
  - Buffers streamed fragments under a hard execution ceiling
  - Always releases the slot and writes exactly one outcome file

Delegation slots are a separate, smaller pool from ordinary turns, and a full
pool answers "busy" instead of queuing. Queuing here is what would let a ring
of groups delegating to each other fill every slot with sessions that are all
waiting on each other.

The run is detached from the requester. If the requester stops waiting, the
session still runs to completion (or to its ceiling) and the outcome file is
still written.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import Any, Callable, Optional

import structlog

from warren.errors import (
    AuthorizationError,
    BusyError,
    DelegationError,
    DelegationTimeoutError,
    ProtocolError,
    SpawnError,
    UnknownTargetError,
)
from warren.groups import GroupRegistry, RegisteredGroup
from warren.orchestration.models import (
    NO_OUTPUT_MARKER,
    DelegateRequest,
    DelegationOutcome,
    RequestRecord,
    RequestState,
    SessionSpec,
    new_request_id,
)
from warren.orchestration.pool import ConcurrencyPool
from warren.orchestration.result_channel import write_outcome
from warren.orchestration.runners import SessionRunnerBase
from warren.orchestration.task_channel import ClaimedTask, TaskChannel

logger = structlog.get_logger(__name__)

FRAGMENT_SEPARATOR = "\n\n"


class DelegationCoordinator:
    """Authorizes, runs and reports delegated sessions."""

    def __init__(
        self,
        config: Any,  # DelegationConfig
        registry: GroupRegistry,
        channel: TaskChannel,
        runner: SessionRunnerBase,
        pool: Optional[ConcurrencyPool] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._registry = registry
        self._channel = channel
        self._runner = runner
        self._pool = pool or ConcurrencyPool("delegation", config.max_delegation_containers)
        self._clock = clock

        # request_id -> RequestRecord. Doubles as the "already seen" ledger.
        self._records: OrderedDict[str, RequestRecord] = OrderedDict()
        self._active: set[str] = set()

        logger.info(
            "delegation.initialized",
            max_containers=self._pool.limit,
            default_timeout=config.default_timeout,
            max_timeout=config.max_timeout,
        )

    @property
    def pool(self) -> ConcurrencyPool:
        return self._pool

    @property
    def active_count(self) -> int:
        return len(self._active)

    def record(self, request_id: str) -> Optional[RequestRecord]:
        return self._records.get(request_id)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize(self, source_folder: str, target_folder: str) -> RegisteredGroup:
        """Return the target group if *source* may delegate to it, else raise."""
        source = self._registry.by_folder(source_folder)
        if source is None:
            raise AuthorizationError(
                f"Group '{source_folder}' is not registered", target_group=target_folder
            )

        target = self._registry.by_folder(target_folder)
        if target is None:
            raise UnknownTargetError(
                f"Unknown group '{target_folder}'", target_group=target_folder
            )

        if source_folder == target_folder:
            return target
        if self._registry.is_main(source_folder):
            return target
        if self._registry.is_main(target_folder):
            raise AuthorizationError(
                f"Group '{source_folder}' may not delegate to the main group",
                target_group=target_folder,
            )
        if target_folder in source.allow_delegation:
            return target
        raise AuthorizationError(
            f"Group '{source_folder}' is not allowed to delegate to '{target_folder}'",
            target_group=target_folder,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def handle_task(self, claim: ClaimedTask) -> None:
        """Task-watcher entry point for ``delegate`` requests."""
        request = claim.request
        if not isinstance(request, DelegateRequest):
            raise ProtocolError(f"Not a delegate request: {request.type}")

        if request.request_id in self._records:
            logger.warning(
                "delegation.duplicate_request",
                request_id=request.request_id,
                source=claim.source_group,
            )
            return

        record = RequestRecord(request_id=request.request_id, history={})
        record.history[RequestState.PENDING.value] = claim.claimed_at
        record.advance(RequestState.CLAIMED, self._clock())
        self._remember(record)

        outcome = await self.delegate(
            claim.source_group,
            request.target_group,
            request.prompt,
            request.timeout_seconds,
            request_id=request.request_id,
        )
        self._publish(claim.source_group, record, outcome)

    async def delegate(
        self,
        source_group: str,
        target_folder: str,
        prompt: str,
        timeout_seconds: Optional[int] = None,
        *,
        request_id: Optional[str] = None,
    ) -> DelegationOutcome:
        """Run *prompt* in *target_folder* on behalf of *source_group*.

        Never raises: every failure comes back as an error outcome.
        """
        request_id = request_id or new_request_id()
        log = logger.bind(request_id=request_id, source=source_group, target=target_folder)
        started = time.monotonic()
        self._active.add(request_id)
        try:
            if not self._config.enabled:
                raise DelegationError("Delegation is disabled", target_group=target_folder)
            target = self.authorize(source_group, target_folder)
            ceiling = self._ceiling(timeout_seconds)
            async with self._pool.slot(wait=False):
                log.info("delegation.start", timeout=ceiling, pool=self._pool.snapshot())
                text = await self._run_target(target, prompt, ceiling, request_id)
            outcome = DelegationOutcome.success(text, target_group=target_folder)
        except BusyError as exc:
            log.warning("delegation.busy", pool=self._pool.snapshot())
            outcome = DelegationOutcome.failure(exc.message, target_group=target_folder)
        except (AuthorizationError, UnknownTargetError) as exc:
            log.warning("delegation.rejected", kind=exc.kind, error=exc.message)
            outcome = DelegationOutcome.failure(exc.message, target_group=target_folder)
        except DelegationError as exc:
            log.warning("delegation.failed", kind=exc.kind, error=exc.message)
            outcome = DelegationOutcome.failure(exc.message, target_group=target_folder)
        except Exception as exc:
            log.error("delegation.crashed", error=str(exc), exc_info=True)
            outcome = DelegationOutcome.failure(
                f"Internal error while delegating to '{target_folder}'",
                target_group=target_folder,
            )
        finally:
            self._active.discard(request_id)

        log.info(
            "delegation.complete",
            status=outcome.status,
            elapsed=round(time.monotonic() - started, 2),
        )
        return outcome

    # ------------------------------------------------------------------
    # Internal methods
    # ------------------------------------------------------------------

    def _ceiling(self, timeout_seconds: Optional[int]) -> int:
        if timeout_seconds is None or timeout_seconds <= 0:
            timeout_seconds = self._config.default_timeout
        return max(1, min(int(timeout_seconds), int(self._config.max_timeout)))

    async def _run_target(
        self,
        target: RegisteredGroup,
        prompt: str,
        ceiling: int,
        request_id: str,
    ) -> str:
        mounts = list(target.container_config.additional_mounts) if target.container_config else []
        spec = SessionSpec(
            group_folder=target.folder,
            prompt=prompt,
            chat_jid=target.jid,
            is_main=self._registry.is_main(target.folder),
            resume_session_id=None,
            is_delegation=True,
            request_id=request_id,
            timeout_seconds=float(ceiling),
            additional_mounts=mounts,
        )

        fragments: list[str] = []
        try:
            result = await asyncio.wait_for(
                self._runner.run(spec, on_output=fragments.append),
                timeout=ceiling,
            )
        except asyncio.TimeoutError:
            await self._runner.terminate(spec.session_name)
            raise DelegationTimeoutError(
                f"Delegation to '{target.folder}' timed out after {ceiling}s",
                target_group=target.folder,
            ) from None
        except DelegationError:
            raise
        except Exception as exc:
            raise SpawnError(
                f"Session for '{target.folder}' failed to run: {exc}",
                target_group=target.folder,
            ) from exc

        if result.status == "timeout":
            raise DelegationTimeoutError(
                f"Delegation to '{target.folder}' timed out after {ceiling}s",
                target_group=target.folder,
            )
        if result.status != "success":
            raise SpawnError(
                f"Session for '{target.folder}' failed: {result.error or result.status}",
                target_group=target.folder,
            )

        if fragments:
            return FRAGMENT_SEPARATOR.join(fragments)
        return result.summary or NO_OUTPUT_MARKER

    def _publish(self, source_group: str, record: RequestRecord, outcome: DelegationOutcome) -> None:
        """Write the single outcome file and close out the record."""
        try:
            write_outcome(self._channel.results_dir(source_group), record.request_id, outcome)
        except ProtocolError as exc:
            logger.error("delegation.outcome_exists", request_id=record.request_id, error=exc.message)
            return
        except OSError as exc:
            logger.error(
                "delegation.outcome_write_failed",
                request_id=record.request_id,
                error=str(exc),
            )
            record.advance(RequestState.FAILED, self._clock())
            return
        record.advance(
            RequestState.COMPLETED if outcome.ok else RequestState.FAILED,
            self._clock(),
        )

    def _remember(self, record: RequestRecord) -> None:
        self._records[record.request_id] = record
        while len(self._records) > self._config.seen_request_cache:
            self._records.popitem(last=False)
