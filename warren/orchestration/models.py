"""
Orchestration Data Models — The Language of Delegation.

These Pydantic models define the contract between isolated agent sessions and
the host. Task artifacts travel from a session to the host; outcome artifacts
travel back. Field aliases match the on-disk JSON (camelCase), attribute names
are snake_case.

SessionSpec describes *what* to run. SessionRunResult describes *what
happened*. RequestRecord tracks a single request through its lifecycle.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from warren.errors import ProtocolError

DEFAULT_TIMEOUT_SECONDS = 300
MAX_TIMEOUT_SECONDS = 1800
NO_OUTPUT_MARKER = "(no output)"


def new_request_id() -> str:
    return f"del-{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


class TaskRequest(BaseModel):
    """A unit of work handed from an isolated session to the host."""

    type: str
    request_id: str = Field(alias="requestId", min_length=1, max_length=128)

    model_config = {"populate_by_name": True, "extra": "allow"}

    @field_validator("request_id")
    @classmethod
    def _safe_request_id(cls, value: str) -> str:
        # Request ids become file names; refuse anything that could escape the directory.
        if "/" in value or "\\" in value or value.startswith("."):
            raise ValueError("requestId must be a plain file name")
        return value

    def to_artifact(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class DelegateRequest(TaskRequest):
    """Ask the host to run ``prompt`` in ``target_group`` and report back."""

    type: Literal["delegate"] = "delegate"
    source_group: str = Field(alias="sourceGroup", min_length=1)
    target_group: str = Field(alias="targetGroup", min_length=1)
    prompt: str
    timeout_seconds: int = Field(DEFAULT_TIMEOUT_SECONDS, alias="timeoutSeconds")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("timeout_seconds", mode="before")
    @classmethod
    def _clamp_timeout(cls, value: Any) -> int:
        if value is None:
            return DEFAULT_TIMEOUT_SECONDS
        try:
            seconds = int(value)
        except (TypeError, OverflowError) as exc:
            # pydantic only turns ValueError into a ValidationError.
            raise ValueError(f"timeoutSeconds must be a finite number, got {value!r}") from exc
        return max(1, min(MAX_TIMEOUT_SECONDS, seconds))


TASK_TYPES: dict[str, type[TaskRequest]] = {
    "delegate": DelegateRequest,
}


def parse_task(data: Any) -> TaskRequest:
    """Validate a decoded task artifact into its typed model.

    Raises ProtocolError for anything that is not a well-formed request of a
    known type.
    """
    if not isinstance(data, dict):
        raise ProtocolError("Task artifact is not a JSON object")
    task_type = data.get("type")
    model = TASK_TYPES.get(task_type) if isinstance(task_type, str) else None
    if model is None:
        raise ProtocolError(f"Unknown task type: {task_type!r}")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ProtocolError(
            f"Malformed {task_type} request: {exc.error_count()} invalid field(s)"
        ) from exc


class DelegationOutcome(BaseModel):
    """The answer handed back to the requester."""

    status: Literal["success", "error"]
    result: Optional[str] = None
    error: Optional[str] = None
    target_group: str = Field("", alias="targetGroup")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @classmethod
    def success(cls, result: str, target_group: str) -> "DelegationOutcome":
        return cls(status="success", result=result, target_group=target_group)

    @classmethod
    def failure(cls, error: str, target_group: str) -> "DelegationOutcome":
        return cls(status="error", error=error, target_group=target_group)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_artifact(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RequestState(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"
    CONSUMED = "consumed"
    EXPIRED = "expired"


_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.PENDING: frozenset(
        {RequestState.CLAIMED, RequestState.COMPLETED, RequestState.FAILED, RequestState.EXPIRED}
    ),
    RequestState.CLAIMED: frozenset({RequestState.COMPLETED, RequestState.FAILED}),
    RequestState.COMPLETED: frozenset({RequestState.CONSUMED, RequestState.EXPIRED}),
    RequestState.FAILED: frozenset({RequestState.CONSUMED, RequestState.EXPIRED}),
    RequestState.CONSUMED: frozenset(),
    RequestState.EXPIRED: frozenset(),
}

TERMINAL_STATES = frozenset({RequestState.CONSUMED, RequestState.EXPIRED})


class RequestRecord(BaseModel):
    """Lifecycle of one request: pending → claimed → completed|failed → consumed|expired.

    The requester never observes ``claimed``; it moves straight from pending to
    completed/failed when it finds the outcome. Time comes from an injectable
    clock so tests can step through transitions without sleeping.
    """

    request_id: str
    state: RequestState = RequestState.PENDING
    history: dict[str, float] = Field(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        if not self.history:
            self.history[self.state.value] = time.time()

    def advance(self, new_state: RequestState, now: Optional[float] = None) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ProtocolError(
                f"Illegal transition for {self.request_id}: "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history[new_state.value] = time.time() if now is None else now

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def entered_at(self, state: RequestState) -> Optional[float]:
        return self.history.get(state.value)


class SessionSpec(BaseModel):
    """Everything a runner needs to start one isolated agent session."""

    session_name: str = Field(default_factory=lambda: f"warren-{uuid.uuid4().hex[:12]}")
    group_folder: str
    prompt: str
    chat_jid: str = ""
    is_main: bool = False
    # Delegated runs always start fresh; ordinary turns resume the group's session.
    resume_session_id: Optional[str] = None
    is_delegation: bool = False
    request_id: Optional[str] = None
    timeout_seconds: float = 1800.0
    additional_mounts: list[str] = Field(default_factory=list)


class SessionRunResult(BaseModel):
    """Outcome of one session run, as reported by a runner."""

    session_name: str
    status: Literal["success", "error", "timeout", "cancelled"] = "success"
    summary: Optional[str] = None
    session_id: Optional[str] = None
    error: Optional[str] = None
    outputs: int = 0
    elapsed_seconds: float = 0.0


# Callback invoked by runners for each streamed output fragment.
OutputCallback = Callable[[str], Any]
