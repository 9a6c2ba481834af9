"""
Shared fixtures for the Warren test suite.

Provides a populated group registry, a mock delegation config, and a
scriptable session runner so individual test modules can focus on behavior
rather than setup.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from warren.channels.base import Channel
from warren.groups import ContainerConfig, GroupRegistry, RegisteredGroup
from warren.orchestration.models import OutputCallback, SessionRunResult, SessionSpec
from warren.orchestration.runners import SessionRunnerBase, emit_output
from warren.orchestration.task_channel import TaskChannel


class MockDelegationConfig:
    """Minimal DelegationConfig stand-in for tests."""

    enabled = True
    max_delegation_containers = 3
    ipc_poll_interval = 0.01
    default_timeout = 300
    max_timeout = 1800
    result_poll_interval = 0.01
    seen_request_cache = 64


class FakeRunner(SessionRunnerBase):
    """Records every spec it runs and replays scripted fragments.

    ``outputs`` maps a group folder to the fragments its session streams.
    ``gate`` (if set) holds every run open until the test releases it.
    """

    def __init__(
        self,
        outputs: Optional[dict[str, list[str]]] = None,
        *,
        status: str = "success",
        summary: Optional[str] = None,
        session_id: Optional[str] = None,
        error: Optional[str] = None,
        delay: float = 0.0,
    ):
        self.outputs = outputs or {}
        self.status = status
        self.summary = summary
        self.session_id = session_id
        self.error = error
        self.delay = delay
        self.gate: Optional[asyncio.Event] = None
        self.specs: list[SessionSpec] = []
        self.terminated: list[str] = []
        self.active = 0
        self.peak = 0

    async def run(
        self,
        spec: SessionSpec,
        on_output: Optional[OutputCallback] = None,
    ) -> SessionRunResult:
        self.specs.append(spec)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            fragments = self.outputs.get(spec.group_folder, [])
            for text in fragments:
                await emit_output(on_output, text)
            return SessionRunResult(
                session_name=spec.session_name,
                status=self.status,
                summary=self.summary,
                session_id=self.session_id,
                error=self.error,
                outputs=len(fragments),
            )
        finally:
            self.active -= 1

    async def terminate(self, session_name: str) -> None:
        self.terminated.append(session_name)


class StubChannel(Channel):
    """In-memory channel that records what it sends."""

    def __init__(self, prefix: str, max_len: int = 0):
        self._prefix = prefix
        self.max_message_length = max_len
        self.sent: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return self._prefix.rstrip(":")

    @property
    def jid_prefix(self) -> str:
        return self._prefix

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def send_message(self, jid: str, text: str) -> None:
        self.sent.append((jid, text))

    def is_connected(self) -> bool:
        return True


def make_group(
    folder: str,
    *,
    jid: Optional[str] = None,
    allow: tuple[str, ...] = (),
    trigger: str = "@Andy",
) -> RegisteredGroup:
    config = ContainerConfig(allow_delegation=set(allow)) if allow else None
    return RegisteredGroup(
        jid=jid or f"tg:{folder}",
        name=folder.replace("-", " ").title(),
        folder=folder,
        trigger=trigger,
        container_config=config,
    )


@pytest.fixture
def registry() -> GroupRegistry:
    """main, gmail-reader, research (may delegate to browser), browser, finance."""
    reg = GroupRegistry(main_folder="main")
    reg.register(make_group("main"))
    reg.register(make_group("gmail-reader"))
    reg.register(make_group("research", allow=("browser", "main")))
    reg.register(make_group("browser"))
    reg.register(make_group("finance"))
    return reg


@pytest.fixture
def delegation_config() -> MockDelegationConfig:
    return MockDelegationConfig()


@pytest.fixture
def task_channel(tmp_path) -> TaskChannel:
    return TaskChannel(tmp_path / "ipc")


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()
