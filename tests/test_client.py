"""Tests for warren.orchestration.client — the session-side delegate tool."""

from __future__ import annotations

import asyncio
import json
import os
import time

import pytest

from warren.orchestration.client import FAILURE_PREFIX, DelegationClient
from warren.orchestration.models import DelegationOutcome, RequestState
from warren.orchestration.result_channel import STALE_AFTER_SECONDS, outcome_path, write_outcome


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


def _only_task(ipc_dir) -> dict:
    files = list((ipc_dir / "tasks").iterdir())
    assert len(files) == 1
    return json.loads(files[0].read_text())


@pytest.mark.asyncio
async def test_request_writes_task_and_consumes_outcome(tmp_path):
    client = DelegationClient("research", tmp_path, poll_interval=0.01)
    client.start()

    async def host() -> None:
        while not list((tmp_path / "tasks").glob("*.json")):
            await asyncio.sleep(0.005)
        task = _only_task(tmp_path)
        assert task["sourceGroup"] == "research"
        assert task["targetGroup"] == "browser"
        assert task["timeoutSeconds"] == 60
        write_outcome(
            tmp_path / "results",
            task["requestId"],
            DelegationOutcome.success("done", target_group="browser"),
        )

    (request_id, outcome), _ = await asyncio.gather(
        client.request("browser", "open the page", timeout_seconds=60),
        host(),
    )

    assert outcome.ok
    assert outcome.result == "done"
    assert outcome.target_group == "browser"
    assert client.record(request_id).state == RequestState.CONSUMED
    assert not outcome_path(tmp_path / "results", request_id).exists()


@pytest.mark.asyncio
async def test_timeout_returns_error_and_marks_expired(tmp_path):
    clock = FakeClock()
    client = DelegationClient("research", tmp_path, poll_interval=1, clock=clock, sleep=clock.sleep)
    client.start()

    request_id, outcome = await client.request("browser", "slow", timeout_seconds=5)

    assert outcome.status == "error"
    assert outcome.error == "Timed out after 5s waiting for 'browser'"
    assert outcome.target_group == "browser"
    assert client.record(request_id).state == RequestState.EXPIRED


@pytest.mark.asyncio
async def test_late_outcome_is_swept_without_affecting_new_requests(tmp_path):
    clock = FakeClock()
    client = DelegationClient("research", tmp_path, poll_interval=1, clock=clock, sleep=clock.sleep)
    client.start()

    old_id, outcome = await client.request("browser", "slow", timeout_seconds=2)
    assert outcome.status == "error"

    # The host finishes after the requester gave up, and nobody reads it for a long time.
    late = write_outcome(tmp_path / "results", old_id, DelegationOutcome.success("too late", "browser"))
    stamp = time.time() - STALE_AFTER_SECONDS - 1
    os.utime(late, (stamp, stamp))

    # Next session start sweeps it.
    restarted = DelegationClient(
        "research", tmp_path, poll_interval=1, clock=clock, sleep=clock.sleep
    )
    assert restarted.start() == 1
    assert not outcome_path(tmp_path / "results", old_id).exists()

    # A fresh request uses a fresh id and is unaffected.
    async def host() -> None:
        while True:
            tasks = [p for p in (tmp_path / "tasks").glob("*.json")]
            fresh = [p for p in tasks if p.stem != old_id]
            if fresh:
                break
            await asyncio.sleep(0)
        write_outcome(tmp_path / "results", fresh[0].stem, DelegationOutcome.success("fresh", "browser"))

    (new_id, new_outcome), _ = await asyncio.gather(
        restarted.request("browser", "again", timeout_seconds=30),
        host(),
    )
    assert new_id != old_id
    assert new_outcome.result == "fresh"


@pytest.mark.asyncio
async def test_sibling_session_start_keeps_pending_outcome(tmp_path):
    # A delegated run into a group can start while that group's own turn is
    # waiting on a result in the same shared IPC directory.
    waiting = DelegationClient("research", tmp_path, poll_interval=0.01)
    waiting.start()

    async def host_then_sibling() -> None:
        while not list((tmp_path / "tasks").glob("*.json")):
            await asyncio.sleep(0.005)
        task = _only_task(tmp_path)
        write_outcome(
            tmp_path / "results",
            task["requestId"],
            DelegationOutcome.success("pong", target_group="browser"),
        )
        assert DelegationClient("research", tmp_path).start() == 0

    (_, outcome), _ = await asyncio.gather(
        waiting.request("browser", "ping", timeout_seconds=5),
        host_then_sibling(),
    )

    assert outcome.ok
    assert outcome.result == "pong"


@pytest.mark.asyncio
async def test_timeout_is_clamped(tmp_path):
    clock = FakeClock()
    client = DelegationClient("research", tmp_path, poll_interval=600, clock=clock, sleep=clock.sleep)
    client.start()

    _, outcome = await client.request("browser", "x", timeout_seconds=99999)
    assert outcome.error == "Timed out after 1800s waiting for 'browser'"
    assert _only_task(tmp_path)["timeoutSeconds"] == 1800


@pytest.mark.asyncio
async def test_delegate_returns_plain_text(tmp_path):
    client = DelegationClient("research", tmp_path)

    async def fake_request(target, prompt, timeout_seconds=None):
        return "req-1", DelegationOutcome.success("the answer", target_group=target)

    client.request = fake_request
    assert await client.delegate("browser", "q") == "the answer"


@pytest.mark.asyncio
async def test_delegate_error_text(tmp_path):
    client = DelegationClient("research", tmp_path)

    async def fake_request(target, prompt, timeout_seconds=None):
        return "req-1", DelegationOutcome.failure("All 3 delegation slots are busy", target)

    client.request = fake_request
    text = await client.delegate("browser", "q")
    assert text == f"{FAILURE_PREFIX}All 3 delegation slots are busy"


@pytest.mark.asyncio
async def test_delegate_never_raises(tmp_path):
    client = DelegationClient("research", tmp_path)

    async def fake_request(target, prompt, timeout_seconds=None):
        raise OSError("read-only file system")

    client.request = fake_request
    text = await client.delegate("browser", "q")
    assert text.startswith(FAILURE_PREFIX)
    assert "browser" in text
