"""Crash and restart recovery against a durable SQLite store."""

from datetime import timedelta

import pytest

from resumable import WorkflowEngine
from resumable.models import EventType, WorkflowStatus, utcnow
from resumable.storage import SQLiteWorkflowStorage

side_effects: list[str] = []


class SimulatedCrash(BaseException):
    """Stands in for the process dying between two steps."""


async def settle_payment(ctx, order_id, amount):
    reservation = await ctx.step("reserve", lambda: side_effects.append("reserve") or f"res-{order_id}")
    await ctx.sleep("settlement-window", 60_000)
    receipt = await ctx.step(
        "capture", lambda: side_effects.append("capture") or f"{reservation}:{amount}"
    )
    return receipt


def _new_process(db_path) -> WorkflowEngine:
    engine = WorkflowEngine(storage=SQLiteWorkflowStorage(db_path))
    engine.define("settle_payment", settle_payment)
    return engine


@pytest.mark.asyncio
async def test_sleeping_workflow_resumes_in_new_process(tmp_path, monkeypatch):
    side_effects.clear()
    db_path = tmp_path / "wf.db"

    first = _new_process(db_path)
    workflow_id = await first.start("settle_payment", "o-1", 25)
    state = await first.wait_for(workflow_id)
    assert state.status == WorkflowStatus.SLEEPING

    second = _new_process(db_path)
    assert await second.poll_once() == []

    future = utcnow() + timedelta(minutes=2)
    monkeypatch.setattr("resumable.storage.sqlite.utcnow", lambda: future)
    assert await second.poll_once() == [workflow_id]
    state = await second.wait_for(workflow_id)

    assert state.status == WorkflowStatus.COMPLETED
    assert state.history[-1].result == "res-o-1:25"
    assert side_effects == ["reserve", "capture"]
    assert [e.type for e in state.history].count(EventType.SLEEP_COMPLETE) == 1


@pytest.mark.asyncio
async def test_running_workflow_left_by_crash_is_replayed(tmp_path, monkeypatch):
    side_effects.clear()
    db_path = tmp_path / "wf.db"

    crashed = _new_process(db_path)

    async def crash_after_reserve(ctx, order_id, amount):
        await ctx.step("reserve", lambda: side_effects.append("reserve") or f"res-{order_id}")
        raise SimulatedCrash()

    crashed.define("settle_payment", crash_after_reserve)
    workflow_id = await crashed.start("settle_payment", "o-2", 10)
    with pytest.raises(SimulatedCrash):
        await crashed.get_task(workflow_id)

    state_before = await crashed.storage.load(workflow_id)
    assert state_before.status == WorkflowStatus.RUNNING
    assert side_effects == ["reserve"]

    assert state_before.lease_owner == crashed.owner_id

    restarted = _new_process(db_path)
    assert await restarted.poll_once() == []

    future = utcnow() + timedelta(seconds=crashed.lease_ttl + 1)
    monkeypatch.setattr("resumable.storage.sqlite.utcnow", lambda: future)
    assert await restarted.poll_once() == [workflow_id]
    state = await restarted.wait_for(workflow_id)

    assert state.status == WorkflowStatus.SLEEPING
    assert side_effects == ["reserve"]
    assert [e.step_id for e in state.history if e.type == EventType.STEP_COMPLETE] == [
        "reserve"
    ]


@pytest.mark.asyncio
async def test_unstorable_step_result_fails_workflow_once(tmp_path):
    db_path = tmp_path / "wf.db"
    engine = WorkflowEngine(storage=SQLiteWorkflowStorage(db_path))
    calls = []

    def open_socket():
        calls.append(1)
        return object()

    async def leaky(ctx):
        await ctx.step("connect", open_socket)

    engine.define("leaky", leaky)
    workflow_id = await engine.start("leaky")
    state = await engine.wait_for(workflow_id)

    assert state.status == WorkflowStatus.FAILED
    assert state.variables["error_type"] == "StepResultError"
    assert state.lease_owner is None
    assert [e.type for e in state.history] == [EventType.STEP_START]

    assert await engine.poll_once() == []
    restarted = _new_process(db_path)
    assert await restarted.poll_once() == []
    assert calls == [1]
