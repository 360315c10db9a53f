import uuid
from datetime import timedelta

import pytest

from resumable.exceptions import ConcurrentModificationError, StorageError
from resumable.models import EventType, WorkflowEvent, WorkflowState, WorkflowStatus, utcnow
from resumable.storage import InMemoryWorkflowStorage, SQLiteWorkflowStorage


def _state(name="wf", **kwargs) -> WorkflowState:
    return WorkflowState(id=str(uuid.uuid4()), name=name, variables={"args": [1, "two"]}, **kwargs)


def _sleeping(wake_in: timedelta) -> WorkflowState:
    return _state(
        status=WorkflowStatus.SLEEPING,
        wake_up_at=utcnow() + wake_in,
        history=[WorkflowEvent(type=EventType.SLEEP_START, step_id="wait")],
    )


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        return InMemoryWorkflowStorage()
    return SQLiteWorkflowStorage(tmp_path / "wf.db")


@pytest.mark.asyncio
async def test_save_and_load_round_trip(storage):
    state = _state(
        history=[
            WorkflowEvent(type=EventType.STEP_START, step_id="s1"),
            WorkflowEvent(type=EventType.STEP_COMPLETE, step_id="s1", result={"n": 1}),
        ]
    )
    await storage.save(state)
    assert state.version == 1

    loaded = await storage.load(state.id)
    assert loaded is not None
    assert loaded.id == state.id
    assert loaded.name == "wf"
    assert loaded.status == WorkflowStatus.RUNNING
    assert loaded.history == state.history
    assert loaded.variables == {"args": [1, "two"]}
    assert loaded.created_at == state.created_at
    assert loaded.version == 1

    assert await storage.load("missing") is None


@pytest.mark.asyncio
async def test_find_pending_returns_running_and_due_sleepers(storage):
    running = _state()
    due = _sleeping(timedelta(seconds=-1))
    not_due = _sleeping(timedelta(hours=1))
    done = _state(status=WorkflowStatus.COMPLETED)
    failed = _state(status=WorkflowStatus.FAILED)
    for state in (running, due, not_due, done, failed):
        await storage.save(state)

    pending = await storage.find_pending()

    assert {s.id for s in pending} == {running.id, due.id}
    assert len(await storage.list_all()) == 5


@pytest.mark.asyncio
async def test_stale_save_is_rejected(storage):
    state = _state()
    await storage.save(state)

    first = await storage.load(state.id)
    second = await storage.load(state.id)
    first.status = WorkflowStatus.COMPLETED
    await storage.save(first)

    second.status = WorkflowStatus.FAILED
    with pytest.raises(ConcurrentModificationError) as exc_info:
        await storage.save(second)
    assert exc_info.value.expected == 1
    assert exc_info.value.actual == 2
    assert second.version == 1

    stored = await storage.load(state.id)
    assert stored.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_duplicate_create_is_rejected(storage):
    state = _state()
    await storage.save(state)

    duplicate = state.model_copy(update={"version": 0})
    with pytest.raises(ConcurrentModificationError):
        await storage.save(duplicate)


@pytest.mark.asyncio
async def test_wake_up_at_round_trips(storage):
    state = _sleeping(timedelta(minutes=5))
    await storage.save(state)

    loaded = await storage.load(state.id)
    assert loaded.status == WorkflowStatus.SLEEPING
    assert abs((loaded.wake_up_at - state.wake_up_at).total_seconds()) < 0.001


@pytest.mark.asyncio
async def test_find_pending_skips_running_states_under_lease(storage):
    now = utcnow()
    held = _state(lease_owner="engine-a", lease_expires_at=now + timedelta(minutes=1))
    expired = _state(lease_owner="engine-a", lease_expires_at=now - timedelta(seconds=1))
    free = _state()
    for state in (held, expired, free):
        await storage.save(state)

    pending = {s.id for s in await storage.find_pending()}
    assert pending == {expired.id, free.id}

    loaded = await storage.load(held.id)
    assert loaded.lease_owner == "engine-a"
    assert abs((loaded.lease_expires_at - held.lease_expires_at).total_seconds()) < 0.001


@pytest.mark.asyncio
async def test_inmemory_storage_isolates_copies():
    storage = InMemoryWorkflowStorage()
    state = _state()
    await storage.save(state)

    state.record(WorkflowEvent(type=EventType.STEP_START, step_id="unsaved"))
    loaded = await storage.load(state.id)
    assert loaded.history == []

    loaded.variables["args"].append("mutated")
    again = await storage.load(state.id)
    assert again.variables["args"] == [1, "two"]


@pytest.mark.asyncio
async def test_sqlite_rejects_unserialisable_results(tmp_path):
    storage = SQLiteWorkflowStorage(tmp_path / "wf.db")
    state = _state(
        history=[
            WorkflowEvent(type=EventType.STEP_COMPLETE, step_id="s1", result=object())
        ]
    )

    with pytest.raises(StorageError):
        await storage.save(state)
    assert state.version == 0


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    db_path = tmp_path / "wf.db"
    state = _state()
    await SQLiteWorkflowStorage(db_path).save(state)

    reopened = SQLiteWorkflowStorage(db_path)
    loaded = await reopened.load(state.id)
    assert loaded is not None
    assert loaded.args == [1, "two"]
