"""Storage abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Any, Protocol

from pydantic_core import PydanticSerializationError, to_jsonable_python

from ..exceptions import StorageError
from ..models import WorkflowState

STATE_COLUMNS = (
    "id, name, status, history, variables, created_at, updated_at, wake_up_at, "
    "lease_owner, lease_expires_at, version"
)


class WorkflowStorage(Protocol):
    """Protocol for workflow state persistence backends.

    ``save`` is a full upsert guarded by ``WorkflowState.version``: the
    stored version must equal ``state.version`` (or the id must be new when
    it is 0), otherwise ``ConcurrentModificationError`` is raised. On
    success the backend increments ``state.version`` in place.

    ``find_pending`` skips running instances whose lease has not expired.
    Backends with ``json_only`` set can only store JSON-compatible step
    results and arguments.
    """

    json_only: bool

    async def save(self, state: WorkflowState) -> None:
        """Persist the full workflow state."""

    async def load(self, workflow_id: str) -> WorkflowState | None:
        """Retrieve the workflow state by id."""

    async def find_pending(self) -> list[WorkflowState]:
        """Return due sleeping instances and all running unleased instances."""

    async def list_all(self) -> list[WorkflowState]:
        """Return every persisted workflow state."""


def serialize_state(state: WorkflowState) -> dict[str, Any]:
    """Dump ``state`` into JSON-compatible values for the SQL backends.

    Step results and start arguments must be JSON serialisable once a
    database backend is used.
    """
    try:
        return state.model_dump(mode="json")
    except PydanticSerializationError as exc:
        raise StorageError(
            f"Workflow {state.id} holds values that cannot be stored as JSON: {exc}"
        ) from exc


def check_json_compatible(value: Any) -> None:
    """Raise ``PydanticSerializationError`` if ``value`` has no JSON form."""
    to_jsonable_python(value)
