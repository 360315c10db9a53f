"""In-memory implementation of workflow storage."""

from __future__ import annotations

from typing import Dict

from ..exceptions import ConcurrentModificationError
from ..models import WorkflowState, utcnow
from .base import WorkflowStorage


class InMemoryWorkflowStorage(WorkflowStorage):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. States are copied on the way in and
    out so callers never share mutable objects with the store.
    """

    json_only = False

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowState] = {}

    async def save(self, state: WorkflowState) -> None:
        current = self._workflows.get(state.id)
        if current is None:
            if state.version != 0:
                raise ConcurrentModificationError(state.id, state.version, None)
        elif current.version != state.version:
            raise ConcurrentModificationError(state.id, state.version, current.version)
        state.version += 1
        self._workflows[state.id] = state.model_copy(deep=True)

    async def load(self, workflow_id: str) -> WorkflowState | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def find_pending(self) -> list[WorkflowState]:
        now = utcnow()
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if wf.is_recoverable(now) or wf.is_due(now)
        ]

    async def list_all(self) -> list[WorkflowState]:
        return [wf.model_copy(deep=True) for wf in self._workflows.values()]
