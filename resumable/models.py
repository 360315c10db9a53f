"""Persisted workflow state and event history."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    SLEEPING = "sleeping"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)


class EventType(str, Enum):
    STEP_START = "step_start"
    STEP_COMPLETE = "step_complete"
    SLEEP_START = "sleep_start"
    SLEEP_COMPLETE = "sleep_complete"


class WorkflowEvent(BaseModel):
    """Immutable entry in a workflow's history."""

    model_config = {"frozen": True}

    type: EventType
    step_id: str
    result: Any = None
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowState(BaseModel):
    """Persisted record of one workflow instance.

    ``history`` is the only source of truth for replay and is never
    reordered or truncated. ``wake_up_at`` is set only while the instance
    is sleeping. ``version`` is bumped by storage on every successful save.
    ``lease_owner`` and ``lease_expires_at`` name the engine currently
    driving a running instance; other engines leave it alone until the
    lease expires.
    """

    id: str
    name: str
    status: WorkflowStatus = WorkflowStatus.RUNNING
    history: list[WorkflowEvent] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    wake_up_at: Optional[datetime] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    version: int = 0

    @property
    def args(self) -> list[Any]:
        return list(self.variables.get("args") or [])

    def record(self, event: WorkflowEvent) -> None:
        """Append ``event`` to the history and bump ``updated_at``."""
        self.history.append(event)
        self.touch()

    def touch(self) -> None:
        self.updated_at = utcnow()

    def find_event(self, event_type: EventType, step_id: str) -> WorkflowEvent | None:
        """Return the first event of ``event_type`` recorded for ``step_id``."""
        for event in self.history:
            if event.type == event_type and event.step_id == step_id:
                return event
        return None

    def pending_sleep(self) -> WorkflowEvent | None:
        """Return the latest ``sleep_start`` that has no ``sleep_complete`` yet."""
        for event in reversed(self.history):
            if event.type == EventType.SLEEP_START:
                if self.find_event(EventType.SLEEP_COMPLETE, event.step_id) is None:
                    return event
                return None
        return None

    def is_due(self, now: datetime | None = None) -> bool:
        if self.status != WorkflowStatus.SLEEPING or self.wake_up_at is None:
            return False
        return self.wake_up_at <= (now or utcnow())

    def is_leased(self, now: datetime | None = None) -> bool:
        if self.lease_expires_at is None:
            return False
        return self.lease_expires_at > (now or utcnow())

    def is_recoverable(self, now: datetime | None = None) -> bool:
        """Return ``True`` for running instances no live engine holds a lease on."""
        return self.status == WorkflowStatus.RUNNING and not self.is_leased(now)

    def release_lease(self) -> None:
        self.lease_owner = None
        self.lease_expires_at = None
