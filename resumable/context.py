"""Execution-facing API handed to workflow functions."""

from __future__ import annotations

import inspect
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar, Union

from pydantic_core import PydanticSerializationError

from .exceptions import StepResultError, SuspendExecution, WorkflowTerminatedError
from .models import EventType, WorkflowEvent, WorkflowState, WorkflowStatus, utcnow
from .retry import RetryPolicy
from .storage.base import check_json_compatible

if TYPE_CHECKING:
    from .storage import WorkflowStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")
StepHandler = Callable[[], Union[Awaitable[T], T]]


class WorkflowContext:
    """Durable steps and sleeps bound to one workflow state for one attempt.

    The context is the only writer of ``state`` while the attempt runs.
    Every completed step and every started sleep is persisted before the
    call returns (or suspends), so a later replay can skip it. Each save
    also extends the engine's lease by ``lease_ttl`` seconds.
    """

    def __init__(
        self,
        state: WorkflowState,
        storage: WorkflowStorage,
        lease_ttl: Optional[float] = None,
    ) -> None:
        self._state = state
        self._storage = storage
        self._lease_ttl = lease_ttl

    @property
    def workflow_id(self) -> str:
        return self._state.id

    @property
    def name(self) -> str:
        return self._state.name

    @property
    def state(self) -> WorkflowState:
        return self._state

    def is_replaying(self, step_id: str) -> bool:
        """Return ``True`` when ``step_id`` already has a recorded result."""
        return self._state.find_event(EventType.STEP_COMPLETE, step_id) is not None

    async def step(
        self,
        step_id: str,
        handler: StepHandler[T],
        retries: int | RetryPolicy = 0,
    ) -> T:
        """Run ``handler`` once per workflow instance and memoise its result.

        When a ``step_complete`` event for ``step_id`` is already in the
        history the recorded result is returned and ``handler`` is not
        called. Exceptions from ``handler`` propagate unchanged once the
        optional retries are exhausted. ``retries`` is either a number of
        extra attempts or a :class:`RetryPolicy`.

        Raises:
            StepResultError: the storage only keeps JSON and the handler's
                result has no JSON form. The handler is not retried.
        """
        self._ensure_active()
        completed = self._state.find_event(EventType.STEP_COMPLETE, step_id)
        if completed is not None:
            logger.debug(f"Replaying step {step_id} for workflow {self.workflow_id}")
            return completed.result

        policy = RetryPolicy.coerce(retries)
        logger.info(f"Executing step {step_id} for workflow {self.workflow_id}")
        self._state.record(WorkflowEvent(type=EventType.STEP_START, step_id=step_id))

        attempt = 0
        while True:
            try:
                result = handler()
                if inspect.isawaitable(result):
                    result = await result
                break
            except Exception as e:
                attempt += 1
                if not policy.allows(attempt):
                    raise
                logger.warning(
                    f"Step {step_id} for workflow {self.workflow_id} failed "
                    f"(attempt {attempt} of {policy.retries + 1}): {e}"
                )
                await policy.wait(attempt)

        self._check_result(step_id, result)
        self._state.record(
            WorkflowEvent(type=EventType.STEP_COMPLETE, step_id=step_id, result=result)
        )
        await self._save()
        return result

    async def sleep(self, key: str, duration_ms: float) -> None:
        """Durably suspend the workflow for ``duration_ms`` milliseconds.

        Returns immediately if the sleep identified by ``key`` has already
        elapsed in an earlier attempt. Otherwise the state is saved as
        sleeping and ``SuspendExecution`` ends the current attempt.
        """
        self._ensure_active()
        if self._state.find_event(EventType.SLEEP_COMPLETE, key) is not None:
            return

        wake_up_at = utcnow() + timedelta(milliseconds=duration_ms)
        logger.info(
            f"Workflow {self.workflow_id} sleeping on {key} until {wake_up_at.isoformat()}"
        )
        self._state.status = WorkflowStatus.SLEEPING
        self._state.wake_up_at = wake_up_at
        self._state.release_lease()
        self._state.record(WorkflowEvent(type=EventType.SLEEP_START, step_id=key))
        await self._storage.save(self._state)
        raise SuspendExecution(self.workflow_id, key)

    def _ensure_active(self) -> None:
        if self._state.status.is_terminal:
            raise WorkflowTerminatedError(
                f"Workflow {self.workflow_id} is already {self._state.status.value}"
            )

    def _check_result(self, step_id: str, result: object) -> None:
        # Must run before step_complete is recorded.
        if not getattr(self._storage, "json_only", False):
            return
        try:
            check_json_compatible(result)
        except PydanticSerializationError as exc:
            raise StepResultError(step_id, str(exc)) from exc

    async def _save(self) -> None:
        if self._lease_ttl is not None and self._state.lease_owner is not None:
            self._state.lease_expires_at = utcnow() + timedelta(seconds=self._lease_ttl)
        await self._storage.save(self._state)
