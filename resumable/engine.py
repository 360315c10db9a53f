"""Workflow engine: registration, execution, recovery and the wake-up poller."""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import ResumableConfig
from .context import WorkflowContext
from .exceptions import (
    ConcurrentModificationError,
    SuspendExecution,
    WorkflowNotRegisteredError,
)
from .models import EventType, WorkflowEvent, WorkflowState, WorkflowStatus, utcnow
from .storage import InMemoryWorkflowStorage, WorkflowStorage

logger = logging.getLogger(__name__)

WorkflowHandler = Callable[..., Awaitable[Any]]
ErrorListener = Callable[[str, BaseException], None]


class WorkflowDefinition:
    """A registered workflow bound to the engine that runs it."""

    def __init__(self, engine: WorkflowEngine, name: str, handler: WorkflowHandler) -> None:
        self.engine = engine
        self.name = name
        self.handler = handler

    async def start(self, *args: Any) -> str:
        """Start a new instance of this workflow and return its id."""
        return await self.engine.start(self.name, *args)


class WorkflowEngine:
    """Runs registered workflows against a storage backend.

    Register every workflow with :meth:`define` (or :meth:`workflow`)
    before calling :meth:`start_poller`; recovered instances whose name is
    unknown are reported as errors and left untouched.

    Every attempt first claims the instance in storage with a lease of
    ``lease_ttl`` seconds, renewed on each save. Other engines sharing the
    storage skip running instances whose lease has not expired, so
    ``lease_ttl`` must exceed the longest single step.
    """

    def __init__(
        self,
        storage: WorkflowStorage | None = None,
        poll_interval: Optional[float] = None,
        config: Optional[ResumableConfig] = None,
        lease_ttl: Optional[float] = None,
    ) -> None:
        config = config or ResumableConfig()
        self.storage = storage or InMemoryWorkflowStorage()
        self.poll_interval = (
            poll_interval if poll_interval is not None else config.engine.poll_interval
        )
        self.lease_ttl = lease_ttl if lease_ttl is not None else config.engine.lease_ttl
        self.owner_id = uuid.uuid4().hex
        self._workflows: Dict[str, WorkflowHandler] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._active: set[str] = set()
        self._error_listeners: List[ErrorListener] = []
        self._poller: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Registration
    def define(self, name: str, handler: WorkflowHandler) -> None:
        """Register ``handler`` under ``name``. Registration is not persisted."""
        if name in self._workflows:
            logger.warning(f"Redefining workflow {name}")
        self._workflows[name] = handler

    def workflow(self, name: str, handler: WorkflowHandler | None = None):
        """Register a workflow and return a handle with ``start(*args)``.

        Can be called directly or used as a decorator::

            @engine.workflow("onboarding")
            async def onboarding(ctx, user_id): ...

            await onboarding.start("user-1")
        """
        if handler is None:

            def decorator(fn: WorkflowHandler) -> WorkflowDefinition:
                return self.workflow(name, fn)

            return decorator

        self.define(name, handler)
        return WorkflowDefinition(self, name, handler)

    def is_registered(self, name: str) -> bool:
        return name in self._workflows

    # ------------------------------------------------------------------
    # Execution
    async def start(self, name: str, *args: Any) -> str:
        """Persist a new workflow instance and run it in the background.

        Returns:
            Identifier of the new instance. Use :meth:`wait_for` or
            ``storage.load(id)`` to observe its progress.
        """
        if name not in self._workflows:
            raise WorkflowNotRegisteredError(name)

        state = WorkflowState(
            id=str(uuid.uuid4()),
            name=name,
            status=WorkflowStatus.RUNNING,
            variables={"args": list(args)},
        )
        self._take_lease(state)
        await self.storage.save(state)
        logger.info(f"Started workflow {name} with id={state.id}")
        self._spawn(state)
        return state.id

    async def run_workflow(self, state: WorkflowState) -> None:
        """Run one attempt of ``state`` from the top of its handler.

        Completed steps and sleeps replay from history. Suspension leaves
        the state as saved by the sleep; any other error marks the instance
        failed, except a concurrent modification which abandons the attempt.

        Raises:
            ConcurrentModificationError: another attempt claimed or changed
                the instance since ``state`` was loaded.
        """
        handler = self._workflows.get(state.name)
        if handler is None:
            raise WorkflowNotRegisteredError(state.name)
        if state.status.is_terminal:
            logger.debug(f"Workflow {state.id} is already {state.status.value}")
            return

        state.status = WorkflowStatus.RUNNING
        self._take_lease(state)
        state.touch()
        try:
            await self.storage.save(state)
        except ConcurrentModificationError:
            logger.warning(f"Workflow {state.id} was claimed by another attempt; skipping")
            raise

        ctx = WorkflowContext(state, self.storage, lease_ttl=self.lease_ttl)
        try:
            await handler(ctx, *state.args)
        except SuspendExecution:
            logger.info(f"Workflow {state.id} suspended (sleeping)")
            return
        except ConcurrentModificationError:
            logger.warning(
                f"Workflow {state.id} was modified by another attempt; abandoning this one"
            )
            raise
        except Exception as e:
            state.status = WorkflowStatus.FAILED
            state.wake_up_at = None
            state.release_lease()
            state.variables["error"] = str(e)
            state.variables["error_type"] = type(e).__name__
            state.touch()
            await self.storage.save(state)
            logger.exception(f"Workflow {state.id} failed: {e}")
            return

        state.status = WorkflowStatus.COMPLETED
        state.release_lease()
        state.touch()
        await self.storage.save(state)
        logger.info(f"Workflow {state.id} completed")

    def _spawn(self, state: WorkflowState) -> asyncio.Task | None:
        """Run ``state`` in a supervised background task.

        Only one attempt per workflow id runs in this engine at a time; a
        second request while one is active is skipped.
        """
        if state.id in self._active:
            logger.debug(f"Workflow {state.id} already has an active attempt")
            return None
        self._active.add(state.id)
        task = asyncio.create_task(self._supervise(state), name=f"workflow-{state.id}")
        self._tasks[state.id] = task
        task.add_done_callback(functools.partial(self._forget, state.id))
        return task

    def _take_lease(self, state: WorkflowState) -> None:
        state.lease_owner = self.owner_id
        state.lease_expires_at = utcnow() + timedelta(seconds=self.lease_ttl)

    def _forget(self, workflow_id: str, task: asyncio.Task) -> None:
        # Failed attempts stay until wait_for collects their error.
        if self._tasks.get(workflow_id) is not task:
            return
        if task.cancelled() or task.exception() is None:
            del self._tasks[workflow_id]

    async def _supervise(self, state: WorkflowState) -> None:
        try:
            await self.run_workflow(state)
        except Exception as e:
            logger.error(f"Workflow {state.id} attempt aborted: {e}")
            self._notify(state.id, e)
            raise
        finally:
            self._active.discard(state.id)

    # ------------------------------------------------------------------
    # Supervision
    def add_error_listener(self, listener: ErrorListener) -> None:
        """Register a callback invoked with ``(workflow_id, exc)`` on background errors."""
        self._error_listeners.append(listener)

    def _notify(self, workflow_id: str, exc: BaseException) -> None:
        for listener in self._error_listeners:
            try:
                listener(workflow_id, exc)
            except Exception:
                logger.exception(f"Error listener failed for workflow {workflow_id}")

    def get_task(self, workflow_id: str) -> asyncio.Task | None:
        """Return the in-flight (or failed, uncollected) attempt for ``workflow_id``."""
        return self._tasks.get(workflow_id)

    async def wait_for(self, workflow_id: str) -> WorkflowState | None:
        """Wait for the latest attempt of ``workflow_id`` and return its stored state.

        Errors raised in the background attempt (for example storage
        failures) are re-raised here.
        """
        task = self._tasks.get(workflow_id)
        if task is not None:
            try:
                await asyncio.shield(task)
            finally:
                if task.done() and self._tasks.get(workflow_id) is task:
                    del self._tasks[workflow_id]
        return await self.storage.load(workflow_id)

    # ------------------------------------------------------------------
    # Recovery
    async def poll_once(self) -> list[str]:
        """Wake due sleepers and re-drive abandoned running instances.

        Returns:
            Ids of the instances an attempt was started for.
        """
        dispatched: list[str] = []
        for state in await self.storage.find_pending():
            if state.id in self._active:
                continue
            if state.name not in self._workflows:
                error = WorkflowNotRegisteredError(state.name)
                logger.error(
                    f"Cannot recover workflow {state.id}: {error}. "
                    "Define all workflows before starting the poller."
                )
                self._notify(state.id, error)
                continue

            if state.status == WorkflowStatus.SLEEPING:
                logger.info(f"Waking up workflow {state.id}")
                pending = state.pending_sleep()
                if pending is not None:
                    state.record(
                        WorkflowEvent(
                            type=EventType.SLEEP_COMPLETE, step_id=pending.step_id
                        )
                    )
                state.status = WorkflowStatus.RUNNING
                state.wake_up_at = None
                self._take_lease(state)
                try:
                    await self.storage.save(state)
                except ConcurrentModificationError as e:
                    logger.warning(f"Skipping wake-up of workflow {state.id}: {e}")
                    continue
            else:
                logger.info(f"Recovering running workflow {state.id}")

            if self._spawn(state) is not None:
                dispatched.append(state.id)
        return dispatched

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Workflow poller tick failed")

    def start_poller(self) -> None:
        """Start the background poller on the running event loop."""
        if self._poller is not None and not self._poller.done():
            return
        self._poller = asyncio.create_task(self._poll_loop(), name="workflow-poller")
        logger.info(f"Workflow poller started (interval={self.poll_interval}s)")

    def stop(self) -> None:
        """Stop the poller. In-flight attempts are neither cancelled nor awaited."""
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None
            logger.info("Workflow poller stopped")

    async def __aenter__(self) -> WorkflowEngine:
        self.start_poller()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.stop()
