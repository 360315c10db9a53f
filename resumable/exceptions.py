"""Exceptions raised by the workflow engine and its storage backends."""

from __future__ import annotations


class ResumableError(Exception):
    """Base class for engine errors."""


class WorkflowNotRegisteredError(ResumableError):
    """No handler is defined for the requested workflow name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Workflow {name!r} is not registered")
        self.name = name


class WorkflowTerminatedError(ResumableError):
    """A step or sleep was issued against a completed or failed instance."""


class StorageError(ResumableError):
    """A storage backend could not persist or read workflow state."""


class ConcurrentModificationError(StorageError):
    """The stored version of a workflow changed since it was loaded."""

    def __init__(self, workflow_id: str, expected: int, actual: int | None) -> None:
        super().__init__(
            f"Workflow {workflow_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.workflow_id = workflow_id
        self.expected = expected
        self.actual = actual


class SuspendExecution(BaseException):
    """Signal raised by ``WorkflowContext.sleep`` to end the current attempt.

    Derives from ``BaseException`` so that ``except Exception`` blocks in
    workflow code never swallow it. Only the engine handles it.
    """

    def __init__(self, workflow_id: str, key: str) -> None:
        super().__init__(f"Workflow {workflow_id} suspended on sleep {key!r}")
        self.workflow_id = workflow_id
        self.key = key


class StepResultError(ResumableError):
    """A step returned a value the configured storage cannot persist."""

    def __init__(self, step_id: str, reason: str) -> None:
        super().__init__(f"Result of step {step_id!r} cannot be stored: {reason}")
        self.step_id = step_id
