"""Resumable: durable execution of async workflows that survive restarts."""

from .config import ResumableConfig, load_config
from .context import WorkflowContext
from .engine import WorkflowDefinition, WorkflowEngine
from .exceptions import (
    ConcurrentModificationError,
    ResumableError,
    StepResultError,
    StorageError,
    SuspendExecution,
    WorkflowNotRegisteredError,
    WorkflowTerminatedError,
)
from .models import EventType, WorkflowEvent, WorkflowState, WorkflowStatus
from .retry import RetryPolicy
from .storage import WorkflowStorage, get_storage

__version__ = "0.1.0"
__all__ = [
    "ConcurrentModificationError",
    "EventType",
    "ResumableConfig",
    "ResumableError",
    "RetryPolicy",
    "StepResultError",
    "StorageError",
    "SuspendExecution",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowEvent",
    "WorkflowNotRegisteredError",
    "WorkflowState",
    "WorkflowStatus",
    "WorkflowStorage",
    "WorkflowTerminatedError",
    "get_storage",
    "load_config",
]
