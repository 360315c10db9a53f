"""Persistence layer for resumable workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ResumableConfig, load_config
from .base import WorkflowStorage
from .inmemory import InMemoryWorkflowStorage
from .sqlite import SQLiteWorkflowStorage

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowStorage
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowStorage = None  # type: ignore

_storage_instance: WorkflowStorage | None = None


def get_storage(
    database_url: Optional[str] = None, config: Optional[ResumableConfig] = None
) -> WorkflowStorage:
    """Factory function to obtain a workflow storage backend.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``RESUMABLE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory storage is returned.
    """

    global _storage_instance
    if _storage_instance is not None and database_url is None and config is None:
        return _storage_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("RESUMABLE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.storage.database_url
    )

    if not database_url:
        _storage_instance = InMemoryWorkflowStorage()
        return _storage_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _storage_instance = SQLiteWorkflowStorage(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresWorkflowStorage is None:
            raise RuntimeError("Postgres support not available; install asyncpg")
        _storage_instance = PostgresWorkflowStorage(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _storage_instance


__all__ = [
    "WorkflowStorage",
    "InMemoryWorkflowStorage",
    "SQLiteWorkflowStorage",
    "PostgresWorkflowStorage",
    "get_storage",
]
