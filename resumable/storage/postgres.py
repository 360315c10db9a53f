"""PostgreSQL implementation of workflow storage."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

from ..exceptions import ConcurrentModificationError
from ..models import WorkflowState, WorkflowStatus, utcnow
from .base import STATE_COLUMNS, WorkflowStorage, serialize_state


class PostgresWorkflowStorage(WorkflowStorage):
    """Persist workflow state using PostgreSQL."""

    json_only = True

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_states (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                history JSONB NOT NULL,
                variables JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                wake_up_at TIMESTAMPTZ,
                lease_owner TEXT,
                lease_expires_at TIMESTAMPTZ,
                version INTEGER NOT NULL
            )
            """
        )
        await conn.execute(
            "ALTER TABLE workflow_states "
            "ADD COLUMN IF NOT EXISTS lease_owner TEXT, "
            "ADD COLUMN IF NOT EXISTS lease_expires_at TIMESTAMPTZ"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_states_status "
            "ON workflow_states (status, wake_up_at)"
        )

    @staticmethod
    def _record_to_state(record: asyncpg.Record) -> WorkflowState:
        def _json(value: Any) -> Any:
            return json.loads(value) if isinstance(value, str) else value

        return WorkflowState.model_validate(
            {
                "id": record["id"],
                "name": record["name"],
                "status": record["status"],
                "history": _json(record["history"]),
                "variables": _json(record["variables"]),
                "created_at": record["created_at"],
                "updated_at": record["updated_at"],
                "wake_up_at": record["wake_up_at"],
                "lease_owner": record["lease_owner"],
                "lease_expires_at": record["lease_expires_at"],
                "version": record["version"],
            }
        )

    # ------------------------------------------------------------------
    async def save(self, state: WorkflowState) -> None:
        data = serialize_state(state)
        expected = state.version
        params = (
            data["name"],
            data["status"],
            json.dumps(data["history"]),
            json.dumps(data["variables"]),
            state.created_at,
            state.updated_at,
            state.wake_up_at,
            state.lease_owner,
            state.lease_expires_at,
            expected + 1,
        )
        conn = await self._connect()
        try:
            if expected == 0:
                try:
                    await conn.execute(
                        f"INSERT INTO workflow_states ({STATE_COLUMNS}) "
                        "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)",
                        state.id,
                        *params,
                    )
                except asyncpg.UniqueViolationError:
                    actual = await conn.fetchval(
                        "SELECT version FROM workflow_states WHERE id = $1", state.id
                    )
                    raise ConcurrentModificationError(state.id, expected, actual)
            else:
                status = await conn.execute(
                    """
                    UPDATE workflow_states
                    SET name = $1, status = $2, history = $3, variables = $4,
                        created_at = $5, updated_at = $6, wake_up_at = $7,
                        lease_owner = $8, lease_expires_at = $9, version = $10
                    WHERE id = $11 AND version = $12
                    """,
                    *params,
                    state.id,
                    expected,
                )
                if status.endswith(" 0"):
                    actual = await conn.fetchval(
                        "SELECT version FROM workflow_states WHERE id = $1", state.id
                    )
                    raise ConcurrentModificationError(state.id, expected, actual)
        finally:
            await conn.close()
        state.version += 1

    async def load(self, workflow_id: str) -> WorkflowState | None:
        conn = await self._connect()
        try:
            record = await conn.fetchrow(
                f"SELECT {STATE_COLUMNS} FROM workflow_states WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        return self._record_to_state(record) if record else None

    async def find_pending(self) -> list[WorkflowState]:
        conn = await self._connect()
        try:
            records = await conn.fetch(
                f"""
                SELECT {STATE_COLUMNS} FROM workflow_states
                WHERE (status = $1 AND (lease_expires_at IS NULL OR lease_expires_at <= $2))
                   OR (status = $3 AND wake_up_at <= $2)
                ORDER BY created_at
                """,
                WorkflowStatus.RUNNING.value,
                utcnow(),
                WorkflowStatus.SLEEPING.value,
            )
        finally:
            await conn.close()
        return [self._record_to_state(r) for r in records]

    async def list_all(self) -> list[WorkflowState]:
        conn = await self._connect()
        try:
            records = await conn.fetch(
                f"SELECT {STATE_COLUMNS} FROM workflow_states ORDER BY created_at"
            )
        finally:
            await conn.close()
        return [self._record_to_state(r) for r in records]
