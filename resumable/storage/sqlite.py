"""SQLite implementation of workflow storage."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..exceptions import ConcurrentModificationError
from ..models import WorkflowState, WorkflowStatus, utcnow
from .base import STATE_COLUMNS, WorkflowStorage, serialize_state


def _to_epoch(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SQLiteWorkflowStorage(WorkflowStorage):
    """Persist workflow state using SQLite."""

    json_only = True

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_states (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                history TEXT NOT NULL,
                variables TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                wake_up_at REAL,
                lease_owner TEXT,
                lease_expires_at REAL,
                version INTEGER NOT NULL
            )
            """
        )
        columns = {row["name"] for row in cur.execute("PRAGMA table_info(workflow_states)")}
        for column, sql_type in (("lease_owner", "TEXT"), ("lease_expires_at", "REAL")):
            if column not in columns:
                cur.execute(f"ALTER TABLE workflow_states ADD COLUMN {column} {sql_type}")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_states_status "
            "ON workflow_states (status, wake_up_at)"
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _current_version(self, workflow_id: str) -> int | None:
        row = self._conn.execute(
            "SELECT version FROM workflow_states WHERE id = ?", (workflow_id,)
        ).fetchone()
        return row["version"] if row else None

    def _write(self, data: dict[str, Any], expected: int, state: WorkflowState) -> None:
        params = (
            data["name"],
            data["status"],
            json.dumps(data["history"]),
            json.dumps(data["variables"]),
            data["created_at"],
            data["updated_at"],
            _to_epoch(state.wake_up_at),
            state.lease_owner,
            _to_epoch(state.lease_expires_at),
            expected + 1,
        )
        with self._lock:
            cur = self._conn.cursor()
            if expected == 0:
                try:
                    cur.execute(
                        f"INSERT INTO workflow_states ({STATE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (data["id"], *params),
                    )
                except sqlite3.IntegrityError:
                    self._conn.rollback()
                    raise ConcurrentModificationError(
                        data["id"], expected, self._current_version(data["id"])
                    )
            else:
                cur.execute(
                    """
                    UPDATE workflow_states
                    SET name = ?, status = ?, history = ?, variables = ?,
                        created_at = ?, updated_at = ?, wake_up_at = ?,
                        lease_owner = ?, lease_expires_at = ?, version = ?
                    WHERE id = ? AND version = ?
                    """,
                    (*params, data["id"], expected),
                )
                if cur.rowcount == 0:
                    self._conn.rollback()
                    raise ConcurrentModificationError(
                        data["id"], expected, self._current_version(data["id"])
                    )
            self._conn.commit()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> WorkflowState:
        return WorkflowState.model_validate(
            {
                "id": row["id"],
                "name": row["name"],
                "status": row["status"],
                "history": json.loads(row["history"]),
                "variables": json.loads(row["variables"]),
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
                "wake_up_at": _from_epoch(row["wake_up_at"]),
                "lease_owner": row["lease_owner"],
                "lease_expires_at": _from_epoch(row["lease_expires_at"]),
                "version": row["version"],
            }
        )

    # ------------------------------------------------------------------
    # Storage API
    async def save(self, state: WorkflowState) -> None:
        data = serialize_state(state)
        await asyncio.to_thread(self._write, data, state.version, state)
        state.version += 1

    async def load(self, workflow_id: str) -> WorkflowState | None:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {STATE_COLUMNS} FROM workflow_states WHERE id = ?",
            workflow_id,
        )
        return self._row_to_state(rows[0]) if rows else None

    async def find_pending(self) -> list[WorkflowState]:
        now = utcnow().timestamp()
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {STATE_COLUMNS} FROM workflow_states
            WHERE (status = ? AND (lease_expires_at IS NULL OR lease_expires_at <= ?))
               OR (status = ? AND wake_up_at <= ?)
            ORDER BY created_at
            """,
            WorkflowStatus.RUNNING.value,
            now,
            WorkflowStatus.SLEEPING.value,
            now,
        )
        return [self._row_to_state(r) for r in rows]

    async def list_all(self) -> list[WorkflowState]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {STATE_COLUMNS} FROM workflow_states ORDER BY created_at",
        )
        return [self._row_to_state(r) for r in rows]
