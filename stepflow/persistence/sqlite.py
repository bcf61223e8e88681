"""SQLite implementation of state persistence."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any

from ..contracts import WorkflowState, utc_now
from .repository import StatePersistence


class SQLiteStatePersistence(StatePersistence):
    """Persist workflow state snapshots using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_states (
                workflow_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                state TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Persistence API
    async def save(self, workflow_id: str, state: WorkflowState) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_states (workflow_id, status, state, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(workflow_id) DO UPDATE SET
                status = excluded.status,
                state = excluded.state,
                updated_at = excluded.updated_at
            """,
            workflow_id,
            state.status.value,
            state.model_dump_json(),
            utc_now().isoformat(),
        )

    async def load(self, workflow_id: str) -> WorkflowState | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT state FROM workflow_states WHERE workflow_id = ?",
            workflow_id,
        )
        if not row:
            return None
        return WorkflowState.model_validate_json(row["state"])

    async def list_workflows(self) -> list[WorkflowState]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT state FROM workflow_states ORDER BY updated_at",
        )
        return [WorkflowState.model_validate_json(r["state"]) for r in rows]

    async def delete(self, workflow_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM workflow_states WHERE workflow_id = ?",
            workflow_id,
        )

    def close(self) -> None:
        self._conn.close()
