"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import (
    ActiveStep,
    HistoryEntry,
    InstanceStatus,
    NodeAssignment,
    StepStatus,
    WorkflowInstance,
    WorkflowTemplate,
)
from ..errors import ConcurrentModification
from .models import InstanceChanges
from .repository import WorkflowRepository


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    Each row keeps the full record as JSON in ``data`` next to the key
    columns the queries filter on. Rows are read back in insertion order
    through the ``seq`` column.
    """

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
            CREATE TABLE IF NOT EXISTS workflow_templates (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                is_active INTEGER NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                project_id TEXT NOT NULL,
                workflow_template_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_active_steps (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                workflow_instance_id TEXT NOT NULL,
                status TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_history (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                workflow_instance_id TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_node_assignments (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                workflow_instance_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (workflow_instance_id, node_id, user_id)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _commit_changes(self, changes: InstanceChanges) -> None:
        instance = changes.instance
        with self._lock, self._conn:
            cur = self._conn.cursor()
            if changes.is_new_instance:
                try:
                    cur.execute(
                        """
                        INSERT INTO workflow_instances
                            (id, project_id, workflow_template_id, status, version, data)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            instance.id,
                            instance.project_id,
                            instance.workflow_template_id,
                            instance.status.value,
                            instance.version,
                            instance.model_dump_json(),
                        ),
                    )
                except sqlite3.IntegrityError:
                    raise ConcurrentModification(instance.id) from None
            else:
                cur.execute(
                    """
                    UPDATE workflow_instances
                    SET status = ?, version = ?, data = ?
                    WHERE id = ? AND version = ?
                    """,
                    (
                        instance.status.value,
                        instance.version,
                        instance.model_dump_json(),
                        instance.id,
                        changes.expected_version,
                    ),
                )
                if cur.rowcount != 1:
                    raise ConcurrentModification(instance.id)

            for step in changes.steps:
                cur.execute(
                    """
                    INSERT INTO workflow_active_steps (id, workflow_instance_id, status, data)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET status = excluded.status, data = excluded.data
                    """,
                    (
                        step.id,
                        step.workflow_instance_id,
                        step.status.value,
                        step.model_dump_json(),
                    ),
                )
            for entry in changes.history:
                cur.execute(
                    "INSERT INTO workflow_history (id, workflow_instance_id, data) VALUES (?, ?, ?)",
                    (entry.id, entry.workflow_instance_id, entry.model_dump_json()),
                )
            for row in changes.assignments:
                cur.execute(
                    """
                    INSERT OR IGNORE INTO workflow_node_assignments
                        (id, workflow_instance_id, node_id, user_id, data)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        row.id,
                        row.workflow_instance_id,
                        row.node_id,
                        row.user_id,
                        row.model_dump_json(),
                    ),
                )

    # ------------------------------------------------------------------
    # Templates
    async def save_template(self, template: WorkflowTemplate) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_templates (id, name, is_active, data) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name, is_active = excluded.is_active, data = excluded.data
            """,
            template.id,
            template.name,
            int(template.is_active),
            template.model_dump_json(),
        )

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM workflow_templates WHERE id = ?",
            template_id,
        )
        return WorkflowTemplate.model_validate_json(row["data"]) if row else None

    async def list_templates(self) -> list[WorkflowTemplate]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT data FROM workflow_templates ORDER BY name"
        )
        return [WorkflowTemplate.model_validate_json(r["data"]) for r in rows]

    async def delete_template(self, template_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute, "DELETE FROM workflow_templates WHERE id = ?", template_id
        )
        return deleted > 0

    # ------------------------------------------------------------------
    # Instances and their rows
    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM workflow_instances WHERE id = ?",
            instance_id,
        )
        return WorkflowInstance.model_validate_json(row["data"]) if row else None

    async def list_instances(
        self,
        project_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        query = "SELECT data FROM workflow_instances WHERE 1 = 1"
        params: list[Any] = []
        if project_id is not None:
            query += " AND project_id = ?"
            params.append(project_id)
        if status is not None:
            query += " AND status = ?"
            params.append(InstanceStatus(status).value)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY seq", *params)
        return [WorkflowInstance.model_validate_json(r["data"]) for r in rows]

    async def get_step(self, step_id: str) -> ActiveStep | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM workflow_active_steps WHERE id = ?", step_id
        )
        return ActiveStep.model_validate_json(row["data"]) if row else None

    async def list_steps(
        self,
        instance_id: Optional[str] = None,
        statuses: Optional[Iterable[StepStatus]] = None,
    ) -> list[ActiveStep]:
        query = "SELECT data FROM workflow_active_steps WHERE 1 = 1"
        params: list[Any] = []
        if instance_id is not None:
            query += " AND workflow_instance_id = ?"
            params.append(instance_id)
        if statuses is not None:
            values = [StepStatus(s).value for s in statuses]
            if not values:
                return []
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY seq", *params)
        return [ActiveStep.model_validate_json(r["data"]) for r in rows]

    async def list_history(self, instance_id: str) -> list[HistoryEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM workflow_history WHERE workflow_instance_id = ? ORDER BY seq",
            instance_id,
        )
        return [HistoryEntry.model_validate_json(r["data"]) for r in rows]

    async def list_assignments(
        self, instance_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> list[NodeAssignment]:
        query = "SELECT data FROM workflow_node_assignments WHERE 1 = 1"
        params: list[Any] = []
        if instance_id is not None:
            query += " AND workflow_instance_id = ?"
            params.append(instance_id)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY seq", *params)
        return [NodeAssignment.model_validate_json(r["data"]) for r in rows]

    async def commit(self, changes: InstanceChanges) -> None:
        await asyncio.to_thread(self._commit_changes, changes)

    def close(self) -> None:
        self._conn.close()
