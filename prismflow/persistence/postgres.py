"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from typing import Any, Iterable, Optional

import asyncpg

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


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL.

    Records are stored as JSONB documents beside the columns used for
    filtering; ``commit`` runs in one transaction.
    """

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
            CREATE TABLE IF NOT EXISTS workflow_templates (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                is_active BOOLEAN NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                seq SERIAL,
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                workflow_template_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_active_steps (
                seq SERIAL,
                id TEXT PRIMARY KEY,
                workflow_instance_id TEXT NOT NULL,
                status TEXT NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_history (
                seq SERIAL,
                id TEXT PRIMARY KEY,
                workflow_instance_id TEXT NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_node_assignments (
                seq SERIAL,
                id TEXT PRIMARY KEY,
                workflow_instance_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                data JSONB NOT NULL,
                UNIQUE (workflow_instance_id, node_id, user_id)
            )
            """
        )

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def save_template(self, template: WorkflowTemplate) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_templates (id, name, is_active, data)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name, is_active = EXCLUDED.is_active, data = EXCLUDED.data
                """,
                template.id,
                template.name,
                template.is_active,
                template.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        row = await self._fetchrow(
            "SELECT data FROM workflow_templates WHERE id = $1", template_id
        )
        return WorkflowTemplate.model_validate_json(row["data"]) if row else None

    async def list_templates(self) -> list[WorkflowTemplate]:
        rows = await self._fetch("SELECT data FROM workflow_templates ORDER BY name")
        return [WorkflowTemplate.model_validate_json(r["data"]) for r in rows]

    async def delete_template(self, template_id: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "DELETE FROM workflow_templates WHERE id = $1", template_id
            )
        finally:
            await conn.close()
        return status != "DELETE 0"

    # ------------------------------------------------------------------
    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await self._fetchrow(
            "SELECT data FROM workflow_instances WHERE id = $1", instance_id
        )
        return WorkflowInstance.model_validate_json(row["data"]) if row else None

    async def list_instances(
        self,
        project_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        rows = await self._fetch(
            """
            SELECT data FROM workflow_instances
            WHERE ($1::text IS NULL OR project_id = $1)
              AND ($2::text IS NULL OR status = $2)
            ORDER BY seq
            """,
            project_id,
            InstanceStatus(status).value if status is not None else None,
        )
        return [WorkflowInstance.model_validate_json(r["data"]) for r in rows]

    async def get_step(self, step_id: str) -> ActiveStep | None:
        row = await self._fetchrow(
            "SELECT data FROM workflow_active_steps WHERE id = $1", step_id
        )
        return ActiveStep.model_validate_json(row["data"]) if row else None

    async def list_steps(
        self,
        instance_id: Optional[str] = None,
        statuses: Optional[Iterable[StepStatus]] = None,
    ) -> list[ActiveStep]:
        values = [StepStatus(s).value for s in statuses] if statuses is not None else None
        rows = await self._fetch(
            """
            SELECT data FROM workflow_active_steps
            WHERE ($1::text IS NULL OR workflow_instance_id = $1)
              AND ($2::text[] IS NULL OR status = ANY($2::text[]))
            ORDER BY seq
            """,
            instance_id,
            values,
        )
        return [ActiveStep.model_validate_json(r["data"]) for r in rows]

    async def list_history(self, instance_id: str) -> list[HistoryEntry]:
        rows = await self._fetch(
            "SELECT data FROM workflow_history WHERE workflow_instance_id = $1 ORDER BY seq",
            instance_id,
        )
        return [HistoryEntry.model_validate_json(r["data"]) for r in rows]

    async def list_assignments(
        self, instance_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> list[NodeAssignment]:
        rows = await self._fetch(
            """
            SELECT data FROM workflow_node_assignments
            WHERE ($1::text IS NULL OR workflow_instance_id = $1)
              AND ($2::text IS NULL OR user_id = $2)
            ORDER BY seq
            """,
            instance_id,
            user_id,
        )
        return [NodeAssignment.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def commit(self, changes: InstanceChanges) -> None:
        instance = changes.instance
        conn = await self._connect()
        try:
            async with conn.transaction():
                if changes.is_new_instance:
                    status = await conn.execute(
                        """
                        INSERT INTO workflow_instances
                            (id, project_id, workflow_template_id, status, version, data)
                        VALUES ($1, $2, $3, $4, $5, $6)
                        ON CONFLICT (id) DO NOTHING
                        """,
                        instance.id,
                        instance.project_id,
                        instance.workflow_template_id,
                        instance.status.value,
                        instance.version,
                        instance.model_dump_json(),
                    )
                else:
                    status = await conn.execute(
                        """
                        UPDATE workflow_instances
                        SET status = $1, version = $2, data = $3
                        WHERE id = $4 AND version = $5
                        """,
                        instance.status.value,
                        instance.version,
                        instance.model_dump_json(),
                        instance.id,
                        changes.expected_version,
                    )
                if status.split()[-1] != "1":
                    raise ConcurrentModification(instance.id)

                for step in changes.steps:
                    await conn.execute(
                        """
                        INSERT INTO workflow_active_steps (id, workflow_instance_id, status, data)
                        VALUES ($1, $2, $3, $4)
                        ON CONFLICT (id) DO UPDATE SET
                            status = EXCLUDED.status, data = EXCLUDED.data
                        """,
                        step.id,
                        step.workflow_instance_id,
                        step.status.value,
                        step.model_dump_json(),
                    )
                for entry in changes.history:
                    await conn.execute(
                        "INSERT INTO workflow_history (id, workflow_instance_id, data) VALUES ($1, $2, $3)",
                        entry.id,
                        entry.workflow_instance_id,
                        entry.model_dump_json(),
                    )
                for row in changes.assignments:
                    await conn.execute(
                        """
                        INSERT INTO workflow_node_assignments
                            (id, workflow_instance_id, node_id, user_id, data)
                        VALUES ($1, $2, $3, $4, $5)
                        ON CONFLICT DO NOTHING
                        """,
                        row.id,
                        row.workflow_instance_id,
                        row.node_id,
                        row.user_id,
                        row.model_dump_json(),
                    )
        finally:
            await conn.close()
