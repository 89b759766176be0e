"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from ..contracts import (
    ActiveStep,
    HistoryEntry,
    InstanceStatus,
    NodeAssignment,
    StepStatus,
    WorkflowInstance,
    WorkflowTemplate,
)
from .models import InstanceChanges


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Reads return detached copies; mutating a returned object never changes
    stored state until it is written back through ``commit``.
    """

    async def save_template(self, template: WorkflowTemplate) -> None:
        """Insert or replace a template."""

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        """Retrieve a template by id."""

    async def list_templates(self) -> list[WorkflowTemplate]:
        """Return all stored templates."""

    async def delete_template(self, template_id: str) -> bool:
        """Remove a template; returns ``False`` when it did not exist."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve a workflow instance by id."""

    async def list_instances(
        self,
        project_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        """Return instances, optionally filtered by project and status."""

    async def get_step(self, step_id: str) -> ActiveStep | None:
        """Retrieve a step by id."""

    async def list_steps(
        self,
        instance_id: Optional[str] = None,
        statuses: Optional[Iterable[StepStatus]] = None,
    ) -> list[ActiveStep]:
        """Return steps in creation order."""

    async def list_history(self, instance_id: str) -> list[HistoryEntry]:
        """Return history entries in append order."""

    async def list_assignments(
        self, instance_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> list[NodeAssignment]:
        """Return node assignments in insertion order."""

    async def commit(self, changes: InstanceChanges) -> None:
        """Apply ``changes`` atomically.

        Raises:
            ConcurrentModification: If the stored instance version differs
                from ``changes.expected_version`` (or the instance already
                exists when inserting).
        """
