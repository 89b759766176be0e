"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set, Tuple

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


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Objects are copied on the way in and
    out so callers cannot change stored state behind the repository's back.
    """

    def __init__(self) -> None:
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._steps: Dict[str, ActiveStep] = {}
        self._history: List[HistoryEntry] = []
        self._assignments: List[NodeAssignment] = []
        self._assignment_keys: Set[Tuple[str, str, str]] = set()

    # ------------------------------------------------------------------
    async def save_template(self, template: WorkflowTemplate) -> None:
        self._templates[template.id] = template.model_copy(deep=True)

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    async def list_templates(self) -> list[WorkflowTemplate]:
        return [t.model_copy(deep=True) for t in self._templates.values()]

    async def delete_template(self, template_id: str) -> bool:
        return self._templates.pop(template_id, None) is not None

    # ------------------------------------------------------------------
    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(
        self,
        project_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        return [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if (project_id is None or i.project_id == project_id)
            and (status is None or i.status == status)
        ]

    async def get_step(self, step_id: str) -> ActiveStep | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def list_steps(
        self,
        instance_id: Optional[str] = None,
        statuses: Optional[Iterable[StepStatus]] = None,
    ) -> list[ActiveStep]:
        wanted = set(statuses) if statuses is not None else None
        return [
            s.model_copy(deep=True)
            for s in self._steps.values()
            if (instance_id is None or s.workflow_instance_id == instance_id)
            and (wanted is None or s.status in wanted)
        ]

    async def list_history(self, instance_id: str) -> list[HistoryEntry]:
        return [
            h.model_copy(deep=True)
            for h in self._history
            if h.workflow_instance_id == instance_id
        ]

    async def list_assignments(
        self, instance_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> list[NodeAssignment]:
        return [
            a.model_copy(deep=True)
            for a in self._assignments
            if (instance_id is None or a.workflow_instance_id == instance_id)
            and (user_id is None or a.user_id == user_id)
        ]

    # ------------------------------------------------------------------
    async def commit(self, changes: InstanceChanges) -> None:
        instance = changes.instance
        stored = self._instances.get(instance.id)
        if changes.is_new_instance:
            if stored is not None:
                raise ConcurrentModification(instance.id)
        elif stored is None or stored.version != changes.expected_version:
            raise ConcurrentModification(instance.id)

        # no awaits below: the whole change set lands in one event-loop tick
        self._instances[instance.id] = instance.model_copy(deep=True)
        for step in changes.steps:
            self._steps[step.id] = step.model_copy(deep=True)
        self._history.extend(h.model_copy(deep=True) for h in changes.history)
        for row in changes.assignments:
            key = (row.workflow_instance_id, row.node_id, row.user_id)
            if key in self._assignment_keys:
                continue
            self._assignment_keys.add(key)
            self._assignments.append(row.model_copy(deep=True))
