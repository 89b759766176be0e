"""Read models describing where a workflow instance stands."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .contracts import (
    ActiveStep,
    HistoryEntry,
    NodeAssignment,
    NodeType,
    WorkflowInstance,
)


class NextStep(BaseModel):
    """An actionable node an open step could hand off to."""

    node_id: str
    label: str
    node_type: NodeType
    condition_label: Optional[str] = None


class WorkflowState(BaseModel):
    instance: WorkflowInstance
    active_steps: List[ActiveStep] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    assignments: List[NodeAssignment] = Field(default_factory=list)
    next_steps: Dict[str, List[NextStep]] = Field(default_factory=dict)
    """Keyed by open step id."""

    @property
    def is_parallel(self) -> bool:
        return self.instance.has_parallel_paths or len(self.active_steps) > 1


class PendingStep(BaseModel):
    """A step waiting on a particular user, with enough context to render it."""

    step: ActiveStep
    instance_id: str
    project_id: str
    template_name: Optional[str] = None
    node_label: str = ""
    node_type: NodeType
