"""Core data contracts for the prismflow workflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import (
    ALL_APPROVED,
    ANY_REJECTED,
    DECISION_LABELS,
    MAIN_BRANCH,
    NO_APPROVALS,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class NodeType(str, Enum):
    START = "start"
    DEPARTMENT = "department"
    ROLE = "role"
    APPROVAL = "approval"
    FORM = "form"
    CLIENT = "client"
    SYNC = "sync"
    CONDITIONAL = "conditional"
    END = "end"


# Routing-only nodes: traversed by the scheduler, never materialised as steps.
HIDDEN_NODE_TYPES = frozenset({NodeType.SYNC, NodeType.CONDITIONAL})


class InstanceStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_STEP_STATUSES = (StepStatus.ACTIVE, StepStatus.WAITING)


class DecisionKind(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_CHANGES = "needs_changes"
    CUSTOM = "custom"


_DECISION_ALIASES = {
    "approve": DecisionKind.APPROVED,
    "approved": DecisionKind.APPROVED,
    "reject": DecisionKind.REJECTED,
    "rejected": DecisionKind.REJECTED,
    "needs_changes": DecisionKind.NEEDS_CHANGES,
    "needs-changes": DecisionKind.NEEDS_CHANGES,
}


class Decision(BaseModel):
    """Human-supplied outcome used to pick between outgoing connections."""

    model_config = ConfigDict(frozen=True)

    kind: DecisionKind
    raw: str

    @classmethod
    def parse(cls, value: "str | Decision") -> "Decision":
        if isinstance(value, Decision):
            return value
        text = value.strip()
        if not text:
            raise ValueError("Decision must not be empty")
        kind = _DECISION_ALIASES.get(text.lower(), DecisionKind.CUSTOM)
        return cls(kind=kind, raw=text)

    @classmethod
    def from_input(cls, value: "Optional[str | Decision]") -> "Optional[Decision]":
        """Parse caller input; a missing or blank decision becomes ``None``."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return cls.parse(value)

    @property
    def value(self) -> str:
        """Canonical form stored in history and compared against labels."""
        if self.kind is DecisionKind.CUSTOM:
            return self.raw.lower()
        return self.kind.value

    def matches(self, label: Optional[str]) -> bool:
        if not label or not label.strip():
            return False
        return Decision.parse(label).value == self.value


# ----------------------------------------------------------------------
# Template graph


class ConnectionCondition(BaseModel):
    """Routing metadata attached to a connection."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    decision: Optional[str] = None
    condition_value: Optional[str] = Field(default=None, alias="conditionValue")
    label: Optional[str] = None
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    source_form_field_id: Optional[str] = Field(default=None, alias="sourceFormFieldId")
    condition_type: Optional[str] = Field(default=None, alias="conditionType")
    value: Any = None
    value2: Any = None

    @property
    def decision_label(self) -> Optional[str]:
        return self.decision or self.condition_value

    @property
    def has_form_condition(self) -> bool:
        return bool(self.source_form_field_id and self.condition_type)

    def display_label(self) -> Optional[str]:
        if self.label:
            return self.label
        decision = self.decision_label
        if decision:
            return DECISION_LABELS.get(decision.lower(), decision)
        if self.source_handle:
            return self.source_handle
        return None


class WorkflowNode(BaseModel):
    """A typed step in a workflow graph.

    ``position`` is only used by editors and renderers.
    """

    id: str = Field(default_factory=new_id)
    label: str = ""
    node_type: NodeType
    entity_id: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    position: Dict[str, float] = Field(default_factory=lambda: {"x": 0, "y": 0})

    @property
    def is_hidden(self) -> bool:
        return self.node_type in HIDDEN_NODE_TYPES

    def setting(self, *keys: str, default: Any = None) -> Any:
        """Return the first present value among ``keys`` (snake or camel case)."""
        for key in keys:
            if key in self.settings:
                return self.settings[key]
        return default

    @property
    def auto_advance(self) -> Optional[bool]:
        value = self.setting("auto_advance", "autoAdvance")
        return None if value is None else bool(value)

    @property
    def terminates(self) -> bool:
        return bool(self.setting("terminate", default=False))

    def sync_settings(self) -> "SyncSettings":
        return SyncSettings.model_validate(self.settings)

    def assignment_settings(self) -> "AssignmentSettings":
        return AssignmentSettings.model_validate(self.settings)


class SyncSettings(BaseModel):
    """Join arity of a sync node."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    require_all: bool = Field(default=True, alias="requireAll")
    required_inputs: Optional[List[str]] = Field(default=None, alias="requiredInputs")


class AssignmentSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assigned_user_id: Optional[str] = Field(default=None, alias="assignedUserId")
    role_id: Optional[str] = Field(default=None, alias="roleId")
    approver_role_id: Optional[str] = Field(default=None, alias="approverRoleId")
    department_id: Optional[str] = Field(default=None, alias="departmentId")


class WorkflowConnection(BaseModel):
    id: str = Field(default_factory=new_id)
    from_node_id: str
    to_node_id: str
    condition: Optional[ConnectionCondition] = None

    @property
    def decision_label(self) -> Optional[str]:
        return self.condition.decision_label if self.condition else None

    @property
    def has_form_condition(self) -> bool:
        return bool(self.condition and self.condition.has_form_condition)

    @property
    def is_default(self) -> bool:
        """Unlabelled path taken when no decision or form condition matches."""
        return not self.decision_label and not self.has_form_condition


class WorkflowTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    is_active: bool = True
    nodes: List[WorkflowNode] = Field(default_factory=list)
    connections: List[WorkflowConnection] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()


# ----------------------------------------------------------------------
# Snapshots


class GraphSnapshot(BaseModel):
    """Owned copy of a template graph; holds no references to live rows."""

    nodes: List[WorkflowNode] = Field(default_factory=list)
    connections: List[WorkflowConnection] = Field(default_factory=list)
    template_name: Optional[str] = None
    captured_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def capture(cls, template: WorkflowTemplate) -> "GraphSnapshot":
        return cls(
            nodes=[node.model_copy(deep=True) for node in template.nodes],
            connections=[conn.model_copy(deep=True) for conn in template.connections],
            template_name=template.name,
        )


class NodeUser(BaseModel):
    user_id: str
    user_name: str


class CompletedSnapshot(GraphSnapshot):
    node_assignments: Dict[str, NodeUser] = Field(default_factory=dict)


# ----------------------------------------------------------------------
# Runtime records


class JoinState(BaseModel):
    """Arrivals at one sync node for one fork of parallel branches.

    ``decisions`` keeps the latest decision of every arrived input; the
    aggregate of those decisions picks the sync's outgoing path on release.
    """

    sync_node_id: str
    flow: str = MAIN_BRANCH
    arrived: List[str] = Field(default_factory=list)
    decisions: Dict[str, Optional[str]] = Field(default_factory=dict)
    released: bool = False
    outcome: Optional[str] = None

    def record(self, node_id: str, decision: Optional[str]) -> None:
        if node_id not in self.arrived:
            self.arrived.append(node_id)
        self.decisions[node_id] = decision

    def aggregate(self) -> str:
        given = [Decision.parse(d) for d in self.decisions.values() if d]
        if any(d.kind in (DecisionKind.REJECTED, DecisionKind.NEEDS_CHANGES) for d in given):
            return ANY_REJECTED
        if given and all(d.kind is DecisionKind.APPROVED for d in given):
            return ALL_APPROVED
        return NO_APPROVALS


class WorkflowInstance(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    workflow_template_id: str
    status: InstanceStatus = InstanceStatus.ACTIVE
    current_node_id: Optional[str] = None
    has_parallel_paths: bool = False
    started_snapshot: GraphSnapshot
    completed_snapshot: Optional[CompletedSnapshot] = None
    started_by: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    version: int = 0
    # join key -> arrivals; flow token -> node that forked it
    joins: Dict[str, JoinState] = Field(default_factory=dict)
    forks: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status is InstanceStatus.ACTIVE


class ActiveStep(BaseModel):
    """One frontier position of a running instance."""

    id: str = Field(default_factory=new_id)
    workflow_instance_id: str
    node_id: str
    branch_id: str = MAIN_BRANCH
    status: StepStatus = StepStatus.ACTIVE
    assigned_user_id: Optional[str] = None
    condition_label: Optional[str] = None
    join_key: Optional[str] = None
    joined_node_ids: List[str] = Field(default_factory=list)
    decision: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STEP_STATUSES


class NodeAssignment(BaseModel):
    id: str = Field(default_factory=new_id)
    workflow_instance_id: str
    node_id: str
    user_id: str
    assigned_by: Optional[str] = None
    assigned_at: datetime = Field(default_factory=utcnow)


class HistoryEntry(BaseModel):
    """Append-only record of a node-to-node handoff."""

    id: str = Field(default_factory=new_id)
    workflow_instance_id: str
    from_node_id: Optional[str] = None
    to_node_id: Optional[str] = None
    approval_decision: Optional[str] = None
    approval_feedback: Optional[str] = None
    handed_off_by: Optional[str] = None
    branch_id: Optional[str] = None
    notes: Optional[str] = None
    form_data: Optional[Dict[str, Any]] = None
    handed_off_at: datetime = Field(default_factory=utcnow)


class PendingJoin(BaseModel):
    """A sync node still waiting for some of its inputs.

    ``step_id`` and ``node_id`` name the waiting downstream step, when the
    sync leads to one.
    """

    sync_node_id: str
    step_id: Optional[str] = None
    node_id: Optional[str] = None
    arrived: List[str] = Field(default_factory=list)
    required: List[str] = Field(default_factory=list)


class AdvanceResult(BaseModel):
    instance: WorkflowInstance
    new_active_steps: List[ActiveStep] = Field(default_factory=list)
    waiting_steps: List[ActiveStep] = Field(default_factory=list)
    history_entries: List[HistoryEntry] = Field(default_factory=list)
    pending_joins: List[PendingJoin] = Field(default_factory=list)
    completed: bool = False
