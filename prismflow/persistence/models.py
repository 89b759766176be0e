"""Unit of work handed to a repository's ``commit``."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from ..contracts import ActiveStep, HistoryEntry, NodeAssignment, WorkflowInstance


class InstanceChanges(BaseModel):
    """Everything one engine call writes for one instance.

    ``expected_version`` is ``None`` for a new instance; otherwise the stored
    instance must still carry that version or the commit is rejected.
    """

    instance: WorkflowInstance
    expected_version: Optional[int] = None
    steps: List[ActiveStep] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    assignments: List[NodeAssignment] = Field(default_factory=list)

    @property
    def is_new_instance(self) -> bool:
        return self.expected_version is None
