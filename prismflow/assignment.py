"""Resolve which user picks up a newly activated step."""

from __future__ import annotations

import logging
from typing import List, Optional

from .contracts import NodeType, WorkflowInstance, WorkflowNode
from .directory import Directory

logger = logging.getLogger(__name__)

_ROLE_BACKED_TYPES = frozenset(
    {NodeType.ROLE, NodeType.APPROVAL, NodeType.FORM, NodeType.CLIENT}
)


class AssignmentResolver:
    """Pick a single assignee for a node, or ``None`` when nobody is eligible.

    Candidates returned by the directory are sorted and the first one wins,
    so the same membership always yields the same assignee.
    """

    def __init__(self, directory: Directory) -> None:
        self._directory = directory

    async def resolve_assignee(
        self,
        node: WorkflowNode,
        instance: WorkflowInstance,
        override: Optional[str] = None,
    ) -> Optional[str]:
        if override:
            return override

        settings = node.assignment_settings()
        if settings.assigned_user_id:
            return settings.assigned_user_id

        candidates: List[str] = []
        if node.node_type is NodeType.DEPARTMENT:
            department_id = settings.department_id or node.entity_id
            if department_id:
                candidates = await self._directory.department_members(department_id)
        elif node.node_type in _ROLE_BACKED_TYPES:
            role_id = settings.role_id or settings.approver_role_id or node.entity_id
            if role_id:
                candidates = await self._directory.role_members(role_id)

        if not candidates:
            logger.warning(
                f"No eligible assignee for node {node.id} ({node.node_type.value}) "
                f"in workflow instance {instance.id}"
            )
            return None
        return sorted(candidates)[0]
