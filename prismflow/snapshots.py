"""Completion snapshot: the graph plus who handled each node, frozen at completion."""

from __future__ import annotations

from typing import Dict, Iterable, Mapping

from .constants import UNKNOWN_USER_NAME
from .contracts import ActiveStep, CompletedSnapshot, NodeAssignment, NodeUser, WorkflowInstance


def node_handlers(
    steps: Iterable[ActiveStep], assignments: Iterable[NodeAssignment]
) -> Dict[str, str]:
    """Map node id to the user who last handled it.

    Assignment rows go first; step assignees then override them in creation
    order, since a step's assignee is the one who actually drove progress.
    """
    handlers: Dict[str, str] = {}
    for row in sorted(assignments, key=lambda a: a.assigned_at):
        handlers[row.node_id] = row.user_id
    for step in sorted(steps, key=lambda s: s.created_at):
        if step.assigned_user_id:
            handlers[step.node_id] = step.assigned_user_id
    return handlers


def build_completed_snapshot(
    instance: WorkflowInstance,
    steps: Iterable[ActiveStep],
    assignments: Iterable[NodeAssignment],
    user_names: Mapping[str, str],
) -> CompletedSnapshot:
    started = instance.started_snapshot
    handlers = node_handlers(steps, assignments)
    return CompletedSnapshot(
        nodes=[n.model_copy(deep=True) for n in started.nodes],
        connections=[c.model_copy(deep=True) for c in started.connections],
        template_name=started.template_name,
        node_assignments={
            node_id: NodeUser(
                user_id=user_id, user_name=user_names.get(user_id, UNKNOWN_USER_NAME)
            )
            for node_id, user_id in handlers.items()
        },
    )
