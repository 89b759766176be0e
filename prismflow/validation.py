"""Structural validation of workflow templates.

Runs when a template is saved and again when an instance is started, so the
scheduler never meets an unknown node type, a dangling connection or a
routing loop made of hidden nodes.
"""

from __future__ import annotations

from collections import deque
from typing import List, Optional

from pydantic import BaseModel, Field

from .constants import ALL_APPROVED, SYNC_OUTCOME_LABELS
from .contracts import Decision, DecisionKind, NodeType, WorkflowTemplate
from .graph import WorkflowGraph


class ValidationIssue(BaseModel):
    code: str
    message: str
    node_id: Optional[str] = None


class ValidationResult(BaseModel):
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def error_messages(self) -> List[str]:
        return [issue.message for issue in self.errors]


def _name(node) -> str:
    return node.label or node.id


def validate_template(template: WorkflowTemplate) -> ValidationResult:
    result = ValidationResult()
    errors, warnings = result.errors, result.warnings
    graph = WorkflowGraph.from_template(template)

    if not template.nodes:
        errors.append(ValidationIssue(code="NO_NODES", message="Workflow has no nodes"))
        return result

    node_ids = [n.id for n in template.nodes]
    if len(node_ids) != len(set(node_ids)):
        errors.append(
            ValidationIssue(code="DUPLICATE_NODE", message="Node ids must be unique")
        )

    starts = graph.nodes_of_type(NodeType.START)
    if not starts:
        errors.append(ValidationIssue(code="NO_START", message="Workflow must have a start node"))
    elif len(starts) > 1:
        errors.append(
            ValidationIssue(code="MULTIPLE_STARTS", message="Workflow can only have one start node")
        )

    if not graph.nodes_of_type(NodeType.END):
        errors.append(ValidationIssue(code="NO_END", message="Workflow must have an end node"))

    dangling = False
    for conn in template.connections:
        for ref in (conn.from_node_id, conn.to_node_id):
            if graph.get_node(ref) is None:
                dangling = True
                errors.append(
                    ValidationIssue(
                        code="DANGLING_CONNECTION",
                        message=f"Connection {conn.id} references unknown node {ref}",
                    )
                )
    if dangling:
        return result

    if len(starts) == 1:
        start = starts[0]
        if not graph.outgoing(start.id):
            errors.append(
                ValidationIssue(
                    code="START_NO_OUTPUT",
                    message="Start node has no outgoing connection",
                    node_id=start.id,
                )
            )
        elif not _end_reachable(graph, start.id):
            errors.append(
                ValidationIssue(
                    code="END_UNREACHABLE",
                    message="No end node is reachable from the start node",
                )
            )

    for node in graph.nodes_of_type(NodeType.APPROVAL):
        outgoing = graph.outgoing(node.id)
        if not outgoing:
            errors.append(
                ValidationIssue(
                    code="APPROVAL_NO_EDGES",
                    message=f'Approval node "{_name(node)}" has no outgoing connections',
                    node_id=node.id,
                )
            )
            continue
        has_approved = any(
            c.decision_label
            and Decision.parse(c.decision_label).kind is DecisionKind.APPROVED
            for c in outgoing
        )
        if len(outgoing) > 1 and not has_approved:
            errors.append(
                ValidationIssue(
                    code="APPROVAL_NO_APPROVED_PATH",
                    message=f'Approval node "{_name(node)}" has no "approved" path',
                    node_id=node.id,
                )
            )

    for node in graph.nodes_of_type(NodeType.SYNC):
        feeding = set(graph.sync_feeders(node.id))
        required = node.sync_settings().required_inputs or []
        unknown = [r for r in required if r not in feeding]
        if unknown:
            errors.append(
                ValidationIssue(
                    code="SYNC_UNKNOWN_INPUT",
                    message=f'Sync node "{_name(node)}" requires inputs that do not feed it: {unknown}',
                    node_id=node.id,
                )
            )
        outgoing = graph.outgoing(node.id)
        labels = {c.decision_label.strip().lower() for c in outgoing if c.decision_label}
        has_default = any(c.is_default for c in outgoing)
        if labels and not has_default and not labels & SYNC_OUTCOME_LABELS[ALL_APPROVED]:
            errors.append(
                ValidationIssue(
                    code="SYNC_NO_APPROVED_PATH",
                    message=f'Sync node "{_name(node)}" has no "all_approved" or default path',
                    node_id=node.id,
                )
            )

    cycle = _hidden_cycle(graph)
    if cycle:
        errors.append(
            ValidationIssue(
                code="HIDDEN_CYCLE",
                message="Sync/conditional nodes form a loop: " + " -> ".join(cycle),
                node_id=cycle[0],
            )
        )

    for node in graph.nodes_of_type(NodeType.CONDITIONAL):
        outgoing = graph.outgoing(node.id)
        if not outgoing:
            warnings.append(
                ValidationIssue(
                    code="CONDITIONAL_NO_OUTPUT",
                    message=f'Conditional node "{_name(node)}" has no outgoing connections',
                    node_id=node.id,
                )
            )
        elif all(c.is_default for c in outgoing):
            warnings.append(
                ValidationIssue(
                    code="CONDITIONAL_NO_CONDITIONS",
                    message=f'Conditional node "{_name(node)}" has no condition-based connections',
                    node_id=node.id,
                )
            )

    for node in template.nodes:
        if node.node_type is NodeType.START or graph.incoming(node.id) or graph.outgoing(node.id):
            continue
        warnings.append(
            ValidationIssue(
                code="ORPHANED_NODE",
                message=f'Node "{_name(node)}" is not connected to the workflow',
                node_id=node.id,
            )
        )

    return result


def _end_reachable(graph: WorkflowGraph, start_id: str) -> bool:
    seen = {start_id}
    queue = deque([start_id])
    while queue:
        node_id = queue.popleft()
        if graph.node(node_id).node_type is NodeType.END:
            return True
        for conn in graph.outgoing(node_id):
            if conn.to_node_id not in seen:
                seen.add(conn.to_node_id)
                queue.append(conn.to_node_id)
    return False


def _hidden_cycle(graph: WorkflowGraph) -> Optional[List[str]]:
    """Find a cycle in the subgraph of sync/conditional nodes."""
    hidden = {n.id for n in graph.nodes if n.is_hidden}
    done: set = set()
    for root in hidden:
        if root in done:
            continue
        path: List[str] = []
        on_path: set = set()
        stack = [(root, iter(graph.outgoing(root)))]
        path.append(root)
        on_path.add(root)
        while stack:
            node_id, children = stack[-1]
            advanced = False
            for conn in children:
                nxt = conn.to_node_id
                if nxt not in hidden or nxt in done:
                    continue
                if nxt in on_path:
                    return path[path.index(nxt):] + [nxt]
                stack.append((nxt, iter(graph.outgoing(nxt))))
                path.append(nxt)
                on_path.add(nxt)
                advanced = True
                break
            if not advanced:
                stack.pop()
                path.pop()
                on_path.discard(node_id)
                done.add(node_id)
    return None


__all__ = ["ValidationIssue", "ValidationResult", "validate_template"]
