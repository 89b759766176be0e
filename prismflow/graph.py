"""Indexed view over a workflow graph and hidden-node routing."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .conditions import evaluate_condition
from .constants import ALL_APPROVED, ANY_REJECTED, SYNC_OUTCOME_LABELS
from .contracts import (
    Decision,
    GraphSnapshot,
    NodeType,
    WorkflowConnection,
    WorkflowNode,
    WorkflowTemplate,
)
from .errors import CycleDetected, NoMatchingRoute, TemplateInvalid

logger = logging.getLogger(__name__)

Selector = Callable[[WorkflowNode], List[WorkflowConnection]]


@dataclass(frozen=True)
class ResolvedTarget:
    """A node reached from a completed node.

    Either an actionable node, or a sync node where routing stops until the
    join releases. For the latter ``sync_node_id`` is set and
    ``sync_entry_id`` names the node whose completion arrives there.
    """

    node: WorkflowNode
    condition_label: Optional[str] = None
    sync_node_id: Optional[str] = None
    sync_entry_id: Optional[str] = None

    @property
    def is_join(self) -> bool:
        return self.sync_node_id is not None


class WorkflowGraph:
    """Read-only adjacency index over nodes and connections."""

    def __init__(
        self, nodes: Iterable[WorkflowNode], connections: Iterable[WorkflowConnection]
    ) -> None:
        self._nodes: Dict[str, WorkflowNode] = {n.id: n for n in nodes}
        self._connections = list(connections)
        self._outgoing: Dict[str, List[WorkflowConnection]] = defaultdict(list)
        self._incoming: Dict[str, List[WorkflowConnection]] = defaultdict(list)
        for conn in self._connections:
            self._outgoing[conn.from_node_id].append(conn)
            self._incoming[conn.to_node_id].append(conn)

    @classmethod
    def from_snapshot(cls, snapshot: GraphSnapshot) -> "WorkflowGraph":
        return cls(snapshot.nodes, snapshot.connections)

    @classmethod
    def from_template(cls, template: WorkflowTemplate) -> "WorkflowGraph":
        return cls(template.nodes, template.connections)

    # ------------------------------------------------------------------
    @property
    def nodes(self) -> List[WorkflowNode]:
        return list(self._nodes.values())

    @property
    def connections(self) -> List[WorkflowConnection]:
        return list(self._connections)

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return self._nodes.get(node_id)

    def node(self, node_id: str) -> WorkflowNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise TemplateInvalid(f"Connection references unknown node {node_id}")
        return node

    def nodes_of_type(self, node_type: NodeType) -> List[WorkflowNode]:
        return [n for n in self._nodes.values() if n.node_type is node_type]

    def outgoing(self, node_id: str) -> List[WorkflowConnection]:
        return list(self._outgoing.get(node_id, ()))

    def incoming(self, node_id: str) -> List[WorkflowConnection]:
        return list(self._incoming.get(node_id, ()))

    def sync_inputs(self, sync_node: WorkflowNode) -> List[str]:
        """Node ids whose arrival a sync waits for."""
        configured = sync_node.sync_settings().required_inputs
        if configured:
            return list(dict.fromkeys(configured))
        return self.sync_feeders(sync_node.id)

    def sync_feeders(self, sync_node_id: str) -> List[str]:
        """Nodes whose completion arrives at a sync.

        Conditional predecessors are looked through to the nodes feeding
        them; an upstream sync counts as one input.
        """
        feeders: List[str] = []
        seen = {sync_node_id}
        stack = [c.from_node_id for c in reversed(self.incoming(sync_node_id))]
        while stack:
            node_id = stack.pop()
            if node_id in seen:
                continue
            seen.add(node_id)
            node = self._nodes.get(node_id)
            if node is not None and node.node_type is NodeType.CONDITIONAL:
                stack.extend(c.from_node_id for c in reversed(self.incoming(node_id)))
                continue
            feeders.append(node_id)
        return feeders

    def leads_to(
        self, source_id: str, target_id: str, avoid: Iterable[str] = ()
    ) -> bool:
        """Whether ``target_id`` is reachable from ``source_id``.

        Paths end at sync nodes and never pass through the ``avoid`` nodes.
        """
        if source_id == target_id:
            return True
        seen = {source_id, *avoid}
        stack = [source_id]
        while stack:
            node_id = stack.pop()
            node = self._nodes.get(node_id)
            if node_id != source_id and node is not None and node.node_type is NodeType.SYNC:
                continue
            for conn in self.outgoing(node_id):
                if conn.to_node_id == target_id:
                    return True
                if conn.to_node_id not in seen:
                    seen.add(conn.to_node_id)
                    stack.append(conn.to_node_id)
        return False

    def start_node(self) -> WorkflowNode:
        starts = self.nodes_of_type(NodeType.START)
        if len(starts) != 1:
            raise TemplateInvalid(
                f"Workflow must have exactly one start node (found {len(starts)})"
            )
        return starts[0]

    # ------------------------------------------------------------------
    # Routing
    def select_connections(
        self,
        node: WorkflowNode,
        decision: Optional[Decision] = None,
        form_data: Optional[Dict[str, Any]] = None,
    ) -> List[WorkflowConnection]:
        """Pick the outgoing connections a completed node routes along.

        For a sync node ``decision`` is the aggregate outcome of its join.
        """
        outgoing = self.outgoing(node.id)
        if node.node_type is NodeType.SYNC:
            return self._sync_connections(node, outgoing, decision)

        if node.node_type is NodeType.CONDITIONAL and any(
            c.has_form_condition for c in outgoing
        ):
            data = form_data or {}
            for conn in outgoing:
                if conn.has_form_condition and evaluate_condition(conn.condition, data):
                    return [conn]
            return self._defaults_or_raise(node, outgoing, decision)

        labelled = [c for c in outgoing if c.decision_label]
        if decision is not None and labelled:
            matched = [c for c in labelled if decision.matches(c.decision_label)]
            if matched:
                return matched
            return self._defaults_or_raise(node, outgoing, decision)
        return outgoing

    def _sync_connections(
        self,
        node: WorkflowNode,
        outgoing: List[WorkflowConnection],
        outcome: Optional[Decision],
    ) -> List[WorkflowConnection]:
        if not any(c.decision_label for c in outgoing):
            return outgoing
        wanted = ANY_REJECTED if outcome and outcome.value == ANY_REJECTED else ALL_APPROVED
        accepted = SYNC_OUTCOME_LABELS[wanted]
        matched = [
            c
            for c in outgoing
            if c.decision_label and c.decision_label.strip().lower() in accepted
        ]
        if matched:
            return matched
        return self._defaults_or_raise(node, outgoing, outcome)

    def _defaults_or_raise(
        self,
        node: WorkflowNode,
        outgoing: List[WorkflowConnection],
        decision: Optional[Decision],
    ) -> List[WorkflowConnection]:
        defaults = [c for c in outgoing if c.is_default]
        if not defaults:
            raise NoMatchingRoute(node.id, decision.value if decision else None)
        return defaults

    def resolve_targets(
        self,
        node: WorkflowNode,
        decision: Optional[Decision] = None,
        form_data: Optional[Dict[str, Any]] = None,
        *,
        select: Optional[Selector] = None,
        inherited: Optional[str] = None,
        through_syncs: bool = False,
    ) -> List[ResolvedTarget]:
        """Follow connections from ``node`` through hidden nodes to actionable ones.

        Conditional nodes are always walked through. A sync node ends the walk
        and is returned as a join target, unless ``through_syncs`` is set.
        Uses an explicit stack; every work item carries the hidden nodes on its
        own path, so a revisit on the same path raises ``CycleDetected`` while
        two paths meeting at the same node are merged.
        """
        if select is None:
            select = lambda n: self.select_connections(n, decision, form_data)  # noqa: E731

        Item = Tuple[WorkflowConnection, Optional[str], Tuple[str, ...]]
        stack: List[Item] = [(c, inherited, ()) for c in reversed(select(node))]
        results: List[ResolvedTarget] = []
        seen = set()

        while stack:
            conn, parent_label, path = stack.pop()
            target = self.node(conn.to_node_id)
            own = conn.condition.display_label() if conn.condition else None
            label = own or parent_label

            if target.node_type is NodeType.SYNC and not through_syncs:
                if target.id not in seen:
                    seen.add(target.id)
                    results.append(ResolvedTarget(target, label, target.id, node.id))
                continue

            if target.is_hidden:
                if target.id in path:
                    raise CycleDetected([node.id, *path, target.id])
                child_path = path + (target.id,)
                for child in reversed(select(target)):
                    stack.append((child, label, child_path))
                continue

            if target.id in seen:
                continue
            seen.add(target.id)
            results.append(ResolvedTarget(target, label))

        logger.debug(
            f"Resolved {len(results)} target(s) from node {node.id}: "
            f"{[r.node.id for r in results]}"
        )
        return results

    def preview(self, node_id: str) -> List[ResolvedTarget]:
        """All actionable nodes reachable in one step, regardless of decision."""
        return self.resolve_targets(
            self.node(node_id), select=lambda n: self.outgoing(n.id), through_syncs=True
        )

    def held_targets(self, sync_node: WorkflowNode) -> List[ResolvedTarget]:
        """Where a sync is expected to lead once every input has approved."""
        def select(n: WorkflowNode) -> List[WorkflowConnection]:
            if n.id == sync_node.id:
                return self.select_connections(n)
            return self.outgoing(n.id)

        return self.resolve_targets(sync_node, select=select)
