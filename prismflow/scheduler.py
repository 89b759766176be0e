"""Step scheduler: moves an instance's frontier from completed steps to successors."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .assignment import AssignmentResolver
from .branches import (
    child_branch_id,
    flow_id,
    in_flow,
    join_key,
    new_flow_id,
    parent_branch_id,
)
from .constants import DEFAULT_MAX_AUTO_ADVANCE, MAIN_BRANCH
from .contracts import (
    ActiveStep,
    AdvanceResult,
    Decision,
    HistoryEntry,
    InstanceStatus,
    JoinState,
    NodeAssignment,
    NodeType,
    PendingJoin,
    StepStatus,
    WorkflowInstance,
    WorkflowNode,
    utcnow,
)
from .directory import Directory
from .errors import CycleDetected, DecisionRequired, NoMatchingRoute, TemplateInvalid
from .graph import ResolvedTarget, WorkflowGraph
from .persistence.models import InstanceChanges
from .snapshots import build_completed_snapshot

logger = logging.getLogger(__name__)


class InstanceRun:
    """Working copy of one instance while an engine call mutates it.

    Holds the instance, all of its steps and assignments as loaded, and
    records every change so they can be committed together. Nothing is
    written until ``changes()`` is handed to the repository.
    """

    def __init__(
        self,
        instance: WorkflowInstance,
        steps: Iterable[ActiveStep] = (),
        assignments: Iterable[NodeAssignment] = (),
    ) -> None:
        self.instance = instance
        self.expected_version: Optional[int] = None
        self.graph = WorkflowGraph.from_snapshot(instance.started_snapshot)
        self.steps: Dict[str, ActiveStep] = {s.id: s for s in steps}
        self.assignments: List[NodeAssignment] = list(assignments)
        self.history: List[HistoryEntry] = []
        self.completed = False
        self._dirty: Dict[str, None] = {}
        self._new_assignments: List[NodeAssignment] = []
        self._activated: Dict[str, None] = {}
        self._waiting: Dict[str, None] = {}
        self._joins: Dict[str, None] = {}

    @classmethod
    def existing(
        cls,
        instance: WorkflowInstance,
        steps: Iterable[ActiveStep],
        assignments: Iterable[NodeAssignment],
    ) -> "InstanceRun":
        run = cls(instance, steps, assignments)
        run.expected_version = instance.version
        return run

    # ------------------------------------------------------------------
    def open_steps(self) -> List[ActiveStep]:
        return [s for s in self.steps.values() if s.is_open]

    def touch(self, step: ActiveStep) -> None:
        self.steps[step.id] = step
        self._dirty[step.id] = None

    def add_history(self, **fields: Any) -> HistoryEntry:
        entry = HistoryEntry(workflow_instance_id=self.instance.id, **fields)
        self.history.append(entry)
        return entry

    def record_assignment(
        self, node_id: str, user_id: str, assigned_by: Optional[str] = None
    ) -> None:
        for row in self.assignments:
            if row.node_id == node_id and row.user_id == user_id:
                return
        row = NodeAssignment(
            workflow_instance_id=self.instance.id,
            node_id=node_id,
            user_id=user_id,
            assigned_by=assigned_by,
        )
        self.assignments.append(row)
        self._new_assignments.append(row)

    def mark_activated(self, step: ActiveStep) -> None:
        self._activated[step.id] = None
        self._waiting.pop(step.id, None)

    def mark_waiting(self, step: ActiveStep) -> None:
        self._waiting[step.id] = None

    def mark_join(self, key: str) -> None:
        self._joins[key] = None

    def join_steps(self, key: str) -> List[ActiveStep]:
        """Steps held back until the join ``key`` releases."""
        return [
            s
            for s in self.steps.values()
            if s.join_key == key and s.status is StepStatus.WAITING
        ]

    def cancel_open_steps(
        self,
        *,
        keep: Sequence[str] = (),
        where: Optional[Callable[[ActiveStep], bool]] = None,
    ) -> List[ActiveStep]:
        cancelled = []
        now = utcnow()
        for step in self.open_steps():
            if step.id in keep or (where is not None and not where(step)):
                continue
            step.status = StepStatus.CANCELLED
            step.completed_at = now
            self.touch(step)
            cancelled.append(step)
        return cancelled

    def refresh_pointer(self) -> None:
        """Update ``has_parallel_paths`` and the legacy ``current_node_id``."""
        open_steps = self.open_steps()
        if len(open_steps) > 1:
            self.instance.has_parallel_paths = True
        if self.instance.is_active and open_steps:
            self.instance.current_node_id = open_steps[0].node_id

    # ------------------------------------------------------------------
    def changes(self) -> InstanceChanges:
        if self.expected_version is not None:
            self.instance.version = self.expected_version + 1
        return InstanceChanges(
            instance=self.instance,
            expected_version=self.expected_version,
            steps=[self.steps[step_id] for step_id in self._dirty],
            history=list(self.history),
            assignments=list(self._new_assignments),
        )

    def result(self) -> AdvanceResult:
        new_active = [
            self.steps[i]
            for i in self._activated
            if self.steps[i].status is StepStatus.ACTIVE
        ]
        waiting = [
            self.steps[i]
            for i in self._waiting
            if self.steps[i].status is StepStatus.WAITING
        ]
        return AdvanceResult(
            instance=self.instance,
            new_active_steps=new_active,
            waiting_steps=waiting,
            history_entries=list(self.history),
            pending_joins=self.pending_joins(),
            completed=self.completed,
        )

    def pending_joins(self) -> List[PendingJoin]:
        """Joins touched by this run that are still waiting for inputs."""
        pending = []
        for key in self._joins:
            state = self.instance.joins.get(key)
            if state is None or state.released:
                continue
            sync_node = self.graph.get_node(state.sync_node_id)
            held = self.join_steps(key)
            pending.append(
                PendingJoin(
                    sync_node_id=state.sync_node_id,
                    step_id=held[0].id if held else None,
                    node_id=held[0].node_id if held else None,
                    arrived=list(state.arrived),
                    required=self.graph.sync_inputs(sync_node) if sync_node else [],
                )
            )
        return pending


class StepScheduler:
    """Routes completed steps to their successors inside an ``InstanceRun``.

    Args:
        resolver: Picks assignees for newly activated steps.
        directory: Supplies user names for the completion snapshot.
        decision_node_types: Node types that cannot complete without a decision.
        auto_advance_node_types: Node types that complete right after assignment.
        max_auto_advance: Upper bound on auto-completions in one call.
    """

    def __init__(
        self,
        resolver: AssignmentResolver,
        directory: Directory,
        *,
        decision_node_types: Iterable[NodeType] = (NodeType.APPROVAL,),
        auto_advance_node_types: Iterable[NodeType] = (),
        max_auto_advance: int = DEFAULT_MAX_AUTO_ADVANCE,
    ) -> None:
        self._resolver = resolver
        self._directory = directory
        self.decision_node_types = frozenset(NodeType(t) for t in decision_node_types)
        self.auto_advance_node_types = frozenset(
            NodeType(t) for t in auto_advance_node_types
        )
        self.max_auto_advance = max_auto_advance

    # ------------------------------------------------------------------
    # Entry points
    async def start(
        self,
        run: InstanceRun,
        *,
        started_by: Optional[str] = None,
        assignees: Optional[Mapping[str, str]] = None,
    ) -> None:
        start = run.graph.start_node()
        targets = run.graph.resolve_targets(start)
        if not targets:
            raise TemplateInvalid(f"Start node {start.id} has no outgoing connections")
        run.instance.current_node_id = start.id
        activated = await self._route(
            run,
            start,
            MAIN_BRANCH,
            targets,
            actor_id=started_by,
            assignees=assignees,
            notes="Workflow started",
        )
        await self._auto_advance(run, activated, assignees)
        run.refresh_pointer()

    async def advance(
        self,
        run: InstanceRun,
        step: ActiveStep,
        decision: Optional[Decision] = None,
        *,
        actor_id: Optional[str] = None,
        feedback: Optional[str] = None,
        form_data: Optional[Dict[str, Any]] = None,
        assignees: Optional[Mapping[str, str]] = None,
    ) -> None:
        node = run.graph.node(step.node_id)
        if decision is None and node.node_type in self.decision_node_types:
            raise DecisionRequired(node.id, node.node_type.value)
        activated = await self._complete(
            run,
            step,
            node,
            decision,
            actor_id=actor_id,
            feedback=feedback,
            form_data=form_data,
            assignees=assignees,
        )
        await self._auto_advance(run, activated, assignees)
        run.refresh_pointer()

    async def assign(
        self,
        run: InstanceRun,
        step: ActiveStep,
        user_id: str,
        assigned_by: Optional[str] = None,
    ) -> None:
        step.assigned_user_id = user_id
        run.touch(step)
        run.record_assignment(step.node_id, user_id, assigned_by)

    # ------------------------------------------------------------------
    # Core transitions
    def auto_advances(self, node: WorkflowNode) -> bool:
        if node.node_type in self.decision_node_types:
            return False
        if node.auto_advance is not None:
            return node.auto_advance
        return node.node_type in self.auto_advance_node_types

    async def _complete(
        self,
        run: InstanceRun,
        step: ActiveStep,
        node: WorkflowNode,
        decision: Optional[Decision],
        *,
        actor_id: Optional[str] = None,
        feedback: Optional[str] = None,
        form_data: Optional[Dict[str, Any]] = None,
        assignees: Optional[Mapping[str, str]] = None,
        notes: Optional[str] = None,
    ) -> List[ActiveStep]:
        targets = run.graph.resolve_targets(node, decision, form_data)
        if not targets:
            raise NoMatchingRoute(node.id, decision.value if decision else None)

        step.status = StepStatus.COMPLETED
        step.completed_at = utcnow()
        step.decision = decision.value if decision else None
        run.touch(step)
        logger.debug(
            f"Step {step.id} at node {node.id} completed on branch {step.branch_id}"
        )
        return await self._route(
            run,
            node,
            self._leave_forks(run, step, targets),
            targets,
            decision=decision,
            actor_id=actor_id,
            feedback=feedback,
            form_data=form_data,
            assignees=assignees,
            notes=notes,
        )

    def _leave_forks(
        self, run: InstanceRun, step: ActiveStep, targets: List[ResolvedTarget]
    ) -> str:
        """Branch to route a completed step on.

        A branch that loops back to (or above) the node that forked it
        abandons the whole fork: the sibling branches and the joins they were
        heading for are cancelled, and routing continues on the parent branch
        so the fork can run again from scratch. Going back to a node the fork
        already visited is rework inside the fork and keeps the branch.
        """
        plain = [
            t.node.id
            for t in targets
            if not t.is_join and t.node.node_type is not NodeType.END
        ]
        branch = step.branch_id
        while plain:
            flow = flow_id(branch)
            fork_node = run.instance.forks.get(flow) if flow else None
            if fork_node is None:
                break
            visited = {
                s.node_id for s in run.steps.values() if in_flow(s.branch_id, flow)
            }
            if not any(
                node_id == fork_node
                or (
                    node_id not in visited
                    and run.graph.leads_to(node_id, fork_node, avoid=visited)
                )
                for node_id in plain
            ):
                break

            def in_fork(s: ActiveStep, flow: str = flow) -> bool:
                return in_flow(s.branch_id, flow) or (s.join_key or "").endswith(
                    f":{flow}"
                )

            cancelled = run.cancel_open_steps(keep=(step.id,), where=in_fork)
            for key in [k for k, s in run.instance.joins.items() if s.flow == flow]:
                del run.instance.joins[key]
            run.instance.forks.pop(flow, None)
            logger.info(
                f"Node {step.node_id} loops back to fork node {fork_node}; "
                f"cancelled {len(cancelled)} open step(s) of flow {flow}"
            )
            branch = parent_branch_id(branch)
        return branch

    async def _auto_advance(
        self,
        run: InstanceRun,
        activated: List[ActiveStep],
        assignees: Optional[Mapping[str, str]],
    ) -> None:
        queue = deque(activated)
        chain: List[str] = []
        while queue and run.instance.is_active:
            step = queue.popleft()
            if step.status is not StepStatus.ACTIVE:
                continue
            node = run.graph.node(step.node_id)
            if not self.auto_advances(node):
                continue
            chain.append(node.id)
            if len(chain) > self.max_auto_advance:
                raise CycleDetected(chain[-self.max_auto_advance :])
            logger.debug(f"Auto-advancing step {step.id} at node {node.id}")
            queue.extend(
                await self._complete(
                    run,
                    step,
                    node,
                    None,
                    actor_id=step.assigned_user_id,
                    assignees=assignees,
                    notes="Auto-advanced",
                )
            )

    async def _route(
        self,
        run: InstanceRun,
        source: WorkflowNode,
        source_branch: str,
        targets: List[ResolvedTarget],
        *,
        decision: Optional[Decision] = None,
        actor_id: Optional[str] = None,
        feedback: Optional[str] = None,
        form_data: Optional[Dict[str, Any]] = None,
        assignees: Optional[Mapping[str, str]] = None,
        notes: Optional[str] = None,
        reuse: Optional[Dict[str, ActiveStep]] = None,
        released_key: Optional[str] = None,
        joined: Sequence[str] = (),
    ) -> List[ActiveStep]:
        plain = [
            t
            for t in targets
            if not t.is_join and t.node.node_type is not NodeType.END
        ]
        fork = new_flow_id() if len(plain) >= 2 else None
        if fork:
            run.instance.forks[fork] = source.id
            logger.debug(
                f"Node {source.id} forks into {len(plain)} branches (flow {fork})"
            )

        activated: List[ActiveStep] = []
        ends: List[WorkflowNode] = []
        index = 0
        for target in targets:
            run.add_history(
                from_node_id=source.id,
                to_node_id=target.node.id,
                approval_decision=decision.value if decision else None,
                approval_feedback=feedback,
                handed_off_by=actor_id,
                branch_id=source_branch,
                notes=notes,
                form_data=form_data,
            )
            if target.node.node_type is NodeType.END:
                ends.append(target.node)
                continue
            if target.is_join:
                activated.extend(
                    await self._arrive(
                        run,
                        target,
                        source_branch,
                        decision,
                        actor_id=actor_id,
                        form_data=form_data,
                        assignees=assignees,
                    )
                )
                continue

            branch = source_branch
            if fork:
                branch = child_branch_id(source_branch, index, fork)
                index += 1
            step = (reuse or {}).pop(target.node.id, None)
            if step is None:
                step = ActiveStep(
                    workflow_instance_id=run.instance.id,
                    node_id=target.node.id,
                    join_key=released_key,
                )
            step.branch_id = branch
            step.status = StepStatus.ACTIVE
            step.condition_label = target.condition_label
            step.joined_node_ids = list(joined)
            step.activated_at = utcnow()
            await self._activate(run, step, target.node, actor_id, assignees)
            activated.append(step)

        for end in ends:
            await self._reach_end(run, end)
        return activated

    async def _arrive(
        self,
        run: InstanceRun,
        target: ResolvedTarget,
        source_branch: str,
        decision: Optional[Decision],
        *,
        actor_id: Optional[str],
        form_data: Optional[Dict[str, Any]],
        assignees: Optional[Mapping[str, str]],
    ) -> List[ActiveStep]:
        """Record one input reaching a sync node and release the join when it can."""
        sync = run.graph.node(target.sync_node_id)
        key = join_key(sync.id, source_branch)
        arrival = target.sync_entry_id
        run.mark_join(key)

        state = run.instance.joins.get(key)
        if state is not None and state.released:
            if arrival not in state.arrived:
                state.record(arrival, decision.value if decision else None)
                logger.warning(
                    f"Join {key} already released; "
                    f"arrival from {arrival} recorded in history only"
                )
                return []
            # the same input again: a new round through the sync
            state = None
        if state is None:
            state = JoinState(
                sync_node_id=sync.id, flow=flow_id(source_branch) or MAIN_BRANCH
            )
            run.instance.joins[key] = state
        state.record(arrival, decision.value if decision else None)

        required = run.graph.sync_inputs(sync)
        waiting = [r for r in required if r not in state.arrived]
        if sync.sync_settings().require_all and waiting:
            self._hold(run, sync, key, state, source_branch, target.condition_label)
            logger.debug(
                f"Join {key} waiting: {len(state.arrived)}/{len(required)} inputs "
                f"arrived, still missing {waiting}"
            )
            return []
        return await self._release(
            run,
            sync,
            key,
            state,
            source_branch,
            target.condition_label,
            actor_id=actor_id,
            form_data=form_data,
            assignees=assignees,
        )

    def _hold(
        self,
        run: InstanceRun,
        sync: WorkflowNode,
        key: str,
        state: JoinState,
        source_branch: str,
        label: Optional[str],
    ) -> None:
        held = run.join_steps(key)
        if not held:
            try:
                expected = run.graph.held_targets(sync)
            except NoMatchingRoute:
                expected = []
            for target in expected:
                if target.is_join or target.node.node_type is NodeType.END:
                    continue
                held.append(
                    ActiveStep(
                        workflow_instance_id=run.instance.id,
                        node_id=target.node.id,
                        branch_id=parent_branch_id(source_branch),
                        status=StepStatus.WAITING,
                        condition_label=target.condition_label or label,
                        join_key=key,
                    )
                )
        for step in held:
            step.joined_node_ids = list(state.arrived)
            run.touch(step)
            run.mark_waiting(step)

    async def _release(
        self,
        run: InstanceRun,
        sync: WorkflowNode,
        key: str,
        state: JoinState,
        source_branch: str,
        label: Optional[str],
        *,
        actor_id: Optional[str],
        form_data: Optional[Dict[str, Any]],
        assignees: Optional[Mapping[str, str]],
    ) -> List[ActiveStep]:
        state.released = True
        state.outcome = state.aggregate()
        outcome = Decision.parse(state.outcome)
        targets = run.graph.resolve_targets(sync, outcome, form_data, inherited=label)
        if not targets:
            raise NoMatchingRoute(sync.id, outcome.value)
        logger.debug(f"Join {key} released with outcome {outcome.value}")

        held = {s.node_id: s for s in run.join_steps(key)}
        activated = await self._route(
            run,
            sync,
            parent_branch_id(source_branch),
            targets,
            decision=outcome,
            actor_id=actor_id,
            form_data=form_data,
            assignees=assignees,
            notes="Join released",
            reuse=held,
            released_key=key,
            joined=state.arrived,
        )
        unused = {s.id for s in held.values()}
        if unused:
            run.cancel_open_steps(where=lambda s: s.id in unused)
        return activated

    async def _activate(
        self,
        run: InstanceRun,
        step: ActiveStep,
        node: WorkflowNode,
        actor_id: Optional[str],
        assignees: Optional[Mapping[str, str]],
    ) -> None:
        override = (assignees or {}).get(node.id)
        user_id = await self._resolver.resolve_assignee(node, run.instance, override)
        step.assigned_user_id = user_id
        run.touch(step)
        run.mark_activated(step)
        if user_id:
            run.record_assignment(node.id, user_id, actor_id)

    async def _reach_end(self, run: InstanceRun, end: WorkflowNode) -> None:
        if not run.instance.is_active:
            return
        if end.terminates:
            cancelled = run.cancel_open_steps()
            if cancelled:
                logger.info(
                    f"End node {end.id} terminates instance {run.instance.id}; "
                    f"cancelled {len(cancelled)} open step(s)"
                )
        if run.open_steps():
            logger.debug(
                f"Branch reached end node {end.id}; "
                f"{len(run.open_steps())} step(s) still open"
            )
            return
        await self.finish(run, end.id)

    async def finish(self, run: InstanceRun, end_node_id: Optional[str]) -> None:
        """Mark the instance completed and freeze its completion snapshot."""
        instance = run.instance
        instance.status = InstanceStatus.COMPLETED
        instance.completed_at = utcnow()
        if end_node_id:
            instance.current_node_id = end_node_id
        user_ids = {a.user_id for a in run.assignments}
        user_ids.update(s.assigned_user_id for s in run.steps.values() if s.assigned_user_id)
        names = await self._directory.user_names(sorted(user_ids))
        instance.completed_snapshot = build_completed_snapshot(
            instance, run.steps.values(), run.assignments, names
        )
        run.completed = True
