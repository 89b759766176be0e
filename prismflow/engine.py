"""Public entry point: template store, instance lifecycle and read paths."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from .assignment import AssignmentResolver
from .config import EngineConfig, PrismflowConfig
from .contracts import (
    ActiveStep,
    AdvanceResult,
    Decision,
    GraphSnapshot,
    HistoryEntry,
    InstanceStatus,
    NodeAssignment,
    NodeType,
    StepStatus,
    OPEN_STEP_STATUSES,
    WorkflowInstance,
    WorkflowTemplate,
    utcnow,
)
from .directory import Directory
from .errors import (
    InstanceNotActive,
    InstanceNotFound,
    StepNotFound,
    TemplateInactive,
    TemplateInvalid,
    TemplateNotFound,
)
from .graph import WorkflowGraph
from .locks import InstanceLocks
from .persistence.repository import WorkflowRepository
from .progress import NextStep, PendingStep, WorkflowState
from .scheduler import InstanceRun, StepScheduler
from .validation import validate_template

logger = logging.getLogger(__name__)

_PENDING_NODE_TYPES = (NodeType.APPROVAL, NodeType.FORM)


class WorkflowEngine:
    """Runs workflow instances against a repository.

    Every mutating call holds the instance's lock, works on an
    ``InstanceRun`` and commits its changes in one repository call. A call
    that raises leaves stored state untouched.

    Args:
        repository: Storage backend.
        directory: Role, department and user-name lookups.
        config: Engine settings; defaults apply when omitted.
        locks: Shared lock registry, for engines that share a repository.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        directory: Directory,
        config: Optional[Union[EngineConfig, PrismflowConfig]] = None,
        locks: Optional[InstanceLocks] = None,
    ) -> None:
        if isinstance(config, PrismflowConfig):
            config = config.engine
        self.config = config or EngineConfig()
        self.repository = repository
        self.directory = directory
        self.locks = locks or InstanceLocks(timeout=self.config.lock_timeout)
        self.resolver = AssignmentResolver(directory)
        self.scheduler = StepScheduler(
            self.resolver,
            directory,
            decision_node_types=self.config.decision_node_types,
            auto_advance_node_types=self.config.auto_advance_node_types,
            max_auto_advance=self.config.max_auto_advance,
        )

    # ------------------------------------------------------------------
    # Templates
    async def save_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        result = validate_template(template)
        if not result.valid:
            raise TemplateInvalid(
                f"Workflow template '{template.name}' is invalid",
                result.error_messages(),
            )
        for warning in result.warnings:
            logger.warning(f"Template {template.id}: {warning.message}")
        template.touch()
        await self.repository.save_template(template)
        logger.info(f"Saved workflow template {template.id} ({template.name})")
        return template

    async def get_template(self, template_id: str) -> WorkflowTemplate:
        template = await self.repository.get_template(template_id)
        if template is None:
            raise TemplateNotFound(template_id)
        return template

    async def list_templates(self, active_only: bool = False) -> List[WorkflowTemplate]:
        templates = await self.repository.list_templates()
        if active_only:
            templates = [t for t in templates if t.is_active]
        return templates

    async def delete_template(self, template_id: str) -> None:
        if not await self.repository.delete_template(template_id):
            raise TemplateNotFound(template_id)
        logger.info(f"Deleted workflow template {template_id}")

    # ------------------------------------------------------------------
    # Lifecycle
    async def start_workflow(
        self,
        project_id: str,
        template_id: str,
        *,
        started_by: Optional[str] = None,
        assignees: Optional[Mapping[str, str]] = None,
    ) -> WorkflowInstance:
        template = await self.repository.get_template(template_id)
        if template is None:
            raise TemplateNotFound(template_id)
        if not template.is_active:
            raise TemplateInactive(template_id, template.name)
        result = validate_template(template)
        if not result.valid:
            raise TemplateInvalid(
                f"Workflow template '{template.name}' is invalid",
                result.error_messages(),
            )

        instance = WorkflowInstance(
            project_id=project_id,
            workflow_template_id=template.id,
            started_snapshot=GraphSnapshot.capture(template),
            started_by=started_by,
        )
        async with self.locks.hold(instance.id):
            run = InstanceRun(instance)
            await self.scheduler.start(run, started_by=started_by, assignees=assignees)
            await self.repository.commit(run.changes())

        logger.info(
            f"Started workflow instance {instance.id} for project {project_id} "
            f"from template {template.id}"
        )
        if run.completed:
            logger.info(f"Workflow instance {instance.id} completed on start")
        return instance

    async def advance(
        self,
        instance_id: str,
        step_id: str,
        decision: Optional[Union[str, Decision]] = None,
        *,
        actor_id: Optional[str] = None,
        feedback: Optional[str] = None,
        form_data: Optional[Dict[str, Any]] = None,
        assignees: Optional[Mapping[str, str]] = None,
    ) -> AdvanceResult:
        parsed = Decision.from_input(decision)
        async with self.locks.hold(instance_id):
            run = await self._load_run(instance_id)
            step = run.steps.get(step_id)
            if step is None or step.status is not StepStatus.ACTIVE:
                raise StepNotFound(step_id)
            await self.scheduler.advance(
                run,
                step,
                parsed,
                actor_id=actor_id,
                feedback=feedback,
                form_data=form_data,
                assignees=assignees,
            )
            await self.repository.commit(run.changes())

        result = run.result()
        logger.info(
            f"Advanced step {step_id} of instance {instance_id} "
            f"(decision={parsed.value if parsed else None}): "
            f"{len(result.new_active_steps)} new active, "
            f"{len(result.waiting_steps)} waiting"
        )
        if result.completed:
            logger.info(f"Workflow instance {instance_id} completed")
        return result

    async def cancel_workflow(
        self, instance_id: str, *, cancelled_by: Optional[str] = None
    ) -> WorkflowInstance:
        async with self.locks.hold(instance_id):
            run = await self._load_run(instance_id)
            instance = run.instance
            cancelled = run.cancel_open_steps()
            instance.status = InstanceStatus.CANCELLED
            instance.completed_at = utcnow()
            run.add_history(
                from_node_id=instance.current_node_id,
                handed_off_by=cancelled_by,
                notes="Workflow cancelled",
            )
            await self.repository.commit(run.changes())
        logger.info(
            f"Cancelled workflow instance {instance_id} "
            f"({len(cancelled)} open step(s) closed)"
        )
        return instance

    async def assign_step(
        self, step_id: str, user_id: str, *, assigned_by: Optional[str] = None
    ) -> ActiveStep:
        step = await self.repository.get_step(step_id)
        if step is None or not step.is_open:
            raise StepNotFound(step_id)
        async with self.locks.hold(step.workflow_instance_id):
            run = await self._load_run(step.workflow_instance_id)
            step = run.steps.get(step_id)
            if step is None or not step.is_open:
                raise StepNotFound(step_id)
            await self.scheduler.assign(run, step, user_id, assigned_by)
            await self.repository.commit(run.changes())
        logger.info(f"Assigned step {step_id} to user {user_id}")
        return step

    async def complete_instance(self, instance_id: str) -> WorkflowInstance:
        """Ensure a completed instance carries its completion snapshot.

        Returns the instance unchanged when the snapshot already exists.
        """
        async with self.locks.hold(instance_id):
            instance = await self._require_instance(instance_id)
            if instance.completed_snapshot is not None:
                return instance
            if instance.status is not InstanceStatus.COMPLETED:
                raise InstanceNotActive(instance_id, instance.status.value)
            run = InstanceRun.existing(
                instance,
                await self.repository.list_steps(instance_id),
                await self.repository.list_assignments(instance_id),
            )
            completed_at = instance.completed_at
            await self.scheduler.finish(run, instance.current_node_id)
            instance.completed_at = completed_at or instance.completed_at
            await self.repository.commit(run.changes())
        logger.info(f"Wrote completion snapshot for instance {instance_id}")
        return run.instance

    # ------------------------------------------------------------------
    # Read paths
    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        return await self._require_instance(instance_id)

    async def list_instances(
        self,
        project_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> List[WorkflowInstance]:
        return await self.repository.list_instances(project_id, status)

    async def get_active_steps(
        self, instance_id: str, include_waiting: bool = True
    ) -> List[ActiveStep]:
        statuses = OPEN_STEP_STATUSES if include_waiting else (StepStatus.ACTIVE,)
        return await self.repository.list_steps(instance_id, statuses)

    async def get_history(self, instance_id: str) -> List[HistoryEntry]:
        return await self.repository.list_history(instance_id)

    async def get_node_assignments(self, instance_id: str) -> List[NodeAssignment]:
        return await self.repository.list_assignments(instance_id)

    async def get_workflow_state(self, instance_id: str) -> WorkflowState:
        instance = await self._require_instance(instance_id)
        steps = await self.get_active_steps(instance_id)
        graph = WorkflowGraph.from_snapshot(instance.started_snapshot)
        next_steps = {}
        for step in steps:
            if graph.get_node(step.node_id) is None:
                continue
            next_steps[step.id] = [
                NextStep(
                    node_id=t.node.id,
                    label=t.node.label,
                    node_type=t.node.node_type,
                    condition_label=t.condition_label,
                )
                for t in graph.preview(step.node_id)
            ]
        return WorkflowState(
            instance=instance,
            active_steps=steps,
            history=await self.get_history(instance_id),
            assignments=await self.get_node_assignments(instance_id),
            next_steps=next_steps,
        )

    async def get_user_pending_steps(self, user_id: str) -> List[PendingStep]:
        """Open approval and form steps that ``user_id`` can act on."""
        roles = set(await self.directory.user_roles(user_id))
        assigned = {
            (a.workflow_instance_id, a.node_id)
            for a in await self.repository.list_assignments(user_id=user_id)
        }
        pending: List[PendingStep] = []
        for instance in await self.repository.list_instances(
            status=InstanceStatus.ACTIVE
        ):
            graph = WorkflowGraph.from_snapshot(instance.started_snapshot)
            for step in await self.repository.list_steps(
                instance.id, (StepStatus.ACTIVE,)
            ):
                node = graph.get_node(step.node_id)
                if node is None or node.node_type not in _PENDING_NODE_TYPES:
                    continue
                settings = node.assignment_settings()
                node_roles = {
                    settings.role_id,
                    settings.approver_role_id,
                    node.entity_id,
                } - {None}
                if (
                    step.assigned_user_id == user_id
                    or (instance.id, node.id) in assigned
                    or roles & node_roles
                ):
                    pending.append(
                        PendingStep(
                            step=step,
                            instance_id=instance.id,
                            project_id=instance.project_id,
                            template_name=instance.started_snapshot.template_name,
                            node_label=node.label,
                            node_type=node.node_type,
                        )
                    )
        return pending

    async def get_unassigned_steps(
        self, instance_id: Optional[str] = None
    ) -> List[ActiveStep]:
        steps = await self.repository.list_steps(instance_id, (StepStatus.ACTIVE,))
        return [s for s in steps if not s.assigned_user_id]

    async def get_participants(self, instance_id: str) -> List[str]:
        """Every user who was ever assigned to a node of the instance."""
        users = {a.user_id for a in await self.get_node_assignments(instance_id)}
        users.update(
            s.assigned_user_id
            for s in await self.repository.list_steps(instance_id)
            if s.assigned_user_id
        )
        return sorted(users)

    # ------------------------------------------------------------------
    async def _require_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def _load_run(self, instance_id: str) -> InstanceRun:
        instance = await self._require_instance(instance_id)
        if not instance.is_active:
            raise InstanceNotActive(instance_id, instance.status.value)
        return InstanceRun.existing(
            instance,
            await self.repository.list_steps(instance_id),
            await self.repository.list_assignments(instance_id),
        )
