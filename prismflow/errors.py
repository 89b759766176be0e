"""Exceptions raised by the prismflow engine and its repositories."""

from __future__ import annotations

from typing import List, Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors."""


class TemplateNotFound(WorkflowError):
    def __init__(self, template_id: str) -> None:
        super().__init__(f"Workflow template not found: {template_id}")
        self.template_id = template_id


class TemplateInactive(WorkflowError):
    def __init__(self, template_id: str, name: str) -> None:
        super().__init__(
            f'Workflow "{name}" is not active. Activate it before starting instances.'
        )
        self.template_id = template_id


class TemplateInvalid(WorkflowError):
    """Structural problem in a template or snapshot graph."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message}: " + "; ".join(self.errors)
        super().__init__(message)


class InstanceNotFound(WorkflowError):
    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Workflow instance not found: {instance_id}")
        self.instance_id = instance_id


class InstanceNotActive(WorkflowError):
    def __init__(self, instance_id: str, status: str) -> None:
        super().__init__(f"Workflow instance {instance_id} is {status}")
        self.instance_id = instance_id
        self.status = status


class StepNotFound(WorkflowError):
    """The step id is unknown, belongs to another instance or is no longer active."""

    def __init__(self, step_id: str) -> None:
        super().__init__(f"No active step with id {step_id}")
        self.step_id = step_id


class DecisionRequired(WorkflowError):
    def __init__(self, node_id: str, node_type: str) -> None:
        super().__init__(f"Node {node_id} ({node_type}) requires a decision")
        self.node_id = node_id


class NoMatchingRoute(WorkflowError):
    def __init__(self, node_id: str, decision: Optional[str] = None) -> None:
        detail = f" for decision '{decision}'" if decision else ""
        super().__init__(f"No outgoing connection from node {node_id}{detail}")
        self.node_id = node_id
        self.decision = decision


class CycleDetected(WorkflowError):
    def __init__(self, path: List[str]) -> None:
        super().__init__("Routing cycle detected: " + " -> ".join(path))
        self.path = list(path)


class ConcurrentModification(WorkflowError):
    """The instance changed between read and commit; retrying the call is safe."""

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Workflow instance {instance_id} was modified concurrently")
        self.instance_id = instance_id


class LockTimeout(WorkflowError):
    def __init__(self, instance_id: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout}s waiting for workflow instance {instance_id}"
        )
        self.instance_id = instance_id
