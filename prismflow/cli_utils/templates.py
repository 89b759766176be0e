"""Utility functions to read template files and render engine objects."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional

import yaml

from prismflow.contracts import ActiveStep, HistoryEntry, WorkflowInstance, WorkflowTemplate


def _load_template_file(path: Path) -> WorkflowTemplate:
    """Parse a YAML or JSON template file (JSON is a subset of YAML)."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a template mapping")
    return WorkflowTemplate.model_validate(data)


def _format_instance(instance: WorkflowInstance) -> str:
    name = instance.started_snapshot.template_name or instance.workflow_template_id
    return f"{instance.id}\t{instance.project_id}\t{name}\t{instance.status.value}"


def _format_step(step: ActiveStep, node_label: Optional[str] = None) -> str:
    label = f" ({node_label})" if node_label else ""
    assignee = step.assigned_user_id or "unassigned"
    line = f"- {step.id} {step.node_id}{label}: {step.status.value} [{step.branch_id}] -> {assignee}"
    if step.condition_label:
        line += f" via '{step.condition_label}'"
    return line


def _format_history(entries: Iterable[HistoryEntry]) -> list[str]:
    lines = []
    for entry in entries:
        decision = f" [{entry.approval_decision}]" if entry.approval_decision else ""
        notes = f" {entry.notes}" if entry.notes else ""
        lines.append(
            f"  {entry.handed_off_at:%Y-%m-%d %H:%M} "
            f"{entry.from_node_id or '-'} -> {entry.to_node_id or '-'}{decision}{notes}"
        )
    return lines
