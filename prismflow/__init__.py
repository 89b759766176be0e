"""prismflow: approval-routing workflow engine for project delivery."""

from .config import PrismflowConfig, load_config
from .contracts import (
    ActiveStep,
    AdvanceResult,
    Decision,
    HistoryEntry,
    NodeType,
    WorkflowConnection,
    WorkflowInstance,
    WorkflowNode,
    WorkflowTemplate,
)
from .directory import Directory, StaticDirectory
from .engine import WorkflowEngine
from .persistence import get_repository
from .validation import validate_template

__version__ = "0.1.0"
__all__ = [
    "ActiveStep",
    "AdvanceResult",
    "Decision",
    "Directory",
    "HistoryEntry",
    "NodeType",
    "PrismflowConfig",
    "StaticDirectory",
    "WorkflowConnection",
    "WorkflowEngine",
    "WorkflowInstance",
    "WorkflowNode",
    "WorkflowTemplate",
    "get_repository",
    "load_config",
    "validate_template",
]
