from __future__ import annotations

import os
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_LOCK_TIMEOUT, DEFAULT_MAX_AUTO_ADVANCE
from .contracts import NodeType
from .directory import StaticDirectory


class EngineConfig(BaseModel):
    """Scheduler behaviour settings."""

    decision_node_types: List[NodeType] = Field(
        default_factory=lambda: [NodeType.APPROVAL]
    )
    auto_advance_node_types: List[NodeType] = Field(default_factory=list)
    max_auto_advance: int = Field(default=DEFAULT_MAX_AUTO_ADVANCE, ge=1)
    lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT


class DirectoryConfig(BaseModel):
    """Static role, department and user data for the built-in directory."""

    roles: Dict[str, List[str]] = Field(default_factory=dict)
    departments: Dict[str, List[str]] = Field(default_factory=dict)
    users: Dict[str, str] = Field(default_factory=dict)

    def build(self) -> StaticDirectory:
        return StaticDirectory(self.roles, self.departments, self.users)


class PrismflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    directory: DirectoryConfig = DirectoryConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> PrismflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PRISMFLOW_CONFIG env
            variable or 'prismflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("PRISMFLOW_CONFIG", "prismflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PrismflowConfig(**data)
    else:
        config = PrismflowConfig()

    env_db_url = os.getenv("PRISMFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
