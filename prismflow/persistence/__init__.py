"""Storage for workflow templates, running instances and their audit trail.

Every backend implements :class:`WorkflowRepository`; the engine commits the
outcome of each ``advance``, ``assign_step`` or ``cancel_workflow`` call as one
:class:`InstanceChanges` batch guarded by the instance version.
"""

from __future__ import annotations

import os
from typing import Optional

from ..config import PrismflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import InstanceChanges
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore

_POSTGRES_SCHEMES = ("postgres://", "postgresql://")

_repository_instance: WorkflowRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[PrismflowConfig] = None
) -> WorkflowRepository:
    """Return the repository the engine and CLI persist instances to.

    The database URL is taken from, in order: the ``database_url`` argument,
    ``PRISMFLOW_DATABASE_URL``, ``DATABASE_URL`` and ``database_url`` in the
    prismflow config file. ``sqlite://<path>`` opens a file-backed store,
    ``postgresql://...`` needs the ``postgres`` extra, and no URL at all gives
    a process-wide in-memory store whose instances vanish on exit.

    Raises:
        ValueError: The URL scheme is not one prismflow can store to.
        RuntimeError: A PostgreSQL URL was given but asyncpg is not installed.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("PRISMFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteWorkflowRepository(path)
    elif database_url.startswith(_POSTGRES_SCHEMES):
        if PostgresWorkflowRepository is None:
            raise RuntimeError(
                "prismflow cannot store workflow instances in PostgreSQL without "
                "asyncpg; install prismflow[postgres]"
            )
        _repository_instance = PostgresWorkflowRepository(database_url)
    else:
        scheme = database_url.split("://", 1)[0]
        raise ValueError(
            f"prismflow has no workflow repository for '{scheme}' URLs; "
            "use sqlite://<path>, postgresql://... or leave the database URL "
            "unset for in-memory storage"
        )

    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository (used by tests and the CLI)."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "InstanceChanges",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "reset_repository",
]
