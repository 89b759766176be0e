import pytest

from prismflow.config import EngineConfig
from prismflow.contracts import (
    ConnectionCondition,
    NodeType,
    WorkflowConnection,
    WorkflowNode,
    WorkflowTemplate,
)
from prismflow.directory import StaticDirectory
from prismflow.engine import WorkflowEngine
from prismflow.persistence import InMemoryWorkflowRepository


def _node(node_id, node_type, label=None, entity_id=None, **settings):
    return WorkflowNode(
        id=node_id,
        label=label or node_id,
        node_type=NodeType(node_type),
        entity_id=entity_id,
        settings=settings,
    )


def _conn(src, dst, decision=None, **condition):
    if decision is not None:
        condition["decision"] = decision
    return WorkflowConnection(
        id=f"{src}->{dst}",
        from_node_id=src,
        to_node_id=dst,
        condition=ConnectionCondition(**condition) if condition else None,
    )


def _template(template_id, nodes, connections, **kwargs):
    return WorkflowTemplate(
        id=template_id,
        name=kwargs.pop("name", template_id.replace("-", " ").title()),
        nodes=nodes,
        connections=connections,
        **kwargs,
    )


@pytest.fixture
def node():
    return _node


@pytest.fixture
def conn():
    return _conn


@pytest.fixture
def make_template():
    return _template


@pytest.fixture
def directory():
    return StaticDirectory(
        roles={
            "role-manager": ["user-maria", "user-bob"],
            "role-finance": ["user-fin"],
            "role-legal": ["user-lee"],
        },
        departments={"dept-ops": ["user-ops"]},
        users={
            "user-maria": "Maria Manager",
            "user-bob": "Bob Builder",
            "user-fin": "Fiona Finance",
            "user-lee": "Lee Legal",
            "user-ops": "Oscar Ops",
        },
    )


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def engine(repo, directory):
    return WorkflowEngine(repo, directory)


@pytest.fixture
def auto_role_engine(repo, directory):
    """Engine where role nodes complete right after assignment."""
    return WorkflowEngine(
        repo, directory, EngineConfig(auto_advance_node_types=[NodeType.ROLE])
    )


@pytest.fixture
def linear_template():
    """start -> role(manager) -> approval(finance) -> end"""
    return _template(
        "linear",
        [
            _node("start", "start"),
            _node("review", "role", "Manager review", entity_id="role-manager"),
            _node("sign-off", "approval", "Finance sign-off", approverRoleId="role-finance"),
            _node("end", "end"),
        ],
        [
            _conn("start", "review"),
            _conn("review", "sign-off"),
            _conn("sign-off", "end", "approved"),
        ],
    )


@pytest.fixture
def manager_template():
    """start -> role(Manager) -> approval{approved -> end, rejected -> role}"""
    return _template(
        "manager-approval",
        [
            _node("start", "start"),
            _node("manager", "role", "Manager", entity_id="role-manager"),
            _node("approval", "approval", "Approval", entity_id="role-manager"),
            _node("end", "end"),
        ],
        [
            _conn("start", "manager"),
            _conn("manager", "approval"),
            _conn("approval", "end", "approved"),
            _conn("approval", "manager", "rejected"),
        ],
    )


@pytest.fixture
def parallel_template():
    """start forks into finance and legal approvals that join before delivery."""
    return _template(
        "parallel-review",
        [
            _node("start", "start"),
            _node("finance", "approval", "Finance", entity_id="role-finance"),
            _node("legal", "approval", "Legal", entity_id="role-legal"),
            _node("join", "sync", "Both approved"),
            _node("delivery", "department", "Delivery", entity_id="dept-ops"),
            _node("end", "end"),
        ],
        [
            _conn("start", "finance"),
            _conn("start", "legal"),
            _conn("finance", "join", "approved"),
            _conn("legal", "join", "approved"),
            _conn("join", "delivery"),
            _conn("delivery", "end"),
        ],
    )
