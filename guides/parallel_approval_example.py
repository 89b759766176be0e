"""Parallel finance and legal approvals that join before delivery."""

import asyncio

from prismflow import (
    NodeType,
    StaticDirectory,
    WorkflowConnection,
    WorkflowEngine,
    WorkflowNode,
    WorkflowTemplate,
)
from prismflow.contracts import ConnectionCondition
from prismflow.persistence import InMemoryWorkflowRepository


def build_template() -> WorkflowTemplate:
    def node(node_id, node_type, label, entity_id=None):
        return WorkflowNode(id=node_id, label=label, node_type=node_type, entity_id=entity_id)

    def approved(src, dst):
        return WorkflowConnection(
            from_node_id=src, to_node_id=dst, condition=ConnectionCondition(decision="approved")
        )

    return WorkflowTemplate(
        id="contract-review",
        name="Contract review",
        nodes=[
            node("start", NodeType.START, "Start"),
            node("finance", NodeType.APPROVAL, "Finance approval", "role-finance"),
            node("legal", NodeType.APPROVAL, "Legal approval", "role-legal"),
            node("join", NodeType.SYNC, "Both approved"),
            node("delivery", NodeType.DEPARTMENT, "Kick-off", "dept-delivery"),
            node("end", NodeType.END, "Done"),
        ],
        connections=[
            WorkflowConnection(from_node_id="start", to_node_id="finance"),
            WorkflowConnection(from_node_id="start", to_node_id="legal"),
            approved("finance", "join"),
            approved("legal", "join"),
            WorkflowConnection(from_node_id="join", to_node_id="delivery"),
            WorkflowConnection(from_node_id="delivery", to_node_id="end"),
        ],
    )


async def main():
    print("🚀 Parallel approval workflow")

    directory = StaticDirectory(
        roles={"role-finance": ["fiona"], "role-legal": ["lee"]},
        departments={"dept-delivery": ["dana"]},
        users={"fiona": "Fiona Finance", "lee": "Lee Legal", "dana": "Dana Delivery"},
    )
    engine = WorkflowEngine(InMemoryWorkflowRepository(), directory)
    await engine.save_template(build_template())

    instance = await engine.start_workflow("project-42", "contract-review", started_by="pm")
    steps = {s.node_id: s for s in await engine.get_active_steps(instance.id)}
    print(f"✅ Started {instance.id} with branches: {[s.branch_id for s in steps.values()]}")

    result = await engine.advance(instance.id, steps["finance"].id, "approved", actor_id="fiona")
    for join in result.pending_joins:
        print(f"⏳ {join.node_id or join.sync_node_id} waiting: {len(join.arrived)}/{len(join.required)} approvals")

    result = await engine.advance(instance.id, steps["legal"].id, "approved", actor_id="lee")
    kickoff = result.new_active_steps[0]
    print(f"▶️  {kickoff.node_id} assigned to {kickoff.assigned_user_id}")

    result = await engine.advance(instance.id, kickoff.id, actor_id="dana")
    snapshot = result.instance.completed_snapshot
    print(f"🏁 Completed: {result.completed}")
    for node_id, user in snapshot.node_assignments.items():
        print(f"   {node_id}: {user.user_name}")


if __name__ == "__main__":
    asyncio.run(main())
