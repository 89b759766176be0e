import pytest

from prismflow.contracts import (
    ActiveStep,
    GraphSnapshot,
    HistoryEntry,
    InstanceStatus,
    NodeAssignment,
    StepStatus,
    WorkflowInstance,
)
from prismflow.errors import ConcurrentModification
from prismflow.persistence import (
    InMemoryWorkflowRepository,
    InstanceChanges,
    SQLiteWorkflowRepository,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryWorkflowRepository()
    return SQLiteWorkflowRepository(tmp_path / "wf.db")


def _new_instance(project_id="project-1"):
    return WorkflowInstance(
        project_id=project_id,
        workflow_template_id="linear",
        started_snapshot=GraphSnapshot(template_name="Linear"),
    )


@pytest.mark.asyncio
async def test_template_crud(repository, linear_template):
    await repository.save_template(linear_template)
    linear_template.name = "Renamed"
    await repository.save_template(linear_template)

    stored = await repository.get_template("linear")
    assert stored.name == "Renamed"
    assert stored.nodes == linear_template.nodes
    assert [t.id for t in await repository.list_templates()] == ["linear"]

    assert await repository.delete_template("linear") is True
    assert await repository.delete_template("linear") is False
    assert await repository.get_template("linear") is None


@pytest.mark.asyncio
async def test_commit_inserts_and_updates(repository):
    instance = _new_instance()
    step = ActiveStep(workflow_instance_id=instance.id, node_id="review")
    await repository.commit(
        InstanceChanges(
            instance=instance,
            steps=[step],
            history=[HistoryEntry(workflow_instance_id=instance.id, from_node_id="start", to_node_id="review")],
            assignments=[NodeAssignment(workflow_instance_id=instance.id, node_id="review", user_id="u1")],
        )
    )

    step.status = StepStatus.COMPLETED
    follow_up = ActiveStep(workflow_instance_id=instance.id, node_id="sign-off")
    instance.status = InstanceStatus.COMPLETED
    instance.version = 1
    await repository.commit(
        InstanceChanges(
            instance=instance,
            expected_version=0,
            steps=[step, follow_up],
            history=[HistoryEntry(workflow_instance_id=instance.id, from_node_id="review", to_node_id="sign-off")],
            assignments=[
                NodeAssignment(workflow_instance_id=instance.id, node_id="review", user_id="u1"),
                NodeAssignment(workflow_instance_id=instance.id, node_id="sign-off", user_id="u2"),
            ],
        )
    )

    stored = await repository.get_instance(instance.id)
    assert stored.status == InstanceStatus.COMPLETED
    assert stored.version == 1

    steps = await repository.list_steps(instance.id)
    assert [(s.node_id, s.status) for s in steps] == [
        ("review", StepStatus.COMPLETED),
        ("sign-off", StepStatus.ACTIVE),
    ]
    assert [s.node_id for s in await repository.list_steps(instance.id, [StepStatus.ACTIVE])] == [
        "sign-off"
    ]
    assert await repository.list_steps(instance.id, []) == []
    assert (await repository.get_step(follow_up.id)).node_id == "sign-off"

    history = await repository.list_history(instance.id)
    assert [h.to_node_id for h in history] == ["review", "sign-off"]

    rows = await repository.list_assignments(instance.id)
    assert [(r.node_id, r.user_id) for r in rows] == [("review", "u1"), ("sign-off", "u2")]
    assert [r.node_id for r in await repository.list_assignments(user_id="u2")] == ["sign-off"]


@pytest.mark.asyncio
async def test_version_conflicts_are_rejected(repository):
    instance = _new_instance()
    await repository.commit(InstanceChanges(instance=instance))

    with pytest.raises(ConcurrentModification):
        await repository.commit(InstanceChanges(instance=instance))

    stale = instance.model_copy(update={"version": 5, "status": InstanceStatus.CANCELLED})
    step = ActiveStep(workflow_instance_id=instance.id, node_id="review")
    with pytest.raises(ConcurrentModification):
        await repository.commit(InstanceChanges(instance=stale, expected_version=4, steps=[step]))

    stored = await repository.get_instance(instance.id)
    assert stored.status == InstanceStatus.ACTIVE
    assert stored.version == 0
    assert await repository.get_step(step.id) is None


@pytest.mark.asyncio
async def test_list_instances_filters(repository):
    first = _new_instance("project-1")
    second = _new_instance("project-2")
    second.status = InstanceStatus.COMPLETED
    for instance in (first, second):
        await repository.commit(InstanceChanges(instance=instance))

    assert [i.id for i in await repository.list_instances()] == [first.id, second.id]
    assert [i.id for i in await repository.list_instances(project_id="project-2")] == [second.id]
    assert [i.id for i in await repository.list_instances(status=InstanceStatus.ACTIVE)] == [first.id]
    assert await repository.get_instance("missing") is None


@pytest.mark.asyncio
async def test_reads_are_detached_copies():
    repository = InMemoryWorkflowRepository()
    instance = _new_instance()
    await repository.commit(InstanceChanges(instance=instance))

    instance.status = InstanceStatus.CANCELLED
    loaded = await repository.get_instance(instance.id)
    assert loaded.status == InstanceStatus.ACTIVE

    loaded.project_id = "changed"
    assert (await repository.get_instance(instance.id)).project_id == "project-1"


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "wf.db"
    instance = _new_instance()
    first = SQLiteWorkflowRepository(path)
    await first.commit(InstanceChanges(instance=instance))
    first.close()

    reopened = SQLiteWorkflowRepository(path)
    stored = await reopened.get_instance(instance.id)
    assert stored == instance
