import asyncio

import pytest

from prismflow.config import EngineConfig
from prismflow.contracts import InstanceStatus, NodeType, StepStatus
from prismflow.engine import WorkflowEngine
from prismflow.errors import CycleDetected, NoMatchingRoute


async def _start(engine, template):
    await engine.save_template(template)
    instance = await engine.start_workflow("project-1", template.id)
    return instance, await engine.get_active_steps(instance.id)


def _by_node(steps):
    return {s.node_id: s for s in steps}


@pytest.mark.asyncio
async def test_fan_out_creates_parallel_branches(engine, parallel_template):
    instance, steps = await _start(engine, parallel_template)

    assert sorted(s.node_id for s in steps) == ["finance", "legal"]
    assert all(s.status == StepStatus.ACTIVE for s in steps)
    branches = [s.branch_id for s in steps]
    assert len(set(branches)) == 2
    assert branches[0].startswith("main-0_") and branches[1].startswith("main-1_")
    assert branches[0].split("_")[1] == branches[1].split("_")[1]

    instance = await engine.get_instance(instance.id)
    assert instance.has_parallel_paths is True
    assert instance.current_node_id == "finance"


@pytest.mark.asyncio
async def test_join_waits_for_all_branches(engine, parallel_template):
    instance, steps = await _start(engine, parallel_template)
    steps = _by_node(steps)

    first = await engine.advance(instance.id, steps["finance"].id, "approved")
    assert first.new_active_steps == []
    assert [s.node_id for s in first.waiting_steps] == ["delivery"]
    assert first.pending_joins[0].sync_node_id == "join"
    assert first.pending_joins[0].arrived == ["finance"]
    assert first.pending_joins[0].required == ["finance", "legal"]

    active_only = await engine.get_active_steps(instance.id, include_waiting=False)
    assert [s.node_id for s in active_only] == ["legal"]

    second = await engine.advance(instance.id, steps["legal"].id, "approved")
    assert [s.node_id for s in second.new_active_steps] == ["delivery"]
    delivery = second.new_active_steps[0]
    assert delivery.id == first.waiting_steps[0].id
    assert delivery.branch_id == "main"
    assert delivery.assigned_user_id == "user-ops"
    assert delivery.joined_node_ids == ["finance", "legal"]
    assert second.pending_joins == []

    done = await engine.advance(instance.id, delivery.id)
    assert done.completed is True

    all_steps = await engine.repository.list_steps(instance.id)
    assert "join" not in {s.node_id for s in all_steps}


@pytest.mark.asyncio
async def test_concurrent_branch_completion_activates_join_once(engine, parallel_template):
    instance, steps = await _start(engine, parallel_template)
    steps = _by_node(steps)

    await asyncio.gather(
        engine.advance(instance.id, steps["finance"].id, "approved"),
        engine.advance(instance.id, steps["legal"].id, "approved"),
    )

    open_steps = await engine.get_active_steps(instance.id)
    assert [(s.node_id, s.status) for s in open_steps] == [("delivery", StepStatus.ACTIVE)]


@pytest.mark.asyncio
async def test_join_without_require_all_absorbs_late_arrivals(engine, parallel_template):
    join = next(n for n in parallel_template.nodes if n.id == "join")
    join.settings = {"requireAll": False}
    instance, steps = await _start(engine, parallel_template)
    steps = _by_node(steps)

    first = await engine.advance(instance.id, steps["legal"].id, "approved")
    assert [s.node_id for s in first.new_active_steps] == ["delivery"]

    late = await engine.advance(instance.id, steps["finance"].id, "approved")
    assert late.new_active_steps == []
    assert [(h.from_node_id, h.to_node_id) for h in late.history_entries] == [
        ("finance", "join")
    ]
    open_steps = await engine.get_active_steps(instance.id)
    assert [s.node_id for s in open_steps] == ["delivery"]


@pytest.mark.asyncio
async def test_join_with_required_inputs_subset(engine, parallel_template):
    join = next(n for n in parallel_template.nodes if n.id == "join")
    join.settings = {"required_inputs": ["finance"]}
    instance, steps = await _start(engine, parallel_template)
    steps = _by_node(steps)

    waiting = await engine.advance(instance.id, steps["legal"].id, "approved")
    assert [s.node_id for s in waiting.waiting_steps] == ["delivery"]

    ready = await engine.advance(instance.id, steps["finance"].id, "approved")
    assert [s.node_id for s in ready.new_active_steps] == ["delivery"]


@pytest.mark.asyncio
async def test_unmatched_decision_leaves_state_unchanged(engine, parallel_template):
    instance, steps = await _start(engine, parallel_template)
    finance = _by_node(steps)["finance"]
    before = await engine.get_instance(instance.id)
    history_before = await engine.get_history(instance.id)

    with pytest.raises(NoMatchingRoute):
        await engine.advance(instance.id, finance.id, "rejected")

    after = await engine.get_instance(instance.id)
    assert after.version == before.version
    assert await engine.get_history(instance.id) == history_before
    stored = await engine.repository.get_step(finance.id)
    assert stored.status == StepStatus.ACTIVE


@pytest.mark.asyncio
async def test_decisions_match_labels_case_insensitively(engine, make_template, node, conn):
    template = make_template(
        "escalation",
        [
            node("start", "start"),
            node("approval", "approval", entity_id="role-manager"),
            node("legal", "role", entity_id="role-legal"),
            node("end", "end"),
        ],
        [
            conn("start", "approval"),
            conn("approval", "end", "Approved"),
            conn("approval", "legal", "Escalate"),
            conn("legal", "end"),
        ],
    )
    instance, steps = await _start(engine, template)

    result = await engine.advance(instance.id, steps[0].id, "ESCALATE")
    assert [s.node_id for s in result.new_active_steps] == ["legal"]
    assert result.new_active_steps[0].condition_label == "Escalate"
    assert result.history_entries[0].approval_decision == "escalate"


@pytest.mark.asyncio
async def test_unknown_decision_falls_back_to_default_path(engine, make_template, node, conn):
    template = make_template(
        "fallback",
        [
            node("start", "start"),
            node("approval", "approval", entity_id="role-manager"),
            node("rework", "role", entity_id="role-manager"),
            node("end", "end"),
        ],
        [
            conn("start", "approval"),
            conn("approval", "end", "approved"),
            conn("approval", "rework"),
            conn("rework", "end"),
        ],
    )
    instance, steps = await _start(engine, template)

    result = await engine.advance(instance.id, steps[0].id, "on hold")
    assert [s.node_id for s in result.new_active_steps] == ["rework"]


@pytest.mark.asyncio
async def test_hidden_nodes_are_routed_through(engine, make_template, node, conn):
    template = make_template(
        "hidden",
        [
            node("start", "start"),
            node("approval", "approval", entity_id="role-manager"),
            node("gate", "conditional"),
            node("merge", "sync"),
            node("finance", "role", entity_id="role-finance"),
            node("end", "end"),
        ],
        [
            conn("start", "approval"),
            conn("approval", "gate", "approved"),
            conn("gate", "merge"),
            conn("merge", "finance"),
            conn("finance", "end"),
        ],
    )
    instance, steps = await _start(engine, template)

    result = await engine.advance(instance.id, steps[0].id, "approved")
    assert [s.node_id for s in result.new_active_steps] == ["finance"]
    assert result.new_active_steps[0].condition_label == "If Approved"
    assert [h.to_node_id for h in result.history_entries] == ["merge", "finance"]

    nodes_with_steps = {s.node_id for s in await engine.repository.list_steps(instance.id)}
    assert nodes_with_steps == {"approval", "finance"}


@pytest.mark.asyncio
async def test_form_conditions_pick_branch(engine, make_template, node, conn):
    template = make_template(
        "purchase",
        [
            node("start", "start"),
            node("request", "form", entity_id="role-manager"),
            node("amount", "conditional"),
            node("cfo", "approval", entity_id="role-finance"),
            node("ops", "department", entity_id="dept-ops"),
            node("end", "end"),
        ],
        [
            conn("start", "request"),
            conn("request", "amount"),
            conn(
                "amount",
                "cfo",
                label="Large purchase",
                sourceFormFieldId="total",
                conditionType="greater_than",
                value=1000,
            ),
            conn("amount", "ops"),
            conn("cfo", "end", "approved"),
            conn("ops", "end"),
        ],
    )
    await engine.save_template(template)

    big = await engine.start_workflow("project-1", "purchase")
    step = (await engine.get_active_steps(big.id))[0]
    result = await engine.advance(big.id, step.id, form_data={"total": "2500"})
    assert [(s.node_id, s.condition_label) for s in result.new_active_steps] == [
        ("cfo", "Large purchase")
    ]
    assert result.history_entries[0].form_data == {"total": "2500"}

    small = await engine.start_workflow("project-2", "purchase")
    step = (await engine.get_active_steps(small.id))[0]
    result = await engine.advance(small.id, step.id, form_data={"total": 40})
    assert [s.node_id for s in result.new_active_steps] == ["ops"]


@pytest.mark.asyncio
async def test_branch_reaching_end_waits_for_siblings(engine, make_template, node, conn):
    template = make_template(
        "two-tracks",
        [
            node("start", "start"),
            node("a", "role", entity_id="role-manager"),
            node("b", "role", entity_id="role-legal"),
            node("end", "end"),
        ],
        [conn("start", "a"), conn("start", "b"), conn("a", "end"), conn("b", "end")],
    )
    instance, steps = await _start(engine, template)
    steps = _by_node(steps)

    first = await engine.advance(instance.id, steps["a"].id)
    assert first.completed is False
    assert first.instance.status == InstanceStatus.ACTIVE
    assert first.instance.current_node_id == "b"

    second = await engine.advance(instance.id, steps["b"].id)
    assert second.completed is True
    assert second.instance.has_parallel_paths is True


@pytest.mark.asyncio
async def test_terminating_end_cancels_other_branches(engine, make_template, node, conn):
    template = make_template(
        "fast-track",
        [
            node("start", "start"),
            node("a", "role", entity_id="role-manager"),
            node("b", "role", entity_id="role-legal"),
            node("stop", "end", terminate=True),
            node("end", "end"),
        ],
        [conn("start", "a"), conn("start", "b"), conn("a", "stop"), conn("b", "end")],
    )
    instance, steps = await _start(engine, template)
    steps = _by_node(steps)

    result = await engine.advance(instance.id, steps["a"].id)
    assert result.completed is True
    assert result.instance.current_node_id == "stop"
    stored_b = await engine.repository.get_step(steps["b"].id)
    assert stored_b.status == StepStatus.CANCELLED


@pytest.mark.asyncio
async def test_auto_advance_loop_is_bounded(repo, directory, make_template, node, conn):
    engine = WorkflowEngine(
        repo,
        directory,
        EngineConfig(auto_advance_node_types=[NodeType.ROLE], max_auto_advance=5),
    )
    template = make_template(
        "spin",
        [
            node("start", "start"),
            node("a", "role", entity_id="role-manager"),
            node("b", "role", entity_id="role-manager"),
            node("end", "end"),
        ],
        [conn("start", "a"), conn("a", "b"), conn("b", "a"), conn("b", "end")],
    )
    await engine.save_template(template)

    with pytest.raises(CycleDetected):
        await engine.start_workflow("project-1", "spin")
    assert await engine.list_instances() == []


@pytest.mark.asyncio
async def test_per_node_auto_advance_setting(engine, make_template, node, conn):
    template = make_template(
        "notify",
        [
            node("start", "start"),
            node("notify", "department", entity_id="dept-ops", autoAdvance=True),
            node("approval", "approval", entity_id="role-manager"),
            node("end", "end"),
        ],
        [conn("start", "notify"), conn("notify", "approval"), conn("approval", "end", "approved")],
    )
    instance, steps = await _start(engine, template)

    assert [s.node_id for s in steps] == ["approval"]
    history = await engine.get_history(instance.id)
    assert [(h.from_node_id, h.to_node_id, h.notes) for h in history] == [
        ("start", "notify", "Workflow started"),
        ("notify", "approval", "Auto-advanced"),
    ]
    assert history[1].handed_off_by == "user-ops"


def _rework_template(make_template, node, conn, join_edges):
    """prep forks into finance and legal approvals that meet at a sync."""
    return make_template(
        "rework",
        [
            node("start", "start"),
            node("prep", "role", entity_id="role-manager"),
            node("finance", "approval", entity_id="role-finance"),
            node("legal", "approval", entity_id="role-legal"),
            node("join", "sync"),
            node("delivery", "department", entity_id="dept-ops"),
            node("end", "end"),
        ],
        [
            conn("start", "prep"),
            conn("prep", "finance"),
            conn("prep", "legal"),
            *join_edges,
            conn("delivery", "end"),
        ],
    )


@pytest.mark.asyncio
async def test_rejection_loop_above_fork_restarts_parallel_review(
    engine, make_template, node, conn
):
    template = _rework_template(
        make_template,
        node,
        conn,
        [
            conn("finance", "join", "approved"),
            conn("finance", "prep", "rejected"),
            conn("legal", "join", "approved"),
            conn("legal", "prep", "rejected"),
            conn("join", "delivery"),
        ],
    )
    instance, steps = await _start(engine, template)

    # legal approves first, then finance sends the work back
    forked = _by_node((await engine.advance(instance.id, steps[0].id)).new_active_steps)
    waiting = await engine.advance(instance.id, forked["legal"].id, "approved")
    held = waiting.waiting_steps[0]
    rejected = await engine.advance(instance.id, forked["finance"].id, "rejected")

    prep = rejected.new_active_steps[0]
    assert prep.node_id == "prep"
    assert prep.branch_id == "main"
    assert rejected.waiting_steps == []
    assert rejected.pending_joins == []
    assert (await engine.repository.get_step(held.id)).status == StepStatus.CANCELLED
    assert (await engine.get_instance(instance.id)).joins == {}

    # this time finance rejects while legal is still deciding
    forked = _by_node((await engine.advance(instance.id, prep.id)).new_active_steps)
    rejected = await engine.advance(instance.id, forked["finance"].id, "rejected")
    prep = rejected.new_active_steps[0]
    assert (await engine.repository.get_step(forked["legal"].id)).status == StepStatus.CANCELLED
    assert [s.node_id for s in await engine.get_active_steps(instance.id)] == ["prep"]

    forked = _by_node((await engine.advance(instance.id, prep.id)).new_active_steps)
    await engine.advance(instance.id, forked["legal"].id, "approved")
    released = await engine.advance(instance.id, forked["finance"].id, "approved")
    delivery = released.new_active_steps[0]
    assert delivery.node_id == "delivery"
    assert delivery.joined_node_ids == ["legal", "finance"]

    done = await engine.advance(instance.id, delivery.id)
    assert done.completed is True
    assert await engine.get_active_steps(instance.id) == []


@pytest.mark.asyncio
async def test_sync_routes_on_aggregate_outcome(engine, make_template, node, conn):
    template = _rework_template(
        make_template,
        node,
        conn,
        [
            conn("finance", "join"),
            conn("legal", "join"),
            conn("join", "prep", "any_rejected"),
            conn("join", "delivery", "all_approved"),
        ],
    )
    instance, steps = await _start(engine, template)

    forked = _by_node((await engine.advance(instance.id, steps[0].id)).new_active_steps)
    first = await engine.advance(instance.id, forked["legal"].id, "approved")
    assert [s.node_id for s in first.waiting_steps] == ["delivery"]

    rejected = await engine.advance(instance.id, forked["finance"].id, "rejected")
    assert [(s.node_id, s.condition_label) for s in rejected.new_active_steps] == [
        ("prep", "If Any Rejected")
    ]
    assert [
        (h.from_node_id, h.to_node_id, h.approval_decision)
        for h in rejected.history_entries
    ] == [("finance", "join", "rejected"), ("join", "prep", "any_rejected")]
    held = first.waiting_steps[0]
    assert (await engine.repository.get_step(held.id)).status == StepStatus.CANCELLED

    prep = rejected.new_active_steps[0]
    forked = _by_node((await engine.advance(instance.id, prep.id)).new_active_steps)
    await engine.advance(instance.id, forked["finance"].id, "approved")
    approved = await engine.advance(instance.id, forked["legal"].id, "approved")
    assert [s.node_id for s in approved.new_active_steps] == ["delivery"]
    assert approved.history_entries[-1].approval_decision == "all_approved"


@pytest.mark.asyncio
async def test_join_behind_shared_conditional_waits_for_each_input(
    engine, make_template, node, conn
):
    template = make_template(
        "shared-gate",
        [
            node("start", "start"),
            node("a", "role", entity_id="role-manager"),
            node("b", "role", entity_id="role-legal"),
            node("gate", "conditional"),
            node("join", "sync"),
            node("sign-off", "approval", entity_id="role-finance"),
            node("end", "end"),
        ],
        [
            conn("start", "a"),
            conn("start", "b"),
            conn("a", "gate"),
            conn("b", "gate"),
            conn("gate", "join"),
            conn("join", "sign-off"),
            conn("sign-off", "end", "approved"),
        ],
    )
    instance, steps = await _start(engine, template)
    steps = _by_node(steps)

    first = await engine.advance(instance.id, steps["a"].id)
    assert first.new_active_steps == []
    assert [s.node_id for s in first.waiting_steps] == ["sign-off"]
    assert first.pending_joins[0].arrived == ["a"]
    assert first.pending_joins[0].required == ["a", "b"]

    second = await engine.advance(instance.id, steps["b"].id)
    sign_off = second.new_active_steps[0]
    assert sign_off.node_id == "sign-off"
    assert sign_off.joined_node_ids == ["a", "b"]
    assert (await engine.advance(instance.id, sign_off.id, "approved")).completed is True


@pytest.mark.asyncio
async def test_rework_inside_a_branch_keeps_siblings_running(
    engine, make_template, node, conn
):
    template = _rework_template(
        make_template,
        node,
        conn,
        [
            conn("finance", "join", "approved"),
            conn("finance", "rework", "rejected"),
            conn("rework", "finance"),
            conn("legal", "join", "approved"),
            conn("join", "delivery"),
        ],
    )
    template.nodes.append(node("rework", "role", entity_id="role-manager"))
    instance, steps = await _start(engine, template)
    forked = _by_node((await engine.advance(instance.id, steps[0].id)).new_active_steps)
    branch = forked["finance"].branch_id

    rejected = await engine.advance(instance.id, forked["finance"].id, "rejected")
    rework = rejected.new_active_steps[0]
    assert (rework.node_id, rework.branch_id) == ("rework", branch)

    again = (await engine.advance(instance.id, rework.id)).new_active_steps[0]
    assert (again.node_id, again.branch_id) == ("finance", branch)
    open_nodes = sorted(s.node_id for s in await engine.get_active_steps(instance.id))
    assert open_nodes == ["finance", "legal"]

    await engine.advance(instance.id, forked["legal"].id, "approved")
    released = await engine.advance(instance.id, again.id, "approved")
    assert [s.node_id for s in released.new_active_steps] == ["delivery"]
