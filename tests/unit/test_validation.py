from prismflow.validation import validate_template


def _codes(issues):
    return sorted(issue.code for issue in issues)


def test_valid_templates_pass(linear_template, manager_template, parallel_template):
    for template in (linear_template, manager_template, parallel_template):
        result = validate_template(template)
        assert result.valid, result.error_messages()
        assert result.warnings == []


def test_missing_start_and_end(make_template, node, conn):
    result = validate_template(make_template("bare", [node("a", "role")], []))
    assert _codes(result.errors) == ["NO_END", "NO_START"]

    result = validate_template(make_template("empty", [], []))
    assert _codes(result.errors) == ["NO_NODES"]


def test_dangling_connection_stops_further_checks(make_template, node, conn):
    template = make_template(
        "dangling",
        [node("start", "start"), node("end", "end")],
        [conn("start", "ghost"), conn("start", "end")],
    )
    result = validate_template(template)
    assert _codes(result.errors) == ["DANGLING_CONNECTION"]
    assert "ghost" in result.errors[0].message


def test_unreachable_end_and_silent_start(make_template, node, conn):
    unreachable = make_template(
        "unreachable",
        [node("start", "start"), node("a", "role"), node("end", "end")],
        [conn("start", "a")],
    )
    assert _codes(validate_template(unreachable).errors) == ["END_UNREACHABLE"]

    silent = make_template("silent", [node("start", "start"), node("end", "end")], [])
    result = validate_template(silent)
    assert _codes(result.errors) == ["START_NO_OUTPUT"]
    assert _codes(result.warnings) == ["ORPHANED_NODE"]


def test_approval_rules(make_template, node, conn):
    template = make_template(
        "approvals",
        [
            node("start", "start"),
            node("dead", "approval"),
            node("vague", "approval"),
            node("end", "end"),
        ],
        [
            conn("start", "dead"),
            conn("start", "vague"),
            conn("vague", "end", "rejected"),
            conn("vague", "dead", "needs_changes"),
        ],
    )
    result = validate_template(template)
    assert _codes(result.errors) == ["APPROVAL_NO_APPROVED_PATH", "APPROVAL_NO_EDGES"]


def test_sync_inputs_must_feed_the_sync(make_template, node, conn):
    template = make_template(
        "sync",
        [node("start", "start"), node("s", "sync", requiredInputs=["elsewhere"]), node("end", "end")],
        [conn("start", "s"), conn("s", "end")],
    )
    assert _codes(validate_template(template).errors) == ["SYNC_UNKNOWN_INPUT"]


def test_hidden_cycle_and_conditional_warnings(make_template, node, conn):
    template = make_template(
        "hidden-loop",
        [
            node("start", "start"),
            node("x", "conditional"),
            node("y", "sync"),
            node("end", "end"),
        ],
        [conn("start", "x"), conn("x", "y"), conn("y", "x"), conn("y", "end")],
    )
    result = validate_template(template)
    assert _codes(result.errors) == ["HIDDEN_CYCLE"]
    assert _codes(result.warnings) == ["CONDITIONAL_NO_CONDITIONS"]


def test_sync_with_outcome_labels_needs_an_approved_path(make_template, node, conn):
    nodes = [
        node("start", "start"),
        node("a", "role"),
        node("b", "role"),
        node("s", "sync"),
        node("redo", "role"),
        node("end", "end"),
    ]
    connections = [
        conn("start", "a"),
        conn("start", "b"),
        conn("a", "s"),
        conn("b", "s"),
        conn("s", "redo", "any_rejected"),
        conn("redo", "end"),
    ]
    result = validate_template(make_template("outcomes", nodes, connections))
    assert _codes(result.errors) == ["SYNC_NO_APPROVED_PATH"]

    connections.append(conn("s", "end", "all_approved"))
    assert validate_template(make_template("outcomes", nodes, connections)).valid
