import pytest

from flowpilot.exceptions import FlowNotFoundError, FlowValidationError
from flowpilot.models.enums import RunOutcome, RunStatus, TriggerType, WaitReason
from flowpilot.models.flow import FlowCreateRequest, FlowGraph, FlowUpdateRequest
from flowpilot.services.validation import validate_flow_graph

TRIGGER = ("t", "trigger", {})


def test_create_and_fetch_flow(make_flow, flow_service):
    flow = make_flow(
        [TRIGGER, ("check", "condition", {"expression": "true"}), ("a", "close", {})],
        [("t", "check"), ("check", "a", "yes")],
        trigger_type=TriggerType.KEYWORD,
        trigger_config={"keywords": ["hi"]},
    )

    stored = flow_service.get_flow(flow.id)

    assert stored.name == "Test flow"
    assert stored.trigger_config == {"keywords": ["hi"]}
    assert [node.id for node in stored.nodes] == ["t", "check", "a"]
    assert stored.edges[1].source_handle == "yes"
    assert stored.stats.runs == 0
    assert flow_service.get_flow("flow-missing") is None


def test_fan_out_from_non_branching_node_is_rejected(make_flow):
    with pytest.raises(FlowValidationError) as excinfo:
        make_flow(
            [TRIGGER, ("a", "close", {}), ("b", "close", {})],
            [("t", "a"), ("t", "b")],
            active=False,
        )

    assert "only condition and check_window nodes may branch" in str(excinfo.value)


def test_structural_problems_are_all_reported():
    graph = FlowGraph.model_validate(
        {
            "nodes": [
                {"id": "t", "type": "trigger"},
                {"id": "t", "type": "close"},
                {"id": "check", "type": "check_window"},
            ],
            "edges": [
                {"id": "e1", "source": "t", "target": "ghost"},
                {"id": "e2", "source": "check", "target": "t", "sourceHandle": "yes"},
                {"id": "e3", "source": "check", "target": "t", "sourceHandle": "open"},
                {"id": "e4", "source": "check", "target": "t", "sourceHandle": "open"},
            ],
        }
    )

    problems = validate_flow_graph(graph)

    assert "Duplicate node id 't'" in problems
    assert "Edge 'e1' ends at unknown node 'ghost'" in problems
    assert any("must use one of the handles open, closed" in problem for problem in problems)
    assert "Node 'check' has more than one 'open' edge" in problems


def test_active_flows_need_one_trigger_and_valid_node_data(make_flow, flow_service):
    draft = make_flow([("send", "send_message", {})], active=False)

    with pytest.raises(FlowValidationError) as excinfo:
        flow_service.set_active(draft.id, True)

    problems = excinfo.value.problems
    assert "Active flows need exactly one trigger node, found 0" in problems
    assert any(problem.startswith("Node 'send' (send_message) has invalid data") for problem in problems)
    assert flow_service.get_flow(draft.id).active is False


def test_trigger_config_is_checked_on_save(make_flow, flow_service):
    with pytest.raises(FlowValidationError) as excinfo:
        make_flow([TRIGGER], trigger_type=TriggerType.KEYWORD, trigger_config={"keywords": 5}, active=False)
    assert "Trigger 'keywords' must be a list of strings" in str(excinfo.value)

    with pytest.raises(FlowValidationError) as excinfo:
        make_flow([TRIGGER], trigger_type=TriggerType.WEBHOOK)
    assert "Active webhook flows need a 'webhookId'" in str(excinfo.value)

    draft = make_flow([TRIGGER], trigger_type=TriggerType.KEYWORD, active=False)
    with pytest.raises(FlowValidationError):
        flow_service.set_active(draft.id, True)
    with pytest.raises(FlowValidationError):
        flow_service.update_flow(draft.id, FlowUpdateRequest(trigger_config={"keywords": [1, 2]}))

    updated = flow_service.update_flow(
        draft.id, FlowUpdateRequest(trigger_config={"keywords": "refund, return"}, active=True)
    )
    assert updated.active is True


def test_update_only_touches_given_fields(make_flow, flow_service):
    flow = make_flow([TRIGGER], name="Welcome")

    updated = flow_service.update_flow(flow.id, FlowUpdateRequest(description="Greets new leads"))

    assert updated.name == "Welcome"
    assert updated.description == "Greets new leads"
    assert updated.active is True
    assert [node.id for node in updated.nodes] == ["t"]

    with pytest.raises(FlowNotFoundError):
        flow_service.update_flow("flow-missing", FlowUpdateRequest(name="x"))


def test_duplicate_creates_inactive_copy(make_flow, flow_service):
    flow = make_flow([TRIGGER, ("bye", "close", {})], [("t", "bye")], name="Closer")

    copy = flow_service.duplicate_flow(flow.id)

    assert copy.id != flow.id
    assert copy.name == "Closer (copy)"
    assert copy.active is False
    assert [edge.target for edge in copy.edges] == ["bye"]


def test_delete_removes_flow_and_runs(make_flow, flow_service):
    flow = make_flow([TRIGGER])
    run = flow_service.create_run(flow, "t")

    flow_service.delete_flow(flow.id)

    assert flow_service.get_flow(flow.id) is None
    assert flow_service.get_run(run.id) is None
    with pytest.raises(FlowNotFoundError):
        flow_service.delete_flow(flow.id)


def test_increment_stats_counts_runs_with_outcome(make_flow, flow_service):
    flow = make_flow([TRIGGER])

    flow_service.increment_stats(flow.id, RunOutcome.SUCCESS)
    flow_service.increment_stats(flow.id, RunOutcome.SUCCESS)
    flow_service.increment_stats(flow.id, RunOutcome.FAILED)

    stats = flow_service.get_flow(flow.id).stats
    assert (stats.runs, stats.success, stats.failed) == (3, 2, 1)


def test_update_run_only_applies_from_expected_status(make_flow, flow_service):
    flow = make_flow([TRIGGER])
    run = flow_service.create_run(flow, "t", conversation_id="conv-1")

    assert flow_service.update_run(
        run.id, expected=(RunStatus.RUNNING,), status=RunStatus.PAUSED, wait_reason=WaitReason.REPLY
    )
    assert not flow_service.update_run(run.id, expected=(RunStatus.RUNNING,), status=RunStatus.COMPLETED)
    assert flow_service.get_run(run.id).status == RunStatus.PAUSED
    assert [item.id for item in flow_service.list_waiting_runs("conv-1")] == [run.id]
    assert not flow_service.update_run("run-missing", status=RunStatus.FAILED)


def test_update_run_checks_the_owning_execution(make_flow, flow_service):
    flow = make_flow([TRIGGER])
    run = flow_service.create_run(flow, "t")
    assert run.execution_id.startswith("exec-")

    assert not flow_service.update_run(run.id, owner="exec-stale", current_node_id="x")
    assert not flow_service.update_run(run.id, owner=None, current_node_id="x")
    assert flow_service.update_run(run.id, owner=run.execution_id, execution_id=None)
    assert flow_service.update_run(run.id, owner=None, current_node_id="x")
    assert flow_service.get_run(run.id).current_node_id == "x"


def test_list_active_by_trigger_and_runs(make_flow, flow_service):
    keyword = make_flow([TRIGGER], trigger_type=TriggerType.KEYWORD, trigger_config={"keywords": ["a"]})
    make_flow([TRIGGER], trigger_type=TriggerType.KEYWORD, active=False)
    flow_service.create_run(keyword, "t")
    paused = flow_service.create_run(keyword, "t")
    flow_service.update_run(paused.id, status=RunStatus.PAUSED)

    assert [flow.id for flow in flow_service.list_active_by_trigger(TriggerType.KEYWORD)] == [keyword.id]
    assert len(flow_service.list_runs(keyword.id)) == 2
    assert [run.id for run in flow_service.list_runs(keyword.id, status=RunStatus.PAUSED)] == [paused.id]


def test_create_request_accepts_editor_payload():
    request = FlowCreateRequest.model_validate(
        {
            "name": "Editor export",
            "trigger_type": "manual",
            "nodes": [{"id": "t", "type": "trigger", "position": {"x": 10, "y": 20}}],
            "edges": [],
        }
    )

    assert request.active is False
    assert request.nodes[0].position == {"x": 10.0, "y": 20.0}
