"""
Unit Tests for WorkflowGraph

Tests cover:
- Parsing blocks and connections into an adjacency list
- Save-time validation (duplicates, dangling edges, triggers, branching, cycles)
- Navigation helpers used by the Step Executor
"""

import pytest

from practiceflow.core.exceptions import GraphValidationError
from practiceflow.core.graph import WorkflowGraph


def trigger(block_id="t"):
    return {"id": block_id, "type": "trigger"}


def sms(block_id):
    return {"id": block_id, "type": "action", "config": {"action": "send_sms", "message": "Hi"}}


def edge(source, target, port=None):
    connection = {"from": source, "to": target}
    if port:
        connection["fromPort"] = port
    return connection


# ============================================================================
# PARSING TESTS
# ============================================================================

@pytest.mark.unit
def test_linear_graph(sms_only):
    graph = WorkflowGraph.from_definition(sms_only["blocks"], sms_only["connections"])

    assert len(graph) == 2
    assert graph.trigger.id == "t"
    assert graph.next_block("t") == "sms"
    assert graph.next_block("sms") is None


@pytest.mark.unit
def test_empty_graph_is_valid():
    graph = WorkflowGraph.from_definition([], [])

    assert len(graph) == 0
    assert graph.trigger is None
    assert graph.resolve_step("start") is None


@pytest.mark.unit
def test_invalid_block_is_reported_with_id():
    with pytest.raises(GraphValidationError) as exc_info:
        WorkflowGraph.from_definition([{"id": "bad", "type": "webhook"}], [])

    assert exc_info.value.block_id == "bad"
    assert exc_info.value.retry_allowed is False


# ============================================================================
# VALIDATION TESTS
# ============================================================================

@pytest.mark.unit
def test_duplicate_block_ids():
    with pytest.raises(GraphValidationError, match="Duplicate block id"):
        WorkflowGraph.from_definition([trigger(), sms("a"), sms("a")], [])


@pytest.mark.unit
def test_dangling_connection():
    with pytest.raises(GraphValidationError, match="non-existent block: ghost"):
        WorkflowGraph.from_definition([trigger()], [edge("t", "ghost")])


@pytest.mark.unit
def test_two_triggers():
    with pytest.raises(GraphValidationError, match="at most one trigger"):
        WorkflowGraph.from_definition([trigger("t1"), trigger("t2")], [])


@pytest.mark.unit
def test_connection_into_trigger():
    with pytest.raises(GraphValidationError, match="into trigger"):
        WorkflowGraph.from_definition([trigger(), sms("a")], [edge("t", "a"), edge("a", "t")])


@pytest.mark.unit
def test_only_conditionals_branch():
    with pytest.raises(GraphValidationError, match="only conditional blocks may branch"):
        WorkflowGraph.from_definition(
            [trigger(), sms("a"), sms("b")], [edge("t", "a"), edge("t", "b")]
        )


@pytest.mark.unit
def test_conditional_needs_ports(vip_branch):
    connections = [dict(c) for c in vip_branch["connections"]]
    connections[1].pop("fromPort")

    with pytest.raises(GraphValidationError, match="'true'/'false' port"):
        WorkflowGraph.from_definition(vip_branch["blocks"], connections)


@pytest.mark.unit
def test_conditional_duplicate_port(vip_branch):
    connections = [dict(c) for c in vip_branch["connections"]]
    connections[2]["fromPort"] = "yes"

    with pytest.raises(GraphValidationError, match="two 'true' connections"):
        WorkflowGraph.from_definition(vip_branch["blocks"], connections)


@pytest.mark.unit
def test_cycle_detected():
    with pytest.raises(GraphValidationError, match="Cycle detected"):
        WorkflowGraph.from_definition(
            [trigger(), sms("a"), sms("b")],
            [edge("t", "a"), edge("a", "b"), edge("b", "a")],
        )


@pytest.mark.unit
def test_cycle_through_conditional():
    blocks = [
        trigger(),
        {"id": "c", "type": "conditional", "config": []},
        sms("a"),
    ]
    with pytest.raises(GraphValidationError, match="Cycle detected"):
        WorkflowGraph.from_definition(
            blocks, [edge("t", "c"), edge("c", "a", "true"), edge("a", "c")]
        )


# ============================================================================
# NAVIGATION TESTS
# ============================================================================

@pytest.mark.unit
def test_branch_target(vip_branch):
    graph = WorkflowGraph.from_definition(vip_branch["blocks"], vip_branch["connections"])

    assert graph.branch_target("vip", True) == "sms"
    assert graph.branch_target("vip", False) == "email"


@pytest.mark.unit
def test_branch_target_missing_port():
    graph = WorkflowGraph.from_definition(
        [trigger(), {"id": "c", "type": "conditional", "config": []}, sms("a")],
        [edge("t", "c"), edge("c", "a", "true")],
    )

    assert graph.branch_target("c", False) is None


@pytest.mark.unit
def test_resolve_step(sms_only):
    graph = WorkflowGraph.from_definition(sms_only["blocks"], sms_only["connections"])

    assert graph.resolve_step("start").id == "t"
    assert graph.resolve_step(None).id == "t"
    assert graph.resolve_step("sms").id == "sms"
    assert graph.resolve_step("removed") is None
