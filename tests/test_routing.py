"""
Tests for the routing rules of the turn graph.
"""

from turngraph.graph.routing import (
    DEFAULT_ROUTES,
    NodeId,
    route_after_detect,
    route_after_execute,
    route_after_model,
    route_after_validate,
)
from turngraph.graph.state import ExecutionState
from turngraph.llm.base import ToolCall


def state_with(call=None, passed=True):
    return ExecutionState(
        last_tool_call=call,
        metadata={"validation": {"passed": passed, "reason": None if passed else "bad"}},
    )


def test_model_always_goes_to_validate():
    assert route_after_model(ExecutionState()) is NodeId.VALIDATE


def test_validate_routes_on_result():
    """Test routing after validation."""
    assert route_after_validate(state_with(passed=True)) is NodeId.DETECT
    assert route_after_validate(state_with(passed=False)) is NodeId.MODEL


def test_missing_validation_counts_as_pass():
    assert route_after_validate(ExecutionState()) is NodeId.DETECT


def test_detect_without_call():
    """Test routing after detection without a tool call."""
    assert route_after_detect(state_with(passed=True)) is NodeId.END
    assert route_after_detect(state_with(passed=False)) is NodeId.MODEL


def test_detect_terminal_tools_end_the_turn():
    """Test that terminal tools route to End."""
    assert route_after_detect(state_with(ToolCall(name="final_answer"))) is NodeId.END
    assert route_after_detect(state_with(ToolCall(name="ask_user"))) is NodeId.END


def test_detect_other_tools_execute():
    """Test that other tools route to Execute."""
    assert route_after_detect(state_with(ToolCall(name="file_read"))) is NodeId.EXECUTE


def test_execute_loops_to_model():
    assert route_after_execute(state_with(None)) is NodeId.MODEL
    assert route_after_execute(state_with(ToolCall(name="final_answer"))) is NodeId.END


def test_default_routes_cover_every_node():
    """Test that every node except End has a route."""
    assert set(DEFAULT_ROUTES) == set(NodeId)
