"""
Routing rules of the turn graph.

Every edge is a pure function of the state, so each rule can be tested
without running the rest of the graph.

    model -> validate -> detect -> execute -> model
                |           |
                +-> model   +-> end
"""

from enum import Enum
from typing import Callable

from ..tools.builtin import TERMINAL_TOOLS
from .state import ExecutionState


class NodeId(str, Enum):
    MODEL = "model"
    VALIDATE = "validate"
    DETECT = "detect"
    EXECUTE = "execute"
    END = "end"


Router = Callable[[ExecutionState], NodeId]


def validation_passed(state: ExecutionState) -> bool:
    # Missing validation info counts as a pass
    validation = state.metadata.get("validation") or {}
    return validation.get("passed") is not False


def route_after_model(state: ExecutionState) -> NodeId:
    return NodeId.VALIDATE


def route_after_validate(state: ExecutionState) -> NodeId:
    return NodeId.DETECT if validation_passed(state) else NodeId.MODEL


def route_after_detect(state: ExecutionState) -> NodeId:
    call = state.last_tool_call
    if call is None:
        return NodeId.END if validation_passed(state) else NodeId.MODEL
    if call.name in TERMINAL_TOOLS:
        return NodeId.END
    return NodeId.EXECUTE


def route_after_execute(state: ExecutionState) -> NodeId:
    call = state.last_tool_call
    if call is not None and call.name in TERMINAL_TOOLS:
        return NodeId.END
    return NodeId.MODEL


def route_after_end(state: ExecutionState) -> NodeId:
    return NodeId.END


DEFAULT_ROUTES: dict[NodeId, Router] = {
    NodeId.MODEL: route_after_model,
    NodeId.VALIDATE: route_after_validate,
    NodeId.DETECT: route_after_detect,
    NodeId.EXECUTE: route_after_execute,
    NodeId.END: route_after_end,
}
