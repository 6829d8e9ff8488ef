"""
Turn graph: the model -> validate -> detect -> execute control loop.
"""

from .engine import GraphDefinition, TurnEngine, react_graph
from .nodes import CaptureResult, NodeContext, run_cancellable, with_tool_call_logging
from .patches import SharedStatePatch, apply_patches, get_path, set_patch
from .routing import (
    DEFAULT_ROUTES,
    NodeId,
    route_after_detect,
    route_after_execute,
    route_after_validate,
)
from .state import CLEAR, ExecutionState, NodeUpdate, TurnStatus

__all__ = [
    "CLEAR",
    "CaptureResult",
    "DEFAULT_ROUTES",
    "ExecutionState",
    "GraphDefinition",
    "NodeContext",
    "NodeId",
    "NodeUpdate",
    "SharedStatePatch",
    "TurnEngine",
    "TurnStatus",
    "apply_patches",
    "get_path",
    "react_graph",
    "route_after_detect",
    "route_after_execute",
    "route_after_validate",
    "run_cancellable",
    "set_patch",
    "with_tool_call_logging",
]
