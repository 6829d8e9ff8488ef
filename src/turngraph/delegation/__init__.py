"""
Delegation module: supervisors running nested flows by name.
"""

from .call_flow import CALL_FLOW, CallFlowTool
from .plan_execute import (
    IMPLEMENTER_FLOW,
    PLANNER_FLOW,
    build_plan_execute_engine,
    implementer_policy,
    inject_delegation_results,
    planner_policy,
    supervisor_gate,
    supervisor_policy,
)
from .registry import FlowDefinition, FlowRegistry
from .runner import FlowResult, FlowRunner

__all__ = [
    "CALL_FLOW",
    "CallFlowTool",
    "FlowDefinition",
    "FlowRegistry",
    "FlowResult",
    "FlowRunner",
    "IMPLEMENTER_FLOW",
    "PLANNER_FLOW",
    "build_plan_execute_engine",
    "implementer_policy",
    "inject_delegation_results",
    "planner_policy",
    "supervisor_gate",
    "supervisor_policy",
]
