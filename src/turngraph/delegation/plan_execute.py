"""
Plan/execute multi-agent setup.

A supervisor delegates to two nested flows in a fixed order:

1. ``planner-flow`` - read-only exploration, produces ``shared_data["plan"]``
2. ``implementer-flow`` - carries out the plan, produces ``shared_data["output"]``

The supervisor cannot finish until both exist; its end step redirects it
back to the model naming the flow that must run next.
"""

import functools
import json
from collections.abc import Mapping
from dataclasses import replace
from typing import TYPE_CHECKING, Any

import structlog

from ..graph.engine import DEFAULT_MAX_STEPS, TurnEngine, react_graph
from ..graph.nodes import CaptureResult, Node, NodeContext
from ..graph.patches import apply_patches, set_patch
from ..graph.state import ExecutionState, NodeUpdate
from ..llm.base import BaseLLM, LLMMessage
from ..tools.builtin import ASK_USER, FINAL_ANSWER
from ..tools.policy import ToolPolicy
from ..tools.registry import ToolRegistry
from .call_flow import CALL_FLOW, CallFlowTool
from .registry import FlowDefinition, FlowRegistry
from .runner import FlowRunner

if TYPE_CHECKING:
    from ..context.governor import ContextGovernor

logger = structlog.get_logger()

PLANNER_FLOW = "planner-flow"
IMPLEMENTER_FLOW = "implementer-flow"

PLANNER_TOOLS = (
    "search",
    "file_read",
    "file_outline",
    "list_directory",
    "read_image",
    FINAL_ANSWER,
)

SUPERVISOR_PROMPT = """You are a supervisor agent. You coordinate sub-agents and never do the work yourself.

Workflow:
1. Call call_flow with flowId "planner-flow" to get a plan for the task.
2. Call call_flow with flowId "implementer-flow", passing the task, to carry out the plan.
3. When the implementer has finished, answer with final_answer.

Use ask_user only when the task cannot be understood without the user's help."""

PLANNER_PROMPT = """You are a planning agent. Explore the project with read-only tools and produce a clear,
actionable, step-by-step plan for the task. You never change anything.
Finish with final_answer; its answer is the plan."""

IMPLEMENTER_PROMPT = """You are an implementation agent. Carry out the plan you are given, step by step,
checking the results of each step. Finish with final_answer summarizing what was done."""

PLANNER_GATE_MESSAGE = (
    'You must first delegate to the planning sub-agent with call_flow (flowId: "planner-flow"). '
    "Do not finish yet."
)
IMPLEMENTER_GATE_MESSAGE = (
    'You must now delegate to the implementation sub-agent with call_flow (flowId: "implementer-flow"), '
    "passing the plan. Do not finish yet."
)


def supervisor_policy() -> ToolPolicy:
    return ToolPolicy.allow_only(CALL_FLOW, ASK_USER, FINAL_ANSWER)


def planner_policy() -> ToolPolicy:
    return ToolPolicy.allow_only(*PLANNER_TOOLS)


def implementer_policy() -> ToolPolicy:
    return ToolPolicy.deny_only(ASK_USER, CALL_FLOW)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return json.dumps(value)


def _present(shared: Mapping[str, Any], key: str) -> bool:
    return bool(_as_text(shared.get(key)))


def _preview(text: str, limit: int = 500) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def _insert_before_first_user(messages: list[LLMMessage], extra: list[LLMMessage]) -> list[LLMMessage]:
    index = next((i for i, m in enumerate(messages) if m.role == "user"), len(messages))
    return [*messages[:index], *extra, *messages[index:]]


# =============================================================================
# Planner
# =============================================================================


def planner_seed(state: ExecutionState) -> ExecutionState:
    """List attached images so the planner can read them."""
    image_paths = state.shared_data.get("imagePaths") or []
    if not image_paths:
        return state

    listing = "\n".join(f"- {path}" for path in image_paths)
    message = LLMMessage(
        role="system",
        content=(
            f"Available images (local paths):\n{listing}\n\n"
            'If you need to see one, call read_image with source="path" and the file path.'
        ),
    )
    return replace(state, messages=_insert_before_first_user(state.messages, [message]))


def capture_plan(state: ExecutionState, output: str | None) -> CaptureResult | None:
    plan = _as_text(output)
    if not plan:
        logger.warning("No plan content to capture")
        return None

    logger.info("Plan captured", chars=len(plan), preview=_preview(plan))
    return CaptureResult(patches=[set_patch("plan", plan)], output=plan)


# =============================================================================
# Implementer
# =============================================================================


def implementer_seed(state: ExecutionState) -> ExecutionState:
    """Hand the plan to the implementer ahead of its task."""
    plan = _as_text(state.shared_data.get("plan"))
    if not plan:
        if not state.messages:
            logger.warning("No input or plan provided for implementer")
        return state

    message = LLMMessage(role="system", content=f"Plan:\n{plan}")
    return replace(state, messages=_insert_before_first_user(state.messages, [message]))


def capture_output(state: ExecutionState, output: str | None) -> CaptureResult | None:
    text = _as_text(output)
    if not text:
        logger.warning("No output content to capture")
        return None

    logger.info("Output captured", chars=len(text), preview=_preview(text))
    return CaptureResult(patches=[set_patch("output", text)], output=text)


# =============================================================================
# Supervisor
# =============================================================================


def supervisor_gate(state: ExecutionState, output: str | None) -> CaptureResult:
    """Refuse to finish until a plan and an output exist.

    Each gate instruction is injected once per missing precondition; later
    attempts are redirected silently.
    """
    shared = state.shared_data

    if not _present(shared, "plan"):
        missing, flow_id, instruction = "plan", PLANNER_FLOW, PLANNER_GATE_MESSAGE
    elif not _present(shared, "output"):
        missing, flow_id, instruction = "output", IMPLEMENTER_FLOW, IMPLEMENTER_GATE_MESSAGE
    else:
        final = _as_text(shared.get("output"))
        logger.info("Supervisor finished", chars=len(final), preview=_preview(final))
        return CaptureResult(output=final, metadata={"delegation_required": None})

    gates = dict(state.metadata.get("delegation_gates") or {})
    messages = []
    if not gates.get(missing):
        messages.append(LLMMessage(role="system", content=instruction))
        gates[missing] = True

    logger.info("Delegation required before finishing", flow_id=flow_id)
    return CaptureResult(
        redirect=True,
        messages=messages,
        metadata={"delegation_gates": gates, "delegation_required": flow_id},
    )


def inject_delegation_results(node: Node) -> Node:
    """Execute middleware surfacing a finished flow's result to the supervisor.

    ``Plan:`` and ``Subflow output:`` are each injected once per turn.
    """

    @functools.wraps(node)
    async def wrapper(state: ExecutionState, ctx: NodeContext) -> NodeUpdate:
        call = state.last_tool_call
        update = await node(state, ctx)
        if call is None or call.name != CALL_FLOW or not update.shared_patch:
            return update

        flow_id = call.arguments.get("flowId") or call.arguments.get("flow_id")
        shared = apply_patches(state.shared_data, update.shared_patch)
        metadata = {**state.metadata, **update.metadata}

        if flow_id == PLANNER_FLOW and _present(shared, "plan") and not metadata.get("plan_injected"):
            update.messages.append(LLMMessage(role="system", content=f"Plan:\n{_as_text(shared['plan'])}"))
            update.metadata["plan_injected"] = True

        if flow_id == IMPLEMENTER_FLOW and _present(shared, "output") and not metadata.get("output_injected"):
            update.messages.append(
                LLMMessage(role="system", content=f"Subflow output:\n{_as_text(shared['output'])}")
            )
            update.metadata["output_injected"] = True

        return update

    return wrapper


def build_plan_execute_engine(
    llm: BaseLLM,
    registry: ToolRegistry,
    *,
    flow_registry: FlowRegistry | None = None,
    governors: "Mapping[str, ContextGovernor] | None" = None,
    max_steps: int = DEFAULT_MAX_STEPS,
    supervisor_prompt: str = SUPERVISOR_PROMPT,
    planner_prompt: str = PLANNER_PROMPT,
    implementer_prompt: str = IMPLEMENTER_PROMPT,
) -> TurnEngine:
    """Wire the planner and implementer flows behind a supervisor engine.

    ``governors`` maps a role (``supervisor``, ``planner``, ``implementer``)
    to the context governor of that role, if any. Registers ``call_flow`` in
    ``registry`` when it is missing.
    """
    governors = governors or {}
    flows = flow_registry or FlowRegistry()

    planner = TurnEngine(
        PLANNER_FLOW,
        llm,
        registry,
        policy=planner_policy(),
        role="planner",
        system_prompt=planner_prompt,
        governor=governors.get("planner"),
        capture_hook=capture_plan,
        seed_hook=planner_seed,
        max_steps=max_steps,
    )
    implementer = TurnEngine(
        IMPLEMENTER_FLOW,
        llm,
        registry,
        policy=implementer_policy(),
        role="implementer",
        system_prompt=implementer_prompt,
        governor=governors.get("implementer"),
        capture_hook=capture_output,
        seed_hook=implementer_seed,
        max_steps=max_steps,
    )

    flows.register(
        PLANNER_FLOW,
        FlowDefinition(PLANNER_FLOW, planner, description="Produce an actionable plan"),
    )
    flows.register(
        IMPLEMENTER_FLOW,
        FlowDefinition(IMPLEMENTER_FLOW, implementer, description="Carry out the plan"),
    )

    if not registry.has_tool(CALL_FLOW):
        registry.register(CallFlowTool(FlowRunner(flows)))

    return TurnEngine(
        "supervisor",
        llm,
        registry,
        policy=supervisor_policy(),
        role="supervisor",
        system_prompt=supervisor_prompt,
        governor=governors.get("supervisor"),
        capture_hook=supervisor_gate,
        graph=react_graph(execute_middleware=[inject_delegation_results]),
        max_steps=max_steps,
    )
