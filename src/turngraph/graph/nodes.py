"""
Nodes of the turn graph.

Every node is an async callable ``(state, ctx) -> NodeUpdate``. Nodes only
describe what changes; the engine applies updates and picks the next node.
"""

import asyncio
import functools
import inspect
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Coroutine, TypeVar

import structlog

from ..errors import TurnCancelledError
from ..llm.base import BaseLLM, LLMMessage, is_context_overflow_error
from ..tools.base import ToolContext
from ..tools.builtin import TERMINAL_PAYLOAD_KEYS
from ..tools.policy import ToolPolicy
from ..tools.registry import ToolRegistry
from .patches import SharedStatePatch
from .react import correction_message, detect_tool_call, validate_message
from .routing import NodeId
from .state import CLEAR, ExecutionState, NodeUpdate, TurnStatus

if TYPE_CHECKING:
    from ..context.governor import ContextGovernor

logger = structlog.get_logger()

T = TypeVar("T")

TOOL_ERROR_TEMPLATE = 'Tool error "{name}":\n{error}\nFix parameters and try again.'
POLICY_VIOLATION_TEMPLATE = (
    'Tool "{name}" is not allowed for the {role}. '
    "Use one of the allowed tools instead: {allowed}."
)


@dataclass
class CaptureResult:
    """What a capture hook decided at the end of a turn.

    ``redirect`` sends the turn back to the model, with ``messages``
    appended, instead of finishing.
    """

    redirect: bool = False
    messages: list[LLMMessage] = field(default_factory=list)
    patches: list[SharedStatePatch] = field(default_factory=list)
    output: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


CaptureHook = Callable[
    [ExecutionState, "str | None"],
    "CaptureResult | None | Awaitable[CaptureResult | None]",
]


@dataclass
class NodeContext:
    """Collaborators a node may use during one engine run."""

    llm: BaseLLM
    registry: ToolRegistry
    policy: ToolPolicy | None = None
    role: str = "agent"
    governor: "ContextGovernor | None" = None
    capture_hook: CaptureHook | None = None
    cancel_event: asyncio.Event | None = None


Node = Callable[[ExecutionState, NodeContext], Awaitable[NodeUpdate]]
NodeMiddleware = Callable[[Node], Node]


async def run_cancellable(
    coro: Coroutine[Any, Any, T],
    cancel_event: asyncio.Event | None,
) -> T:
    """Await ``coro`` unless ``cancel_event`` fires first."""
    if cancel_event is None:
        return await coro

    if cancel_event.is_set():
        coro.close()
        raise TurnCancelledError()

    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if task.done():
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    raise TurnCancelledError()


# =============================================================================
# Model
# =============================================================================


async def model_node(state: ExecutionState, ctx: NodeContext) -> NodeUpdate:
    messages = state.messages
    if ctx.governor is not None:
        messages = await ctx.governor.before_request(messages)

    tools = ctx.registry.get_definitions(ctx.policy)

    try:
        response = await run_cancellable(
            ctx.llm.generate(messages, tools=tools or None),
            ctx.cancel_event,
        )
    except TurnCancelledError:
        raise
    except Exception as e:
        if ctx.governor is None or not is_context_overflow_error(e):
            raise
        logger.warning("Context overflow, compressing and retrying", role=ctx.role, error=str(e))
        messages = await ctx.governor.handle_overflow(e, messages)
        response = await run_cancellable(
            ctx.llm.generate(messages, tools=tools or None),
            ctx.cancel_event,
        )

    tool_calls = response.tool_calls[:1] or None
    assistant = LLMMessage(role="assistant", content=response.content, tool_calls=tool_calls)

    if messages is not state.messages:
        return NodeUpdate(replace_messages=messages, messages=[assistant])
    return NodeUpdate(messages=[assistant])


# =============================================================================
# Validate / Detect
# =============================================================================


async def validate_node(state: ExecutionState, ctx: NodeContext) -> NodeUpdate:
    result = validate_message(state.last_assistant_message)
    update = NodeUpdate(metadata={"validation": result.to_dict()})
    if not result.passed:
        logger.info("Validation failed", role=ctx.role, reason=result.reason)
        update.messages.append(correction_message(result))
    return update


async def detect_node(state: ExecutionState, ctx: NodeContext) -> NodeUpdate:
    call = detect_tool_call(state.last_assistant_message)
    return NodeUpdate(last_tool_call=call if call is not None else CLEAR)


def with_tool_call_logging(node: Node) -> Node:
    """Log every tool call the wrapped node detects."""

    @functools.wraps(node)
    async def wrapper(state: ExecutionState, ctx: NodeContext) -> NodeUpdate:
        update = await node(state, ctx)
        call = update.last_tool_call
        if call is not None and call is not CLEAR:
            logger.info(
                "Tool call detected",
                role=ctx.role,
                tool=call.name,
                arguments=call.arguments,
                rationale=call.rationale,
            )
        return update

    return wrapper


# =============================================================================
# Execute
# =============================================================================


def _failure_update(
    state: ExecutionState,
    corrective: str,
    tool_reply: str,
    metadata: dict[str, Any],
) -> NodeUpdate:
    call = state.last_tool_call
    messages = []
    # Native calls need a matching tool reply
    if call is not None and call.id:
        messages.append(LLMMessage(
            role="tool",
            content=tool_reply,
            tool_call_id=call.id,
            name=call.name,
        ))
    messages.append(LLMMessage(role="system", content=corrective))
    return NodeUpdate(
        messages=messages,
        status=TurnStatus.RUNNING,
        last_tool_call=CLEAR,
        metadata=metadata,
    )


async def execute_node(state: ExecutionState, ctx: NodeContext) -> NodeUpdate:
    call = state.last_tool_call
    if call is None:
        return NodeUpdate()

    allowed = ctx.registry.allowed_names(ctx.policy)
    denied = ctx.policy is not None and not ctx.policy.permits(call.name)
    filtered = ctx.registry.has_tool(call.name) and call.name not in allowed

    if denied or filtered:
        logger.warning("Tool policy violation", role=ctx.role, tool=call.name, allowed=allowed)
        message = POLICY_VIOLATION_TEMPLATE.format(
            name=call.name,
            role=ctx.role,
            allowed=", ".join(allowed) or "none",
        )
        return _failure_update(
            state,
            corrective=message,
            tool_reply=message,
            metadata={
                "tool_policy_violation": {"tool": call.name, "allowed": allowed},
                "last_tool_error": {"tool": call.name, "error": message},
            },
        )

    context = ToolContext(
        role=ctx.role,
        shared_data=state.shared_data,
        cancel_event=ctx.cancel_event,
    )
    result = await run_cancellable(
        ctx.registry.execute(call.name, call.arguments, context),
        ctx.cancel_event,
    )

    if not result.success:
        error = result.error or result.output or "unknown error"
        return _failure_update(
            state,
            corrective=TOOL_ERROR_TEMPLATE.format(name=call.name, error=error),
            tool_reply=f"Error: {error}",
            metadata={"last_tool_error": {"tool": call.name, "error": error}},
        )

    if call.id:
        observation = LLMMessage(
            role="tool",
            content=result.output,
            tool_call_id=call.id,
            name=call.name,
        )
    else:
        observation = LLMMessage(role="tool", content=f"Observation: {result.output}", name=call.name)

    return NodeUpdate(
        messages=[observation],
        last_tool_call=CLEAR,
        shared_patch=list(result.patches),
    )


# =============================================================================
# End
# =============================================================================


def capture_output(state: ExecutionState) -> str | None:
    """Final output of a turn: terminal tool payload or last assistant text."""
    call = state.last_tool_call
    if call is not None and call.name in TERMINAL_PAYLOAD_KEYS:
        value = call.arguments.get(TERMINAL_PAYLOAD_KEYS[call.name])
        if value is None:
            return None
        return value if isinstance(value, str) else json.dumps(value)

    message = state.last_assistant_message
    return message.text if message is not None else None


async def end_node(state: ExecutionState, ctx: NodeContext) -> NodeUpdate:
    output = capture_output(state)
    call = state.last_tool_call

    result = None
    if ctx.capture_hook is not None:
        result = ctx.capture_hook(state, output)
        if inspect.isawaitable(result):
            result = await result

    if result is not None and result.redirect:
        logger.info("Turn end redirected", role=ctx.role)
        messages = []
        if call is not None and call.id:
            messages.append(LLMMessage(
                role="tool",
                content="Not finished yet.",
                tool_call_id=call.id,
                name=call.name,
            ))
        messages.extend(result.messages)
        return NodeUpdate(
            messages=messages,
            status=TurnStatus.RUNNING,
            last_tool_call=CLEAR,
            metadata=dict(result.metadata),
            shared_patch=list(result.patches),
            next_node=NodeId.MODEL,
        )

    metadata: dict[str, Any] = {"terminal_tool": call.name if call is not None else None}
    patches: list[SharedStatePatch] = []
    if result is not None:
        metadata.update(result.metadata)
        patches = list(result.patches)
        if result.output is not None:
            output = result.output
    metadata["final_output"] = output

    return NodeUpdate(
        status=TurnStatus.FINISHED,
        last_tool_call=CLEAR,
        metadata=metadata,
        shared_patch=patches,
    )
