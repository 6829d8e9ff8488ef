"""
Turn engine: runs the graph for one agent role until a terminal status.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Callable, Iterable

import structlog

from ..errors import FATAL_ERRORS, ContextOverflowError, TurnCancelledError, TurnStateError
from ..llm.base import BaseLLM, LLMMessage, is_context_overflow_error
from ..tools.policy import ToolPolicy
from ..tools.registry import ToolRegistry
from .nodes import (
    CaptureHook,
    Node,
    NodeContext,
    NodeMiddleware,
    detect_node,
    end_node,
    execute_node,
    model_node,
    validate_node,
    with_tool_call_logging,
)
from .routing import DEFAULT_ROUTES, NodeId, Router
from .state import ExecutionState, TurnStatus

if TYPE_CHECKING:
    from ..context.governor import ContextGovernor

logger = structlog.get_logger()

DEFAULT_MAX_STEPS = 60

SeedHook = Callable[[ExecutionState], ExecutionState]


@dataclass
class GraphDefinition:
    """Nodes and routing rules of a turn graph."""

    nodes: dict[NodeId, Node]
    routes: dict[NodeId, Router] = field(default_factory=lambda: dict(DEFAULT_ROUTES))
    entry: NodeId = NodeId.MODEL

    def wrap(self, node_id: NodeId, *middleware: NodeMiddleware) -> "GraphDefinition":
        """Return a copy with ``node_id`` wrapped, innermost first."""
        node = self.nodes[node_id]
        for wrapper in middleware:
            node = wrapper(node)
        return replace(self, nodes={**self.nodes, node_id: node})


def react_graph(
    execute_middleware: Iterable[NodeMiddleware] = (),
) -> GraphDefinition:
    """The standard model -> validate -> detect -> execute loop."""
    graph = GraphDefinition(
        nodes={
            NodeId.MODEL: model_node,
            NodeId.VALIDATE: validate_node,
            NodeId.DETECT: with_tool_call_logging(detect_node),
            NodeId.EXECUTE: execute_node,
            NodeId.END: end_node,
        },
    )
    middleware = tuple(execute_middleware)
    if middleware:
        graph = graph.wrap(NodeId.EXECUTE, *middleware)
    return graph


class TurnEngine:
    """Runs one agent role's turn graph.

    ``max_steps`` caps the number of model calls in one run; hitting it ends
    the turn with ``TurnStatus.EXHAUSTED``.
    """

    def __init__(
        self,
        name: str,
        llm: BaseLLM,
        registry: ToolRegistry,
        *,
        policy: ToolPolicy | None = None,
        role: str | None = None,
        system_prompt: str | None = None,
        governor: "ContextGovernor | None" = None,
        capture_hook: CaptureHook | None = None,
        seed_hook: SeedHook | None = None,
        graph: GraphDefinition | None = None,
        max_steps: int = DEFAULT_MAX_STEPS,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")

        self.name = name
        self.system_prompt = system_prompt
        self.seed_hook = seed_hook
        self.graph = graph or react_graph()
        self.max_steps = max_steps
        self.context = NodeContext(
            llm=llm,
            registry=registry,
            policy=policy,
            role=role or name,
            governor=governor,
            capture_hook=capture_hook,
        )

    @property
    def governor(self) -> "ContextGovernor | None":
        return self.context.governor

    async def _seed(self, state: ExecutionState) -> ExecutionState:
        messages = list(state.messages)
        has_system = bool(messages) and messages[0].role == "system"
        if self.system_prompt and not has_system:
            messages.insert(0, LLMMessage(role="system", content=self.system_prompt))
            has_system = True

        # Seed hooks run once per state, not on every resume
        if self.seed_hook is not None and not state.metadata.get("seeded"):
            seeded = self.seed_hook(replace(state, messages=messages))
            messages = list(seeded.messages)
            state = replace(seeded, metadata={**seeded.metadata, "seeded": True})

        governor = self.governor
        if governor is not None:
            await governor.load()
            accumulated = governor.accumulated_message()
            if accumulated is not None and not any(
                m.name == accumulated.name for m in messages
            ):
                messages.insert(1 if has_system else 0, accumulated)

        return replace(state, messages=messages)

    async def run(
        self,
        state: ExecutionState,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionState:
        """Run the graph until the state reaches a terminal status.

        Raises:
            TurnStateError: ``state`` is already terminal.
            TurnCancelledError: ``cancel_event`` was set; carries the last
                consistent state.
            ContextOverflowError: overflow that compression could not fix.
            FlowNotFoundError: a delegation target is not registered.
        """
        if state.is_terminal:
            raise TurnStateError(
                f"Cannot run engine '{self.name}' on a {state.status.value} state; reset it first"
            )

        ctx = replace(self.context, cancel_event=cancel_event)
        state = await self._seed(state)
        trail = list(state.metadata.get("trail", []))
        node_id = self.graph.entry
        model_calls = 0

        logger.info("Turn started", engine=self.name, messages=len(state.messages))

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Turn cancelled", engine=self.name, node=node_id.value)
                raise TurnCancelledError(state=state)

            if node_id is NodeId.MODEL:
                if model_calls >= self.max_steps:
                    logger.warning("Step limit reached", engine=self.name, max_steps=self.max_steps)
                    trail.append(f"exhausted after {self.max_steps} model calls")
                    return replace(
                        state,
                        status=TurnStatus.EXHAUSTED,
                        metadata={
                            **state.metadata,
                            "error": f"Step limit of {self.max_steps} model calls reached",
                            "trail": trail,
                        },
                    )
                model_calls += 1

            node = self.graph.nodes[node_id]
            try:
                update = await node(state, ctx)
            except TurnCancelledError as e:
                raise TurnCancelledError(str(e), state=state) from e
            except FATAL_ERRORS:
                raise
            except Exception as e:
                if is_context_overflow_error(e):
                    # Provider errors matched by message propagate under one type
                    raise ContextOverflowError(str(e)) from e
                logger.error(
                    "Turn failed",
                    engine=self.name,
                    node=node_id.value,
                    error=str(e),
                    exc_info=True,
                )
                trail.append(f"{node_id.value}: {type(e).__name__}: {e}")
                return replace(
                    state,
                    status=TurnStatus.ERROR,
                    metadata={**state.metadata, "error": str(e), "trail": trail},
                )

            state = update.apply(state)
            trail.append(self._trail_entry(node_id, state))
            state.metadata["trail"] = list(trail)

            if state.is_terminal:
                logger.info(
                    "Turn finished",
                    engine=self.name,
                    status=state.status.value,
                    model_calls=model_calls,
                )
                return state

            node_id = update.next_node or self.graph.routes[node_id](state)

    @staticmethod
    def _trail_entry(node_id: NodeId, state: ExecutionState) -> str:
        if node_id is NodeId.VALIDATE:
            validation = state.metadata.get("validation") or {}
            if validation.get("passed") is False:
                return f"validate: failed ({validation.get('reason')})"
        if node_id is NodeId.DETECT and state.last_tool_call is not None:
            return f"detect: {state.last_tool_call.name}"
        return node_id.value
