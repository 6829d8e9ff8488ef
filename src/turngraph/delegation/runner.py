"""
Runs a registered flow to completion on behalf of a caller.
"""

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Mapping

import structlog

from ..graph.patches import SharedStatePatch
from ..graph.state import ExecutionState, TurnStatus
from ..llm.base import LLMMessage
from .registry import FlowRegistry

logger = structlog.get_logger()


@dataclass
class FlowResult:
    """Outcome of a nested flow.

    ``patches`` is empty unless the flow finished; the caller applies them to
    its own shared data.
    """

    flow_id: str
    status: TurnStatus
    output: str | None = None
    patches: list[SharedStatePatch] = field(default_factory=list)
    error: str | None = None
    state: ExecutionState | None = None

    @property
    def success(self) -> bool:
        return self.status is TurnStatus.FINISHED


class FlowRunner:
    """Runs nested flows looked up in a ``FlowRegistry``."""

    def __init__(self, registry: FlowRegistry):
        self.registry = registry

    async def run(
        self,
        flow_id: str,
        input: str = "",
        shared: Mapping[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> FlowResult:
        """Run ``flow_id`` with a fresh state seeded from ``shared``.

        Raises:
            FlowNotFoundError: ``flow_id`` is not registered.
        """
        definition = self.registry.lookup(flow_id)

        messages = [LLMMessage(role="user", content=input)] if input.strip() else []
        state = ExecutionState(
            messages=messages,
            shared_data=copy.deepcopy(dict(shared or {})),
            metadata={"flow_id": flow_id, "input": input},
        )

        logger.info("Running flow", flow_id=flow_id, input_chars=len(input))
        final = await definition.engine.run(state, cancel_event=cancel_event)

        patches: list[SharedStatePatch] = []
        if final.status is TurnStatus.FINISHED:
            patches = list(final.metadata.get("emitted_patches", []))

        logger.info(
            "Flow finished",
            flow_id=flow_id,
            status=final.status.value,
            patches=[p.path for p in patches],
        )
        return FlowResult(
            flow_id=flow_id,
            status=final.status,
            output=final.output,
            patches=patches,
            error=final.metadata.get("error"),
            state=final,
        )
