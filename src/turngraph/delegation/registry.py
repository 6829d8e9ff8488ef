"""
Delegation registry: flow identifier -> turn engine.

Register every flow at startup; looking up an unknown identifier is a
configuration error and raises ``FlowNotFoundError``.
"""

from dataclasses import dataclass

import structlog

from ..errors import FlowNotFoundError
from ..graph.engine import TurnEngine

logger = structlog.get_logger()


@dataclass
class FlowDefinition:
    """A nested flow a supervisor may call by name."""

    flow_id: str
    engine: TurnEngine
    description: str = ""
    version: str = "1"


class FlowRegistry:
    """Registry of delegation targets."""

    def __init__(self) -> None:
        self._flows: dict[str, FlowDefinition] = {}

    def register(self, flow_id: str, definition: FlowDefinition) -> None:
        if flow_id in self._flows:
            raise ValueError(f"Flow '{flow_id}' is already registered")
        self._flows[flow_id] = definition
        logger.info("Flow registered", flow_id=flow_id, engine=definition.engine.name)

    def lookup(self, flow_id: str) -> FlowDefinition:
        definition = self._flows.get(flow_id)
        if definition is None:
            raise FlowNotFoundError(flow_id, self.list_flows())
        return definition

    def list_flows(self) -> list[str]:
        return list(self._flows.keys())

    def __contains__(self, flow_id: object) -> bool:
        return flow_id in self._flows

    def __len__(self) -> int:
        return len(self._flows)
