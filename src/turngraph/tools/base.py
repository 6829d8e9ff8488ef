"""
Base classes for tools.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Mapping

from ..llm.base import ToolDefinition

if TYPE_CHECKING:
    from ..graph.patches import SharedStatePatch


@dataclass
class ToolResult:
    """Result from a tool execution.

    ``patches`` lets a tool hand shared-state changes back to the calling
    turn; the engine applies them after the observation is recorded.
    """

    success: bool
    output: str = ""
    data: Any = None
    error: str | None = None
    patches: list["SharedStatePatch"] = field(default_factory=list)


@dataclass
class ToolContext:
    """What a tool may see of the turn that invoked it."""

    role: str = "agent"
    shared_data: Mapping[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event | None = None


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


@dataclass
class Tool:
    """
    Simple tool wrapper that can be created from a function.

    This is an alternative to the class-based BaseTool for simpler tools.
    """

    name: str
    description: str
    parameters: list[ToolParameter]
    handler: Callable[..., Coroutine[Any, Any, ToolResult]]

    def get_parameters_schema(self) -> dict[str, Any]:
        """Convert parameters to JSON Schema format."""
        properties = {}
        required = []

        for param in self.parameters:
            prop = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default

            properties[param.name] = prop

            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    def to_definition(self) -> ToolDefinition:
        """Convert to a tool definition for the LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.get_parameters_schema(),
        )

    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool handler."""
        return await self.handler(**kwargs)

    async def invoke(self, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        """Entry point used by the registry."""
        return await self.execute(**arguments)


class BaseTool(ABC):
    """Base class for all tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the tool name."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Get the tool description."""
        pass

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """Get the tool parameters schema (JSON Schema)."""
        pass

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool with given arguments."""
        pass

    async def invoke(self, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        """Entry point used by the registry.

        Override when the tool needs the calling turn's context.
        """
        return await self.execute(**arguments)

    def to_definition(self) -> ToolDefinition:
        """Convert to a tool definition for the LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )
