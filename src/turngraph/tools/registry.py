"""
Tool registry for managing available tools.

A registry is an ordinary object: build one per process (or per test) and
pass it to the engines that need it. Register tools before any engine runs;
the registry is read-only while turns execute.
"""

from typing import Any, Union

import structlog

from ..errors import FATAL_ERRORS
from ..llm.base import ToolDefinition, is_context_overflow_error
from .base import BaseTool, Tool, ToolContext, ToolResult
from .policy import ToolFilterConfig, ToolPolicy, resolve_policy

logger = structlog.get_logger()

AnyTool = Union[BaseTool, Tool]


class ToolRegistry:
    """Registry for managing tools."""

    def __init__(self, filter_config: ToolFilterConfig | None = None):
        self._tools: dict[str, AnyTool] = {}
        self.filter_config = filter_config or ToolFilterConfig()

    def register(self, tool: AnyTool) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool
        logger.info("Tool registered", tool_name=tool.name)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            logger.info("Tool unregistered", tool_name=name)

    def get(self, name: str) -> AnyTool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[AnyTool]:
        """List all registered tools."""
        return list(self._tools.values())

    def list_names(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def resolve(self, policy: ToolPolicy | None) -> list[AnyTool]:
        """Tools usable under ``policy``, after environment filtering."""
        return resolve_policy(self.list_tools(), policy, self.filter_config)

    def allowed_names(self, policy: ToolPolicy | None) -> list[str]:
        return [tool.name for tool in self.resolve(policy)]

    def get_definitions(self, policy: ToolPolicy | None = None) -> list[ToolDefinition]:
        """Get tool definitions for the LLM, restricted to ``policy``."""
        return [tool.to_definition() for tool in self.resolve(policy)]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolContext | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Tool exceptions become failed results. Errors that end the turn
        (unrecoverable overflow, unknown flow, cancellation) propagate.
        """
        tool = self.get(name)
        if tool is None:
            return ToolResult(
                success=False,
                output="",
                error=f"Tool '{name}' not found",
            )

        try:
            logger.info("Executing tool", tool_name=name, arguments=arguments)
            result = await tool.invoke(arguments, context or ToolContext())
            logger.info("Tool executed", tool_name=name, success=result.success)
            return result
        except FATAL_ERRORS:
            raise
        except Exception as e:
            if is_context_overflow_error(e):
                raise
            logger.error("Tool execution error", tool_name=name, error=str(e))
            return ToolResult(
                success=False,
                output="",
                error=str(e),
            )
