"""
Tools module: tool base classes, the registry and role policies.
"""

from .base import BaseTool, Tool, ToolContext, ToolParameter, ToolResult
from .builtin import (
    ASK_USER,
    FINAL_ANSWER,
    TERMINAL_TOOLS,
    create_default_registry,
    create_terminal_tools,
)
from .policy import ToolFilterConfig, ToolPolicy, filter_tools, resolve_policy
from .registry import ToolRegistry

__all__ = [
    "BaseTool",
    "Tool",
    "ToolContext",
    "ToolParameter",
    "ToolResult",
    "ToolRegistry",
    "ToolPolicy",
    "ToolFilterConfig",
    "filter_tools",
    "resolve_policy",
    "ASK_USER",
    "FINAL_ANSWER",
    "TERMINAL_TOOLS",
    "create_default_registry",
    "create_terminal_tools",
]
