"""
Terminal tools every agent role understands.

``final_answer`` and ``ask_user`` never reach the execute step: the engine
routes them straight to the end of the turn and their arguments become the
captured output. They are registered so models see their schemas.
"""

from .base import Tool, ToolParameter, ToolResult
from .policy import ToolFilterConfig
from .registry import ToolRegistry

FINAL_ANSWER = "final_answer"
ASK_USER = "ask_user"
TERMINAL_TOOLS = frozenset({FINAL_ANSWER, ASK_USER})

# Argument carrying the payload of each terminal tool
TERMINAL_PAYLOAD_KEYS = {
    FINAL_ANSWER: "answer",
    ASK_USER: "question",
}


async def _final_answer(answer: str) -> ToolResult:
    return ToolResult(success=True, output=answer)


async def _ask_user(question: str) -> ToolResult:
    return ToolResult(success=True, output=question)


def create_terminal_tools() -> list[Tool]:
    """Build the final_answer and ask_user tools."""
    final_answer = Tool(
        name=FINAL_ANSWER,
        description=(
            "Finish the task and return the final answer to the user. "
            "Call this exactly once, when the work is complete."
        ),
        parameters=[
            ToolParameter(
                name="answer",
                param_type="string",
                description="The complete final answer",
                required=True,
            ),
        ],
        handler=_final_answer,
    )

    ask_user = Tool(
        name=ASK_USER,
        description="Stop and ask the user a clarifying question when the task is ambiguous.",
        parameters=[
            ToolParameter(
                name="question",
                param_type="string",
                description="The question to ask",
                required=True,
            ),
        ],
        handler=_ask_user,
    )

    return [final_answer, ask_user]


def create_default_registry(filter_config: ToolFilterConfig | None = None) -> ToolRegistry:
    """Create a registry holding the terminal tools."""
    registry = ToolRegistry(filter_config)
    for tool in create_terminal_tools():
        registry.register(tool)
    return registry
