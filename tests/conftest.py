"""
Shared fixtures: a scripted model, a scripted summarizer and simple tools.
"""

import asyncio
from typing import Any

import pytest

from turngraph.llm.base import BaseLLM, LLMMessage, LLMResponse, ToolCall, ToolDefinition
from turngraph.tools.base import BaseTool, ToolResult
from turngraph.tools.builtin import create_default_registry
from turngraph.cli import configure_logging


class ScriptedLLM(BaseLLM):
    """Replays queued responses in order.

    A queued string becomes a plain text response; a queued exception is
    raised instead of answering.
    """

    def __init__(self, *steps: Any):
        super().__init__(api_key="test", model="scripted")
        self.steps = list(steps)
        self.calls: list[dict[str, Any]] = []

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        self.calls.append({
            "messages": list(messages),
            "tools": [t.name for t in tools or []],
            "system_prompt": system_prompt,
        })
        if not self.steps:
            raise AssertionError("ScriptedLLM ran out of responses")

        step = self.steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, str):
            return LLMResponse(content=step)
        return step

    @property
    def provider_name(self) -> str:
        return "scripted"


class HangingLLM(BaseLLM):
    """Never answers; used to exercise cancellation."""

    def __init__(self):
        super().__init__(api_key="test", model="hanging")
        self.started = asyncio.Event()

    async def generate(self, messages, tools=None, system_prompt=None) -> LLMResponse:
        self.started.set()
        await asyncio.sleep(3600)
        return LLMResponse(content="")

    @property
    def provider_name(self) -> str:
        return "hanging"


class ScriptedSummarizer:
    """Returns queued summaries (or raises queued exceptions) and keeps the prompts."""

    def __init__(self, *summaries: Any):
        self.summaries = list(summaries)
        self.prompts: list[str] = []

    async def summarize(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.summaries:
            return f"summary {len(self.prompts)}"
        step = self.summaries.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step


class EchoTool(BaseTool):
    """Echoes its text argument and records every call."""

    def __init__(self, name: str = "echo", error: BaseException | None = None):
        self._name = name
        self.error = error
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return "Echo the given text"

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"text": {"type": "string", "description": "Text to echo"}},
            "required": ["text"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return ToolResult(success=True, output=f"echo: {kwargs.get('text', '')}")


class SlowTool(EchoTool):
    """Blocks until cancelled; used to exercise cancellation during Execute."""

    def __init__(self, name: str = "slow"):
        super().__init__(name)
        self.started = asyncio.Event()

    async def execute(self, **kwargs: Any) -> ToolResult:
        self.calls.append(kwargs)
        self.started.set()
        await asyncio.sleep(3600)
        return ToolResult(success=True, output="too late")


def call(name: str, call_id: str | None = None, content: str = "", **arguments: Any) -> LLMResponse:
    """A response carrying one native tool call."""
    return LLMResponse(
        content=content,
        tool_calls=[ToolCall(name=name, arguments=arguments, id=call_id)],
    )


@pytest.fixture
def echo_tool():
    return EchoTool()


@pytest.fixture
def registry(echo_tool):
    registry = create_default_registry()
    registry.register(echo_tool)
    return registry


@pytest.fixture(autouse=True, scope="session")
def _logging():
    """Route structlog to stderr as the CLI does, keeping stdout for results."""
    configure_logging()
