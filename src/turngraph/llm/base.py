"""
Base classes for LLM providers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from ..errors import ContextOverflowError

# Phrases providers use when a request does not fit the context window.
OVERFLOW_SIGNALS = (
    "maximum context length",
    "too many tokens",
    "context length exceeded",
    "context_length_exceeded",
    "token limit",
    "maximum tokens",
    "context window",
    "tokens exceed",
    "prompt is too long",
)

ContentPart = dict[str, Any]


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(eq=False)
class ToolCall:
    """A tool invocation requested by the model.

    Two calls are equal when they name the same tool.
    """

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    rationale: str | None = None
    id: str | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ToolCall):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)


@dataclass
class LLMMessage:
    """A message in the conversation."""

    role: Literal["user", "assistant", "system", "tool"]
    content: str | list[ContentPart]
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    @property
    def text(self) -> str:
        """Plain-text view of the content, ignoring non-text parts."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            str(part.get("text", ""))
            for part in self.content
            if part.get("type") == "text"
        )


@dataclass
class LLMResponse:
    """Response from an LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    stop_reason: str | None = None
    raw_response: Any = None


def is_context_overflow_error(error: BaseException) -> bool:
    """Check whether an error signals a context-window overflow."""
    if isinstance(error, ContextOverflowError):
        return True
    message = str(error).lower()
    return any(signal in message for signal in OVERFLOW_SIGNALS)


class BaseLLM(ABC):
    """Base class for LLM providers."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature

    @abstractmethod
    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        """Generate a response from the LLM.

        Implementations raise ContextOverflowError when the provider rejects
        the request because it does not fit the context window.
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass
