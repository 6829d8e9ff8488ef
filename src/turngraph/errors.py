"""
Exception types shared across the turn engine, context governor and delegation.

Recoverable conditions (validation failures, tool errors, policy violations)
never surface as exceptions; they are folded back into the conversation.
Only the types below leave the engine.
"""

from typing import Any


class TurnGraphError(Exception):
    """Base class for all turngraph errors."""


class ContextOverflowError(TurnGraphError):
    """The model rejected a request because the context window is full."""


class CompressionError(TurnGraphError):
    """Summarization could not produce a usable compression."""


class FlowNotFoundError(TurnGraphError, KeyError):
    """A delegation target was requested that was never registered."""

    def __init__(self, flow_id: str, available: list[str] | None = None):
        self.flow_id = flow_id
        self.available = available or []
        message = f"Flow '{flow_id}' is not registered"
        if self.available:
            message += f" (registered: {', '.join(self.available)})"
        super().__init__(message)

    def __str__(self) -> str:
        return self.args[0]


class TurnStateError(TurnGraphError):
    """An engine was asked to run a state that is already terminal."""


class TurnCancelledError(TurnGraphError):
    """The caller cancelled a running turn.

    ``state`` is the last consistent state observed before cancellation; its
    status is still RUNNING so the caller can inspect or discard it.
    """

    def __init__(self, message: str = "Turn cancelled", state: Any = None):
        super().__init__(message)
        self.state = state


class AgentDefinitionError(TurnGraphError):
    """An agent definition file is malformed or missing required fields."""


# Errors that must propagate through tool execution instead of being turned
# into corrective messages.
FATAL_ERRORS: tuple[type[BaseException], ...] = (
    ContextOverflowError,
    FlowNotFoundError,
    TurnCancelledError,
)
