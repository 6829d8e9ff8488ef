"""
Execution state passed between turn graph nodes.

Nodes never mutate an ``ExecutionState``. They return a ``NodeUpdate`` and the
engine derives the next state from it, so a caller always observes a
complete state with a single, unambiguous status.
"""

import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from ..llm.base import LLMMessage, ToolCall
from .patches import SharedStatePatch, apply_patches


class TurnStatus(str, Enum):
    """Lifecycle of a turn."""

    RUNNING = "running"
    FINISHED = "finished"
    ERROR = "error"
    EXHAUSTED = "exhausted"  # step cap reached

    @property
    def is_terminal(self) -> bool:
        return self is not TurnStatus.RUNNING


class _Clear:
    """Marker asking the engine to reset an optional field."""

    def __repr__(self) -> str:
        return "CLEAR"


CLEAR: Any = _Clear()

# Metadata that only describes the turn that just ended
PER_TURN_METADATA = frozenset({
    "final_output",
    "error",
    "validation",
    "delegation_gates",
    "delegation_required",
    "plan_injected",
    "output_injected",
    "emitted_patches",
})


@dataclass
class ExecutionState:
    """The unit of work of a turn."""

    messages: list[LLMMessage] = field(default_factory=list)
    status: TurnStatus = TurnStatus.RUNNING
    last_tool_call: ToolCall | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    shared_data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_input(
        cls,
        text: str,
        shared_data: dict[str, Any] | None = None,
    ) -> "ExecutionState":
        """Seed a state from a single user message."""
        return cls(
            messages=[LLMMessage(role="user", content=text)],
            shared_data=copy.deepcopy(shared_data or {}),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def output(self) -> str | None:
        """Output captured when the turn finished."""
        return self.metadata.get("final_output")

    @property
    def last_assistant_message(self) -> LLMMessage | None:
        for message in reversed(self.messages):
            if message.role == "assistant":
                return message
        return None

    def reset(self) -> "ExecutionState":
        """Return a RUNNING copy so a terminal state can be resumed.

        Per-turn bookkeeping is dropped so the resumed turn starts fresh;
        the trail and the seed marker are kept.
        """
        metadata = {
            k: v for k, v in self.metadata.items()
            if k not in PER_TURN_METADATA
        }
        return replace(
            self,
            messages=list(self.messages),
            status=TurnStatus.RUNNING,
            last_tool_call=None,
            metadata=metadata,
            shared_data=copy.deepcopy(self.shared_data),
        )

    def add_user_message(self, content: str) -> "ExecutionState":
        """Return a copy with a user message appended."""
        return replace(self, messages=[*self.messages, LLMMessage(role="user", content=content)])


@dataclass
class NodeUpdate:
    """Partial result of a node.

    ``messages`` are appended; ``replace_messages`` swaps the whole history
    first (used by compression). ``metadata`` is merged shallowly.
    ``shared_patch`` is applied to shared data and recorded under
    ``metadata["emitted_patches"]``. ``next_node`` overrides routing.
    """

    messages: list[LLMMessage] = field(default_factory=list)
    replace_messages: list[LLMMessage] | None = None
    status: TurnStatus | None = None
    last_tool_call: Any = None  # ToolCall, CLEAR or None (unchanged)
    metadata: dict[str, Any] = field(default_factory=dict)
    shared_patch: list[SharedStatePatch] = field(default_factory=list)
    next_node: Any = None

    def apply(self, state: ExecutionState) -> ExecutionState:
        """Derive the next state."""
        base = self.replace_messages if self.replace_messages is not None else state.messages
        messages = [*base, *self.messages]

        if self.last_tool_call is CLEAR:
            last_tool_call = None
        elif self.last_tool_call is not None:
            last_tool_call = self.last_tool_call
        else:
            last_tool_call = state.last_tool_call

        metadata = {**state.metadata, **self.metadata}
        shared_data = state.shared_data
        if self.shared_patch:
            shared_data = apply_patches(state.shared_data, self.shared_patch)
            metadata["emitted_patches"] = [
                *state.metadata.get("emitted_patches", []),
                *self.shared_patch,
            ]

        return replace(
            state,
            messages=messages,
            status=self.status or state.status,
            last_tool_call=last_tool_call,
            metadata=metadata,
            shared_data=shared_data,
        )
