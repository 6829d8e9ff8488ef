"""
ReAct output format: validation and tool-call detection.

Models that do not use native tool calling are expected to answer as::

    Thought: what I am about to do
    Action: tool_name
    Action Input: {"param": "value"}

Anything without an ``Action:`` line is a direct answer.
"""

import json
import re
from dataclasses import dataclass
from typing import Any

from ..llm.base import LLMMessage, ToolCall

_THOUGHT_RE = re.compile(r"^\s*Thought:\s*(.*?)(?=^\s*Action:|\Z)", re.MULTILINE | re.DOTALL)
_ACTION_RE = re.compile(r"^\s*Action:\s*([A-Za-z0-9_\-.]+)\s*$", re.MULTILINE)
_ACTION_INPUT_RE = re.compile(r"^\s*Action Input:\s*(.*)", re.MULTILINE | re.DOTALL)

CORRECTION_HINT = (
    "Your last response could not be processed: {reason}.\n"
    "Either answer directly, or call a tool using exactly this format:\n"
    "Thought: <your reasoning>\n"
    "Action: <tool name>\n"
    'Action Input: {{"param": "value"}}'
)


@dataclass
class ValidationResult:
    passed: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "reason": self.reason}


def _parse_action_input(raw: str) -> dict[str, Any] | None:
    text = raw.strip()
    # Tolerate fenced JSON
    if text.startswith("```"):
        text = text.strip("`")
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()

    decoder = json.JSONDecoder()
    try:
        value, _ = decoder.raw_decode(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def validate_message(message: LLMMessage | None) -> ValidationResult:
    """Check an assistant message against the expected format."""
    if message is None:
        return ValidationResult(passed=False, reason="no model output")

    if message.tool_calls:
        return ValidationResult(passed=True)

    text = message.text.strip()
    if not text:
        return ValidationResult(passed=False, reason="empty response")

    if _ACTION_RE.search(text):
        match = _ACTION_INPUT_RE.search(text)
        if match is None:
            return ValidationResult(passed=False, reason="'Action:' without 'Action Input:'")
        if _parse_action_input(match.group(1)) is None:
            return ValidationResult(passed=False, reason="'Action Input:' is not a JSON object")

    return ValidationResult(passed=True)


def detect_tool_call(message: LLMMessage | None) -> ToolCall | None:
    """Extract the tool call from an assistant message, if any."""
    if message is None:
        return None

    if message.tool_calls:
        return message.tool_calls[0]

    text = message.text
    action = _ACTION_RE.search(text)
    if action is None:
        return None

    arguments: dict[str, Any] = {}
    match = _ACTION_INPUT_RE.search(text)
    if match is not None:
        arguments = _parse_action_input(match.group(1)) or {}

    thought = _THOUGHT_RE.search(text)
    rationale = thought.group(1).strip() if thought else None

    return ToolCall(name=action.group(1), arguments=arguments, rationale=rationale or None)


def correction_message(result: ValidationResult) -> LLMMessage:
    return LLMMessage(
        role="system",
        content=CORRECTION_HINT.format(reason=result.reason or "invalid format"),
    )
