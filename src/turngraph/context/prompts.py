"""
Prompt templates for the summarizer.

The same summarizer serves all three operations; only the template differs.
"""

from ..llm.base import LLMMessage

ACCUMULATED_CONTEXT_NAME = "accumulated_context"
ACCUMULATED_CONTEXT_HEADER = "ACCUMULATED SESSION CONTEXT:"

INITIAL_TEMPLATE = """You are an expert at summarizing software development conversations.

Compress this full context into a concise summary (max {max_tokens} tokens):
{context}

Required format: "SUMMARY 1: [your summary]"

Preserve:
- Main goals of the project or session
- Essential technical context
- Early decisions and requirements
- Files and technologies mentioned

Reply ONLY with the summary in the required format, without additional comments."""

INCREMENTAL_TEMPLATE = """You are managing the accumulated context of a long development conversation.

Previous accumulated summaries:
{summaries}

New recent context:
{context}

Write a new summary that INTEGRATES ALL previous information with the new context
(max {max_tokens} tokens).

Required format: "SUMMARY {sequence}: [new integrated summary]"

Keep:
- Accumulated project progress
- Important decisions from every stage
- Solved problems and open items
- Continuity of the technical context

Reply ONLY with the summary in the required format, without additional comments."""

MERGE_TEMPLATE = """Merge these two older summaries into a single cohesive summary:

SUMMARY A: {first}
SUMMARY B: {second}

Write a combined summary (max {max_tokens} tokens) that keeps what matters from both.
Format: "COMBINED SUMMARY: [unified summary]"

Reply ONLY with the combined summary in the required format, without additional comments."""


def format_transcript(messages: list[LLMMessage]) -> str:
    """Render messages as the plain-text span handed to the summarizer."""
    parts = []
    for message in messages:
        text = message.text
        if message.tool_calls:
            calls = ", ".join(f"{c.name}({c.arguments})" for c in message.tool_calls)
            text = f"{text}\n[tool calls: {calls}]" if text else f"[tool calls: {calls}]"
        parts.append(f"[{message.role.upper()}]: {text}")
    return "\n\n".join(parts)


def build_initial_prompt(context: str, max_tokens: int) -> str:
    return INITIAL_TEMPLATE.format(context=context, max_tokens=max_tokens)


def build_incremental_prompt(
    summaries: list[str],
    context: str,
    sequence: int,
    max_tokens: int,
) -> str:
    numbered = "\n".join(f"SUMMARY {i}: {s}" for i, s in enumerate(summaries, start=1))
    return INCREMENTAL_TEMPLATE.format(
        summaries=numbered,
        context=context,
        sequence=sequence,
        max_tokens=max_tokens,
    )


def build_merge_prompt(first: str, second: str, max_tokens: int) -> str:
    return MERGE_TEMPLATE.format(first=first, second=second, max_tokens=max_tokens)


def format_accumulated_context(summaries: list[str]) -> str:
    if not summaries:
        return ""
    return ACCUMULATED_CONTEXT_HEADER + "\n" + "\n".join(summaries)
