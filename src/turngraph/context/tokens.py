"""
Token estimation.

A character-based heuristic is good enough to decide when to compress; it
errs on the conservative side for English text and code.
"""

from ..llm.base import LLMMessage

# Approximate tokens per character (conservative estimate)
CHARS_PER_TOKEN = 4

# Role markers and formatting per message
MESSAGE_OVERHEAD_CHARS = 20

# Flat cost of an image part, in characters
IMAGE_PART_CHARS = 85 * CHARS_PER_TOKEN


def _message_chars(message: LLMMessage) -> int:
    if isinstance(message.content, str):
        chars = len(message.content)
    else:
        chars = 0
        for part in message.content:
            if part.get("type") == "text":
                chars += len(str(part.get("text", "")))
            else:
                chars += IMAGE_PART_CHARS

    for call in message.tool_calls or []:
        chars += len(call.name) + len(str(call.arguments))
    return chars


def estimate_text_tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN


def estimate_tokens(messages: list[LLMMessage]) -> int:
    """Estimate token count for a list of messages."""
    total_chars = sum(_message_chars(m) for m in messages)
    overhead = len(messages) * MESSAGE_OVERHEAD_CHARS
    return (total_chars + overhead) // CHARS_PER_TOKEN
