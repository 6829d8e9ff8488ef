"""
LLM module for multi-provider model support.

Providers:
- Anthropic Claude (native SDK)
- OpenAI GPT (native SDK)
- OpenRouter (via OpenAI-compatible endpoint)
"""

from .base import (
    BaseLLM,
    LLMMessage,
    LLMResponse,
    ToolCall,
    ToolDefinition,
    is_context_overflow_error,
)
from .anthropic import AnthropicLLM
from .openai import OpenAILLM
from .factory import create_llm, create_summarizer_llm

__all__ = [
    "BaseLLM",
    "LLMMessage",
    "LLMResponse",
    "ToolCall",
    "ToolDefinition",
    "is_context_overflow_error",
    "AnthropicLLM",
    "OpenAILLM",
    "create_llm",
    "create_summarizer_llm",
]
