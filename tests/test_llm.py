"""
Tests for the LLM provider adapters.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from turngraph.config import LLMConfig
from turngraph.errors import ContextOverflowError
from turngraph.llm.anthropic import AnthropicLLM
from turngraph.llm.base import LLMMessage, ToolCall, is_context_overflow_error
from turngraph.llm.factory import create_llm
from turngraph.llm.openai import OpenAILLM


def test_overflow_detection():
    """Test overflow detection by type and message."""
    assert is_context_overflow_error(ContextOverflowError("x"))
    assert is_context_overflow_error(RuntimeError("This model's maximum context length is 128000 tokens"))
    assert not is_context_overflow_error(RuntimeError("rate limit exceeded"))


def test_factory_routes_providers():
    """Test that the factory picks the adapter for each provider."""
    assert isinstance(create_llm(LLMConfig(provider="anthropic", api_key="k")), AnthropicLLM)
    assert isinstance(create_llm(LLMConfig(provider="openai", api_key="k")), OpenAILLM)

    openrouter = create_llm(LLMConfig(provider="openrouter", api_key="k", model="openai/gpt-4o"))
    assert isinstance(openrouter, OpenAILLM)
    assert openrouter.base_url == "https://openrouter.ai/api/v1"


def test_openai_message_conversion():
    """Test converting messages to the OpenAI format."""
    llm = OpenAILLM(api_key="k")
    messages = [
        LLMMessage(role="system", content="sys"),
        LLMMessage(role="assistant", content="", tool_calls=[ToolCall(name="echo", arguments={"text": "a"}, id="c1")]),
        LLMMessage(role="tool", content="echo: a", tool_call_id="c1", name="echo"),
        LLMMessage(role="tool", content="Observation: done", name="echo"),
    ]

    converted = llm._convert_messages(messages)

    assert converted[0] == {"role": "system", "content": "sys"}
    assert converted[1]["tool_calls"][0]["function"] == {"name": "echo", "arguments": '{"text": "a"}'}
    assert converted[2] == {"role": "tool", "tool_call_id": "c1", "content": "echo: a"}
    assert converted[3] == {"role": "user", "content": "Observation: done"}


def test_anthropic_message_conversion():
    """Test converting messages to the Anthropic format."""
    llm = AnthropicLLM(api_key="k")
    messages = [
        LLMMessage(role="system", content="sys"),
        LLMMessage(role="user", content="hi"),
        LLMMessage(role="tool", content="Observation: done", name="echo"),
    ]

    converted = llm._convert_messages(messages)

    assert [m["role"] for m in converted] == ["user", "user"]
    assert converted[1]["content"] == "Observation: done"


@pytest.mark.asyncio
async def test_openai_generate_parses_tool_calls():
    """Test parsing native tool calls from an OpenAI response."""
    llm = OpenAILLM(api_key="k")
    tool_call = MagicMock(id="c1")
    tool_call.function.name = "final_answer"
    tool_call.function.arguments = '{"answer": "4"}'
    response = MagicMock(model="gpt-4o-mini")
    response.choices = [MagicMock(finish_reason="tool_calls")]
    response.choices[0].message.content = None
    response.choices[0].message.tool_calls = [tool_call]
    response.usage.prompt_tokens = 10
    response.usage.completion_tokens = 5
    llm.client = MagicMock()
    llm.client.chat.completions.create = AsyncMock(return_value=response)

    result = await llm.generate([LLMMessage(role="user", content="2+2?")])

    assert result.content == ""
    assert result.tool_calls[0].name == "final_answer"
    assert result.tool_calls[0].arguments == {"answer": "4"}
    assert result.tool_calls[0].id == "c1"
    assert result.input_tokens == 10
