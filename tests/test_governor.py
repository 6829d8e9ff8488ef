"""
Tests for the context governor: triggers, the bounded record and rebuilding.
"""

import pytest

from conftest import ScriptedLLM, ScriptedSummarizer
from turngraph.context.governor import CompressionConfig, ContextGovernor, partition_messages
from turngraph.context.prompts import ACCUMULATED_CONTEXT_HEADER, ACCUMULATED_CONTEXT_NAME
from turngraph.context.record import CompressionRecord
from turngraph.context.store import JsonFileCompressionStore
from turngraph.context.tokens import estimate_tokens
from turngraph.errors import CompressionError, ContextOverflowError
from turngraph.graph.engine import TurnEngine
from turngraph.graph.state import ExecutionState, TurnStatus
from turngraph.llm.base import LLMMessage
from turngraph.tools.builtin import create_default_registry


def conversation(filler: str = "details " * 10) -> list[LLMMessage]:
    return [
        LLMMessage(role="system", content="You are a coding agent."),
        LLMMessage(role="user", content="Build the parser."),
        LLMMessage(role="assistant", content=f"Reading the grammar. {filler}"),
        LLMMessage(role="tool", content=f"Observation: grammar.txt {filler}", name="file_read"),
        LLMMessage(role="assistant", content="The grammar has 12 rules."),
        LLMMessage(role="user", content="Now add error recovery."),
    ]


def governor_with(summarizer, **config) -> ContextGovernor:
    return ContextGovernor(summarizer, CompressionConfig(**config))


def test_estimate_tokens():
    """Test token estimation for text messages."""
    assert estimate_tokens([]) == 0
    messages = [LLMMessage(role="user", content="x" * 400)]
    assert estimate_tokens(messages) == (400 + 20) // 4


def test_estimate_tokens_counts_image_parts():
    """Test that image parts count towards the estimate."""
    text_only = [LLMMessage(role="user", content=[{"type": "text", "text": "look"}])]
    with_image = [LLMMessage(role="user", content=[
        {"type": "text", "text": "look"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
    ])]

    assert estimate_tokens(with_image) > estimate_tokens(text_only)


def test_partition_protects_system_and_users():
    """Test that the system prompt and user messages are protected."""
    messages = conversation()
    partition = partition_messages(messages)

    assert partition.system is messages[0]
    assert partition.first_user is messages[1]
    assert partition.last_user is messages[5]
    assert partition.compressible == messages[2:5]


def test_partition_skips_accumulated_context():
    """Test that accumulated context is neither protected nor compressible."""
    messages = conversation()
    accumulated = LLMMessage(role="system", content="old", name=ACCUMULATED_CONTEXT_NAME)
    messages.insert(1, accumulated)

    partition = partition_messages(messages)

    assert partition.system is messages[0]
    assert accumulated not in partition.compressible
    assert accumulated not in partition.protected


def test_config_validation():
    """Test compression config validation."""
    with pytest.raises(ValueError):
        CompressionConfig(threshold=0)
    with pytest.raises(ValueError):
        CompressionConfig(max_count=1)


# =============================================================================
# Compression
# =============================================================================


@pytest.mark.asyncio
async def test_first_compression_uses_initial_prompt():
    """Test that the first compression uses the initial prompt."""
    summarizer = ScriptedSummarizer("SUMMARY 1: parser work started")
    governor = governor_with(summarizer)
    messages = conversation()

    compressed = await governor.compress(messages)

    assert "Compress this full context" in summarizer.prompts[0]
    assert "[ASSISTANT]: Reading the grammar." in summarizer.prompts[0]
    assert [m.role for m in compressed] == ["system", "system", "user", "user"]
    assert compressed[1].name == ACCUMULATED_CONTEXT_NAME
    assert compressed[1].content == f"{ACCUMULATED_CONTEXT_HEADER}\nSUMMARY 1: parser work started"
    assert governor.history() == ["SUMMARY 1: parser work started"]


@pytest.mark.asyncio
async def test_later_compressions_are_incremental():
    """Test that later compressions include the existing summaries."""
    summarizer = ScriptedSummarizer("S1", "S2")
    governor = governor_with(summarizer)

    await governor.compress(conversation())
    compressed = await governor.compress(conversation())

    assert "INTEGRATES ALL previous information" in summarizer.prompts[1]
    assert "SUMMARY 1: S1" in summarizer.prompts[1]
    assert '"SUMMARY 2:' in summarizer.prompts[1]
    assert compressed[1].content.endswith("S1\nS2")


@pytest.mark.asyncio
async def test_protected_messages_survive_verbatim():
    """Test that protected messages are kept as they were."""
    messages = conversation()
    governor = governor_with(ScriptedSummarizer())

    compressed = await governor.compress(messages)

    assert compressed[0] is messages[0]
    assert compressed[2] is messages[1]
    assert compressed[3] is messages[5]


@pytest.mark.asyncio
async def test_single_user_message_not_duplicated():
    """Test that a lone user message appears once after rebuilding."""
    messages = conversation()[:4]
    governor = governor_with(ScriptedSummarizer())

    compressed = await governor.compress(messages)

    assert [m.role for m in compressed] == ["system", "system", "user"]


@pytest.mark.asyncio
async def test_three_compressions_with_max_count_two_merge_once():
    """Test that a third summary merges the two oldest."""
    summarizer = ScriptedSummarizer("S1", "S2", "S3", "S1+S2")
    governor = governor_with(summarizer, max_count=2)

    for _ in range(3):
        await governor.compress(conversation())

    record = governor.record
    assert len(record) == 2
    assert record.merge_count == 1
    assert record.compression_count == 3
    assert record.summaries == ["S1+S2", "S3"]
    assert record.entries[0].merged_from == (1, 2)
    assert "Merge these two older summaries" in summarizer.prompts[3]


@pytest.mark.asyncio
@pytest.mark.parametrize("max_count", [2, 3, 5])
async def test_record_never_exceeds_bound(max_count):
    governor = governor_with(ScriptedSummarizer(), max_count=max_count)

    for _ in range(max_count * 3):
        merges_before = governor.record.merge_count
        was_full = governor.record.is_full

        await governor.compress(conversation())

        assert len(governor.record) <= max_count
        assert governor.record.merge_count - merges_before == (1 if was_full else 0)


@pytest.mark.asyncio
async def test_nothing_to_compress_raises():
    """Test that an empty compressible span raises CompressionError."""
    messages = [LLMMessage(role="system", content="s"), LLMMessage(role="user", content="u")]
    governor = governor_with(ScriptedSummarizer())

    with pytest.raises(CompressionError):
        await governor.compress(messages)


@pytest.mark.asyncio
async def test_empty_summary_is_a_failure():
    """Test that an empty summary counts as a failure."""
    governor = governor_with(ScriptedSummarizer("   "))

    with pytest.raises(CompressionError):
        await governor.compress(conversation())
    assert governor.record.is_empty


@pytest.mark.asyncio
async def test_failed_merge_leaves_record_unchanged():
    """Test that a failed merge keeps the record as it was."""
    summarizer = ScriptedSummarizer("S1", "S2", "S3", RuntimeError("summarizer down"))
    governor = governor_with(summarizer, max_count=2)
    await governor.compress(conversation())
    await governor.compress(conversation())

    with pytest.raises(CompressionError):
        await governor.force_compression(conversation())

    assert governor.record.summaries == ["S1", "S2"]
    assert governor.record.compression_count == 2


# =============================================================================
# Triggers
# =============================================================================


@pytest.mark.asyncio
async def test_proactive_compression_before_model_call():
    """Usage over the threshold compresses before the next model call."""
    messages = conversation(filler="x" * 300)
    budget = int(estimate_tokens(messages) / 0.85)
    governor = governor_with(ScriptedSummarizer("S1"), threshold=0.8, max_context_tokens=budget)
    assert governor.usage_ratio(messages) >= 0.85

    llm = ScriptedLLM("Recovery added.")
    engine = TurnEngine("agent", llm, create_default_registry(), governor=governor)

    final = await engine.run(ExecutionState(messages=messages))

    sent = llm.calls[0]["messages"]
    assert len(sent) == 4
    assert sent[0] is messages[0]
    assert sent[1].name == ACCUMULATED_CONTEXT_NAME
    assert sent[3].content == "Now add error recovery."
    assert final.status is TurnStatus.FINISHED
    assert len(final.messages) == 5


@pytest.mark.asyncio
async def test_below_threshold_does_not_compress():
    """Test that messages below the threshold are left alone."""
    summarizer = ScriptedSummarizer()
    governor = governor_with(summarizer, max_context_tokens=100_000)

    messages = conversation()
    assert await governor.before_request(messages) is messages
    assert summarizer.prompts == []


@pytest.mark.asyncio
async def test_proactive_failure_proceeds_uncompressed():
    """Test that a failed proactive compression still calls the model."""
    messages = conversation(filler="x" * 300)
    governor = governor_with(
        ScriptedSummarizer(RuntimeError("rate limited")),
        max_context_tokens=estimate_tokens(messages),
    )

    assert await governor.before_request(messages) is messages
    assert governor.record.is_empty


@pytest.mark.asyncio
async def test_overflow_compresses_and_retries_once():
    """Test that an overflow compresses and retries the call once."""
    overflow = ContextOverflowError("maximum context length exceeded")
    llm = ScriptedLLM(overflow, "Recovery added.")
    governor = governor_with(ScriptedSummarizer("S1"))
    engine = TurnEngine("agent", llm, create_default_registry(), governor=governor)

    final = await engine.run(ExecutionState(messages=conversation()))

    assert final.status is TurnStatus.FINISHED
    assert len(llm.calls) == 2
    assert len(llm.calls[0]["messages"]) == 6
    assert len(llm.calls[1]["messages"]) == 4
    assert governor.history() == ["S1"]


@pytest.mark.asyncio
async def test_overflow_phrase_in_plain_error_triggers_compression():
    """Test that overflow phrases in plain errors trigger compression."""
    llm = ScriptedLLM(RuntimeError("Error: prompt is too long: 210000 tokens"), "ok")
    engine = TurnEngine("agent", llm, create_default_registry(), governor=governor_with(ScriptedSummarizer()))

    final = await engine.run(ExecutionState(messages=conversation()))

    assert final.status is TurnStatus.FINISHED


@pytest.mark.asyncio
async def test_overflow_with_failed_compression_raises_original_error():
    """Test that the original overflow is raised when compression fails."""
    overflow = ContextOverflowError("context_length_exceeded")
    llm = ScriptedLLM(overflow)
    governor = governor_with(ScriptedSummarizer(RuntimeError("summarizer down")))
    engine = TurnEngine("agent", llm, create_default_registry(), governor=governor)

    with pytest.raises(ContextOverflowError) as exc_info:
        await engine.run(ExecutionState(messages=conversation()))

    assert exc_info.value is overflow


@pytest.mark.asyncio
async def test_unrecovered_plain_overflow_error_propagates_as_overflow():
    """A provider error matched by its message leaves run() as ContextOverflowError."""
    overflow = RuntimeError("This model's maximum context length is 8192 tokens")
    governor = governor_with(ScriptedSummarizer(RuntimeError("summarizer down")))
    engine = TurnEngine("agent", ScriptedLLM(overflow), create_default_registry(), governor=governor)

    with pytest.raises(ContextOverflowError) as exc_info:
        await engine.run(ExecutionState(messages=conversation()))

    assert exc_info.value.__cause__ is overflow


@pytest.mark.asyncio
async def test_overflow_without_governor_propagates():
    """Test that an overflow without a governor propagates."""
    overflow = ContextOverflowError("too many tokens")
    engine = TurnEngine("agent", ScriptedLLM(overflow), create_default_registry())

    with pytest.raises(ContextOverflowError):
        await engine.run(ExecutionState.from_input("hi"))


@pytest.mark.asyncio
async def test_overflow_with_compression_disabled_propagates():
    """Test that an overflow with compression disabled propagates."""
    overflow = ContextOverflowError("too many tokens")
    governor = governor_with(ScriptedSummarizer(), enabled=False)
    engine = TurnEngine("agent", ScriptedLLM(overflow), create_default_registry(), governor=governor)

    with pytest.raises(ContextOverflowError):
        await engine.run(ExecutionState(messages=conversation()))


# =============================================================================
# Persistence and record access
# =============================================================================


@pytest.mark.asyncio
async def test_record_persists_across_governors(tmp_path):
    """Test that a record saved by one governor is loaded by the next."""
    store = JsonFileCompressionStore(tmp_path)
    first = ContextGovernor(ScriptedSummarizer("S1"), store=store, session_key="agent.coder")
    await first.compress(conversation())

    second = ContextGovernor(ScriptedSummarizer(), store=store, session_key="agent.coder")
    record = await second.load()

    assert record.summaries == ["S1"]


@pytest.mark.asyncio
async def test_engine_seeds_accumulated_context_from_store(tmp_path):
    """Test that a persisted record is injected when a turn starts."""
    store = JsonFileCompressionStore(tmp_path)
    await store.save("agent.coder", CompressionRecord(max_count=5).appended("S1"))
    governor = ContextGovernor(ScriptedSummarizer(), store=store, session_key="agent.coder")
    llm = ScriptedLLM("ok")
    engine = TurnEngine("coder", llm, create_default_registry(), system_prompt="sys", governor=governor)

    await engine.run(ExecutionState.from_input("continue"))

    sent = llm.calls[0]["messages"]
    assert [m.role for m in sent] == ["system", "system", "user"]
    assert sent[1].name == ACCUMULATED_CONTEXT_NAME
    assert "S1" in sent[1].content


@pytest.mark.asyncio
async def test_persist_failure_keeps_compression(tmp_path):
    """Test that a failed save does not undo the compression."""
    class BrokenStore(JsonFileCompressionStore):
        async def save(self, session_key, record):
            raise OSError("read-only file system")

    governor = ContextGovernor(ScriptedSummarizer("S1"), store=BrokenStore(tmp_path))

    compressed = await governor.compress(conversation())

    assert len(compressed) == 4
    assert governor.history() == ["S1"]


@pytest.mark.asyncio
async def test_clear_drops_persisted_record(tmp_path):
    """Test that clear removes the persisted record."""
    store = JsonFileCompressionStore(tmp_path)
    governor = ContextGovernor(ScriptedSummarizer("S1"), store=store, session_key="s")
    await governor.compress(conversation())

    await governor.clear()

    assert governor.record.is_empty
    assert await store.load("s") is None


@pytest.mark.asyncio
async def test_stats():
    """Test compression statistics."""
    governor = governor_with(ScriptedSummarizer("S" * 150), max_count=3)
    await governor.compress(conversation())

    stats = governor.stats()

    assert stats["compression_count"] == 1
    assert stats["current_compressions"] == 1
    assert stats["max_compressions"] == 3
    assert stats["history"][0]["preview"].endswith("...")
    assert stats["history"][0]["length"] == 150
