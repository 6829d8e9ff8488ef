"""
Context Governor - token-budget-aware, accumulative conversation compression.

One governor owns the compression record of one session. Before every model
call it checks the estimated token usage and compresses proactively once the
threshold is crossed; when the provider still reports an overflow it
compresses on demand so the call can be retried once.

Compression never touches the protected messages (first system message,
first user message, last user message). Everything else is summarized into
the record, which holds at most ``max_count`` summaries: when a new summary
would exceed the bound, the two oldest are merged first.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from ..errors import CompressionError
from ..llm.base import BaseLLM, LLMMessage
from .prompts import (
    ACCUMULATED_CONTEXT_NAME,
    build_incremental_prompt,
    build_initial_prompt,
    build_merge_prompt,
    format_accumulated_context,
    format_transcript,
)
from .record import CompressionRecord
from .store import CompressionStore
from .tokens import estimate_tokens

logger = structlog.get_logger()

DEFAULT_THRESHOLD = 0.8  # Compress when 80% of budget used
DEFAULT_MAX_COUNT = 5
DEFAULT_MAX_SUMMARY_TOKENS = 300
DEFAULT_MAX_CONTEXT_TOKENS = 128_000

# Merged summaries cover twice the history; give them a little more room
MERGE_EXTRA_TOKENS = 100

SUMMARIZER_SYSTEM_PROMPT = "You are a conversation summarizer. Create concise, fact-preserving summaries."


@dataclass
class CompressionConfig:
    """Configuration for context compression."""

    enabled: bool = True
    threshold: float = DEFAULT_THRESHOLD
    max_count: int = DEFAULT_MAX_COUNT
    max_summary_tokens: int = DEFAULT_MAX_SUMMARY_TOKENS
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS
    persist: bool = True

    def __post_init__(self) -> None:
        if not 0 < self.threshold <= 1:
            raise ValueError("threshold must be in (0, 1]")
        if self.max_count < 2:
            raise ValueError("max_count must be at least 2")
        if self.max_context_tokens <= 0:
            raise ValueError("max_context_tokens must be positive")


class Summarizer(Protocol):
    async def summarize(self, prompt: str) -> str: ...


class LLMSummarizer:
    """Summarizer backed by a chat model."""

    def __init__(self, llm: BaseLLM):
        self.llm = llm

    async def summarize(self, prompt: str) -> str:
        response = await self.llm.generate(
            messages=[LLMMessage(role="user", content=prompt)],
            system_prompt=SUMMARIZER_SYSTEM_PROMPT,
        )
        return response.content.strip()


@dataclass
class _Partition:
    system: LLMMessage | None
    first_user: LLMMessage | None
    last_user: LLMMessage | None
    compressible: list[LLMMessage]

    @property
    def protected(self) -> list[LLMMessage]:
        protected = [m for m in (self.system, self.first_user) if m is not None]
        if self.last_user is not None and self.last_user is not self.first_user:
            protected.append(self.last_user)
        return protected


def is_accumulated_context(message: LLMMessage) -> bool:
    return message.name == ACCUMULATED_CONTEXT_NAME


def partition_messages(messages: list[LLMMessage]) -> _Partition:
    """Split messages into the protected ones and the compressible span.

    Previously injected accumulated-context messages belong to neither: their
    content already lives in the record.
    """
    system_index = next(
        (i for i, m in enumerate(messages) if m.role == "system" and not is_accumulated_context(m)),
        None,
    )
    user_indices = [i for i, m in enumerate(messages) if m.role == "user"]
    first_user = user_indices[0] if user_indices else None
    last_user = user_indices[-1] if user_indices else None

    protected = {i for i in (system_index, first_user, last_user) if i is not None}
    compressible = [
        m for i, m in enumerate(messages)
        if i not in protected and not is_accumulated_context(m)
    ]

    return _Partition(
        system=messages[system_index] if system_index is not None else None,
        first_user=messages[first_user] if first_user is not None else None,
        last_user=messages[last_user] if last_user is not None else None,
        compressible=compressible,
    )


class ContextGovernor:
    """Keeps one session's conversation within its token budget.

    Engines that share a session key must share one governor; ``lock``
    serializes compressions so no update to the record is lost.
    """

    def __init__(
        self,
        summarizer: Summarizer,
        config: CompressionConfig | None = None,
        store: CompressionStore | None = None,
        session_key: str = "default",
    ):
        self.summarizer = summarizer
        self.config = config or CompressionConfig()
        self.store = store
        self.session_key = session_key
        self.record = CompressionRecord(max_count=self.config.max_count)
        self.lock = asyncio.Lock()
        self._loaded = False

    @property
    def persistent(self) -> bool:
        return self.store is not None and self.config.persist

    async def load(self) -> CompressionRecord:
        """Load the persisted record once; a missing record is an empty start."""
        if self._loaded:
            return self.record
        self._loaded = True

        if self.persistent:
            record = await self.store.load(self.session_key, max_count=self.config.max_count)
            if record is not None:
                self.record = record
                logger.info(
                    "Loaded compression record",
                    session=self.session_key,
                    entries=len(record),
                )
        return self.record

    # =========================================================================
    # Triggers
    # =========================================================================

    def usage_ratio(self, messages: list[LLMMessage]) -> float:
        return estimate_tokens(messages) / self.config.max_context_tokens

    def should_compress(self, messages: list[LLMMessage]) -> bool:
        return self.config.enabled and self.usage_ratio(messages) >= self.config.threshold

    async def before_request(self, messages: list[LLMMessage]) -> list[LLMMessage]:
        """Proactive trigger, run before every model call.

        Best effort: a failed compression is logged and the original messages
        are returned unchanged.
        """
        if not self.should_compress(messages):
            return messages

        logger.info(
            "Context approaching limit, running compression",
            session=self.session_key,
            usage_ratio=round(self.usage_ratio(messages), 3),
            threshold=self.config.threshold,
        )
        try:
            return await self.compress(messages)
        except CompressionError as e:
            logger.warning("Proactive compression failed, continuing uncompressed", error=str(e))
            return messages

    async def handle_overflow(
        self,
        error: BaseException,
        messages: list[LLMMessage],
    ) -> list[LLMMessage]:
        """Emergency trigger, run when the model reported an overflow.

        Re-raises ``error`` itself when compression is disabled or fails.
        """
        if not self.config.enabled:
            raise error

        logger.warning("Token overflow detected, running emergency compression", session=self.session_key)
        try:
            return await self.compress(messages)
        except CompressionError as e:
            logger.error("Emergency compression failed", error=str(e))
            raise error from e

    async def force_compression(self, messages: list[LLMMessage]) -> list[LLMMessage]:
        """Compress now, regardless of token usage."""
        if not self.config.enabled:
            raise CompressionError("Compression is disabled")
        return await self.compress(messages)

    # =========================================================================
    # Compression
    # =========================================================================

    async def _summarize(self, prompt: str) -> str:
        try:
            summary = await self.summarizer.summarize(prompt)
        except CompressionError:
            raise
        except Exception as e:
            raise CompressionError(f"Summarization failed: {e}") from e

        if not summary or not summary.strip():
            raise CompressionError("Summarizer returned an empty summary")
        return summary.strip()

    async def compress(self, messages: list[LLMMessage]) -> list[LLMMessage]:
        """Summarize the compressible span and rebuild the message list.

        Raises:
            CompressionError: nothing to compress, or summarization failed.
                The record is left untouched in that case.
        """
        async with self.lock:
            await self.load()

            partition = partition_messages(messages)
            if not partition.compressible:
                raise CompressionError("Nothing to compress")

            context = format_transcript(partition.compressible)
            record = self.record
            max_tokens = self.config.max_summary_tokens

            if record.is_empty:
                summary = await self._summarize(build_initial_prompt(context, max_tokens))
            else:
                summary = await self._summarize(
                    build_incremental_prompt(record.summaries, context, record.next_sequence, max_tokens)
                )

            if record.is_full:
                first, second = record.entries[0], record.entries[1]
                merged = await self._summarize(
                    build_merge_prompt(first.summary, second.summary, max_tokens + MERGE_EXTRA_TOKENS)
                )
                record = record.merged_oldest(merged)
                logger.info(
                    "Merged oldest summaries",
                    session=self.session_key,
                    merged=[first.sequence, second.sequence],
                )

            self.record = record.appended(summary)
            await self._persist()

            compressed = self.rebuild(partition)
            logger.info(
                "Compression complete",
                session=self.session_key,
                sequence=self.record.compression_count,
                entries=len(self.record),
                original=len(messages),
                compacted=len(compressed),
                tokens_before=estimate_tokens(messages),
                tokens_after=estimate_tokens(compressed),
            )
            return compressed

    def rebuild(self, partition: _Partition) -> list[LLMMessage]:
        """[system, accumulated context, first user, last user]"""
        rebuilt: list[LLMMessage] = []
        if partition.system is not None:
            rebuilt.append(partition.system)
        accumulated = self.accumulated_message()
        if accumulated is not None:
            rebuilt.append(accumulated)
        if partition.first_user is not None:
            rebuilt.append(partition.first_user)
        if partition.last_user is not None and partition.last_user is not partition.first_user:
            rebuilt.append(partition.last_user)
        return rebuilt

    async def _persist(self) -> None:
        if not self.persistent:
            return
        try:
            await self.store.save(self.session_key, self.record)
        except Exception as e:
            logger.error("Failed to persist compression record", session=self.session_key, error=str(e))

    # =========================================================================
    # Record access
    # =========================================================================

    def accumulated_context(self) -> str:
        return format_accumulated_context(self.record.summaries)

    def accumulated_message(self) -> LLMMessage | None:
        """System message carrying every current summary, if any."""
        if self.record.is_empty:
            return None
        return LLMMessage(
            role="system",
            content=self.accumulated_context(),
            name=ACCUMULATED_CONTEXT_NAME,
        )

    def history(self) -> list[str]:
        return list(self.record.summaries)

    def stats(self) -> dict[str, Any]:
        return {
            "session": self.session_key,
            "enabled": self.config.enabled,
            "threshold": self.config.threshold,
            "compression_count": self.record.compression_count,
            "merge_count": self.record.merge_count,
            "current_compressions": len(self.record),
            "max_compressions": self.record.max_count,
            "history": [
                {
                    "sequence": entry.sequence,
                    "merged_from": list(entry.merged_from),
                    "preview": entry.summary[:100] + ("..." if len(entry.summary) > 100 else ""),
                    "length": len(entry.summary),
                }
                for entry in self.record.entries
            ],
        }

    async def clear(self) -> None:
        """Drop every summary, including the persisted copy."""
        async with self.lock:
            self.record = CompressionRecord(max_count=self.config.max_count)
            self._loaded = True
            if self.persistent:
                await self.store.delete(self.session_key)
        logger.info("Compression record cleared", session=self.session_key)
