"""
Context module: token-budget-aware compression of conversations.
"""

from .governor import (
    CompressionConfig,
    ContextGovernor,
    LLMSummarizer,
    Summarizer,
    partition_messages,
)
from .prompts import ACCUMULATED_CONTEXT_NAME
from .record import CompressionEntry, CompressionRecord
from .store import CompressionStore, JsonFileCompressionStore, SqlCompressionStore
from .tokens import estimate_tokens

__all__ = [
    "ACCUMULATED_CONTEXT_NAME",
    "CompressionConfig",
    "CompressionEntry",
    "CompressionRecord",
    "CompressionStore",
    "ContextGovernor",
    "JsonFileCompressionStore",
    "LLMSummarizer",
    "SqlCompressionStore",
    "Summarizer",
    "estimate_tokens",
    "partition_messages",
]
