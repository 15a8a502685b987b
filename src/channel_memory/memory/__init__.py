"""
Tiered channel memory.

Captures channel messages into a raw tier, compacts them on a daily tick
into progressively coarser summaries, and loads a token-budgeted context
for the agent:

- raw      per-day JSON Lines of captured messages (ingestion buffer)
- daily    one summary per day
- weekly   one summary per ISO week (compacted on Mondays)
- monthly  one summary per month (compacted on the 1st, with retention)
"""

from .buffer import IngestionBuffer
from .compaction import CompactionEngine, CompactionReport
from .config import MemoryConfig
from .event_log import MemoryEventLog, MemoryLogEntry
from .retriever import (
    LoadedMemory,
    MemoryLoadResult,
    MemoryRetriever,
    format_memories,
    format_server_memories,
    upsert_memory_section,
)
from .storage import SERVER_SCOPE, ChannelInfo, RawEntry, Tier, TierStore
from .summarizer import SummaryResult, TierSummarizer
from .token_budget import estimate_tokens, truncate_to_token_budget

__all__ = [
    "SERVER_SCOPE",
    "ChannelInfo",
    "CompactionEngine",
    "CompactionReport",
    "IngestionBuffer",
    "LoadedMemory",
    "MemoryConfig",
    "MemoryEventLog",
    "MemoryLoadResult",
    "MemoryLogEntry",
    "MemoryRetriever",
    "RawEntry",
    "SummaryResult",
    "Tier",
    "TierStore",
    "TierSummarizer",
    "estimate_tokens",
    "format_memories",
    "format_server_memories",
    "truncate_to_token_budget",
    "upsert_memory_section",
]
