"""
Channel memory runtime.

Composition root for the tiered memory store: owns one tier store, one
ingestion buffer, the compaction engine and the retriever, and exposes
the operations the bot calls:

- chat transport:  record_channel_message / record_thread_reply
- agent call:      load_memories_for_channel / load_memories_for_server,
                   populate_memory_section
- scheduler:       run_daily_compaction / compaction_loop
"""

import asyncio
import logging
import os
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from dotenv import load_dotenv
from langchain.chat_models import init_chat_model

from .memory import (
    ChannelInfo,
    CompactionEngine,
    CompactionReport,
    IngestionBuffer,
    MemoryConfig,
    MemoryEventLog,
    MemoryLoadResult,
    MemoryRetriever,
    RawEntry,
    TierStore,
    TierSummarizer,
    format_memories,
    format_server_memories,
    upsert_memory_section,
)
from .memory.compaction import UsageTracker
from .memory.periods import utc_now

logger = logging.getLogger(__name__)


# Load environment variables (override=True lets .env win over the process env)
load_dotenv(override=True)


ChannelsProvider = Callable[[], Union[list[ChannelInfo], Awaitable[list[ChannelInfo]]]]


def get_credentials() -> tuple[str | None, str | None]:
    """
    Resolve API credentials for the summarizer model.

    Generic variables win over Anthropic-specific ones:
    - API key: API_KEY > ANTHROPIC_API_KEY > ANTHROPIC_AUTH_TOKEN
    - Base URL: API_BASE_URL > ANTHROPIC_BASE_URL
    """
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
        or os.getenv("ANTHROPIC_AUTH_TOKEN")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("ANTHROPIC_BASE_URL")
    return api_key, base_url


def create_summary_llm(config: MemoryConfig):
    """Build the summarizer chat model, or None if it cannot be created."""
    api_key, base_url = get_credentials()
    if not api_key:
        logger.warning("No API key configured; memory summaries will be kept verbatim")
        return None

    init_kwargs = {"temperature": 0.3, "max_tokens": 2000, "api_key": api_key}
    if base_url:
        init_kwargs["base_url"] = base_url

    provider_kwargs = {}
    model_provider = os.getenv("MODEL_PROVIDER")
    if model_provider:
        provider_kwargs["model_provider"] = model_provider

    try:
        return init_chat_model(config.summary_model, **provider_kwargs, **init_kwargs)
    except Exception as e:
        logger.warning("Failed to create summarizer LLM: %s", e)
        return None


def seconds_until_next_tick(now: datetime, hour_utc: int) -> float:
    """Seconds from ``now`` (UTC) until the next ``hour_utc``:00."""
    target = now.replace(hour=hour_utc % 24, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class ChannelMemoryRuntime:
    """
    Owns the memory components for one bot process.

    Usage:
        runtime = ChannelMemoryRuntime(MemoryConfig.from_env())
        await runtime.start()
        runtime.record_channel_message("123", "alice", "hello", channel_name="general")
        section = await runtime.build_memory_section("123")
        ...
        await runtime.shutdown()
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        llm=None,
        usage_tracker: Optional[UsageTracker] = None,
        store: Optional[TierStore] = None,
    ):
        self.config = config or MemoryConfig.from_env()
        self.store = store or TierStore(self.config.memories_path)
        self.event_log = (
            MemoryEventLog(self.config.event_log_path)
            if self.config.event_log_enabled
            else None
        )
        self.buffer = IngestionBuffer(
            self.store,
            throttle_seconds=self.config.flush_throttle_seconds,
            server_wide=self.config.server_wide,
        )
        self.summarizer = TierSummarizer(
            llm=llm if llm is not None else create_summary_llm(self.config),
            timeout_seconds=self.config.summary_timeout_seconds,
            max_input_chars=self.config.summary_max_input_chars,
        )
        self.compaction = CompactionEngine(
            self.store,
            self.summarizer,
            buffer=self.buffer,
            event_log=self.event_log,
            usage_tracker=usage_tracker,
            retention_months=self.config.retention_months,
            server_wide=self.config.server_wide,
            cost_per_million_tokens=self.config.summary_cost_per_million_tokens,
        )
        self.retriever = MemoryRetriever(
            self.store, buffer=self.buffer, event_log=self.event_log
        )
        self._compaction_task: Optional[asyncio.Task] = None

    # ── Lifecycle ──

    async def start(self) -> int:
        """Rehydrate the buffer from uncompacted raw files."""
        logger.info(
            "Starting channel memory in %s (%s mode, budget %d tokens)",
            self.config.memories_path,
            "server-wide" if self.config.server_wide else "per-channel",
            self.config.token_budget,
        )
        return await self.buffer.load_from_disk()

    async def shutdown(self) -> None:
        """Stop the compaction loop and persist everything still buffered."""
        if self._compaction_task:
            self._compaction_task.cancel()
            await asyncio.gather(self._compaction_task, return_exceptions=True)
            self._compaction_task = None
        await self.buffer.flush_all()
        logger.info("Channel memory shut down")

    # ── Ingestion ──

    def record_channel_message(
        self,
        channel_id: str,
        author: str,
        text: str,
        **kwargs,
    ) -> RawEntry:
        return self.buffer.record_channel_message(channel_id, author, text, **kwargs)

    def record_thread_reply(
        self,
        channel_id: str,
        thread_id: str,
        author: str,
        text: str,
        **kwargs,
    ) -> RawEntry:
        return self.buffer.record_thread_reply(channel_id, thread_id, author, text, **kwargs)

    # ── Retrieval ──

    async def load_memories_for_channel(
        self, channel_id: str, token_budget: Optional[int] = None
    ) -> MemoryLoadResult:
        budget = self.config.token_budget if token_budget is None else token_budget
        return await self.retriever.load_for_channel(channel_id, budget)

    async def load_memories_for_server(
        self,
        current_channel_id: str,
        channels: list[ChannelInfo],
        token_budget: Optional[int] = None,
    ) -> MemoryLoadResult:
        budget = self.config.token_budget if token_budget is None else token_budget
        return await self.retriever.load_for_server(current_channel_id, channels, budget)

    async def build_memory_section(
        self,
        channel_id: str,
        channels: Optional[list[ChannelInfo]] = None,
        token_budget: Optional[int] = None,
    ) -> str:
        """Load and render memory for the configured mode."""
        if self.config.server_wide:
            result = await self.load_memories_for_server(
                channel_id, channels or [], token_budget
            )
            return format_server_memories(result, channel_id)
        result = await self.load_memories_for_channel(channel_id, token_budget)
        return format_memories(result)

    async def populate_memory_section(
        self,
        path: Path | str,
        channel_id: str,
        channels: Optional[list[ChannelInfo]] = None,
        token_budget: Optional[int] = None,
    ) -> str:
        """Refresh the memory block of an agent instruction file before a query."""
        memory_text = await self.build_memory_section(channel_id, channels, token_budget)
        path = Path(path)
        try:
            document = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            document = ""
        updated = upsert_memory_section(document, memory_text)
        await asyncio.to_thread(path.write_text, updated, encoding="utf-8")
        return memory_text

    # ── Compaction ──

    async def run_daily_compaction(
        self,
        channels: list[ChannelInfo],
        now: Optional[datetime | date] = None,
    ) -> CompactionReport:
        return await self.compaction.run_daily_compaction(channels, now=now)

    def start_compaction_loop(self, channels_provider: ChannelsProvider) -> asyncio.Task:
        if self._compaction_task is None or self._compaction_task.done():
            self._compaction_task = asyncio.get_running_loop().create_task(
                self.compaction_loop(channels_provider)
            )
        return self._compaction_task

    async def compaction_loop(self, channels_provider: ChannelsProvider) -> None:
        """Run compaction once a day at ``compaction_hour_utc``."""
        hour = self.config.compaction_hour_utc
        logger.info("Scheduled daily memory compaction at %02d:00 UTC", hour)
        while True:
            await asyncio.sleep(seconds_until_next_tick(utc_now(), hour))
            try:
                channels = channels_provider()
                if asyncio.iscoroutine(channels):
                    channels = await channels
                await self.run_daily_compaction(channels)
            except Exception:
                logger.exception("Memory compaction failed")
