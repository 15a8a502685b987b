"""
Budgeted memory retriever.

Builds the memory context handed to the agent before each invocation,
filling a token budget greedily, finest and freshest first:

  1. today's raw messages (current channel first in server-wide mode);
     if they do not fit, they are truncated to the remaining budget and
     nothing else is loaded
  2. daily summaries, newest first (today excluded)
  3. weekly summaries, newest first
  4. monthly summaries, newest first

Within a tier the walk stops at the first artifact that does not fit, so
the rendered context stays in recency order.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from .buffer import IngestionBuffer
from .condenser import group_by_channel, render_entries
from .event_log import MemoryEventLog
from .periods import day_id, utc_now
from .storage import SERVER_SCOPE, ChannelInfo, RawEntry, Tier, TierStore
from .token_budget import budget_percent, estimate_tokens, truncate_to_token_budget

logger = logging.getLogger(__name__)

MEMORY_START_MARKER = "<!-- MEMORY_START -->"
MEMORY_END_MARKER = "<!-- MEMORY_END -->"

SUMMARY_TIERS = (Tier.DAILY, Tier.WEEKLY, Tier.MONTHLY)


@dataclass
class LoadedMemory:
    type: Tier
    identifier: str
    content: str
    token_count: int
    channel_id: Optional[str] = None
    channel_name: Optional[str] = None


@dataclass
class MemoryLoadResult:
    memories: list[LoadedMemory] = field(default_factory=list)
    total_tokens: int = 0
    budget_used: float = 0.0

    def of_type(self, tier: Tier) -> list[LoadedMemory]:
        return [m for m in self.memories if m.type == tier]


class _BudgetFill:
    """Accumulates memories against a fixed token budget."""

    def __init__(self, token_budget: int):
        self.token_budget = token_budget
        self.result = MemoryLoadResult()

    @property
    def remaining(self) -> int:
        return self.token_budget - self.result.total_tokens

    def try_add(self, memory: LoadedMemory) -> bool:
        if memory.token_count > self.remaining:
            return False
        self._add(memory)
        return True

    def add_truncated(self, memory: LoadedMemory) -> None:
        # The truncated item is charged at exactly what was left.
        budget = self.remaining
        memory.content = truncate_to_token_budget(memory.content, budget)
        memory.token_count = budget
        self._add(memory)

    def _add(self, memory: LoadedMemory) -> None:
        self.result.memories.append(memory)
        self.result.total_tokens += memory.token_count

    def finish(self) -> MemoryLoadResult:
        self.result.budget_used = budget_percent(
            self.result.total_tokens, self.token_budget
        )
        return self.result


class MemoryRetriever:
    """
    Loads tiered memory for a channel or for the whole server.

    Usage:
        retriever = MemoryRetriever(store, buffer=buffer)
        result = await retriever.load_for_channel("123", token_budget=10000)
        section = format_memories(result)
    """

    def __init__(
        self,
        store: TierStore,
        buffer: Optional[IngestionBuffer] = None,
        event_log: Optional[MemoryEventLog] = None,
    ):
        self.store = store
        self.buffer = buffer
        self.event_log = event_log

    async def load_for_channel(
        self,
        channel_id: str,
        token_budget: int,
        today: Optional[date] = None,
    ) -> MemoryLoadResult:
        """Load memory stored under a single channel's scope."""
        today_id = day_id(today or utc_now().date())
        if token_budget <= 0:
            logger.warning(
                "Invalid memory token budget %d for channel %s; loading nothing",
                token_budget, channel_id,
            )
            return MemoryLoadResult()

        fill = _BudgetFill(token_budget)
        entries = await self._today_entries(channel_id, today_id)
        raw_items = []
        if entries:
            name = entries[-1].channel_name or None
            raw_items.append(self._raw_memory(today_id, entries, channel_id, name))

        if self._fill_raw(fill, channel_id, raw_items):
            await self._fill_summaries(fill, channel_id, today_id)
        result = fill.finish()
        await self._log_loaded(channel_id, result)
        return result

    async def load_for_server(
        self,
        current_channel_id: str,
        channels: list[ChannelInfo],
        token_budget: int,
        today: Optional[date] = None,
    ) -> MemoryLoadResult:
        """
        Load server-wide memory. Today's raw messages are split per channel
        with the current channel first; summaries come from the ``all`` scope.
        """
        today_id = day_id(today or utc_now().date())
        if token_budget <= 0:
            logger.warning(
                "Invalid memory token budget %d for server memory; loading nothing",
                token_budget,
            )
            return MemoryLoadResult()

        names = {c.id: c.name for c in channels}
        fill = _BudgetFill(token_budget)
        entries = await self._today_entries(SERVER_SCOPE, today_id)
        groups = group_by_channel(entries)
        order = sorted(groups, key=lambda cid: cid != current_channel_id)
        raw_items = [
            self._raw_memory(
                today_id,
                groups[cid],
                cid,
                names.get(cid) or groups[cid][-1].channel_name or cid,
            )
            for cid in order
        ]

        if self._fill_raw(fill, SERVER_SCOPE, raw_items):
            await self._fill_summaries(fill, SERVER_SCOPE, today_id)
        result = fill.finish()
        await self._log_loaded(SERVER_SCOPE, result)
        return result

    # ── Internals ──

    async def _today_entries(self, scope: str, today_id: str) -> list[RawEntry]:
        if self.buffer:
            entries = self.buffer.entries_for(scope, today_id)
            if entries:
                return entries
        try:
            return await self.store.read_raw(scope, today_id)
        except (OSError, ValueError) as e:
            logger.warning("Failed to read today's raw memory for %s: %s", scope, e)
            return []

    @staticmethod
    def _raw_memory(
        today_id: str,
        entries: list[RawEntry],
        channel_id: Optional[str],
        channel_name: Optional[str],
    ) -> LoadedMemory:
        content = render_entries(entries)
        return LoadedMemory(
            type=Tier.RAW,
            identifier=today_id,
            content=content,
            token_count=estimate_tokens(content),
            channel_id=channel_id,
            channel_name=channel_name,
        )

    def _fill_raw(self, fill: _BudgetFill, scope: str, raw_items: list[LoadedMemory]) -> bool:
        """Add today's raw items; False once the budget is spent."""
        for item in raw_items:
            if fill.remaining <= 0:
                return False
            if not fill.try_add(item):
                logger.info(
                    "Today's raw memory for %s exceeds the remaining budget; truncating",
                    item.channel_id or scope,
                )
                fill.add_truncated(item)
                return False
        return True

    async def _fill_summaries(self, fill: _BudgetFill, scope: str, today_id: str) -> None:
        for tier in SUMMARY_TIERS:
            if fill.remaining <= 0:
                return
            try:
                identifiers = await self.store.list_artifacts(tier, scope)
                for identifier in identifiers:
                    if tier == Tier.DAILY and identifier == today_id:
                        continue
                    content = await self.store.get(tier, scope, identifier)
                    if not content:
                        continue
                    memory = LoadedMemory(
                        type=tier,
                        identifier=identifier,
                        content=content,
                        token_count=estimate_tokens(content),
                    )
                    if not fill.try_add(memory):
                        break
            except (OSError, ValueError) as e:
                logger.warning(
                    "Failed to load %s memory for %s, returning partial context: %s",
                    tier.value, scope, e,
                )
                return

    async def _log_loaded(self, scope: str, result: MemoryLoadResult) -> None:
        logger.info(
            "Loaded %d memories for %s: %d tokens (%.0f%% of budget)",
            len(result.memories), scope, result.total_tokens, result.budget_used,
        )
        if self.event_log:
            await self.event_log.record(
                "memory_loaded",
                scope,
                memories_loaded=[
                    {"type": m.type.value, "identifier": m.identifier, "token_count": m.token_count}
                    for m in result.memories
                ],
                total_tokens=result.total_tokens,
                budget_used=result.budget_used,
            )


# ── Rendering ──


def _render_summaries(result: MemoryLoadResult, parts: list[str]) -> None:
    for memory in result.of_type(Tier.DAILY):
        parts.append(f"### {memory.identifier}\n\n{memory.content}\n\n")


def _render_long_term(result: MemoryLoadResult) -> str:
    weekly = result.of_type(Tier.WEEKLY)
    monthly = result.of_type(Tier.MONTHLY)
    if not weekly and not monthly:
        return ""
    parts = ["## Long Term Memory\n\n"]
    for memory in weekly:
        parts.append(f"### Week {memory.identifier}\n\n{memory.content}\n\n")
    for memory in monthly:
        parts.append(f"### {memory.identifier}\n\n{memory.content}\n\n")
    return "".join(parts)


def format_memories(result: MemoryLoadResult) -> str:
    """Render a channel load result as markdown for the agent's instructions."""
    if not result.memories:
        return ""

    parts = []
    raw = result.of_type(Tier.RAW)
    if raw or result.of_type(Tier.DAILY):
        parts.append("## Recent Memory\n\n")
        if raw:
            parts.append("### Today\n\n")
            for memory in raw:
                parts.append(f"{memory.content}\n\n")
        _render_summaries(result, parts)
    parts.append(_render_long_term(result))
    return "".join(parts)


def format_server_memories(result: MemoryLoadResult, current_channel_id: str) -> str:
    """Like format_memories, with today's messages grouped by channel."""
    if not result.memories:
        return ""

    parts = []
    raw = sorted(
        result.of_type(Tier.RAW), key=lambda m: m.channel_id != current_channel_id
    )
    if raw or result.of_type(Tier.DAILY):
        parts.append("## Recent Memory\n\n")
        if raw:
            parts.append("### Today\n\n")
            for memory in raw:
                label = f"#{memory.channel_name or memory.channel_id}"
                if memory.channel_id == current_channel_id:
                    label += " (current channel)"
                parts.append(f"#### {label}\n\n{memory.content}\n\n")
        _render_summaries(result, parts)
    parts.append(_render_long_term(result))
    return "".join(parts)


def upsert_memory_section(document: str, memory_text: str) -> str:
    """
    Put ``memory_text`` between the memory markers of an instruction document.

    An existing marked section is replaced in place, and a start marker
    without an end marker is replaced by a complete section. Otherwise a
    new one is inserted after the first heading (and its blank line and
    ``>`` topic line, when present), or at the top if the document has no
    heading.
    """
    section = f"{MEMORY_START_MARKER}\n{memory_text}\n{MEMORY_END_MARKER}"

    start = document.find(MEMORY_START_MARKER)
    end = document.find(MEMORY_END_MARKER, start + 1) if start >= 0 else -1
    if start >= 0 and end >= 0:
        return document[:start] + section + document[end + len(MEMORY_END_MARKER):]
    if start >= 0:
        # Unterminated section: the dangling start marker becomes a full section.
        return document[:start] + section + document[start + len(MEMORY_START_MARKER):]

    lines = document.split("\n")
    insert_at = 0
    for i, line in enumerate(lines):
        if line.strip().startswith("#"):
            insert_at = i + 1
            if insert_at < len(lines) and not lines[insert_at].strip():
                insert_at += 1
            if insert_at < len(lines) and lines[insert_at].strip().startswith(">"):
                insert_at += 1
            break

    lines[insert_at:insert_at] = ["", MEMORY_START_MARKER, memory_text, MEMORY_END_MARKER, ""]
    return "\n".join(lines)
