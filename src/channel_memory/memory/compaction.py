"""
Compaction engine.

Runs once per day (driven by an external scheduler tick) and distills
finer memory tiers into coarser ones:

- every day:        raw     -> daily   (yesterday, plus any older raw date
                                        without a daily artifact)
- on Mondays:       daily   -> weekly  (last ISO week)
- on the 1st:       weekly  -> monthly (last month), then retention

Each scope and period is compacted independently: a failure is logged and
never aborts its siblings. Re-running for the same day overwrites the
same artifacts, so the job is idempotent. In server-wide mode the raw
snapshot of a day is deleted once its daily summary has been written.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Awaitable, Optional, Protocol

from .buffer import IngestionBuffer
from .condenser import group_by_channel, render_entries
from .event_log import MemoryEventLog
from .periods import (
    day_id,
    day_in_week,
    is_month_boundary,
    is_week_boundary,
    previous_month,
    previous_week,
    utc_now,
    yesterday,
)
from .storage import SERVER_SCOPE, ChannelInfo, RawEntry, Tier, TierStore
from .summarizer import (
    DAILY_CONTEXT,
    MONTHLY_CONTEXT,
    WEEKLY_CONTEXT,
    SummaryResult,
    TierSummarizer,
    build_context,
)
from .token_budget import estimate_tokens

logger = logging.getLogger(__name__)

# Per-message cap applied when rendering raw entries for the summarizer
MAX_ENTRY_CHARS = 2000


class UsageTracker(Protocol):
    """Cost accounting collaborator (e.g. a per-bot query limit manager)."""

    async def can_proceed(self) -> bool: ...

    async def track_query(self, kind: str, cost: float, success: bool) -> None: ...


@dataclass
class CompactionReport:
    """Aggregate outcome of one compaction run."""

    today: str
    total_cost: float = 0.0
    success: bool = True
    skipped: bool = False
    written: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)


def _to_date(now: Optional[datetime | date]) -> date:
    if now is None:
        now = utc_now()
    if isinstance(now, datetime):
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        return now.date()
    return now


def merge_entries(*sources: list[RawEntry]) -> list[RawEntry]:
    """Union of entry lists without duplicates, oldest first."""
    seen = set()
    merged = []
    for entries in sources:
        for entry in entries:
            key = (entry.timestamp, entry.channel_id, entry.author,
                   entry.text, entry.thread_id, entry.message_id)
            if key in seen:
                continue
            seen.add(key)
            merged.append(entry)
    merged.sort(key=lambda e: e.timestamp)
    return merged


class CompactionEngine:
    """
    Summarizes raw -> daily -> weekly -> monthly and applies retention.

    Usage:
        engine = CompactionEngine(store, summarizer, buffer=buffer)
        report = await engine.run_daily_compaction(channels)
    """

    def __init__(
        self,
        store: TierStore,
        summarizer: TierSummarizer,
        buffer: Optional[IngestionBuffer] = None,
        event_log: Optional[MemoryEventLog] = None,
        usage_tracker: Optional[UsageTracker] = None,
        retention_months: int = 12,
        server_wide: bool = False,
        cost_per_million_tokens: float = 0.0,
    ):
        self.store = store
        self.summarizer = summarizer
        self.buffer = buffer
        self.event_log = event_log
        self.usage_tracker = usage_tracker
        self.retention_months = retention_months
        self.server_wide = server_wide
        self.cost_per_million_tokens = cost_per_million_tokens

    # ── Entry point ──

    async def run_daily_compaction(
        self,
        channels: list[ChannelInfo],
        now: Optional[datetime | date] = None,
    ) -> CompactionReport:
        """Compact every scope for the day containing ``now`` (UTC)."""
        today = _to_date(now)
        report = CompactionReport(today=day_id(today))

        if self.usage_tracker and not await self._tracker_allows():
            logger.warning("Query limit reached - skipping memory compaction")
            report.skipped = True
            return report

        logger.info(
            "Starting daily memory compaction for %s (%d channels, %s)",
            report.today, len(channels), "server-wide" if self.server_wide else "per-channel",
        )

        if self.buffer:
            # Persist anything still waiting on a throttle timer.
            await self.buffer.flush_all()

        names = {c.id: c.name for c in channels}
        if self.server_wide:
            scopes = [(SERVER_SCOPE, None)]
        else:
            scopes = [(c.id, c.name) for c in channels]

        for scope, channel_name in scopes:
            await self._compact_scope(scope, channel_name, today, names, report)

        if self.usage_tracker:
            try:
                await self.usage_tracker.track_query(
                    "summarize_query", report.total_cost, report.success
                )
            except Exception:
                logger.exception("Failed to report compaction usage")

        logger.info(
            "Daily memory compaction completed: %d written, %d failed, cost %.4f",
            len(report.written), len(report.failures), report.total_cost,
        )
        return report

    async def _tracker_allows(self) -> bool:
        # A failing tracker check does not veto the run.
        try:
            return bool(await self.usage_tracker.can_proceed())
        except Exception:
            logger.exception("Usage tracker check failed - compacting anyway")
            return True

    async def _compact_scope(
        self,
        scope: str,
        channel_name: Optional[str],
        today: date,
        names: dict[str, str],
        report: CompactionReport,
    ) -> None:
        failed_days: list[str] = []
        try:
            pending = await self.pending_days(scope, today)
        except (OSError, ValueError):
            logger.exception("Failed to list raw memory for %s", scope)
            report.success = False
            report.failures.append(f"daily/{scope}")
            return

        for day in pending:
            ok = await self._run_step(
                report, f"daily/{scope}/{day}",
                self.compact_daily(scope, day, channel_name, names),
            )
            if not ok:
                failed_days.append(day)

        weekly_ok = True
        if is_week_boundary(today):
            week = previous_week(today)
            if any(day_in_week(d, week) for d in failed_days):
                logger.warning(
                    "Skipping weekly compaction of %s for %s: daily compaction failed",
                    week, scope,
                )
                weekly_ok = False
            else:
                weekly_ok = await self._run_step(
                    report, f"weekly/{scope}/{week}",
                    self.compact_weekly(scope, week, channel_name),
                )

        if is_month_boundary(today):
            month = previous_month(today)
            if not weekly_ok:
                logger.warning(
                    "Skipping monthly compaction of %s for %s: weekly compaction failed",
                    month, scope,
                )
            else:
                await self._run_step(
                    report, f"monthly/{scope}/{month}",
                    self.compact_monthly(scope, month, channel_name),
                )
            try:
                deleted = await self.apply_retention(scope, self.retention_months)
                report.deleted.extend(f"monthly/{scope}/{m}" for m in deleted)
            except OSError:
                logger.exception("Retention cleanup failed for %s", scope)
                report.success = False
                report.failures.append(f"retention/{scope}")

    async def _run_step(
        self,
        report: CompactionReport,
        label: str,
        step: Awaitable[Optional[SummaryResult]],
    ) -> bool:
        try:
            result = await step
        except Exception:
            logger.exception("Error compacting %s", label)
            report.success = False
            report.failures.append(label)
            return False
        if result is not None:
            report.written.append(label)
            report.total_cost += self._cost(result)
        return True

    def _cost(self, result: SummaryResult) -> float:
        return result.usage_tokens * self.cost_per_million_tokens / 1_000_000

    async def pending_days(self, scope: str, today: date) -> list[str]:
        """
        Raw dates to compact, oldest first: yesterday (always, so a rerun
        refreshes it) plus every earlier raw date lacking a daily artifact.
        Dates still held only by the buffer count as raw dates.
        """
        today_id = day_id(today)
        target = day_id(yesterday(today))
        raw_days = await self.store.list_artifacts(Tier.RAW, scope)
        if self.buffer:
            raw_days = set(raw_days) | set(self.buffer.buffered_days(scope))
        compacted = set(await self.store.list_artifacts(Tier.DAILY, scope))
        pending = {
            d for d in raw_days
            if d < today_id and (d == target or d not in compacted)
        }
        pending.add(target)
        return sorted(pending)

    # ── Tier steps ──

    async def compact_daily(
        self,
        scope: str,
        day: str,
        channel_name: Optional[str] = None,
        names: Optional[dict[str, str]] = None,
    ) -> Optional[SummaryResult]:
        """Summarize a day's raw entries into the daily tier."""
        entries = await self.store.read_raw(scope, day)
        if self.buffer:
            # A failed flush leaves entries only in memory.
            entries = merge_entries(entries, self.buffer.entries_for(scope, day))
        if not entries:
            logger.info("No raw memories to compress for %s on %s", scope, day)
            return None

        logger.info("Compressing %d raw entries for %s on %s", len(entries), scope, day)

        if scope == SERVER_SCOPE:
            sections = []
            usage_tokens = 0
            degraded = False
            for channel_id, group in group_by_channel(entries).items():
                name = (names or {}).get(channel_id) or group[-1].channel_name or channel_id
                result = await self.summarizer.summarize(
                    render_entries(group, with_time=True, max_chars=MAX_ENTRY_CHARS),
                    build_context(DAILY_CONTEXT, day, name),
                )
                sections.append(f"< #{name} >\n\n{result.summary}")
                usage_tokens += result.usage_tokens
                degraded = degraded or result.degraded
            content = "\n\n".join(sections)
            result = SummaryResult(
                summary=content,
                token_count=estimate_tokens(content),
                usage_tokens=usage_tokens,
                degraded=degraded,
            )
        else:
            result = await self.summarizer.summarize(
                render_entries(entries, with_time=True, max_chars=MAX_ENTRY_CHARS),
                build_context(DAILY_CONTEXT, day, channel_name),
            )

        await self.store.put(Tier.DAILY, scope, day, result.summary)

        # Only after the daily artifact is on disk may its raw source go.
        if scope == SERVER_SCOPE:
            if self.buffer:
                self.buffer.discard_day(day)
            await self.store.delete(Tier.RAW, scope, day)
        elif self.buffer:
            self.buffer.discard_day(day, channel_id=scope)

        await self._log_event(
            "daily_compressed", scope,
            date=day,
            raw_message_count=len(entries),
            summary_length=len(result.summary),
            token_count=result.token_count,
            degraded=result.degraded,
        )
        logger.info(
            "Daily compression completed for %s on %s: %d messages -> %d tokens",
            scope, day, len(entries), result.token_count,
        )
        return result

    async def compact_weekly(
        self,
        scope: str,
        week: str,
        channel_name: Optional[str] = None,
    ) -> Optional[SummaryResult]:
        """Summarize the daily artifacts of an ISO week into the weekly tier."""
        days = sorted(
            d for d in await self.store.list_artifacts(Tier.DAILY, scope)
            if day_in_week(d, week)
        )
        parts = []
        for d in days:
            text = await self.store.get(Tier.DAILY, scope, d)
            if text:
                parts.append(f"## {d}\n\n{text}\n\n")
        if not parts:
            logger.info("No daily summaries to compress for %s (%s)", scope, week)
            return None

        result = await self.summarizer.summarize(
            "".join(parts), build_context(WEEKLY_CONTEXT, week, channel_name)
        )
        await self.store.put(Tier.WEEKLY, scope, week, result.summary)
        await self._log_event(
            "weekly_compressed", scope,
            week_identifier=week,
            daily_summary_count=len(parts),
            summary_length=len(result.summary),
            token_count=result.token_count,
            degraded=result.degraded,
        )
        logger.info(
            "Weekly compression completed for %s (%s): %d days -> %d tokens",
            scope, week, len(parts), result.token_count,
        )
        return result

    async def compact_monthly(
        self,
        scope: str,
        month: str,
        channel_name: Optional[str] = None,
    ) -> Optional[SummaryResult]:
        """Summarize the weekly artifacts of the month's year into the monthly tier."""
        year = month.split("-")[0]
        weeks = sorted(
            w for w in await self.store.list_artifacts(Tier.WEEKLY, scope)
            if w.startswith(f"{year}-W")
        )
        parts = []
        for w in weeks:
            text = await self.store.get(Tier.WEEKLY, scope, w)
            if text:
                parts.append(f"## Week {w}\n\n{text}\n\n")
        if not parts:
            logger.info("No weekly summaries to compress for %s (%s)", scope, month)
            return None

        result = await self.summarizer.summarize(
            "".join(parts), build_context(MONTHLY_CONTEXT, month, channel_name)
        )
        await self.store.put(Tier.MONTHLY, scope, month, result.summary)
        await self._log_event(
            "monthly_compressed", scope,
            month_identifier=month,
            weekly_summary_count=len(parts),
            summary_length=len(result.summary),
            token_count=result.token_count,
            degraded=result.degraded,
        )
        logger.info(
            "Monthly compression completed for %s (%s): %d weeks -> %d tokens",
            scope, month, len(parts), result.token_count,
        )
        return result

    async def apply_retention(self, scope: str, retention_months: int) -> list[str]:
        """Keep the newest ``retention_months`` monthly artifacts, delete the rest."""
        if retention_months < 0:
            logger.warning(
                "Ignoring negative retention_months=%d for %s; retention skipped",
                retention_months, scope,
            )
            return []

        months = await self.store.list_artifacts(Tier.MONTHLY, scope)
        deleted = []
        for month in months[retention_months:]:
            if await self.store.delete(Tier.MONTHLY, scope, month):
                deleted.append(month)
                logger.info("Retention: deleted monthly memory %s for %s", month, scope)
                await self._log_event("retention_deleted", scope, month_identifier=month)
        return deleted

    async def _log_event(self, type: str, scope: str, **details) -> None:
        if self.event_log:
            await self.event_log.record(type, scope, **details)
