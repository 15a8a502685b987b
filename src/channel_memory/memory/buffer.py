"""
Ingestion buffer.

Absorbs one raw entry per incoming message and persists the buffered
snapshot to the tier store on a per-channel throttle, so a burst of chat
activity costs one write per throttle period instead of one per message.

Flush policy (throttled, not debounced):
  - if the channel's last flush was >= T seconds ago, flush now
  - otherwise schedule exactly one deferred flush at T - elapsed; further
    records coalesce into it

The throttle window of a channel opens at its first record, so a burst on
a fresh channel is written once, T seconds later. Entries stay in memory
until compaction consumes them; a failed write is logged and retried one
throttle period later.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .storage import SERVER_SCOPE, RawEntry, Tier, TierStore

logger = logging.getLogger(__name__)


class IngestionBuffer:
    """
    In-process per-channel message buffer with throttled flushes.

    Usage:
        buffer = IngestionBuffer(store, throttle_seconds=30)
        await buffer.load_from_disk()
        buffer.record_channel_message("123", "alice", "hello")
        ...
        await buffer.flush_all()  # on shutdown
    """

    def __init__(
        self,
        store: TierStore,
        throttle_seconds: float = 30.0,
        server_wide: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.throttle_seconds = throttle_seconds
        self.server_wide = server_wide
        self._clock = clock
        self._entries: dict[str, list[RawEntry]] = {}
        self._channel_names: dict[str, str] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._last_flush: dict[str, float] = {}
        self._dirty: set[str] = set()
        self._flush_locks: dict[str, asyncio.Lock] = {}

    def scope_for(self, channel_id: str) -> str:
        return SERVER_SCOPE if self.server_wide else channel_id

    # ── Recording ──

    def record(self, channel_id: str, entry: RawEntry) -> None:
        """Buffer an entry and schedule a throttled flush for its channel."""
        self.store.tier_dir(Tier.RAW, self.scope_for(channel_id))  # validates the scope
        loop = asyncio.get_running_loop()
        self._entries.setdefault(channel_id, []).append(entry)
        if entry.channel_name:
            self._channel_names[channel_id] = entry.channel_name
        self._dirty.add(channel_id)
        self._schedule_flush(channel_id, loop)

    def record_channel_message(
        self,
        channel_id: str,
        author: str,
        text: str,
        channel_name: Optional[str] = None,
        message_id: Optional[str] = None,
        session_id: str = "",
        timestamp: Optional[datetime] = None,
    ) -> RawEntry:
        entry = self._make_entry(
            channel_id, author, text, channel_name, message_id, session_id, timestamp
        )
        self.record(channel_id, entry)
        return entry

    def record_thread_reply(
        self,
        channel_id: str,
        thread_id: str,
        author: str,
        text: str,
        channel_name: Optional[str] = None,
        message_id: Optional[str] = None,
        session_id: str = "",
        timestamp: Optional[datetime] = None,
    ) -> RawEntry:
        entry = self._make_entry(
            channel_id, author, text, channel_name, message_id, session_id, timestamp
        )
        entry.thread_id = thread_id
        self.record(channel_id, entry)
        return entry

    def _make_entry(
        self,
        channel_id: str,
        author: str,
        text: str,
        channel_name: Optional[str],
        message_id: Optional[str],
        session_id: str,
        timestamp: Optional[datetime],
    ) -> RawEntry:
        ts = timestamp or datetime.now(timezone.utc)
        return RawEntry(
            timestamp=ts.astimezone(timezone.utc).isoformat(),
            channel_id=channel_id,
            channel_name=channel_name or self._channel_names.get(channel_id, channel_id),
            author=author,
            text=text,
            session_id=session_id,
            message_id=message_id,
        )

    # ── Throttle ──

    def _schedule_flush(self, channel_id: str, loop: asyncio.AbstractEventLoop) -> None:
        if channel_id in self._timers:
            return  # coalesce into the pending flush

        now = self._clock()
        last = self._last_flush.setdefault(channel_id, now)
        elapsed = now - last
        delay = 0.0 if elapsed >= self.throttle_seconds else self.throttle_seconds - elapsed

        self._timers[channel_id] = loop.create_task(
            self._deferred_flush(channel_id, delay)
        )

    async def _deferred_flush(self, channel_id: str, delay: float) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
        finally:
            # The slot must be free before flushing so a failed write can
            # schedule its own retry.
            if self._timers.get(channel_id) is asyncio.current_task():
                del self._timers[channel_id]
        if not await self.flush(channel_id):
            self._schedule_retry(channel_id)

    def _schedule_retry(self, channel_id: str) -> None:
        if channel_id in self._timers:
            return
        self._timers[channel_id] = asyncio.get_running_loop().create_task(
            self._deferred_flush(channel_id, self.throttle_seconds)
        )

    # ── Flushing ──

    async def flush(self, channel_id: str) -> bool:
        """
        Write the buffered snapshot of the channel's scope to disk.

        Returns False if the write failed; the in-memory copy is retained.
        """
        # Channels of one scope share a file, so they share a lock.
        scope = self.scope_for(channel_id)
        lock = self._flush_locks.setdefault(scope, asyncio.Lock())
        async with lock:
            self._last_flush[channel_id] = self._clock()
            if channel_id not in self._dirty:
                return True
            by_day = self._snapshot(scope)
            self._dirty.discard(channel_id)
            try:
                for day, entries in sorted(by_day.items()):
                    await self.store.write_raw(scope, day, entries)
            except OSError as e:
                self._dirty.add(channel_id)
                logger.warning(
                    "Failed to flush memory for channel %s (scope %s): %s",
                    channel_id, scope, e,
                )
                return False
            except asyncio.CancelledError:
                self._dirty.add(channel_id)
                raise

        logger.info(
            "Flushed %d raw entries for channel %s to scope %s",
            sum(len(v) for v in by_day.values()), channel_id, scope,
        )
        return True

    async def flush_all(self) -> None:
        """Cancel pending timers and write every dirty channel now."""
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

        flushed_scopes: set[str] = set()
        for channel_id in list(self._dirty):
            scope = self.scope_for(channel_id)
            if scope in flushed_scopes:
                self._dirty.discard(channel_id)
                continue
            if await self.flush(channel_id):
                flushed_scopes.add(scope)

        logger.info("Flushed memory buffer for %d scope(s)", len(flushed_scopes))

    def _snapshot(self, scope: str) -> dict[str, list[RawEntry]]:
        if scope == SERVER_SCOPE:
            channel_ids = list(self._entries)
        else:
            channel_ids = [scope]
        by_day: dict[str, list[RawEntry]] = {}
        for channel_id in channel_ids:
            for entry in self._entries.get(channel_id, []):
                by_day.setdefault(entry.day, []).append(entry)
        for entries in by_day.values():
            entries.sort(key=lambda e: e.timestamp)
        return by_day

    # ── Startup ──

    async def load_from_disk(self) -> int:
        """
        Rehydrate entries from raw files that compaction has not consumed
        yet (no daily artifact for that date). Returns the entry count.
        """
        scopes = [SERVER_SCOPE] if self.server_wide else [
            s for s in await self.store.list_scopes() if s != SERVER_SCOPE
        ]
        total = 0
        for scope in scopes:
            compacted = set(await self.store.list_artifacts(Tier.DAILY, scope))
            for day in await self.store.list_artifacts(Tier.RAW, scope):
                if day in compacted:
                    continue
                try:
                    entries = await self.store.read_raw(scope, day)
                except (OSError, ValueError) as e:
                    logger.warning(
                        "Skipping unreadable raw memory %s/%s: %s", scope, day, e
                    )
                    continue
                for entry in entries:
                    if self.server_wide:
                        channel_id = entry.channel_id or scope
                    else:
                        channel_id = scope
                    self._entries.setdefault(channel_id, []).append(entry)
                    if entry.channel_name:
                        self._channel_names[channel_id] = entry.channel_name
                    total += 1

        for entries in self._entries.values():
            entries.sort(key=lambda e: e.timestamp)

        if total:
            logger.info(
                "Loaded %d buffered messages across %d channels from disk",
                total, len(self._entries),
            )
        else:
            logger.info("No uncompacted raw memory found - starting fresh")
        return total

    # ── Accessors used by retrieval and compaction ──

    def channel_ids(self) -> list[str]:
        return list(self._entries)

    def channel_name(self, channel_id: str) -> Optional[str]:
        return self._channel_names.get(channel_id)

    def entries_for(self, scope: str, day: str) -> list[RawEntry]:
        """Buffered entries for a scope and date, oldest first."""
        return list(self._snapshot(scope).get(day, []))

    def buffered_days(self, scope: str) -> list[str]:
        return sorted(self._snapshot(scope))

    def clear(self) -> None:
        self._entries.clear()
        self._dirty.clear()
        logger.info("Cleared all in-memory messages")

    def clear_channel(self, channel_id: str) -> None:
        self._entries.pop(channel_id, None)
        self._dirty.discard(channel_id)
        logger.info("Cleared in-memory messages for channel %s", channel_id)

    def discard_day(self, day: str, channel_id: Optional[str] = None) -> int:
        """Drop buffered entries dated ``day`` (all channels unless one is given)."""
        targets = [channel_id] if channel_id is not None else list(self._entries)
        dropped = 0
        for cid in targets:
            entries = self._entries.get(cid)
            if not entries:
                continue
            kept = [e for e in entries if e.day != day]
            dropped += len(entries) - len(kept)
            if kept:
                self._entries[cid] = kept
            else:
                del self._entries[cid]
        return dropped
