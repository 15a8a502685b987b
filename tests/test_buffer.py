"""
Tests for the throttled ingestion buffer.

A short throttle period keeps the timing tests fast; the behaviour is the
same for the default 30 seconds.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from channel_memory.memory.buffer import IngestionBuffer
from channel_memory.memory.storage import Tier, TierStore

from conftest import make_entry

T = 0.2
TS = datetime(2026, 2, 2, 10, 0, tzinfo=timezone.utc)


class CountingStore(TierStore):
    """TierStore that records raw writes and can fail the first N of them."""

    def __init__(self, root, failures: int = 0):
        super().__init__(root)
        self.writes: list[tuple[str, str, int]] = []
        self.failures = failures

    async def write_raw(self, scope, day, entries):
        if self.failures:
            self.failures -= 1
            raise OSError("disk full")
        self.writes.append((scope, day, len(entries)))
        await super().write_raw(scope, day, entries)


@pytest.fixture
def counting_store(tmp_path):
    return CountingStore(tmp_path / "memories")


# ── Throttle Tests ──


class TestThrottle:
    @pytest.mark.asyncio
    async def test_burst_produces_single_flush(self, counting_store):
        buffer = IngestionBuffer(counting_store, throttle_seconds=T)
        for i in range(3):
            buffer.record_channel_message("C1", "alice", f"message {i}", timestamp=TS)

        await asyncio.sleep(T / 2)
        assert counting_store.writes == []

        await asyncio.sleep(T)
        assert counting_store.writes == [("C1", "2026-02-02", 3)]
        raw = counting_store.path_for(Tier.RAW, "C1", "2026-02-02")
        assert len(raw.read_text().splitlines()) == 3

    @pytest.mark.asyncio
    async def test_spaced_records_flush_separately(self, counting_store):
        buffer = IngestionBuffer(counting_store, throttle_seconds=T)
        buffer.record_channel_message("C1", "alice", "one", timestamp=TS)
        await asyncio.sleep(T * 1.5)
        buffer.record_channel_message("C1", "alice", "two", timestamp=TS)
        await asyncio.sleep(T * 1.5)
        assert len(counting_store.writes) == 2
        assert counting_store.writes[-1] == ("C1", "2026-02-02", 2)

    @pytest.mark.asyncio
    async def test_flush_is_immediate_after_quiet_period(self, counting_store):
        buffer = IngestionBuffer(counting_store, throttle_seconds=T)
        buffer.record_channel_message("C1", "alice", "one", timestamp=TS)
        await asyncio.sleep(T * 1.5)
        await asyncio.sleep(T * 1.5)
        assert len(counting_store.writes) == 1

        buffer.record_channel_message("C1", "alice", "two", timestamp=TS)
        await asyncio.sleep(0.05)
        assert len(counting_store.writes) == 2

    @pytest.mark.asyncio
    async def test_channels_are_throttled_independently(self, counting_store):
        buffer = IngestionBuffer(counting_store, throttle_seconds=T)
        buffer.record_channel_message("C1", "alice", "one", timestamp=TS)
        buffer.record_channel_message("C2", "bob", "two", timestamp=TS)
        await asyncio.sleep(T * 1.5)
        assert sorted(w[0] for w in counting_store.writes) == ["C1", "C2"]


# ── Failure Tests ──


class TestFlushFailure:
    @pytest.mark.asyncio
    async def test_failed_write_is_retried(self, tmp_path):
        store = CountingStore(tmp_path / "memories", failures=1)
        buffer = IngestionBuffer(store, throttle_seconds=T)
        buffer.record_channel_message("C1", "alice", "keep me", timestamp=TS)

        await asyncio.sleep(T * 1.5)
        assert store.writes == []
        assert [e.text for e in buffer.entries_for("C1", "2026-02-02")] == ["keep me"]

        await asyncio.sleep(T * 1.5)
        assert store.writes == [("C1", "2026-02-02", 1)]

    @pytest.mark.asyncio
    async def test_flush_returns_false_on_error(self, tmp_path):
        store = CountingStore(tmp_path / "memories", failures=1)
        buffer = IngestionBuffer(store, throttle_seconds=60)
        buffer.record_channel_message("C1", "alice", "x", timestamp=TS)
        assert await buffer.flush("C1") is False
        assert await buffer.flush("C1") is True
        assert store.writes == [("C1", "2026-02-02", 1)]
        await buffer.flush_all()

    def test_invalid_channel_rejected(self, counting_store):
        buffer = IngestionBuffer(counting_store, throttle_seconds=T)
        with pytest.raises(ValueError):
            buffer.record("../escape", make_entry("x"))

    def test_record_outside_event_loop_keeps_nothing(self, counting_store):
        buffer = IngestionBuffer(counting_store, throttle_seconds=T)
        with pytest.raises(RuntimeError):
            buffer.record_channel_message("C1", "alice", "x", timestamp=TS)
        assert buffer.channel_ids() == []
        assert buffer.entries_for("C1", "2026-02-02") == []


# ── Flush All / Load Tests ──


class TestFlushAllAndLoad:
    @pytest.mark.asyncio
    async def test_flush_all_writes_pending_and_cancels_timers(self, counting_store):
        buffer = IngestionBuffer(counting_store, throttle_seconds=T)
        buffer.record_channel_message("C1", "alice", "one", timestamp=TS)
        buffer.record_channel_message("C2", "bob", "two", timestamp=TS)

        await buffer.flush_all()
        assert len(counting_store.writes) == 2

        await asyncio.sleep(T * 1.5)
        assert len(counting_store.writes) == 2

    @pytest.mark.asyncio
    async def test_server_wide_writes_one_scope(self, counting_store):
        buffer = IngestionBuffer(counting_store, throttle_seconds=T, server_wide=True)
        buffer.record_channel_message("C1", "alice", "one", channel_name="general", timestamp=TS)
        buffer.record_channel_message("C2", "bob", "two", channel_name="random", timestamp=TS)
        await buffer.flush_all()

        assert counting_store.writes == [("all", "2026-02-02", 2)]
        entries = await counting_store.read_raw("all", "2026-02-02")
        assert {e.channel_id for e in entries} == {"C1", "C2"}

    @pytest.mark.asyncio
    async def test_load_from_disk_skips_compacted_days(self, store):
        await store.write_raw("100", "2026-02-01", [
            make_entry("pending", timestamp="2026-02-01T09:00:00+00:00"),
        ])
        await store.write_raw("100", "2026-01-31", [
            make_entry("done", timestamp="2026-01-31T09:00:00+00:00"),
        ])
        await store.put(Tier.DAILY, "100", "2026-01-31", "summary")

        buffer = IngestionBuffer(store)
        assert await buffer.load_from_disk() == 1
        assert [e.text for e in buffer.entries_for("100", "2026-02-01")] == ["pending"]
        assert buffer.entries_for("100", "2026-01-31") == []
        assert buffer.channel_name("100") == "general"

    @pytest.mark.asyncio
    async def test_load_from_disk_server_wide(self, store):
        await store.write_raw("all", "2026-02-01", [
            make_entry("a", channel_id="1", timestamp="2026-02-01T09:00:00+00:00"),
            make_entry("b", channel_id="2", timestamp="2026-02-01T09:01:00+00:00"),
        ])
        buffer = IngestionBuffer(store, server_wide=True)
        assert await buffer.load_from_disk() == 2
        assert sorted(buffer.channel_ids()) == ["1", "2"]

    @pytest.mark.asyncio
    async def test_load_from_disk_skips_unreadable_file(self, store):
        await store.write_raw("100", "2026-02-01", [
            make_entry("readable", timestamp="2026-02-01T09:00:00+00:00"),
        ])
        bad = store.path_for(Tier.RAW, "200", "2026-02-01")
        bad.parent.mkdir(parents=True, exist_ok=True)
        bad.write_bytes(b"\xff\xfe not utf-8\n")

        buffer = IngestionBuffer(store)
        assert await buffer.load_from_disk() == 1
        assert buffer.channel_ids() == ["100"]

    @pytest.mark.asyncio
    async def test_restart_keeps_same_day_history(self, store):
        buffer = IngestionBuffer(store, throttle_seconds=T)
        buffer.record_channel_message("C1", "alice", "before restart", timestamp=TS)
        await buffer.flush_all()

        restarted = IngestionBuffer(store, throttle_seconds=T)
        await restarted.load_from_disk()
        restarted.record_channel_message("C1", "alice", "after restart", timestamp=TS)
        await restarted.flush_all()

        entries = await store.read_raw("C1", "2026-02-02")
        assert [e.text for e in entries] == ["before restart", "after restart"]


# ── Concurrency Tests ──


class SlowFirstWriteStore(TierStore):
    """TierStore whose first raw write stalls, holding an older snapshot."""

    def __init__(self, root):
        super().__init__(root)
        self.stalled = False

    async def write_raw(self, scope, day, entries):
        if not self.stalled:
            self.stalled = True
            await asyncio.sleep(T)
        await super().write_raw(scope, day, entries)


class TestSharedScopeFlush:
    @pytest.mark.asyncio
    async def test_overlapping_flushes_keep_newest_snapshot(self, tmp_path):
        store = SlowFirstWriteStore(tmp_path / "memories")
        buffer = IngestionBuffer(store, throttle_seconds=60, server_wide=True)
        buffer.record_channel_message("C1", "alice", "from general", timestamp=TS)
        first = asyncio.create_task(buffer.flush("C1"))
        await asyncio.sleep(T / 4)

        buffer.record_channel_message("C2", "bob", "from random", timestamp=TS)
        assert await buffer.flush("C2") is True
        assert await first is True

        entries = await store.read_raw("all", "2026-02-02")
        assert [e.text for e in entries] == ["from general", "from random"]
        await buffer.flush_all()


# ── Accessor Tests ──


class TestAccessors:
    @pytest.mark.asyncio
    async def test_thread_reply_recorded(self, counting_store):
        buffer = IngestionBuffer(counting_store, throttle_seconds=60)
        entry = buffer.record_thread_reply("C1", "m1", "bob", "reply", timestamp=TS)
        assert entry.thread_id == "m1"
        assert buffer.entries_for("C1", "2026-02-02") == [entry]
        await buffer.flush_all()

    @pytest.mark.asyncio
    async def test_discard_day(self, counting_store):
        buffer = IngestionBuffer(counting_store, throttle_seconds=60)
        buffer.record("C1", make_entry("old", timestamp="2026-02-01T10:00:00+00:00"))
        buffer.record("C1", make_entry("new", timestamp="2026-02-02T10:00:00+00:00"))
        buffer.record("C2", make_entry("old2", timestamp="2026-02-01T11:00:00+00:00"))

        assert buffer.discard_day("2026-02-01", channel_id="C1") == 1
        assert [e.text for e in buffer.entries_for("C1", "2026-02-02")] == ["new"]
        assert buffer.discard_day("2026-02-01") == 1
        assert buffer.channel_ids() == ["C1"]
        await buffer.flush_all()

    @pytest.mark.asyncio
    async def test_clear_channel(self, counting_store):
        buffer = IngestionBuffer(counting_store, throttle_seconds=60)
        buffer.record_channel_message("C1", "alice", "x", timestamp=TS)
        buffer.record_channel_message("C2", "bob", "y", timestamp=TS)
        buffer.clear_channel("C1")
        assert buffer.channel_ids() == ["C2"]
        buffer.clear()
        assert buffer.channel_ids() == []
        await buffer.flush_all()
