"""
Structured memory operations log.

Appends one JSON object per memory operation (compactions, retention
deletions, loads) to ``memory-logs.jsonl`` so operators can see how the
memory evolves per channel without scraping application logs.
"""

import asyncio
import json
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "daily_compressed",
    "weekly_compressed",
    "monthly_compressed",
    "retention_deleted",
    "memory_loaded",
)


@dataclass
class MemoryLogEntry:
    type: str
    channel_id: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


class MemoryEventLog:
    """Append-only JSONL log of memory operations."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    async def record(self, type: str, channel_id: str, **details: Any) -> None:
        entry = MemoryLogEntry(type=type, channel_id=channel_id, details=details)
        try:
            await asyncio.to_thread(self._append, json.dumps(asdict(entry)) + "\n")
        except OSError as e:
            logger.warning("Failed to write memory log entry %s: %s", type, e)

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)

    async def read_recent(self, limit: int = 100) -> list[MemoryLogEntry]:
        """Return the last ``limit`` entries, oldest first."""
        lines = await asyncio.to_thread(self._read_lines)
        entries = []
        for line in lines[-limit:] if limit > 0 else []:
            try:
                entries.append(MemoryLogEntry(**json.loads(line)))
            except (ValueError, TypeError) as e:
                logger.debug("Skipping malformed memory log line: %s", e)
        return entries

    def _read_lines(self) -> list[str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        return [line for line in text.splitlines() if line.strip()]

    async def channel_stats(self, channel_id: str, window: int = 10_000) -> dict[str, int]:
        """Count operations of each type for a channel over the last ``window`` entries."""
        counts = Counter(
            e.type for e in await self.read_recent(window) if e.channel_id == channel_id
        )
        return {t: counts.get(t, 0) for t in EVENT_TYPES}
