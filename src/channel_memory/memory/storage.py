"""
File-backed tier store.

Layout (rooted at the configured memories directory):

    <scope>/raw/<YYYY-MM-DD>.jsonl    one RawEntry per line
    <scope>/daily/<YYYY-MM-DD>.md
    <scope>/weekly/<YYYY-Www>.md
    <scope>/monthly/<YYYY-MM>.md

``scope`` is a channel id or ``all`` for server-wide memory. Reads of
missing paths return empty results: "no memory yet" is a normal state.
Writes replace whole files atomically, so concurrent readers see either
the old or the new artifact, never a partial one.
"""

import asyncio
import json
import logging
import os
import re
import tempfile
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

SERVER_SCOPE = "all"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]*$")


class Tier(str, Enum):
    RAW = "raw"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def suffix(self) -> str:
        return ".jsonl" if self is Tier.RAW else ".md"


@dataclass
class RawEntry:
    """A single captured message."""

    timestamp: str  # ISO-8601, UTC
    channel_id: str
    channel_name: str
    author: str
    text: str
    session_id: str = ""
    thread_id: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def day(self) -> str:
        return self.timestamp[:10]

    def to_dict(self) -> dict:
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "RawEntry":
        return cls(
            timestamp=str(data["timestamp"]),
            channel_id=str(data.get("channel_id", "")),
            channel_name=str(data.get("channel_name", "")),
            author=str(data.get("author", "unknown")),
            text=str(data.get("text", "")),
            session_id=str(data.get("session_id", "")),
            thread_id=data.get("thread_id"),
            message_id=data.get("message_id"),
        )


@dataclass
class ChannelInfo:
    """A channel known to the bot."""

    id: str
    name: str


def _check_name(kind: str, value: str) -> str:
    if not value or not _SAFE_NAME.match(value):
        raise ValueError(f"Invalid memory {kind}: {value!r}")
    return value


def _dump_entries(entries: list[RawEntry]) -> str:
    return "".join(
        json.dumps(e.to_dict(), ensure_ascii=False) + "\n" for e in entries
    )


class TierStore:
    """Read/write/list/delete primitives for tier artifacts."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def path_for(self, tier: Tier, scope: str, identifier: str) -> Path:
        _check_name("scope", scope)
        _check_name("identifier", identifier)
        return self.root / scope / tier.value / f"{identifier}{tier.suffix}"

    def tier_dir(self, tier: Tier, scope: str) -> Path:
        _check_name("scope", scope)
        return self.root / scope / tier.value

    # ── Generic tier operations ──

    async def put(self, tier: Tier, scope: str, identifier: str, content: str) -> None:
        path = self.path_for(tier, scope, identifier)
        await asyncio.to_thread(self._write_atomic, path, content)

    async def get(self, tier: Tier, scope: str, identifier: str) -> Optional[str]:
        path = self.path_for(tier, scope, identifier)
        return await asyncio.to_thread(self._read, path)

    async def list_artifacts(self, tier: Tier, scope: str) -> list[str]:
        """Identifiers for a tier, most recent first."""
        directory = self.tier_dir(tier, scope)
        return await asyncio.to_thread(self._list, directory, tier.suffix)

    async def delete(self, tier: Tier, scope: str, identifier: str) -> bool:
        path = self.path_for(tier, scope, identifier)
        return await asyncio.to_thread(self._unlink, path)

    async def list_scopes(self) -> list[str]:
        return await asyncio.to_thread(self._list_scopes)

    # ── Raw tier ──

    async def append_raw(self, scope: str, entry: RawEntry) -> None:
        path = self.path_for(Tier.RAW, scope, entry.day)
        await asyncio.to_thread(self._append, path, _dump_entries([entry]))

    async def write_raw(self, scope: str, day: str, entries: list[RawEntry]) -> None:
        await self.put(Tier.RAW, scope, day, _dump_entries(entries))

    async def read_raw(self, scope: str, day: str) -> list[RawEntry]:
        content = await self.get(Tier.RAW, scope, day)
        if not content:
            return []
        entries = []
        for lineno, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(RawEntry.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(
                    "Skipping malformed raw entry %s/%s line %d: %s",
                    scope, day, lineno, e,
                )
        return entries

    # ── Blocking helpers (run in a worker thread) ──

    @staticmethod
    def _write_atomic(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    @staticmethod
    def _append(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(content)

    @staticmethod
    def _read(path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    @staticmethod
    def _list(directory: Path, suffix: str) -> list[str]:
        try:
            names = [
                p.name[: -len(suffix)]
                for p in directory.iterdir()
                if p.is_file() and p.name.endswith(suffix) and not p.name.startswith(".")
            ]
        except FileNotFoundError:
            return []
        return sorted(names, reverse=True)

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def _list_scopes(self) -> list[str]:
        try:
            return sorted(
                p.name
                for p in self.root.iterdir()
                if p.is_dir() and _SAFE_NAME.match(p.name)
            )
        except FileNotFoundError:
            return []
