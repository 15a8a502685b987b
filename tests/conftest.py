"""
Shared pytest setup.

Puts ``src`` on sys.path so tests can import ``channel_memory`` without an
installed package, and provides small fixtures for the file-backed store.
"""

import sys
from pathlib import Path

import pytest

# Add the src directory to PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from channel_memory.memory.storage import RawEntry, TierStore  # noqa: E402


@pytest.fixture
def store(tmp_path):
    return TierStore(tmp_path / "memories")


def make_entry(
    text: str,
    timestamp: str = "2026-02-02T10:00:00+00:00",
    channel_id: str = "100",
    channel_name: str = "general",
    author: str = "alice",
    **kwargs,
) -> RawEntry:
    return RawEntry(
        timestamp=timestamp,
        channel_id=channel_id,
        channel_name=channel_name,
        author=author,
        text=text,
        **kwargs,
    )
