"""
Raw entry condenser.

Turns captured raw entries into compact transcript text, either for the
agent's "Today" memory section or as summarizer input. Thread replies are
nested under the message that started the thread when it is known.
"""

from collections import defaultdict
from typing import Optional

from .storage import RawEntry


def condense_text(text: str, max_chars: Optional[int] = None) -> str:
    """Collapse whitespace runs and truncate overly long messages."""
    text = " ".join((text or "").split())
    if max_chars is not None and len(text) > max_chars:
        return text[: max_chars - 3] + "..."
    return text


def _entry_line(
    entry: RawEntry,
    with_time: bool,
    max_chars: Optional[int],
    indent: str = "",
    marker: str = "",
) -> str:
    prefix = f"[{entry.timestamp[11:16]}] " if with_time else ""
    text = condense_text(entry.text, max_chars)
    return f"{indent}{prefix}[{entry.author}]: {marker}{text}"


def render_entries(
    entries: list[RawEntry],
    with_time: bool = False,
    max_chars: Optional[int] = None,
) -> str:
    """
    Render entries chronologically, one line per message.

    - Channel messages: ``[author]: text``
    - Thread replies: indented under their starter message, or prefixed
      with ``[In thread]`` when the starter is not among ``entries``
    """
    ordered = sorted(entries, key=lambda e: e.timestamp)
    starters = {e.message_id for e in ordered if e.message_id and not e.thread_id}

    replies: dict[str, list[RawEntry]] = defaultdict(list)
    lines: list[str] = []
    for entry in ordered:
        if entry.thread_id and entry.thread_id in starters:
            replies[entry.thread_id].append(entry)

    for entry in ordered:
        if entry.thread_id:
            if entry.thread_id in starters:
                continue
            lines.append(
                _entry_line(entry, with_time, max_chars, marker="[In thread] ")
            )
            continue
        lines.append(_entry_line(entry, with_time, max_chars))
        for reply in replies.get(entry.message_id or "", []):
            lines.append(_entry_line(reply, with_time, max_chars, indent="  "))

    return "\n".join(lines)


def group_by_channel(entries: list[RawEntry]) -> dict[str, list[RawEntry]]:
    """Group entries by channel id, keeping first-seen channel order."""
    groups: dict[str, list[RawEntry]] = {}
    for entry in sorted(entries, key=lambda e: e.timestamp):
        groups.setdefault(entry.channel_id, []).append(entry)
    return groups
