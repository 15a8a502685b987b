"""
Tier summarizer.

Wraps a LangChain chat model to turn a period's text into a shorter
memory summary. The call is bounded by a timeout; on timeout, error, or
empty output the verbatim input is kept as the "summary" so a period's
content is never lost.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from langchain_core.messages import HumanMessage, SystemMessage

from .token_budget import estimate_tokens

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You maintain the long-term memory of a Discord community assistant.
Summarize the content you are given into a concise memory summary. Focus on:
- Outcomes and decisions
- Preferences and learnings about members or the project
- Problems solved and work completed
- Open questions that are likely to come up again

Omit greetings, chit-chat and other noise. Keep it factual; do not invent details.
Output plain text or simple bullet points, without markdown headers."""

DAILY_CONTEXT = "You are summarizing the conversation outcomes from {period} in {channel}."
WEEKLY_CONTEXT = "You are summarizing a week ({period}) of activity in {channel}."
MONTHLY_CONTEXT = "You are summarizing a month ({period}) of activity in {channel}."


@dataclass
class SummaryResult:
    """Outcome of one summarizer call."""

    summary: str
    token_count: int
    usage_tokens: int = 0
    degraded: bool = False


def _response_text(response) -> str:
    content = response.content if hasattr(response, "content") else str(response)
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        content = "".join(parts)
    return (content or "").strip()


def _usage_tokens(response) -> int:
    usage = getattr(response, "usage_metadata", None) or {}
    try:
        return int(usage.get("total_tokens", 0))
    except (TypeError, ValueError):
        return 0


class TierSummarizer:
    """Summarizes memory periods with an LLM, degrading to verbatim text."""

    def __init__(
        self,
        llm=None,
        timeout_seconds: float = 30.0,
        max_input_chars: int = 60_000,
    ):
        self._llm = llm
        self.timeout_seconds = timeout_seconds
        self.max_input_chars = max_input_chars

    def _verbatim(self, content: str) -> SummaryResult:
        return SummaryResult(
            summary=content,
            token_count=estimate_tokens(content),
            degraded=True,
        )

    async def summarize(self, content: str, context: str = "") -> SummaryResult:
        """Summarize ``content``; ``context`` describes the period and channel."""
        if not content.strip():
            return SummaryResult(summary="", token_count=0)
        if not self._llm:
            logger.debug("No summarizer LLM configured; keeping content verbatim")
            return self._verbatim(content)

        source = content
        if len(source) > self.max_input_chars:
            source = source[: self.max_input_chars] + "\n...(truncated)"

        prompt = f"{context}\n\nContent to summarize:\n{source}" if context else source
        try:
            response = await asyncio.wait_for(
                self._llm.ainvoke([
                    SystemMessage(content=SUMMARY_SYSTEM_PROMPT),
                    HumanMessage(content=prompt),
                ]),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Summarizer timed out after %.0fs; keeping content verbatim",
                self.timeout_seconds,
            )
            return self._verbatim(content)
        except Exception as e:
            logger.warning("Failed to generate summary: %s", e)
            return self._verbatim(content)

        summary = _response_text(response)
        if not summary:
            logger.warning("Summarizer returned empty output; keeping content verbatim")
            result = self._verbatim(content)
            result.usage_tokens = _usage_tokens(response)
            return result

        return SummaryResult(
            summary=summary,
            token_count=estimate_tokens(summary),
            usage_tokens=_usage_tokens(response),
        )


def build_context(template: str, period: str, channel: Optional[str]) -> str:
    label = f"the Discord channel #{channel}" if channel else "the Discord server"
    return template.format(period=period, channel=label)
