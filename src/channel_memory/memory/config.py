"""
Memory configuration for the tiered channel memory store.
"""

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_TOKEN_BUDGET = 10_000
DEFAULT_SUMMARY_MODEL = "claude-3-5-haiku-20241022"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class MemoryConfig:
    """Configuration for capture, compaction and retrieval of channel memory."""

    # Root directory holding <scope>/{raw,daily,weekly,monthly}
    memories_dir: str = "memories"

    # Context size offered to the agent (approximate tokens)
    token_budget: int = DEFAULT_TOKEN_BUDGET

    # Number of monthly summaries kept by retention
    retention_months: int = 12

    # Ingestion buffer throttle
    flush_throttle_seconds: float = 30.0

    # Compact the whole server into scope "all" instead of per channel
    server_wide: bool = False

    # Summarizer
    summary_model: str = DEFAULT_SUMMARY_MODEL
    summary_timeout_seconds: float = 30.0
    summary_max_input_chars: int = 60_000
    summary_cost_per_million_tokens: float = 0.0

    # Hour (UTC) at which the built-in compaction loop ticks
    compaction_hour_utc: int = 0

    # Structured operations log (memory-logs.jsonl)
    event_log_enabled: bool = True

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        return cls(
            memories_dir=os.getenv("MEMORY_DIR", "memories"),
            token_budget=int(
                os.getenv("MEMORY_CONTEXT_SIZE", str(DEFAULT_TOKEN_BUDGET))
            ),
            retention_months=int(os.getenv("MEMORY_RETENTION_MONTHS", "12")),
            flush_throttle_seconds=float(
                os.getenv("MEMORY_FLUSH_THROTTLE_SECONDS", "30")
            ),
            server_wide=_env_bool("MEMORY_SERVER_WIDE", "false"),
            summary_model=os.getenv("MEMORY_SUMMARY_MODEL", DEFAULT_SUMMARY_MODEL),
            summary_timeout_seconds=float(os.getenv("MEMORY_SUMMARY_TIMEOUT", "30")),
            summary_max_input_chars=int(
                os.getenv("MEMORY_SUMMARY_MAX_INPUT_CHARS", "60000")
            ),
            summary_cost_per_million_tokens=float(
                os.getenv("MEMORY_SUMMARY_COST_PER_MTOK", "0")
            ),
            compaction_hour_utc=int(os.getenv("MEMORY_COMPACTION_HOUR", "0")),
            event_log_enabled=_env_bool("MEMORY_EVENT_LOG", "true"),
        )

    @property
    def memories_path(self) -> Path:
        return Path(self.memories_dir).expanduser()

    @property
    def event_log_path(self) -> Path:
        return self.memories_path / "memory-logs.jsonl"
