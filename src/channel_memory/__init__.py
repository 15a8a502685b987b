"""
Channel memory: tiered, token-budgeted memory for a Discord community agent.
"""

from .memory import ChannelInfo, MemoryConfig, MemoryLoadResult
from .runtime import ChannelMemoryRuntime

__version__ = "0.1.0"

__all__ = [
    "ChannelInfo",
    "ChannelMemoryRuntime",
    "MemoryConfig",
    "MemoryLoadResult",
]
