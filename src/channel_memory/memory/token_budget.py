"""
Token estimation and budget helpers for memory retrieval.

Token counts are approximations: a fixed ratio of characters per token is
good enough for budgeting and keeps retrieval free of tokenizer calls.
"""

import math

CHARS_PER_TOKEN = 4

TRUNCATION_MARKER = "[... earlier messages truncated to fit memory budget]\n"


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def budget_percent(total_tokens: int, token_budget: int) -> float:
    if token_budget <= 0:
        return 0.0
    return total_tokens / token_budget * 100


def truncate_to_token_budget(text: str, token_budget: int) -> str:
    """
    Cut text down so that estimate_tokens(result) <= token_budget.

    The newest (trailing) lines are kept and the cut is moved forward to
    the next line start so no message is split mid-line, unless that
    would drop everything that is left.
    """
    if token_budget <= 0:
        return ""
    if estimate_tokens(text) <= token_budget:
        return text

    max_chars = token_budget * CHARS_PER_TOKEN
    if max_chars <= len(TRUNCATION_MARKER):
        return text[-max_chars:]

    tail = text[-(max_chars - len(TRUNCATION_MARKER)):]
    newline = tail.find("\n")
    if 0 <= newline < len(tail) - 1:
        tail = tail[newline + 1:]
    return TRUNCATION_MARKER + tail
