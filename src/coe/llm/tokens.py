"""Heuristic token budgeting for chat history."""

from __future__ import annotations

import math
from collections.abc import Sequence

from .models import Message


def estimate_tokens(text: str) -> int:
    """Rough token estimate: chars/4 plus 0.3 per whitespace-separated word."""
    if not text:
        return 0
    words = len(text.split())
    return math.ceil(len(text) / 4) + math.ceil(words * 0.3)


def estimate_messages_tokens(messages: Sequence[Message]) -> int:
    return sum(estimate_tokens(m.content) for m in messages)


def trim_history(
    messages: Sequence[Message],
    *,
    context_limit: int,
    fraction: float = 0.8,
    keep_exchanges: int = 5,
) -> list[Message]:
    """Trim a conversation to fit the model context.

    When the estimate exceeds ``fraction`` of ``context_limit``, keep the
    first system message plus the last ``keep_exchanges`` user/assistant
    exchanges. Otherwise return the messages unchanged.
    """
    messages = list(messages)
    if estimate_messages_tokens(messages) <= context_limit * fraction:
        return messages

    system = next((m for m in messages if m.role == "system"), None)
    rest = [m for m in messages if m is not system]
    kept = rest[-keep_exchanges * 2:] if keep_exchanges > 0 else []
    return [system, *kept] if system is not None else kept
