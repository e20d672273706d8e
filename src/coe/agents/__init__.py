"""Model-backed worker agents."""

from .answer import MAX_HISTORY_EXCHANGES, AnswerAgent

__all__ = ["AnswerAgent", "MAX_HISTORY_EXCHANGES"]
