"""Answer agent with per-chat conversation history."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from typing import Any

from ..core.cancel import CancelToken
from ..core.config import LLMConfig
from ..llm import Message, ModelClient, trim_history
from ..orchestrator.routing import ANSWER_SYSTEM_PROMPT
from ..orchestrator.timeout import GuardResult, TimeoutGuard

logger = logging.getLogger(__name__)

# User/assistant pairs remembered per chat
MAX_HISTORY_EXCHANGES = 5


class AnswerAgent:
    """Answers developer questions, remembering recent exchanges per chat."""

    def __init__(
        self,
        client: ModelClient,
        guard: TimeoutGuard,
        config: LLMConfig | None = None,
        *,
        stream: bool = True,
    ):
        self.client = client
        self.guard = guard
        self.config = config or LLMConfig()
        self.stream = stream
        self._histories: dict[str, list[Message]] = {}

    def history(self, chat_id: str) -> list[Message]:
        return list(self._histories.get(chat_id, ()))

    def clear_history(self, chat_id: str | None = None) -> None:
        if chat_id is None:
            self._histories.clear()
        else:
            self._histories.pop(chat_id, None)

    def build_messages(
        self,
        question: str,
        *,
        chat_id: str | None = None,
        context: str | None = None,
    ) -> list[Message]:
        messages = [Message("system", ANSWER_SYSTEM_PROMPT)]
        if chat_id:
            messages.extend(self._histories.get(chat_id, ()))
        prompt = f"Context:\n{context}\n\nQuestion: {question}" if context else question
        messages.append(Message("user", prompt))
        return trim_history(
            messages,
            context_limit=self.config.context_limit,
            fraction=self.config.trim_fraction,
            keep_exchanges=self.config.keep_exchanges,
        )

    async def ask(
        self,
        question: str,
        *,
        chat_id: str | None = None,
        context: str | None = None,
        request_id: str | None = None,
        ticket_context: dict[str, Any] | None = None,
        on_chunk: Callable[[str], None] | None = None,
    ) -> GuardResult:
        """Ask a question through the timeout guard.

        The exchange is added to the chat history only when the call succeeds.
        """
        messages = self.build_messages(question, chat_id=chat_id, context=context)
        request_id = request_id or f"answer-{secrets.token_hex(4)}"

        async def operation(token: CancelToken):
            if self.stream:
                return await self.client.stream("", on_chunk, messages=messages, token=token)
            return await self.client.complete("", messages=messages, token=token)

        result = await self.guard.with_timeout(
            request_id,
            operation,
            {"question": question, "chat_id": chat_id or "", **(ticket_context or {})},
        )

        if result.success and chat_id:
            history = self._histories.setdefault(chat_id, [])
            history.append(Message("user", question))
            history.append(Message("assistant", result.content))
            del history[: max(0, len(history) - MAX_HISTORY_EXCHANGES * 2)]
        elif not result.success:
            logger.warning("Answer request %s failed: %s", request_id, result.error)

        return result
