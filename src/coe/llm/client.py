"""HTTP client for an OpenAI-compatible chat completions service.

Both ``complete()`` and ``stream()`` always return a ModelResponse. Any
transport failure or non-2xx status becomes a failed response carrying an
``[Error: ...]`` marker, so callers never need a try/except around a call.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

import httpx

from ..core.cancel import CancelToken
from ..core.config import LLMConfig
from .models import Message, ModelResponse, Usage
from .sse import extract_delta, iter_sse_payloads

logger = logging.getLogger(__name__)


class ModelServiceError(Exception):
    """Raised inside the transport layer when the model service fails."""

    def __init__(self, message: str, status_code: int = 0, detail: str = ""):
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class ModelClient:
    """Async client for ``POST {endpoint}/chat/completions``."""

    def __init__(
        self,
        config: LLMConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or LLMConfig()
        self._client = httpx.AsyncClient(
            base_url=self.config.endpoint.rstrip("/"),
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(float(self.config.timeout_seconds)),
            transport=transport,
        )

    async def __aenter__(self) -> ModelClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_messages(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        messages: Sequence[Message] | None = None,
    ) -> list[dict[str, str]]:
        """Assemble the OpenAI message list: system, prior history, then the prompt."""
        built: list[dict[str, str]] = []
        history = list(messages or [])
        if system_prompt and not any(m.role == "system" for m in history):
            built.append({"role": "system", "content": system_prompt})
        built.extend(m.to_dict() for m in history)
        if prompt:
            built.append({"role": "user", "content": prompt})
        return built

    def _payload(
        self,
        prompt: str,
        *,
        stream: bool,
        system_prompt: str | None,
        messages: Sequence[Message] | None,
        temperature: float | None,
    ) -> dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": self.build_messages(
                prompt, system_prompt=system_prompt, messages=messages
            ),
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature if temperature is None else temperature,
            "stream": stream,
        }

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        messages: Sequence[Message] | None = None,
        temperature: float | None = None,
        token: CancelToken | None = None,
    ) -> ModelResponse:
        """Non-streaming completion.

        Args:
            prompt: User message appended after any history.
            system_prompt: Optional system message (skipped if history has one).
            messages: Optional prior conversation.
            temperature: Overrides the configured temperature.
            token: Cancellation token, touched when the response arrives.

        Returns:
            ModelResponse with content and usage, or a failed response.
        """
        payload = self._payload(
            prompt,
            stream=False,
            system_prompt=system_prompt,
            messages=messages,
            temperature=temperature,
        )
        try:
            data = await self._post(payload)
        except ModelServiceError as e:
            logger.warning("Model call failed: %s", e.message)
            return ModelResponse.failed(e.message, status_code=e.status_code)

        if token is not None:
            token.touch()

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            logger.warning("Model response missing choices[0].message.content")
            return ModelResponse.failed("Malformed response from model service")

        return ModelResponse(content=content, usage=Usage.from_dict(data.get("usage")))

    async def stream(
        self,
        prompt: str,
        on_chunk: Callable[[str], None] | None = None,
        *,
        system_prompt: str | None = None,
        messages: Sequence[Message] | None = None,
        temperature: float | None = None,
        token: CancelToken | None = None,
    ) -> ModelResponse:
        """Streaming completion over server-sent events.

        Every received chunk touches the token, which keeps an inactivity
        watchdog from firing while the model is still producing output.
        If the token is cancelled, reading stops and the partial content is
        returned as a failed response.
        """
        payload = self._payload(
            prompt,
            stream=True,
            system_prompt=system_prompt,
            messages=messages,
            temperature=temperature,
        )
        parts: list[str] = []
        usage = Usage()

        try:
            async with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode(errors="replace")[:200]
                    raise ModelServiceError(
                        f"POST /chat/completions returned {response.status_code}: {body}",
                        status_code=response.status_code,
                        detail=body,
                    )

                async for frame in iter_sse_payloads(response.aiter_lines()):
                    if token is not None:
                        if token.cancelled:
                            logger.info("Stream cancelled: %s", token.reason)
                            return ModelResponse.failed(
                                token.reason or "cancelled", partial="".join(parts)
                            )
                        token.touch()

                    if frame.get("usage"):
                        usage = Usage.from_dict(frame["usage"])
                    delta = extract_delta(frame)
                    if delta:
                        parts.append(delta)
                        if on_chunk is not None:
                            on_chunk(delta)
        except ModelServiceError as e:
            logger.warning("Model stream failed: %s", e.message)
            return ModelResponse.failed(e.message, status_code=e.status_code)
        except httpx.TimeoutException as e:
            logger.warning("Model stream timed out: %s", e)
            return ModelResponse.failed("Model service timed out", partial="".join(parts))
        except httpx.HTTPError as e:
            logger.warning("Model stream error: %s", e)
            return ModelResponse.failed(
                f"Cannot reach model service: {e}", partial="".join(parts)
            )

        return ModelResponse(content="".join(parts), usage=usage)

    async def health_check(self) -> bool:
        """Return True if ``GET /models`` answers with 2xx."""
        try:
            response = await self._client.get("/models")
        except httpx.HTTPError:
            return False
        return response.status_code < 400

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a completion request.

        Raises:
            ModelServiceError: On HTTP errors or connection failures.
        """
        try:
            response = await self._client.post("/chat/completions", json=payload)
        except httpx.ConnectError as e:
            raise ModelServiceError(
                f"Cannot connect to model service: {e}",
                detail=str(e),
            ) from e
        except httpx.TimeoutException as e:
            raise ModelServiceError(
                "Model service timed out",
                detail=str(e),
            ) from e
        except httpx.HTTPError as e:
            raise ModelServiceError(f"Model service error: {e}", detail=str(e)) from e

        if response.status_code >= 400:
            detail = response.text[:200]
            raise ModelServiceError(
                f"POST /chat/completions returned {response.status_code}: {detail}",
                status_code=response.status_code,
                detail=detail,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ModelServiceError("Model service returned invalid JSON", detail=str(e)) from e
