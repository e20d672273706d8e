"""Server-sent-event decoding for streamed chat completions.

Each ``data:`` line carries one JSON payload. A ``data: [DONE]`` line ends
the stream. Lines that fail to parse are skipped so one bad frame never
aborts the whole response.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def parse_sse_line(line: str) -> dict[str, Any] | str | None:
    """Parse one SSE line.

    Returns:
        The decoded payload dict, the string ``"[DONE]"`` for the sentinel,
        or None for blank lines, comments, non-data fields and malformed JSON.
    """
    line = line.strip()
    if not line or line.startswith(":") or not line.startswith(DATA_PREFIX):
        return None

    data = line[len(DATA_PREFIX):].strip()
    if data == DONE_SENTINEL:
        return DONE_SENTINEL

    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed SSE frame: %s", data[:200])
        return None

    if not isinstance(payload, dict):
        logger.warning("Skipping non-object SSE frame: %s", data[:200])
        return None
    return payload


async def iter_sse_payloads(lines: AsyncIterable[str]) -> AsyncIterator[dict[str, Any]]:
    """Yield decoded payloads until the stream ends or the sentinel arrives."""
    async for line in lines:
        payload = parse_sse_line(line)
        if payload is None:
            continue
        if payload == DONE_SENTINEL:
            return
        yield payload


def extract_delta(payload: dict[str, Any]) -> str:
    """Return ``choices[0].delta.content`` or an empty string."""
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else ""
