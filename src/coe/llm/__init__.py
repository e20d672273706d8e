"""Model service client, streaming decoder and token budget."""

from .client import ModelClient, ModelServiceError
from .models import ERROR_MARKER, Message, ModelResponse, Usage, has_error_marker
from .sse import extract_delta, iter_sse_payloads, parse_sse_line
from .tokens import estimate_messages_tokens, estimate_tokens, trim_history

__all__ = [
    "ERROR_MARKER",
    "Message",
    "ModelClient",
    "ModelResponse",
    "ModelServiceError",
    "Usage",
    "estimate_messages_tokens",
    "estimate_tokens",
    "extract_delta",
    "has_error_marker",
    "iter_sse_payloads",
    "parse_sse_line",
    "trim_history",
]
