"""Model service request and response models."""

from __future__ import annotations

from dataclasses import dataclass, field

# Prefix embedded in content when a call fails, so plain-text callers can detect it
ERROR_MARKER = "[Error: "


@dataclass
class Message:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, data: dict | None) -> Usage:
        data = data or {}
        return cls(
            prompt_tokens=int(data.get("prompt_tokens", 0) or 0),
            completion_tokens=int(data.get("completion_tokens", 0) or 0),
            total_tokens=int(data.get("total_tokens", 0) or 0),
        )


@dataclass
class ModelResponse:
    """Result of a model call. Failures are values, never exceptions."""

    content: str = ""
    usage: Usage = field(default_factory=Usage)
    error: str | None = None
    status_code: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, message: str, *, status_code: int = 0, partial: str = "") -> ModelResponse:
        content = f"{partial}{ERROR_MARKER}{message}]" if partial else f"{ERROR_MARKER}{message}]"
        return cls(content=content, error=message, status_code=status_code)


def has_error_marker(content: str) -> bool:
    return ERROR_MARKER in content
