"""Ticket Pydantic models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, Field


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TicketStatus(StrEnum):
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    BLOCKED = "blocked"
    PENDING = "pending"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    REMOVED = "removed"


class TicketType(StrEnum):
    AI_TO_HUMAN = "ai_to_human"
    HUMAN_TO_AI = "human_to_ai"
    ANSWER_AGENT = "answer_agent"


class ThreadMessage(BaseModel):
    role: str
    content: str
    created_at: str = Field(default_factory=utcnow_iso)


class Ticket(BaseModel):
    id: str
    title: str
    status: TicketStatus = TicketStatus.OPEN
    type: TicketType = TicketType.AI_TO_HUMAN
    priority: int = 2
    description: str = ""
    creator: str = ""
    assignee: str = ""
    task_id: str | None = None
    resolution: str = ""
    thread: list[ThreadMessage] = Field(default_factory=list)
    version: int = 1
    created_at: str = Field(default_factory=utcnow_iso)
    updated_at: str = Field(default_factory=utcnow_iso)


class TicketCreate(BaseModel):
    title: str
    description: str = ""
    priority: int = 2
    type: TicketType = TicketType.AI_TO_HUMAN
    status: TicketStatus = TicketStatus.OPEN
    task_id: str | None = None
    creator: str = "orchestrator"
    assignee: str = ""


# Fields callers may change through TicketStore.update()
UPDATABLE_FIELDS = frozenset(
    {"title", "status", "type", "priority", "description", "assignee", "resolution", "thread"}
)
