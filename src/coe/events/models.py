"""Orchestration event models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class EventType(StrEnum):
    # Queue events
    TASK_ENQUEUED = "task_enqueued"
    TASK_CLAIMED = "task_claimed"
    TASK_BLOCKED = "task_blocked"
    TASK_COMPLETED = "task_completed"
    TASK_CANCELLED = "task_cancelled"
    QUEUE_REFRESHED = "queue_refreshed"
    # Governance events
    STATUS_CHANGED = "status_changed"
    VERIFICATION_PASSED = "verification_passed"
    VERIFICATION_FAILED = "verification_failed"
    ESCALATION_CREATED = "escalation_created"
    # Store events
    TICKET_CHANGED = "ticket_changed"


# Well-known channels
QUEUE_CHANNEL = "queue"
STATUS_CHANNEL = "status"
VERIFICATION_CHANNEL = "verification"


@dataclass
class Event:
    event_type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    channel: str = ""
