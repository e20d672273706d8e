"""Orchestration event system."""

from .manager import EventManager, Subscription
from .models import (
    QUEUE_CHANNEL,
    STATUS_CHANNEL,
    VERIFICATION_CHANNEL,
    Event,
    EventType,
)

__all__ = [
    "EventManager",
    "Subscription",
    "Event",
    "EventType",
    "QUEUE_CHANNEL",
    "STATUS_CHANNEL",
    "VERIFICATION_CHANNEL",
]
