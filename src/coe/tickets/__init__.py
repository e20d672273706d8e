"""Ticket store collaborators."""

from .models import ThreadMessage, Ticket, TicketCreate, TicketStatus, TicketType
from .sqlite import SqliteTicketStore
from .store import InMemoryTicketStore, TicketStore, TicketStoreError

__all__ = [
    "InMemoryTicketStore",
    "SqliteTicketStore",
    "ThreadMessage",
    "Ticket",
    "TicketCreate",
    "TicketStatus",
    "TicketStore",
    "TicketStoreError",
    "TicketType",
]
