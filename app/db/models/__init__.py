"""SQLAlchemy ORM models."""

from app.db.models.auth import User
from app.db.models.ticketing import (
    Attachment,
    EmailOpen,
    Message,
    Tag,
    Ticket,
    TicketHistory,
    TicketTag,
)

__all__ = [
    "User",
    "Attachment",
    "EmailOpen",
    "Message",
    "Tag",
    "Ticket",
    "TicketHistory",
    "TicketTag",
]
