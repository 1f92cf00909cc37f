"""Enum definitions for application constants."""

from app.db.enums.auth import Role
from app.db.enums.ticketing import (
    REOPENABLE_STATUSES,
    ChangeSource,
    MessageType,
    SortOrder,
    TicketPriority,
    TicketStatus,
)

__all__ = [
    "Role",
    "REOPENABLE_STATUSES",
    "ChangeSource",
    "MessageType",
    "SortOrder",
    "TicketPriority",
    "TicketStatus",
]
