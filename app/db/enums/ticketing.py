"""Ticketing enums."""

from enum import Enum


class TicketStatus(str, Enum):
    """Ticket lifecycle status."""

    NEW = "new"
    OPEN = "open"
    AWAITING_CUSTOMER = "awaiting_customer"
    RESOLVED = "resolved"


class TicketPriority(str, Enum):
    """Ticket priority level."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class MessageType(str, Enum):
    """Kind of conversation content. Only EMAIL is delivered to customers."""

    EMAIL = "email"
    NOTE = "note"
    SMS = "sms"
    CHAT = "chat"
    PHONE = "phone"
    SYSTEM = "system"


class ChangeSource(str, Enum):
    """What triggered a ticket field change."""

    MANUAL = "manual"
    AUTOMATION = "automation"
    API = "api"
    EMAIL_REPLY = "email_reply"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


# Statuses that an inbound customer email moves back to OPEN.
REOPENABLE_STATUSES = frozenset({TicketStatus.AWAITING_CUSTOMER, TicketStatus.RESOLVED})
