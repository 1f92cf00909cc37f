"""Audit-logged ticket mutations.

Every externally visible ticket field change goes through `update_ticket`,
which writes one `TicketHistory` row per field whose value actually changed.

History writes are best-effort: each one runs in its own SAVEPOINT, and a
failure is logged and swallowed so it never undoes or blocks the ticket
change it describes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Union

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.event_bus import TICKET_UPDATE, EventBus
from app.core.structured_logging import build_log_context
from app.db.enums import ChangeSource
from app.db.models import Message, Ticket, TicketHistory, User
from app.db.utils import as_utc
from app.services import webhook_service
from app.services.ticket_read_service import (
    get_messages,
    get_ticket_or_404,
    list_history,
    ticket_to_dict,
)

logger = logging.getLogger(__name__)

# Order in which fields are applied (and audited).
MUTABLE_FIELDS = (
    "status",
    "priority",
    "assignee_id",
    "customer_email",
    "customer_name",
    "follow_up_at",
)


def _stringify(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _normalize(value: Any) -> Any:
    """Comparable form (enum members and their raw values compare equal)."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return as_utc(value)
    return value


# =============================================================================
# History
# =============================================================================

def log_ticket_change(
    db: Session,
    ticket_id: int,
    field_name: str,
    old_value: Any,
    new_value: Any,
    user: User | None,
    change_source: ChangeSource = ChangeSource.MANUAL,
    notes: str | None = None,
) -> TicketHistory | None:
    """
    Append one history entry. Returns None when nothing was written
    (unchanged value, or the write failed).
    """
    if _normalize(old_value) == _normalize(new_value):
        return None

    entry = TicketHistory(
        ticket_id=ticket_id,
        field_name=field_name,
        old_value=_stringify(old_value),
        new_value=_stringify(new_value),
        changed_by_user_id=user.id if user else None,
        changed_by_email=user.email if user else None,
        changed_by_name=user.name if user else None,
        change_source=change_source,
        notes=notes,
    )
    try:
        with db.begin_nested():
            db.add(entry)
    except SQLAlchemyError:
        logger.exception(
            "Failed to log ticket change",
            extra=build_log_context(ticket_id=ticket_id),
        )
        return None

    logger.info(
        "[AUDIT] Ticket %s %s: %s -> %s",
        ticket_id,
        field_name,
        entry.old_value,
        entry.new_value,
        extra=build_log_context(ticket_id=ticket_id, user_id=user.id if user else None),
    )
    return entry


# =============================================================================
# Mutations
# =============================================================================

def _resolve_assignee_email(db: Session, changes: dict[str, Any]) -> None:
    """Translate assignee_email into assignee_id (explicit assignee_id wins)."""
    if "assignee_email" not in changes:
        return
    email = changes.pop("assignee_email")
    if "assignee_id" in changes:
        return
    if email is None:
        changes["assignee_id"] = None
        return
    assignee = db.scalars(select(User).where(User.email == email)).first()
    if not assignee:
        raise HTTPException(status_code=404, detail=f"User not found with email: {email}")
    changes["assignee_id"] = assignee.id


def apply_ticket_changes(
    db: Session,
    ticket: Ticket,
    changes: dict[str, Any],
    user: User | None,
    source: ChangeSource = ChangeSource.MANUAL,
) -> dict[str, Any]:
    """
    Apply requested field values to `ticket`, auditing each real change.

    Returns {field: new_value} for the fields that changed. Does not commit.
    """
    changes = dict(changes)
    _resolve_assignee_email(db, changes)

    if changes.get("assignee_id") is not None and not db.get(User, changes["assignee_id"]):
        raise HTTPException(status_code=404, detail="Assignee not found")

    applied: dict[str, Any] = {}
    pending: list[tuple[str, Any, Any]] = []
    for field in MUTABLE_FIELDS:
        if field not in changes:
            continue
        old_value = getattr(ticket, field)
        new_value = changes[field]
        if isinstance(new_value, datetime):
            new_value = as_utc(new_value)
        if _normalize(old_value) == _normalize(new_value):
            continue
        setattr(ticket, field, new_value)
        applied[field] = new_value
        pending.append((field, old_value, new_value))

    if not applied:
        return applied

    # Ticket row first so a failed history insert cannot take it down.
    db.flush()
    for field, old_value, new_value in pending:
        log_ticket_change(db, ticket.id, field, old_value, new_value, user, source)
    return applied


def update_ticket(
    db: Session,
    ticket_id: int,
    changes: dict[str, Any],
    user: User,
    bus: EventBus,
    source: ChangeSource = ChangeSource.MANUAL,
) -> Ticket:
    """
    Partially update a ticket.

    `changes` carries only the fields the caller sent. Publishes
    `ticket-update` and, when something changed, fires the
    `ticket_update` webhook.
    """
    ticket = get_ticket_or_404(db, ticket_id)
    applied = apply_ticket_changes(db, ticket, changes, user, source)
    db.commit()
    db.refresh(ticket)

    bus.publish(TICKET_UPDATE, ticket_to_dict(ticket))
    if applied:
        webhook_service.notify_ticket_update(ticket, applied, user.email)

    logger.info(
        "Ticket updated (%s)",
        ", ".join(applied) or "no changes",
        extra=build_log_context(ticket_id=ticket.id, user_id=user.id),
    )
    return ticket


def bulk_update(
    db: Session,
    ticket_ids: list[int],
    changes: dict[str, Any],
    user: User,
    bus: EventBus,
) -> list[Ticket]:
    """Apply the same update to several tickets; a missing ticket aborts with 404."""
    return [update_ticket(db, ticket_id, changes, user, bus) for ticket_id in ticket_ids]


# =============================================================================
# Timeline
# =============================================================================

@dataclass(frozen=True)
class MessageEvent:
    at: datetime
    message: Message
    kind: str = "message"


@dataclass(frozen=True)
class HistoryEvent:
    at: datetime
    entry: TicketHistory
    kind: str = "history"


TimelineEvent = Union[MessageEvent, HistoryEvent]


def _timeline_key(event: TimelineEvent) -> tuple[datetime, int, int]:
    # On identical timestamps messages precede the changes they caused.
    if isinstance(event, MessageEvent):
        return event.at, 0, event.message.id
    return event.at, 1, event.entry.id


def build_timeline(db: Session, ticket_id: int) -> list[TimelineEvent]:
    """Messages and history entries merged oldest-first."""
    history = list_history(db, ticket_id)
    events: list[TimelineEvent] = [MessageEvent(at=m.created_at, message=m) for m in get_messages(db, ticket_id)]
    events.extend(HistoryEvent(at=h.changed_at, entry=h) for h in history)
    events.sort(key=_timeline_key)
    return events
