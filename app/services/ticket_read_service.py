"""Ticket/message lookups and serializers shared by the write paths."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from app.db.models import Message, Ticket, TicketHistory
from app.schemas.ticketing import MessageRead, TagRead, TicketDetail, TicketRead


# =============================================================================
# Lookups
# =============================================================================

def get_ticket_or_404(db: Session, ticket_id: int) -> Ticket:
    ticket = db.get(Ticket, ticket_id)
    if not ticket:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return ticket


def get_message_or_404(db: Session, message_id: int) -> Message:
    message = db.get(Message, message_id)
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    return message


def get_messages(db: Session, ticket_id: int) -> list[Message]:
    """All messages of a ticket, oldest first."""
    return list(
        db.scalars(
            select(Message)
            .where(Message.ticket_id == ticket_id)
            .options(selectinload(Message.attachments), selectinload(Message.email_opens))
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
    )


def count_customer_tickets(db: Session, customer_email: str) -> int:
    return db.scalar(
        select(func.count()).select_from(Ticket).where(Ticket.customer_email == customer_email)
    ) or 0


def list_history(db: Session, ticket_id: int) -> list[TicketHistory]:
    """Audit trail for a ticket, newest first."""
    get_ticket_or_404(db, ticket_id)
    return list(
        db.scalars(
            select(TicketHistory)
            .where(TicketHistory.ticket_id == ticket_id)
            .order_by(TicketHistory.changed_at.desc(), TicketHistory.id.desc())
        )
    )


# =============================================================================
# Serializers (API responses + real-time payloads)
# =============================================================================

def ticket_to_dict(ticket: Ticket) -> dict[str, Any]:
    return TicketRead.model_validate(ticket).model_dump(mode="json")


def message_to_dict(message: Message) -> dict[str, Any]:
    return MessageRead.model_validate(message).model_dump(mode="json")


def new_message_event(message: Message) -> dict[str, Any]:
    return {"ticketId": message.ticket_id, "message": message_to_dict(message)}


def get_ticket_detail(db: Session, ticket_id: int) -> TicketDetail:
    ticket = get_ticket_or_404(db, ticket_id)
    messages = get_messages(db, ticket_id)
    return TicketDetail(
        **TicketRead.model_validate(ticket).model_dump(),
        messages=[MessageRead.model_validate(m) for m in messages],
        tags=[TagRead.model_validate(t) for t in ticket.tags],
        customer_ticket_count=count_customer_tickets(db, ticket.customer_email),
    )
