"""Conversation threading: inbound email ingestion, agent replies, forwards.

Inbound mail is resolved to a ticket in three steps:

1. Dedup on the RFC 5322 Message-ID (a second delivery writes nothing).
2. Threading: In-Reply-To, then each References id in header order. Each
   id is looked up as a ticket root first, then as a message id.
3. No match opens a new ticket.

Automatic status transitions (customer reply reopens, agent reply
resolves) are applied directly and are not written to ticket history;
explicit edits go through `audit_service.update_ticket`.
"""

from __future__ import annotations

import html as html_module
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from fastapi import HTTPException
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.event_bus import (
    MESSAGE_DELETED,
    NEW_MESSAGE,
    NEW_TICKET,
    TICKET_UPDATE,
    EventBus,
)
from app.core.structured_logging import build_log_context
from app.db.enums import REOPENABLE_STATUSES, ChangeSource, MessageType, TicketPriority, TicketStatus
from app.db.models import Attachment, Message, Ticket, User
from app.db.utils import as_utc, now_utc
from app.schemas.ticketing import ReplyCreate, TicketCreate
from app.services import attachment_service, email_composer, webhook_service
from app.services.attachment_service import IncomingAttachment
from app.services.audit_service import log_ticket_change
from app.services.mail_transport import MailTransport, MailTransportError, OutboundAttachment
from app.services.ticket_read_service import (
    get_message_or_404,
    get_ticket_or_404,
    new_message_event,
    ticket_to_dict,
)

logger = logging.getLogger(__name__)

AUTO_ASSIGN_NOTE = "Auto-assigned when agent replied"


@dataclass
class ParsedEmail:
    """An inbound email as produced by the mail parser."""

    from_email: str
    from_name: str | None = None
    reply_to: str | None = None
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    subject: str = ""
    body: str = ""
    body_html: str | None = None
    message_id: str | None = None
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)
    priority: str | None = None
    received_date: datetime | None = None
    original_to: str | None = None
    email_client: str | None = None
    headers: dict[str, Any] | None = None
    attachments: list[IncomingAttachment] = field(default_factory=list)

    @property
    def sender(self) -> str:
        return self.reply_to or self.from_email

    def metadata(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "to": self.to,
            "cc": self.cc,
            "bcc": self.bcc,
            "inReplyTo": self.in_reply_to,
            "references": self.references,
            "priority": self.priority,
            "receivedDate": self.received_date.isoformat() if self.received_date else None,
            "originalTo": self.original_to,
            "emailClient": self.email_client,
            "headers": self.headers,
        }


@dataclass
class IngestResult:
    outcome: Literal["created", "appended", "duplicate"]
    ticket: Ticket | None = None
    message: Message | None = None


# =============================================================================
# Dedup + threading lookups
# =============================================================================

def is_duplicate(db: Session, message_id: str | None) -> bool:
    if not message_id:
        return False
    return db.scalar(select(Message.id).where(Message.message_id == message_id)) is not None


def find_ticket_by_message_id(db: Session, message_id: str) -> Ticket | None:
    """Ticket whose root Message-ID matches, else the ticket owning a matching message."""
    ticket = db.scalars(select(Ticket).where(Ticket.message_id == message_id)).first()
    if ticket:
        return ticket
    ticket_id = db.scalar(select(Message.ticket_id).where(Message.message_id == message_id))
    return db.get(Ticket, ticket_id) if ticket_id is not None else None


def find_ticket_by_threading(
    db: Session, in_reply_to: str | None, references: list[str]
) -> Ticket | None:
    """In-Reply-To first, then References in header order; first hit wins."""
    candidates = [in_reply_to, *references] if in_reply_to else list(references)
    for candidate in candidates:
        if not candidate:
            continue
        ticket = find_ticket_by_message_id(db, candidate)
        if ticket:
            return ticket
    return None


# =============================================================================
# Inbound email
# =============================================================================

def _inbound_message(ticket_id: int, email: ParsedEmail) -> Message:
    return Message(
        ticket_id=ticket_id,
        sender_email=email.sender,
        sender_name=email.from_name,
        body=email.body,
        body_html=email.body_html,
        body_html_stripped=email_composer.strip_html(email.body_html),
        type=MessageType.EMAIL,
        message_id=email.message_id,
        email_metadata=email.metadata(),
        to_emails=email.to or None,
        cc_emails=email.cc or None,
    )


def create_ticket_from_email(db: Session, email: ParsedEmail) -> tuple[Ticket, Message, list[Attachment]]:
    ticket = Ticket(
        subject=email.subject,
        customer_email=email.sender,
        customer_name=email.from_name,
        reply_to_email=email.reply_to,
        status=TicketStatus.NEW,
        priority=TicketPriority.NORMAL,
        message_id=email.message_id,
    )
    db.add(ticket)
    db.flush()

    message = _inbound_message(ticket.id, email)
    db.add(message)
    db.flush()
    attachments = attachment_service.save_message_attachments(db, message, email.attachments)
    return ticket, message, attachments


def add_message_to_ticket(
    db: Session, ticket: Ticket, email: ParsedEmail
) -> tuple[Message, list[Attachment]]:
    message = _inbound_message(ticket.id, email)
    db.add(message)
    db.flush()
    attachments = attachment_service.save_message_attachments(db, message, email.attachments)

    if ticket.status in REOPENABLE_STATUSES:
        ticket.status = TicketStatus.OPEN
    ticket.updated_at = now_utc()
    return message, attachments


def ingest_email(db: Session, email: ParsedEmail, bus: EventBus) -> IngestResult:
    """
    Resolve an inbound email to a ticket and persist it.

    Returns outcome `duplicate` (nothing written), `appended` or `created`.
    """
    if is_duplicate(db, email.message_id):
        logger.info("Skipping duplicate email %s", email.message_id)
        return IngestResult(outcome="duplicate")

    ticket = find_ticket_by_threading(db, email.in_reply_to, email.references)
    try:
        if ticket:
            message, attachments = add_message_to_ticket(db, ticket, email)
            outcome = "appended"
        else:
            ticket, message, attachments = create_ticket_from_email(db, email)
            outcome = "created"
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same Message-ID won the unique constraint.
        db.rollback()
        logger.info("Skipping duplicate email %s (concurrent insert)", email.message_id)
        return IngestResult(outcome="duplicate")

    db.refresh(ticket)
    db.refresh(message)

    if outcome == "created":
        bus.publish(NEW_TICKET, ticket_to_dict(ticket))
        webhook_service.notify_message(webhook_service.NEW_TICKET, ticket, message, attachments)
        logger.info(
            "Created ticket from email",
            extra=build_log_context(ticket_id=ticket.id, message_id=message.id),
        )
    else:
        bus.publish(NEW_MESSAGE, new_message_event(message))
        bus.publish(TICKET_UPDATE, ticket_to_dict(ticket))
        webhook_service.notify_message(webhook_service.CUSTOMER_REPLY, ticket, message, attachments)
        logger.info(
            "Added customer reply to ticket",
            extra=build_log_context(ticket_id=ticket.id, message_id=message.id),
        )

    return IngestResult(outcome=outcome, ticket=ticket, message=message)


# =============================================================================
# Outbound delivery (shared by live replies and the scheduled worker)
# =============================================================================

def _quoted_messages(
    db: Session, message: Message, reply_to_message_id: int | None = None
) -> list[Message]:
    """Explicit reply target, or the 5 most recent sent email messages, newest first."""
    if reply_to_message_id is not None:
        target = db.get(Message, reply_to_message_id)
        if target is None or target.ticket_id != message.ticket_id:
            return []
        return [target]

    return list(
        db.scalars(
            select(Message)
            .where(
                Message.ticket_id == message.ticket_id,
                Message.type == MessageType.EMAIL,
                Message.id != message.id,
                ~(Message.scheduled_at.isnot(None) & Message.sent_at.is_(None)),
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(email_composer.MAX_QUOTED_MESSAGES)
        )
    )


def _outbound_attachments(attachments: list[Attachment], cids: dict[str, str] | None = None) -> list[OutboundAttachment]:
    cids = cids or {}
    return [
        OutboundAttachment(
            filename=attachment.filename,
            content=attachment_service.read_file(attachment.file_path),
            content_type=attachment.mime_type or "application/octet-stream",
            cid=cids.get(attachment.file_path),
        )
        for attachment in attachments
    ]


async def deliver_message(
    db: Session,
    ticket: Ticket,
    message: Message,
    transport: MailTransport,
    *,
    signature: str | None = None,
    reply_to_message_id: int | None = None,
    attachments: list[OutboundAttachment] | None = None,
) -> str:
    """
    Send `message` as a reply on `ticket` and record the returned Message-ID.

    Raises MailTransportError; the message is left untouched in that case
    apart from its tracking token. Does not commit.
    """
    message.tracking_token = secrets.token_hex(32)
    previous = _quoted_messages(db, message, reply_to_message_id)
    other_messages = db.scalar(
        select(func.count())
        .select_from(Message)
        .where(Message.ticket_id == ticket.id, Message.id != message.id)
    )

    email = email_composer.build_reply_email(
        ticket,
        message.body_html or html_module.escape(message.body).replace("\n", "<br>"),
        from_email=message.sender_email,
        from_name=message.sender_name,
        is_first_message=not other_messages,
        to_emails=message.to_emails,
        cc_emails=message.cc_emails,
        signature=signature,
        tracking_token=message.tracking_token,
        previous=previous,
        attachments=attachments or [],
    )
    email_message_id = await transport.send(email)
    if email_message_id:
        message.message_id = email_message_id
    return email_message_id


# =============================================================================
# Agent replies and notes
# =============================================================================

def _auto_assign(db: Session, ticket: Ticket, user: User) -> None:
    ticket.assignee_id = user.id
    db.flush()
    log_ticket_change(
        db,
        ticket.id,
        "assignee_id",
        None,
        user.id,
        user,
        ChangeSource.EMAIL_REPLY,
        notes=AUTO_ASSIGN_NOTE,
    )


async def reply_to_ticket(
    db: Session,
    ticket_id: int,
    request: ReplyCreate,
    user: User,
    bus: EventBus,
    transport: MailTransport,
) -> Message:
    """
    Add an agent reply or internal note.

    Immediate email replies are sent inline and resolve the ticket; a reply
    with a future `scheduled_at` is stored for the scheduled worker. A send
    failure keeps the stored message, leaves the status alone and maps to 502.
    """
    ticket = get_ticket_or_404(db, ticket_id)
    is_note = request.type == MessageType.NOTE

    scheduled_at = as_utc(request.scheduled_at) if request.scheduled_at else None
    is_scheduled = scheduled_at is not None and scheduled_at > now_utc()
    if is_note and is_scheduled:
        raise HTTPException(status_code=400, detail="Notes cannot be scheduled")
    attachment_service.check_uploaded_files(request.uploaded_files)

    if ticket.assignee_id is None and not is_scheduled:
        _auto_assign(db, ticket, user)
        db.commit()
        db.refresh(ticket)
        bus.publish(TICKET_UPDATE, ticket_to_dict(ticket))

    message = Message(
        ticket_id=ticket.id,
        sender_email=user.agent_email or settings.EMAIL_FROM,
        sender_name=user.name,
        body=email_composer.html_to_text(request.body),
        body_html=request.body,
        body_html_stripped=email_composer.strip_html(request.body),
        type=request.type,
        scheduled_at=scheduled_at if is_scheduled else None,
        to_emails=None if is_note else email_composer.reply_recipients(ticket, request.to_emails),
        cc_emails=None if is_note else (list(request.cc_emails) if request.cc_emails else None),
    )
    db.add(message)
    db.flush()

    records = attachment_service.record_uploaded_files(db, message, request.uploaded_files)
    ticket.updated_at = now_utc()
    db.commit()

    if not is_note and not is_scheduled:
        cids = {upload.file_path: upload.cid for upload in request.uploaded_files if upload.cid}
        try:
            await deliver_message(
                db,
                ticket,
                message,
                transport,
                signature=user.signature,
                reply_to_message_id=request.reply_to_message_id,
                attachments=_outbound_attachments(records, cids),
            )
        except MailTransportError as exc:
            db.commit()
            logger.error(
                "Failed to send reply: %s",
                exc,
                extra=build_log_context(ticket_id=ticket.id, message_id=message.id, user_id=user.id),
            )
            raise HTTPException(status_code=502, detail=f"Failed to send email: {exc}") from exc
        ticket.status = TicketStatus.RESOLVED
        db.commit()

    db.refresh(message)
    db.refresh(ticket)
    bus.publish(NEW_MESSAGE, new_message_event(message))
    bus.publish(TICKET_UPDATE, ticket_to_dict(ticket))
    webhook_service.notify_message(webhook_service.NEW_REPLY, ticket, message, message.attachments)

    if is_scheduled:
        logger.info(
            "Scheduled reply for %s",
            scheduled_at.isoformat(),
            extra=build_log_context(ticket_id=ticket.id, message_id=message.id, user_id=user.id),
        )
    else:
        logger.info(
            "Reply added to ticket (%s)",
            message.type.value,
            extra=build_log_context(ticket_id=ticket.id, message_id=message.id, user_id=user.id),
        )
    return message


async def send_scheduled_message(
    db: Session, message: Message, bus: EventBus, transport: MailTransport
) -> bool:
    """
    Deliver one due scheduled message. Returns False (message left pending)
    when the ticket is gone or the send fails.
    """
    ticket = db.get(Ticket, message.ticket_id)
    if not ticket:
        logger.error(
            "Ticket not found for scheduled message",
            extra=build_log_context(ticket_id=message.ticket_id, message_id=message.id),
        )
        return False

    author = db.scalars(select(User).where(User.agent_email == message.sender_email)).first()
    try:
        attachments = _outbound_attachments(list(message.attachments))
        await deliver_message(
            db,
            ticket,
            message,
            transport,
            signature=author.signature if author else None,
            attachments=attachments,
        )
    except (MailTransportError, OSError):
        db.rollback()
        logger.exception(
            "Failed to send scheduled message, will retry on next interval",
            extra=build_log_context(ticket_id=ticket.id, message_id=message.id),
        )
        return False

    message.sent_at = now_utc()
    ticket.status = TicketStatus.RESOLVED
    ticket.updated_at = now_utc()
    db.commit()
    db.refresh(message)
    db.refresh(ticket)

    bus.publish(NEW_MESSAGE, new_message_event(message))
    bus.publish(TICKET_UPDATE, ticket_to_dict(ticket))
    logger.info(
        "Sent scheduled message",
        extra=build_log_context(ticket_id=ticket.id, message_id=message.id),
    )
    return True


def cancel_scheduled_message(db: Session, message_id: int) -> bool:
    """
    Delete a pending message. The guarded DELETE only matches while the
    message is still unsent, so it cannot race the worker into a double send.
    """
    deleted = db.scalar(
        delete(Message)
        .where(
            Message.id == message_id,
            Message.scheduled_at.isnot(None),
            Message.sent_at.is_(None),
        )
        .returning(Message.id)
    )
    db.commit()
    return deleted is not None


def delete_note(db: Session, message_id: int, bus: EventBus) -> None:
    message = get_message_or_404(db, message_id)
    if message.type != MessageType.NOTE:
        raise HTTPException(status_code=403, detail="Only internal notes can be deleted")
    ticket_id = message.ticket_id
    db.delete(message)
    db.commit()
    bus.publish(MESSAGE_DELETED, {"ticketId": ticket_id, "messageId": message_id})


# =============================================================================
# Manual creation + forwarding
# =============================================================================

def create_ticket(
    db: Session,
    request: TicketCreate,
    user: User,
    bus: EventBus,
    *,
    status: TicketStatus = TicketStatus.NEW,
) -> Ticket:
    """
    Create a ticket by hand. Assigned to the creator unless `assignee_email`
    names an agent (matched on agent_email; unknown leaves it unassigned).
    """
    assignee_id: int | None = user.id
    if request.assignee_email:
        assignee = db.scalars(
            select(User).where(User.agent_email == request.assignee_email)
        ).first()
        assignee_id = assignee.id if assignee else None

    ticket = Ticket(
        subject=request.subject,
        customer_email=request.customer_email,
        customer_name=request.customer_name,
        status=status,
        priority=TicketPriority.NORMAL,
        assignee_id=assignee_id,
        follow_up_at=as_utc(request.follow_up_at) if request.follow_up_at else None,
        message_id=request.message_id,
    )
    db.add(ticket)
    db.flush()

    if request.message_body:
        db.add(
            Message(
                ticket_id=ticket.id,
                sender_email=request.customer_email,
                sender_name=request.customer_name,
                body=request.message_body,
                type=MessageType.EMAIL,
            )
        )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Ticket could not be created")
    db.refresh(ticket)

    bus.publish(NEW_TICKET, ticket_to_dict(ticket))
    logger.info("Ticket created", extra=build_log_context(ticket_id=ticket.id, user_id=user.id))
    return ticket


async def forward_message(
    db: Session,
    message_id: int,
    to_email: str,
    comments: str | None,
    user: User,
    bus: EventBus,
    transport: MailTransport,
) -> Ticket:
    """Forward a message to an outside address as a new ticket awaiting their reply."""
    original = get_message_or_404(db, message_id)
    source_ticket = get_ticket_or_404(db, original.ticket_id)

    html_body, text_body = email_composer.render_forward(original, comments)
    subject = f"Fwd: {source_ticket.subject}"
    from_email = user.agent_email or settings.EMAIL_FROM

    ticket = Ticket(
        subject=subject,
        customer_email=to_email,
        status=TicketStatus.AWAITING_CUSTOMER,
        priority=TicketPriority.NORMAL,
        assignee_id=user.id,
    )
    db.add(ticket)
    db.flush()
    message = Message(
        ticket_id=ticket.id,
        sender_email=from_email,
        sender_name=user.name,
        body=text_body,
        body_html=html_body,
        body_html_stripped=email_composer.strip_html(html_body),
        type=MessageType.EMAIL,
        to_emails=[to_email],
    )
    db.add(message)
    db.commit()

    email = email_composer.build_new_email(
        to_email, subject, html_body, from_email=from_email, from_name=user.name
    )
    try:
        email_message_id = await transport.send(email)
    except MailTransportError as exc:
        logger.error(
            "Failed to forward message: %s",
            exc,
            extra=build_log_context(ticket_id=ticket.id, message_id=original.id, user_id=user.id),
        )
        raise HTTPException(status_code=502, detail=f"Failed to send email: {exc}") from exc

    # Replies to the forward thread back through the message lookup.
    message.message_id = email_message_id
    db.commit()
    db.refresh(ticket)

    bus.publish(NEW_TICKET, ticket_to_dict(ticket))
    logger.info(
        "Forwarded message to new ticket",
        extra=build_log_context(ticket_id=ticket.id, message_id=original.id, user_id=user.id),
    )
    return ticket


def delete_tickets(db: Session, ticket_ids: list[int]) -> int:
    """Hard-delete tickets with everything they own (admin bulk operation)."""
    tickets = list(db.scalars(select(Ticket).where(Ticket.id.in_(ticket_ids))))
    for ticket in tickets:
        db.delete(ticket)
    db.commit()

    for ticket in tickets:
        try:
            attachment_service.delete_ticket_files(ticket.id)
        except OSError:
            logger.exception(
                "Failed to remove attachment files", extra=build_log_context(ticket_id=ticket.id)
            )
    logger.info("Deleted %s tickets", len(tickets))
    return len(tickets)
