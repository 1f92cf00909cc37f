"""Ticketing ORM models: tickets, messages, audit history, tags, opens, attachments."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    BigInteger,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    literal_column,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.enums import ChangeSource, MessageType, TicketPriority, TicketStatus
from app.db.types import JsonType
from app.db.utils import now_utc

if TYPE_CHECKING:
    from app.db.models import User


def _enum_type(enum_cls, *, name: str) -> Enum:
    """Store Python str-enums as their value strings (portable across dialects)."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class Ticket(Base):
    """Customer conversation thread."""

    __tablename__ = "tickets"
    __table_args__ = (
        Index("idx_tickets_status", "status"),
        Index("idx_tickets_assignee", "assignee_id"),
        Index("idx_tickets_customer_email", "customer_email"),
        Index("idx_tickets_message_id", "message_id"),
        Index("idx_tickets_follow_up", "follow_up_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reply_to_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    status: Mapped[TicketStatus] = mapped_column(
        _enum_type(TicketStatus, name="ticket_status"),
        default=TicketStatus.NEW,
        nullable=False,
    )
    priority: Mapped[TicketPriority] = mapped_column(
        _enum_type(TicketPriority, name="ticket_priority"),
        default=TicketPriority.NORMAL,
        nullable=False,
    )
    assignee_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    follow_up_at: Mapped[datetime | None] = mapped_column(nullable=True)
    # RFC 5322 Message-ID of the email that opened the thread
    message_id: Mapped[str | None] = mapped_column(String(998), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=now_utc, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=now_utc, onupdate=now_utc, server_default=func.now(), nullable=False
    )

    assignee: Mapped["User | None"] = relationship()
    messages: Mapped[list["Message"]] = relationship(
        back_populates="ticket",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.created_at",
    )
    history: Mapped[list["TicketHistory"]] = relationship(
        back_populates="ticket",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    tags: Mapped[list["Tag"]] = relationship(
        secondary="ticket_tags",
        order_by="Tag.name",
        viewonly=True,
    )


class Message(Base):
    """One unit of conversation content within a ticket."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_ticket_created", "ticket_id", "created_at"),
        Index("idx_messages_sender_email", "sender_email"),
        Index(
            "idx_messages_pending",
            "scheduled_at",
            postgresql_where=text("scheduled_at IS NOT NULL AND sent_at IS NULL"),
            sqlite_where=text("scheduled_at IS NOT NULL AND sent_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    sender_email: Mapped[str] = mapped_column(String(320), nullable=False)
    sender_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_html_stripped: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[MessageType] = mapped_column(
        _enum_type(MessageType, name="message_type"),
        default=MessageType.EMAIL,
        nullable=False,
    )
    # Email Message-ID (threading + dedup). NULLs are not considered equal.
    message_id: Mapped[str | None] = mapped_column(String(998), unique=True, nullable=True)
    email_metadata: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    to_emails: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    cc_emails: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    tracking_token: Mapped[str | None] = mapped_column(
        String(64), unique=True, nullable=True
    )
    scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=now_utc, server_default=func.now(), nullable=False
    )

    ticket: Mapped["Ticket"] = relationship(back_populates="messages")
    attachments: Mapped[list["Attachment"]] = relationship(
        back_populates="message",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Attachment.created_at",
    )
    email_opens: Mapped[list["EmailOpen"]] = relationship(
        back_populates="message",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="EmailOpen.opened_at",
    )

    @property
    def is_pending(self) -> bool:
        return self.scheduled_at is not None and self.sent_at is None

    @property
    def first_opened_at(self) -> datetime | None:
        return self.email_opens[0].opened_at if self.email_opens else None


class TicketHistory(Base):
    """Append-only audit entry for one ticket field change."""

    __tablename__ = "ticket_history"
    __table_args__ = (Index("idx_ticket_history_ticket_changed", "ticket_id", "changed_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    field_name: Mapped[str] = mapped_column(String(64), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_by_user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    changed_by_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    changed_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    change_source: Mapped[ChangeSource] = mapped_column(
        _enum_type(ChangeSource, name="change_source"),
        default=ChangeSource.MANUAL,
        nullable=False,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(
        default=now_utc, server_default=func.now(), nullable=False
    )

    ticket: Mapped["Ticket"] = relationship(back_populates="history")


class EmailOpen(Base):
    """Read receipt recorded by the tracking pixel."""

    __tablename__ = "email_opens"
    __table_args__ = (Index("idx_email_opens_message", "message_id", "opened_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    tracking_token: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    opened_at: Mapped[datetime] = mapped_column(
        default=now_utc, server_default=func.now(), nullable=False
    )

    message: Mapped["Message"] = relationship(back_populates="email_opens")


class Attachment(Base):
    """File attached to a message; bytes live in the attachment store."""

    __tablename__ = "attachments"
    __table_args__ = (Index("idx_attachments_message", "message_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=now_utc, server_default=func.now(), nullable=False
    )

    message: Mapped["Message"] = relationship(back_populates="attachments")


class Tag(Base):
    """Label applied to tickets. Names are unique and case-sensitive."""

    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=now_utc, server_default=func.now(), nullable=False
    )


class TicketTag(Base):
    """Ticket/tag association."""

    __tablename__ = "ticket_tags"
    __table_args__ = (Index("idx_ticket_tags_tag", "tag_id"),)

    ticket_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tickets.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    )


# =============================================================================
# Full-text search documents (PostgreSQL only)
# =============================================================================

FTS_CONFIG = literal_column("'english'")


def ticket_search_vector():
    """tsvector over ticket subject and customer identity."""
    document = (
        func.coalesce(Ticket.subject, "")
        + " "
        + func.coalesce(Ticket.customer_name, "")
        + " "
        + func.coalesce(Ticket.customer_email, "")
    )
    return func.to_tsvector(FTS_CONFIG, document)


def message_search_vector():
    """tsvector over message body and sender."""
    document = (
        func.coalesce(Message.body, "")
        + " "
        + func.coalesce(Message.sender_name, "")
    )
    return func.to_tsvector(FTS_CONFIG, document)


Index(
    "idx_tickets_fts", ticket_search_vector(), postgresql_using="gin"
).ddl_if(dialect="postgresql")
Index(
    "idx_messages_fts", message_search_vector(), postgresql_using="gin"
).ddl_if(dialect="postgresql")
