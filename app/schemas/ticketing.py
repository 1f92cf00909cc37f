"""Pydantic schemas for tickets, messages, tags and the activity timeline."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator

from app.db.enums import ChangeSource, MessageType, TicketPriority, TicketStatus


# =============================================================================
# Read models
# =============================================================================

class TagRead(BaseModel):
    """Tag."""

    model_config = {"from_attributes": True}

    id: int
    name: str
    created_at: datetime


class TicketRead(BaseModel):
    """Ticket row."""

    model_config = {"from_attributes": True}

    id: int
    subject: str
    customer_email: str
    customer_name: str | None = None
    reply_to_email: str | None = None
    status: TicketStatus
    priority: TicketPriority
    assignee_id: int | None = None
    follow_up_at: datetime | None = None
    message_id: str | None = None
    created_at: datetime
    updated_at: datetime


class TicketListItem(TicketRead):
    """Inbox row with message/attachment rollups."""

    message_count: int = 0
    attachment_count: int = 0
    last_message_preview: str | None = None
    last_message_sender_email: str | None = None
    last_message_sender_name: str | None = None
    last_message_at: datetime | None = None
    tags: list[TagRead] = Field(default_factory=list)


class PaginationRead(BaseModel):
    hasMore: bool
    nextOffset: int | None = None
    total: int


class TicketListResponse(BaseModel):
    """Ticket list/search response with offset pagination."""

    tickets: list[TicketListItem]
    pagination: PaginationRead


class AttachmentRead(BaseModel):
    """Attachment metadata."""

    model_config = {"from_attributes": True}

    id: int
    message_id: int
    filename: str
    file_path: str
    size_bytes: int | None = None
    mime_type: str | None = None
    created_at: datetime


class EmailOpenRead(BaseModel):
    """Tracking-pixel read receipt."""

    model_config = {"from_attributes": True}

    id: int
    message_id: int
    tracking_token: str
    user_agent: str | None = None
    ip_address: str | None = None
    opened_at: datetime


class MessageRead(BaseModel):
    """Message with attachments and read receipts."""

    model_config = {"from_attributes": True}

    id: int
    ticket_id: int
    sender_email: str
    sender_name: str | None = None
    body: str
    body_html: str | None = None
    type: MessageType
    message_id: str | None = None
    email_metadata: dict[str, Any] | None = None
    to_emails: list[str] | None = None
    cc_emails: list[str] | None = None
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    created_at: datetime
    attachments: list[AttachmentRead] = Field(default_factory=list)
    email_opens: list[EmailOpenRead] = Field(default_factory=list)
    first_opened_at: datetime | None = None


class TicketDetail(TicketRead):
    """Ticket with its full conversation."""

    messages: list[MessageRead]
    tags: list[TagRead] = Field(default_factory=list)
    customer_ticket_count: int


class TicketHistoryRead(BaseModel):
    """Audit history entry."""

    model_config = {"from_attributes": True}

    id: int
    ticket_id: int
    field_name: str
    old_value: str | None = None
    new_value: str | None = None
    changed_by_user_id: int | None = None
    changed_by_email: str | None = None
    changed_by_name: str | None = None
    change_source: ChangeSource
    notes: str | None = None
    changed_at: datetime


class TimelineMessageItem(BaseModel):
    kind: Literal["message"] = "message"
    at: datetime
    message: MessageRead


class TimelineHistoryItem(BaseModel):
    kind: Literal["history"] = "history"
    at: datetime
    entry: TicketHistoryRead


TimelineItem = Annotated[
    Union[TimelineMessageItem, TimelineHistoryItem], Field(discriminator="kind")
]


class TimelineResponse(BaseModel):
    """Messages and history merged into one chronological feed."""

    ticket_id: int
    items: list[TimelineItem]


# =============================================================================
# Requests
# =============================================================================

class TicketCreate(BaseModel):
    """Manual ticket creation."""

    subject: str = Field(min_length=1)
    customer_email: str = Field(min_length=3)
    customer_name: str | None = None
    message_body: str | None = None
    message_id: str | None = None
    follow_up_at: datetime | None = None
    assignee_email: str | None = None


class TicketUpdate(BaseModel):
    """Partial ticket update. Only fields present in the request are applied."""

    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    assignee_id: int | None = None
    assignee_email: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    follow_up_at: datetime | None = None

    @field_validator("status", "priority", "customer_email")
    @classmethod
    def not_null(cls, value):
        # These columns are NOT NULL; an explicit null is a client error.
        if value is None:
            raise ValueError("may not be null")
        return value


class BulkUpdateRequest(BaseModel):
    ticket_ids: list[int] = Field(min_length=1)
    updates: TicketUpdate


class BulkUpdateResponse(BaseModel):
    success: bool = True
    updated: int
    tickets: list[TicketRead]


class BulkDeleteRequest(BaseModel):
    ticket_ids: list[int] = Field(min_length=1)


class BulkDeleteResponse(BaseModel):
    success: bool = True
    deleted: int


class UploadedFile(BaseModel):
    """File previously stored via the upload endpoint."""

    filename: str
    file_path: str
    size: int
    mime_type: str
    cid: str | None = None


class ReplyCreate(BaseModel):
    """Agent reply or internal note."""

    body: str = Field(min_length=1)  # HTML
    type: MessageType = MessageType.EMAIL
    to_emails: list[str] | None = None
    cc_emails: list[str] | None = None
    reply_to_message_id: int | None = None
    scheduled_at: datetime | None = None
    uploaded_files: list[UploadedFile] = Field(default_factory=list)


class ForwardRequest(BaseModel):
    to_email: str = Field(pattern=r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
    comments: str | None = None


class ForwardResponse(BaseModel):
    ticket_id: int


class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class TicketTagAdd(BaseModel):
    tag_id: int | None = None
    tag_name: str | None = None


class SuccessResponse(BaseModel):
    success: bool = True


class UploadResponse(BaseModel):
    filename: str
    file_path: str
    size: int
    mime_type: str


# =============================================================================
# Inbound email
# =============================================================================

class InboundAttachment(BaseModel):
    filename: str
    content_base64: str
    content_type: str = "application/octet-stream"
    size: int | None = None


class InboundEmail(BaseModel):
    """Parsed email handed over by the mail-polling collaborator."""

    from_email: str
    from_name: str | None = None
    reply_to: str | None = None
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    body_html: str | None = None
    message_id: str | None = None
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)
    priority: str | None = None
    received_date: datetime | None = None
    original_to: str | None = None
    email_client: str | None = None
    headers: dict[str, Any] | None = None
    attachments: list[InboundAttachment] = Field(default_factory=list)


class InboundResult(BaseModel):
    outcome: Literal["created", "appended", "duplicate"]
    ticket_id: int | None = None
    message_id: int | None = None
