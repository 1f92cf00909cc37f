"""Ticket inbox/detail/reply APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.core.deps import (
    get_current_user,
    get_db,
    get_event_bus,
    get_mail_transport,
    require_admin,
)
from app.core.event_bus import USER_COMPOSING, VIEWER_JOINED, VIEWER_LEFT, EventBus
from app.db.enums import SortOrder, TicketStatus
from app.db.models import User
from app.schemas.ticketing import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    BulkUpdateRequest,
    BulkUpdateResponse,
    MessageRead,
    ReplyCreate,
    SuccessResponse,
    TagRead,
    TicketCreate,
    TicketDetail,
    TicketHistoryRead,
    TicketListResponse,
    TicketRead,
    TicketTagAdd,
    TicketUpdate,
    TimelineHistoryItem,
    TimelineMessageItem,
    TimelineResponse,
)
from app.services import (
    audit_service,
    search_service,
    tag_service,
    ticket_read_service,
    ticketing_service,
)
from app.services.audit_service import MessageEvent
from app.services.mail_transport import MailTransport
from app.utils.pagination import OffsetPagination, get_offset_pagination

router = APIRouter(prefix="/tickets", tags=["Tickets"])


def _parse_assignee(value: str | None) -> int | str | None:
    """`unassigned`/`null` select unassigned tickets; anything else must be an id."""
    if value is None or value == "":
        return None
    if value.lower() in (search_service.UNASSIGNED, "null"):
        return search_service.UNASSIGNED
    try:
        return int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="assignee_id must be an id, 'null' or 'unassigned'")


def _parse_statuses(values: list[str] | None) -> list[TicketStatus] | None:
    """Accept `status=new,open` as well as repeated `status` params."""
    if not values:
        return None
    statuses: list[TicketStatus] = []
    for value in values:
        for part in value.split(","):
            part = part.strip()
            if not part:
                continue
            try:
                status = TicketStatus(part)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Invalid status: {part}")
            if status not in statuses:
                statuses.append(status)
    return statuses or None


def _presence_payload(ticket_id: int, user: User) -> dict:
    return {"ticketId": ticket_id, "userEmail": user.email, "userName": user.name}


# =============================================================================
# Listing + search
# =============================================================================


@router.get("", response_model=TicketListResponse)
def list_tickets(
    status: Annotated[list[str] | None, Query()] = None,
    assignee_id: str | None = None,
    tag_id: int | None = None,
    customer_email: str | None = None,
    search: str | None = None,
    sort_order: SortOrder = SortOrder.DESC,
    pagination: OffsetPagination = Depends(get_offset_pagination),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> TicketListResponse:
    """List tickets (filters only) or search them when `search` is given."""
    filters = search_service.TicketFilters(
        statuses=_parse_statuses(status),
        assignee_id=_parse_assignee(assignee_id),
        customer_email=customer_email,
        tag_id=tag_id,
    )
    return search_service.search_tickets(
        db, term=search, filters=filters, pagination=pagination, sort_order=sort_order
    )


@router.get("/calendar", response_model=list[TicketRead])
def list_calendar(
    start: datetime | None = None,
    end: datetime | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Tickets with a follow-up date."""
    return search_service.list_calendar(db, start, end)


@router.get("/customer-emails", response_model=list[str])
def list_customer_emails(
    search: str | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return search_service.customer_emails(db, search)


# =============================================================================
# Bulk operations
# =============================================================================


@router.post("/bulk-update", response_model=BulkUpdateResponse)
async def bulk_update_tickets(
    data: BulkUpdateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
):
    changes = data.updates.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No updates provided")
    tickets = audit_service.bulk_update(db, data.ticket_ids, changes, user, bus)
    return BulkUpdateResponse(
        updated=len(tickets), tickets=[TicketRead.model_validate(t) for t in tickets]
    )


@router.post("/bulk-delete", response_model=BulkDeleteResponse)
def bulk_delete_tickets(
    data: BulkDeleteRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_admin),
):
    """Permanently delete tickets and all their data (admin only)."""
    deleted = ticketing_service.delete_tickets(db, data.ticket_ids)
    return BulkDeleteResponse(deleted=deleted)


# =============================================================================
# Single ticket
# =============================================================================


@router.post("", response_model=TicketRead, status_code=201)
async def create_ticket(
    data: TicketCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
):
    return ticketing_service.create_ticket(db, data, user, bus)


@router.get("/{ticket_id}", response_model=TicketDetail)
def get_ticket(
    ticket_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Ticket with messages, tags and the customer's ticket count."""
    return ticket_read_service.get_ticket_detail(db, ticket_id)


@router.patch("/{ticket_id}", response_model=TicketRead)
async def update_ticket(
    ticket_id: int,
    data: TicketUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
):
    """Partial update; only fields present in the body are applied and audited."""
    return audit_service.update_ticket(
        db, ticket_id, data.model_dump(exclude_unset=True), user, bus
    )


@router.get("/{ticket_id}/history", response_model=list[TicketHistoryRead])
def get_ticket_history(
    ticket_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return ticket_read_service.list_history(db, ticket_id)


@router.get("/{ticket_id}/timeline", response_model=TimelineResponse)
def get_ticket_timeline(
    ticket_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Messages and field changes merged oldest-first."""
    items = []
    for event in audit_service.build_timeline(db, ticket_id):
        if isinstance(event, MessageEvent):
            items.append(
                TimelineMessageItem(at=event.at, message=MessageRead.model_validate(event.message))
            )
        else:
            items.append(
                TimelineHistoryItem(at=event.at, entry=TicketHistoryRead.model_validate(event.entry))
            )
    return TimelineResponse(ticket_id=ticket_id, items=items)


@router.post("/{ticket_id}/reply", response_model=MessageRead, status_code=201)
async def reply_to_ticket(
    ticket_id: int,
    data: ReplyCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
    transport: MailTransport = Depends(get_mail_transport),
):
    """Reply by email (sent now or at `scheduled_at`) or add an internal note."""
    return await ticketing_service.reply_to_ticket(db, ticket_id, data, user, bus, transport)


# =============================================================================
# Presence
# =============================================================================


@router.post("/{ticket_id}/viewing", response_model=SuccessResponse)
async def mark_viewing(
    ticket_id: int,
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
):
    bus.publish(VIEWER_JOINED, _presence_payload(ticket_id, user))
    return SuccessResponse()


@router.post("/{ticket_id}/viewing-left", response_model=SuccessResponse)
async def mark_viewing_left(
    ticket_id: int,
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
):
    bus.publish(VIEWER_LEFT, _presence_payload(ticket_id, user))
    return SuccessResponse()


@router.post("/{ticket_id}/composing", response_model=SuccessResponse)
async def mark_composing(
    ticket_id: int,
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
):
    bus.publish(USER_COMPOSING, _presence_payload(ticket_id, user))
    return SuccessResponse()


# =============================================================================
# Tags
# =============================================================================


@router.get("/{ticket_id}/tags", response_model=list[TagRead])
def get_ticket_tags(
    ticket_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return tag_service.get_ticket_tags(db, ticket_id)


@router.post("/{ticket_id}/tags", response_model=list[TagRead])
async def add_ticket_tag(
    ticket_id: int,
    data: TicketTagAdd,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
):
    """Attach a tag by id, or by name (created when missing)."""
    return tag_service.add_tag_to_ticket(
        db, ticket_id, bus, tag_id=data.tag_id, tag_name=data.tag_name
    )


@router.delete("/{ticket_id}/tags/{tag_id}", response_model=list[TagRead])
async def remove_ticket_tag(
    ticket_id: int,
    tag_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
):
    return tag_service.remove_tag_from_ticket(db, ticket_id, tag_id, bus)
