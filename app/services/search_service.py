"""Ticket search and inbox listing.

Provides:
- Ranked multi-strategy search (id, full-text, field ILIKE, tags)
- Filter-only listing with the same rollups when no term is given
- Offset pagination with the total computed in the same statement
- Calendar and email-autocomplete reads

Ranking takes the best score any strategy gives a ticket:

    100        exact numeric ticket id
    90 * rank  full-text match (PostgreSQL only)
    70         customer email, subject or root Message-ID
    65         message sender email
    60         message body
    50         tag name
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from sqlalchemy import Float, cast, func, literal, or_, select, text, union_all
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.enums import SortOrder, TicketStatus
from app.db.models import Attachment, Message, Tag, Ticket, TicketTag, User
from app.db.models.ticketing import FTS_CONFIG, message_search_vector, ticket_search_vector
from app.schemas.ticketing import (
    PaginationRead,
    TagRead,
    TicketListItem,
    TicketListResponse,
    TicketRead,
)
from app.utils.pagination import OffsetPagination, PageInfo


logger = logging.getLogger(__name__)


MAX_TICKET_ID = 2_147_483_647
TICKET_ID_RE = re.compile(r"[1-9][0-9]*")
PREVIEW_LENGTH = 250
AUTOCOMPLETE_LIMIT = 50
UNASSIGNED = "unassigned"

RANK_ID = 100.0
RANK_FULL_TEXT = 90.0
RANK_TICKET_FIELDS = 70.0
RANK_SENDER = 65.0
RANK_BODY = 60.0
RANK_TAG = 50.0


# =============================================================================
# Types
# =============================================================================


@dataclass
class TicketFilters:
    statuses: list[TicketStatus] | None = None
    assignee_id: int | Literal["unassigned"] | None = None
    customer_email: str | None = None
    tag_id: int | None = None


# =============================================================================
# Query Helpers
# =============================================================================


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _parse_ticket_id(term: str) -> int | None:
    """Canonical ASCII decimal in the integer column range, else None."""
    if not TICKET_ID_RE.fullmatch(term):
        return None
    value = int(term)
    return value if value <= MAX_TICKET_ID else None


def _score(value: float):
    return cast(literal(value), Float).label("rank")


def _ranked_ticket_ids(db: Session, term: str):
    """Subquery of (ticket_id, rank), one row per matching ticket."""
    pattern = _like_pattern(term)
    strategies = []

    ticket_id = _parse_ticket_id(term)
    if ticket_id is not None:
        strategies.append(
            select(Ticket.id.label("ticket_id"), _score(RANK_ID)).where(Ticket.id == ticket_id)
        )

    if db.get_bind().dialect.name == "postgresql":
        query = func.plainto_tsquery(FTS_CONFIG, term)
        ticket_vector = ticket_search_vector()
        message_vector = message_search_vector()
        strategies.append(
            select(
                Ticket.id.label("ticket_id"),
                cast(RANK_FULL_TEXT * func.ts_rank(ticket_vector, query), Float).label("rank"),
            ).where(ticket_vector.op("@@")(query))
        )
        strategies.append(
            select(
                Message.ticket_id.label("ticket_id"),
                cast(RANK_FULL_TEXT * func.ts_rank(message_vector, query), Float).label("rank"),
            ).where(message_vector.op("@@")(query))
        )

    strategies.append(
        select(Ticket.id.label("ticket_id"), _score(RANK_TICKET_FIELDS)).where(
            or_(
                Ticket.customer_email.ilike(pattern, escape="\\"),
                Ticket.subject.ilike(pattern, escape="\\"),
                Ticket.message_id.ilike(pattern, escape="\\"),
            )
        )
    )
    strategies.append(
        select(Message.ticket_id.label("ticket_id"), _score(RANK_SENDER)).where(
            Message.sender_email.ilike(pattern, escape="\\")
        )
    )
    strategies.append(
        select(Message.ticket_id.label("ticket_id"), _score(RANK_BODY)).where(
            Message.body.ilike(pattern, escape="\\")
        )
    )
    strategies.append(
        select(TicketTag.ticket_id.label("ticket_id"), _score(RANK_TAG))
        .join(Tag, Tag.id == TicketTag.tag_id)
        .where(Tag.name.ilike(pattern, escape="\\"))
    )

    matches = union_all(*strategies).subquery("matches")
    return (
        select(matches.c.ticket_id, func.max(matches.c.rank).label("rank"))
        .group_by(matches.c.ticket_id)
        .subquery("ranked")
    )


def _apply_filters(stmt, filters: TicketFilters):
    if filters.statuses:
        stmt = stmt.where(Ticket.status.in_(filters.statuses))
    if filters.assignee_id == UNASSIGNED:
        stmt = stmt.where(Ticket.assignee_id.is_(None))
    elif filters.assignee_id is not None:
        stmt = stmt.where(Ticket.assignee_id == filters.assignee_id)
    if filters.customer_email:
        stmt = stmt.where(Ticket.customer_email == filters.customer_email)
    if filters.tag_id is not None:
        stmt = stmt.where(
            Ticket.id.in_(select(TicketTag.ticket_id).where(TicketTag.tag_id == filters.tag_id))
        )
    return stmt


def _last_messages(db: Session, ticket_ids: list[int]) -> dict[int, Message]:
    numbered = (
        select(
            Message.id,
            func.row_number()
            .over(
                partition_by=Message.ticket_id,
                order_by=(Message.created_at.desc(), Message.id.desc()),
            )
            .label("position"),
        )
        .where(Message.ticket_id.in_(ticket_ids))
        .subquery()
    )
    latest = db.scalars(
        select(Message).join(numbered, numbered.c.id == Message.id).where(numbered.c.position == 1)
    )
    return {message.ticket_id: message for message in latest}


def _tags_by_ticket(db: Session, ticket_ids: list[int]) -> dict[int, list[Tag]]:
    rows = db.execute(
        select(TicketTag.ticket_id, Tag)
        .join(Tag, Tag.id == TicketTag.tag_id)
        .where(TicketTag.ticket_id.in_(ticket_ids))
        .order_by(Tag.name)
    )
    tags: dict[int, list[Tag]] = {}
    for ticket_id, tag in rows:
        tags.setdefault(ticket_id, []).append(tag)
    return tags


def _set_statement_timeout(db: Session) -> None:
    if db.get_bind().dialect.name == "postgresql":
        timeout_ms = int(settings.SEARCH_STATEMENT_TIMEOUT_MS)
        db.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))


# =============================================================================
# Search Functions
# =============================================================================


def search_tickets(
    db: Session,
    term: str | None = None,
    filters: TicketFilters | None = None,
    pagination: OffsetPagination | None = None,
    sort_order: SortOrder = SortOrder.DESC,
) -> TicketListResponse:
    """
    Search or list tickets.

    With a term, tickets are ordered by rank then by last activity, so rank
    decides both page membership and display order and an exact ticket-id
    hit is always shown first. Without a term, by last activity only
    (latest message, else ticket update time).
    """
    filters = filters or TicketFilters()
    pagination = pagination or OffsetPagination()
    term = (term or "").strip()
    started = time.perf_counter()

    message_stats = (
        select(
            Message.ticket_id,
            func.count(Message.id).label("message_count"),
            func.max(Message.created_at).label("last_message_at"),
        )
        .group_by(Message.ticket_id)
        .subquery("message_stats")
    )
    attachment_stats = (
        select(Message.ticket_id, func.count(Attachment.id).label("attachment_count"))
        .join(Attachment, Attachment.message_id == Message.id)
        .group_by(Message.ticket_id)
        .subquery("attachment_stats")
    )
    last_activity = func.coalesce(message_stats.c.last_message_at, Ticket.updated_at, Ticket.created_at)
    activity_order = last_activity.asc() if sort_order == SortOrder.ASC else last_activity.desc()

    stmt = (
        select(
            Ticket,
            func.coalesce(message_stats.c.message_count, 0).label("message_count"),
            message_stats.c.last_message_at,
            func.coalesce(attachment_stats.c.attachment_count, 0).label("attachment_count"),
            func.count().over().label("total_count"),
        )
        .outerjoin(message_stats, message_stats.c.ticket_id == Ticket.id)
        .outerjoin(attachment_stats, attachment_stats.c.ticket_id == Ticket.id)
    )

    if term:
        ranked = _ranked_ticket_ids(db, term)
        stmt = stmt.join(ranked, ranked.c.ticket_id == Ticket.id)
        stmt = stmt.order_by(ranked.c.rank.desc(), activity_order, Ticket.id.desc())
    else:
        stmt = stmt.order_by(activity_order, Ticket.id.desc())

    stmt = _apply_filters(stmt, filters).limit(pagination.limit).offset(pagination.offset)

    _set_statement_timeout(db)
    rows = db.execute(stmt).all()

    if rows:
        total = rows[0].total_count
    elif pagination.offset:
        # Past the last page: the window count has no row to ride on.
        total = db.scalar(
            _apply_filters(
                select(func.count(Ticket.id)).join(ranked, ranked.c.ticket_id == Ticket.id)
                if term
                else select(func.count(Ticket.id)),
                filters,
            )
        ) or 0
    else:
        total = 0

    ticket_ids = [row.Ticket.id for row in rows]
    last_messages = _last_messages(db, ticket_ids) if ticket_ids else {}
    tags = _tags_by_ticket(db, ticket_ids) if ticket_ids else {}

    items = []
    for row in rows:
        ticket = row.Ticket
        last = last_messages.get(ticket.id)
        items.append(
            TicketListItem(
                **TicketRead.model_validate(ticket).model_dump(),
                message_count=row.message_count,
                attachment_count=row.attachment_count,
                last_message_preview=last.body[:PREVIEW_LENGTH] if last else None,
                last_message_sender_email=last.sender_email if last else None,
                last_message_sender_name=last.sender_name if last else None,
                last_message_at=row.last_message_at,
                tags=[TagRead.model_validate(tag) for tag in tags.get(ticket.id, [])],
            )
        )

    elapsed_ms = (time.perf_counter() - started) * 1000
    if elapsed_ms > settings.SLOW_QUERY_MS:
        logger.warning(
            "Slow ticket search: %.0fms (term=%s, results=%s)",
            elapsed_ms,
            bool(term),
            len(items),
        )

    page = PageInfo.create(total, pagination)
    return TicketListResponse(tickets=items, pagination=PaginationRead(**page.to_dict()))


def list_calendar(
    db: Session, start: datetime | None = None, end: datetime | None = None
) -> list[Ticket]:
    """Tickets with a follow-up date, optionally within [start, end]."""
    stmt = select(Ticket).where(Ticket.follow_up_at.isnot(None))
    if start is not None:
        stmt = stmt.where(Ticket.follow_up_at >= start)
    if end is not None:
        stmt = stmt.where(Ticket.follow_up_at <= end)
    return list(db.scalars(stmt.order_by(Ticket.follow_up_at.asc(), Ticket.id.asc())))


def customer_emails(db: Session, search: str | None = None) -> list[str]:
    """Autocomplete: known customer addresses plus agent sending addresses."""
    pattern = _like_pattern((search or "").strip())
    customers = db.scalars(
        select(Ticket.customer_email)
        .distinct()
        .where(Ticket.customer_email.ilike(pattern, escape="\\"))
        .order_by(Ticket.customer_email)
        .limit(AUTOCOMPLETE_LIMIT)
    )
    agents = db.scalars(
        select(User.agent_email)
        .distinct()
        .where(User.agent_email.isnot(None), User.agent_email.ilike(pattern, escape="\\"))
        .order_by(User.agent_email)
        .limit(AUTOCOMPLETE_LIMIT)
    )
    return sorted({*customers, *agents})
