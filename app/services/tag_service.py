"""Tags and ticket/tag associations."""

from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.event_bus import TICKET_TAGS_UPDATED, EventBus
from app.db.models import Tag, TicketTag
from app.schemas.ticketing import TagRead
from app.services.ticket_read_service import get_ticket_or_404

logger = logging.getLogger(__name__)


def list_tags(db: Session) -> list[Tag]:
    return list(db.scalars(select(Tag).order_by(Tag.name)))


def get_tag_by_name(db: Session, name: str) -> Tag | None:
    return db.scalars(select(Tag).where(Tag.name == name)).first()


def create_tag(db: Session, name: str) -> Tag:
    """Create a tag. Names are unique and case-sensitive (409 on duplicate)."""
    name = name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name required")
    if get_tag_by_name(db, name):
        raise HTTPException(status_code=409, detail="Tag already exists")

    tag = Tag(name=name)
    db.add(tag)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Tag already exists")
    db.refresh(tag)
    return tag


def delete_tag(db: Session, tag_id: int) -> None:
    tag = db.get(Tag, tag_id)
    if not tag:
        raise HTTPException(status_code=404, detail="Tag not found")
    db.delete(tag)
    db.commit()


def get_ticket_tags(db: Session, ticket_id: int) -> list[Tag]:
    get_ticket_or_404(db, ticket_id)
    return list(
        db.scalars(
            select(Tag)
            .join(TicketTag, TicketTag.tag_id == Tag.id)
            .where(TicketTag.ticket_id == ticket_id)
            .order_by(Tag.name)
        )
    )


def _insert_ignore(db: Session):
    """INSERT ... ON CONFLICT DO NOTHING for the bound dialect."""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(TicketTag)
    return sqlite_insert(TicketTag)


def _publish_tags(db: Session, ticket_id: int, bus: EventBus) -> list[Tag]:
    tags = get_ticket_tags(db, ticket_id)
    bus.publish(
        TICKET_TAGS_UPDATED,
        {"ticketId": ticket_id, "tags": [TagRead.model_validate(tag) for tag in tags]},
    )
    return tags


def add_tag_to_ticket(
    db: Session,
    ticket_id: int,
    bus: EventBus,
    *,
    tag_id: int | None = None,
    tag_name: str | None = None,
) -> list[Tag]:
    """
    Attach a tag by id, or by name (created when missing). Attaching a tag
    the ticket already carries is a no-op.
    """
    get_ticket_or_404(db, ticket_id)
    if tag_id is None and not (tag_name and tag_name.strip()):
        raise HTTPException(status_code=400, detail="tag_id or tag_name required")

    if tag_id is None:
        tag = get_tag_by_name(db, tag_name.strip()) or create_tag(db, tag_name)
        tag_id = tag.id
    elif not db.get(Tag, tag_id):
        raise HTTPException(status_code=404, detail="Tag not found")

    stmt = _insert_ignore(db).values(ticket_id=ticket_id, tag_id=tag_id)
    db.execute(stmt.on_conflict_do_nothing(index_elements=["ticket_id", "tag_id"]))
    db.commit()
    return _publish_tags(db, ticket_id, bus)


def remove_tag_from_ticket(db: Session, ticket_id: int, tag_id: int, bus: EventBus) -> list[Tag]:
    get_ticket_or_404(db, ticket_id)
    db.execute(
        delete(TicketTag).where(TicketTag.ticket_id == ticket_id, TicketTag.tag_id == tag_id)
    )
    db.commit()
    return _publish_tags(db, ticket_id, bus)
