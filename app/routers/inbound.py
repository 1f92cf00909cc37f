"""Inbound email hand-off from the mail-polling collaborator."""

import base64
import binascii
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.deps import get_db, get_event_bus
from app.core.event_bus import EventBus
from app.schemas.ticketing import InboundEmail, InboundResult
from app.services import ticketing_service
from app.services.attachment_service import IncomingAttachment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inbound", tags=["Inbound"])


def _to_parsed_email(data: InboundEmail) -> ticketing_service.ParsedEmail:
    attachments = []
    for attachment in data.attachments:
        try:
            content = base64.b64decode(attachment.content_base64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(
                status_code=400, detail=f"Invalid attachment encoding: {attachment.filename}"
            )
        attachments.append(
            IncomingAttachment(
                filename=attachment.filename,
                content=content,
                content_type=attachment.content_type,
                size=attachment.size,
            )
        )

    fields = data.model_dump(exclude={"attachments"})
    return ticketing_service.ParsedEmail(**fields, attachments=attachments)


@router.post("/email", response_model=InboundResult)
async def ingest_email(
    data: InboundEmail,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    """
    Thread a parsed email into the inbox.

    Redelivery of an already-stored Message-ID is acknowledged with outcome
    `duplicate` and writes nothing.
    """
    result = ticketing_service.ingest_email(db, _to_parsed_email(data), bus)
    return InboundResult(
        outcome=result.outcome,
        ticket_id=result.ticket.id if result.ticket else None,
        message_id=result.message.id if result.message else None,
    )
