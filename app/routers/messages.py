"""Message-level APIs: note deletion, scheduled cancellation, forwarding."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.deps import get_current_user, get_db, get_event_bus, get_mail_transport
from app.core.event_bus import EventBus
from app.db.models import User
from app.schemas.ticketing import ForwardRequest, ForwardResponse, SuccessResponse
from app.services import ticketing_service
from app.services.mail_transport import MailTransport
from app.services.ticket_read_service import get_message_or_404

router = APIRouter(prefix="/messages", tags=["Messages"])


@router.delete("/{message_id}", response_model=SuccessResponse)
async def delete_note(
    message_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
):
    """Delete an internal note. Emails and other message types are permanent."""
    ticketing_service.delete_note(db, message_id, bus)
    return SuccessResponse()


@router.delete("/{message_id}/scheduled", response_model=SuccessResponse)
def cancel_scheduled_message(
    message_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    Cancel a pending scheduled reply.

    Raises:
        HTTPException 400: Message is not scheduled or already sent
        HTTPException 409: Message was sent while the cancel was in flight
    """
    message = get_message_or_404(db, message_id)
    if not message.is_pending:
        raise HTTPException(status_code=400, detail="Message is not a pending scheduled message")

    if not ticketing_service.cancel_scheduled_message(db, message_id):
        raise HTTPException(status_code=409, detail="Message was already sent")
    return SuccessResponse()


@router.post("/{message_id}/forward", response_model=ForwardResponse, status_code=201)
async def forward_message(
    message_id: int,
    data: ForwardRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
    transport: MailTransport = Depends(get_mail_transport),
):
    """Forward a message to an outside address as a new ticket."""
    ticket = await ticketing_service.forward_message(
        db, message_id, data.to_email, data.comments, user, bus, transport
    )
    return ForwardResponse(ticket_id=ticket.id)
