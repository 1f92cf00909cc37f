"""
Email Tracking Service.

Records read receipts for outbound replies. Every sent reply carries a
random tracking token; the pixel URL embedded in the email body resolves the
token back to the message.
"""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.models import EmailOpen, Message


logger = logging.getLogger(__name__)


def record_open(
    db: Session,
    token: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> EmailOpen | None:
    """
    Record an email open event.

    Every pixel load is stored (many opens per message); the first one is
    the earliest. Unknown tokens are ignored.
    """
    message = db.scalars(select(Message).where(Message.tracking_token == token)).first()
    if not message:
        logger.debug("Tracking token not found")
        return None

    email_open = EmailOpen(
        message_id=message.id,
        tracking_token=token,
        user_agent=user_agent,
        ip_address=ip_address,
    )
    db.add(email_open)
    db.commit()

    logger.info("Email opened (message_id=%s)", message.id)
    return email_open
