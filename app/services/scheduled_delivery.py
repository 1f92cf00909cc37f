"""Deferred reply delivery.

Pending messages (scheduled_at set, sent_at null) are sent once their time
has come, oldest first. A failed send leaves the message pending so the next
poll retries it; there is no attempt limit. Delivery is at-least-once: a crash
between the provider accepting the mail and `sent_at` being committed resends
on the next poll.
"""

import asyncio
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.event_bus import EventBus
from app.core.structured_logging import build_log_context
from app.db.models import Message
from app.db.session import SessionLocal
from app.db.utils import now_utc
from app.services.mail_transport import MailTransport, get_mail_transport
from app.services.ticketing_service import send_scheduled_message

logger = logging.getLogger(__name__)


def get_due_messages(db: Session, now: datetime | None = None) -> list[Message]:
    now = now or now_utc()
    return list(
        db.scalars(
            select(Message)
            .where(
                Message.scheduled_at.isnot(None),
                Message.scheduled_at <= now,
                Message.sent_at.is_(None),
            )
            .order_by(Message.scheduled_at.asc(), Message.id.asc())
        )
    )


def _reload_pending(db: Session, message_id: int) -> Message | None:
    return db.scalars(
        select(Message)
        .where(Message.id == message_id, Message.sent_at.is_(None))
        .execution_options(populate_existing=True)
    ).first()


async def process_due_messages(
    db: Session,
    bus: EventBus,
    transport: MailTransport,
    now: datetime | None = None,
) -> tuple[int, int]:
    """Send every due message one at a time. Returns (sent, failed)."""
    due = get_due_messages(db, now)
    if not due:
        return 0, 0

    logger.info("Found %s scheduled messages to send", len(due))
    due_ids = [message.id for message in due]
    sent = failed = 0
    for index, message_id in enumerate(due_ids):
        if index and settings.SCHEDULED_SEND_DELAY_SECONDS > 0:
            await asyncio.sleep(settings.SCHEDULED_SEND_DELAY_SECONDS)
        try:
            # Cancelled or sent elsewhere since the batch was selected.
            message = _reload_pending(db, message_id)
            if message is None:
                logger.info(
                    "Scheduled message no longer pending, skipping",
                    extra=build_log_context(message_id=message_id),
                )
                continue
            if await send_scheduled_message(db, message, bus, transport):
                sent += 1
            else:
                failed += 1
        except Exception:
            db.rollback()
            failed += 1
            logger.exception(
                "Error sending scheduled message",
                extra=build_log_context(message_id=message_id),
            )

    logger.info("Scheduled delivery pass finished (sent=%s, failed=%s)", sent, failed)
    return sent, failed


async def run_scheduler(bus: EventBus, transport: MailTransport | None = None) -> None:
    """Poll forever; runs as a task inside the API process or the worker."""
    transport = transport or get_mail_transport()
    logger.info(
        "Scheduled delivery started (poll interval: %ss)",
        settings.SCHEDULED_POLL_INTERVAL_SECONDS,
    )
    while True:
        with SessionLocal() as db:
            try:
                await process_due_messages(db, bus, transport)
            except Exception:
                logger.exception("Error in scheduled delivery loop")
        await asyncio.sleep(settings.SCHEDULED_POLL_INTERVAL_SECONDS)
