"""Outbound webhook notifications (fire-and-forget).

Each notification is dispatched as a detached asyncio task. The caller never
awaits delivery; the outcome is only logged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from fastapi.encoders import jsonable_encoder

from app.core.config import settings
from app.db.models import Attachment, Message, Ticket
from app.services.http_service import USER_AGENT, request_with_retries

logger = logging.getLogger(__name__)

WEBHOOK_MAX_ATTEMPTS = 2

NEW_TICKET = "new_ticket"
NEW_REPLY = "new_reply"
CUSTOMER_REPLY = "customer_reply"
TICKET_UPDATE = "ticket_update"

# Strong references so pending tasks are not garbage-collected mid-flight.
_background_tasks: set[asyncio.Task] = set()


# =============================================================================
# Payload builders
# =============================================================================

def extract_recipients(message: Message) -> dict[str, Any]:
    """
    to/cc from the recipient columns, falling back to the stored email
    metadata; original_to only exists in metadata (X-Original-To).
    """
    to = list(message.to_emails or [])
    cc = list(message.cc_emails or [])
    original_to = None

    metadata = message.email_metadata if isinstance(message.email_metadata, dict) else {}
    if not to and isinstance(metadata.get("to"), list):
        to = metadata["to"]
    if not cc and isinstance(metadata.get("cc"), list):
        cc = metadata["cc"]
    if isinstance(metadata.get("originalTo"), str):
        original_to = metadata["originalTo"]

    return {"to": to, "cc": cc, "original_to": original_to}


def ticket_payload(ticket: Ticket) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "subject": ticket.subject,
        "customer_email": ticket.customer_email,
        "customer_name": ticket.customer_name,
        "status": ticket.status,
        "priority": ticket.priority,
        "assignee_id": ticket.assignee_id,
        "message_id": ticket.message_id,
        "created_at": ticket.created_at,
        "updated_at": ticket.updated_at,
    }


def message_payload(message: Message, attachments: list[Attachment]) -> dict[str, Any]:
    return {
        "id": message.id,
        "ticket_id": message.ticket_id,
        "sender_email": message.sender_email,
        "sender_name": message.sender_name,
        "body": message.body,
        "body_html": message.body_html,
        "email_metadata": message.email_metadata,
        "type": message.type,
        "message_id": message.message_id,
        "created_at": message.created_at,
        **extract_recipients(message),
        "attachments": [
            {
                "id": attachment.id,
                "message_id": attachment.message_id,
                "filename": attachment.filename,
                "file_path": attachment.file_path,
                "size_bytes": attachment.size_bytes,
                "mime_type": attachment.mime_type,
                "created_at": attachment.created_at,
            }
            for attachment in attachments
        ],
    }


def build_message_event(
    event: str, ticket: Ticket, message: Message, attachments: list[Attachment]
) -> dict[str, Any]:
    return jsonable_encoder(
        {
            "event": event,
            "ticket": ticket_payload(ticket),
            "message": message_payload(message, attachments),
        }
    )


def build_update_event(ticket: Ticket, changes: dict[str, Any], updated_by: str) -> dict[str, Any]:
    return jsonable_encoder(
        {
            "event": TICKET_UPDATE,
            "ticket": ticket_payload(ticket),
            "changes": changes,
            "updated_by": updated_by,
        }
    )


# =============================================================================
# Delivery
# =============================================================================

async def deliver_webhook(payload: dict[str, Any]) -> bool:
    """POST a payload to WEBHOOK_URL. Returns True on a 2xx response."""
    headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
    async with httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS) as client:

        async def request_fn() -> httpx.Response:
            return await client.post(settings.WEBHOOK_URL, headers=headers, json=payload)

        response = await request_with_retries(
            request_fn, max_attempts=WEBHOOK_MAX_ATTEMPTS, label="Webhook"
        )

    if response.is_success:
        return True
    logger.error("Webhook %s failed: %s", payload.get("event"), response.status_code)
    return False


def _log_outcome(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Failed to send webhook", exc_info=exc)
    elif task.result():
        logger.info("Webhook sent (%s)", task.get_name())


def dispatch_webhook(payload: dict[str, Any]) -> asyncio.Task | None:
    """Schedule delivery without awaiting it. No-op when no WEBHOOK_URL is set."""
    if not settings.webhook_enabled:
        return None
    ticket_id = (payload.get("ticket") or {}).get("id")
    task = asyncio.get_running_loop().create_task(
        deliver_webhook(payload), name=f"webhook:{payload.get('event')}:{ticket_id}"
    )
    _background_tasks.add(task)
    task.add_done_callback(_log_outcome)
    return task


def notify_message(
    event: str, ticket: Ticket, message: Message, attachments: list[Attachment]
) -> asyncio.Task | None:
    if not settings.webhook_enabled:
        return None
    return dispatch_webhook(build_message_event(event, ticket, message, attachments))


def notify_ticket_update(
    ticket: Ticket, changes: dict[str, Any], updated_by: str
) -> asyncio.Task | None:
    if not settings.webhook_enabled or not changes:
        return None
    return dispatch_webhook(build_update_event(ticket, changes, updated_by))
