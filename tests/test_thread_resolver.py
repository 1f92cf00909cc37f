"""Tests for inbound email threading and deduplication."""

from __future__ import annotations

import base64
import io

import pytest
from PIL import Image
from sqlalchemy import func, select

from app.core.event_bus import NEW_MESSAGE, NEW_TICKET, TICKET_UPDATE
from app.db.enums import TicketPriority, TicketStatus
from app.db.models import Attachment, Message, Ticket, TicketHistory
from app.services import attachment_service, ticketing_service
from app.services.attachment_service import IncomingAttachment
from app.services.ticketing_service import ParsedEmail


def _email(message_id: str, **overrides) -> ParsedEmail:
    fields = {
        "from_email": "casey@customer.example.com",
        "from_name": "Casey Customer",
        "to": ["support@example.com"],
        "subject": "My order never arrived",
        "body": "Hi, order #5521 never arrived.",
        "message_id": message_id,
    }
    fields.update(overrides)
    return ParsedEmail(**fields)


def _count(db, model) -> int:
    return db.scalar(select(func.count()).select_from(model))


def test_new_email_creates_ticket(db, bus):
    result = ticketing_service.ingest_email(
        db,
        _email(
            "<root@customer.example.com>",
            reply_to="orders@customer.example.com",
            cc=["boss@customer.example.com"],
            references=[],
        ),
        bus,
    )

    assert result.outcome == "created"
    ticket = result.ticket
    assert ticket.status == TicketStatus.NEW
    assert ticket.priority == TicketPriority.NORMAL
    assert ticket.customer_email == "orders@customer.example.com"
    assert ticket.customer_name == "Casey Customer"
    assert ticket.reply_to_email == "orders@customer.example.com"
    assert ticket.message_id == "<root@customer.example.com>"

    message = result.message
    assert message.sender_email == "orders@customer.example.com"
    assert message.to_emails == ["support@example.com"]
    assert message.cc_emails == ["boss@customer.example.com"]
    assert message.email_metadata["subject"] == "My order never arrived"
    assert message.email_metadata["cc"] == ["boss@customer.example.com"]
    assert "inReplyTo" in message.email_metadata

    assert [data["id"] for data in bus.events(NEW_TICKET)] == [ticket.id]


def test_duplicate_message_id_writes_nothing(db, bus):
    first = ticketing_service.ingest_email(db, _email("<dup@customer.example.com>"), bus)
    bus.published.clear()

    second = ticketing_service.ingest_email(db, _email("<dup@customer.example.com>"), bus)

    assert first.outcome == "created"
    assert second.outcome == "duplicate"
    assert second.ticket is None
    assert _count(db, Ticket) == 1
    assert _count(db, Message) == 1
    assert bus.published == []


def test_email_without_message_id_is_never_a_duplicate(db, bus):
    ticketing_service.ingest_email(db, _email(None), bus)
    result = ticketing_service.ingest_email(db, _email(None), bus)

    assert result.outcome == "created"
    assert _count(db, Ticket) == 2


def test_in_reply_to_takes_precedence_over_references(db, bus):
    ticket_a = ticketing_service.ingest_email(db, _email("<a@customer.example.com>"), bus).ticket
    ticket_b = ticketing_service.ingest_email(db, _email("<b@customer.example.com>"), bus).ticket

    result = ticketing_service.ingest_email(
        db,
        _email(
            "<reply@customer.example.com>",
            in_reply_to="<a@customer.example.com>",
            references=["<b@customer.example.com>"],
        ),
        bus,
    )

    assert result.outcome == "appended"
    assert result.ticket.id == ticket_a.id != ticket_b.id


def test_references_checked_in_header_order_against_message_ids(db, bus):
    ticket_a = ticketing_service.ingest_email(db, _email("<a@customer.example.com>"), bus).ticket
    ticket_b = ticketing_service.ingest_email(db, _email("<b@customer.example.com>"), bus).ticket
    # A follow-up inside ticket B: matched through the message table, not the ticket root.
    ticketing_service.ingest_email(
        db,
        _email("<b2@customer.example.com>", in_reply_to="<b@customer.example.com>"),
        bus,
    )

    result = ticketing_service.ingest_email(
        db,
        _email(
            "<c@customer.example.com>",
            in_reply_to="<unknown@elsewhere.example.com>",
            references=["<nope@elsewhere.example.com>", "<b2@customer.example.com>", "<a@customer.example.com>"],
        ),
        bus,
    )

    assert result.outcome == "appended"
    assert result.ticket.id == ticket_b.id
    assert result.ticket.id != ticket_a.id


@pytest.mark.parametrize("status", [TicketStatus.RESOLVED, TicketStatus.AWAITING_CUSTOMER])
def test_customer_reply_reopens_without_history(db, bus, status):
    ticket = ticketing_service.ingest_email(db, _email("<root@customer.example.com>"), bus).ticket
    ticket.status = status
    db.commit()
    bus.published.clear()

    result = ticketing_service.ingest_email(
        db,
        _email("<followup@customer.example.com>", references=["<root@customer.example.com>"]),
        bus,
    )

    assert result.outcome == "appended"
    assert result.ticket.status == TicketStatus.OPEN
    # The automatic reopen is not audited.
    assert _count(db, TicketHistory) == 0
    assert [kind for kind, _ in bus.published] == [NEW_MESSAGE, TICKET_UPDATE]
    assert bus.events(NEW_MESSAGE)[0]["ticketId"] == ticket.id


def test_customer_reply_keeps_new_status(db, bus):
    ticketing_service.ingest_email(db, _email("<root@customer.example.com>"), bus)

    result = ticketing_service.ingest_email(
        db,
        _email("<followup@customer.example.com>", in_reply_to="<root@customer.example.com>"),
        bus,
    )

    assert result.ticket.status == TicketStatus.NEW


def test_append_uses_reply_to_as_sender(db, bus):
    ticketing_service.ingest_email(db, _email("<root@customer.example.com>"), bus)

    result = ticketing_service.ingest_email(
        db,
        _email(
            "<followup@customer.example.com>",
            in_reply_to="<root@customer.example.com>",
            reply_to="replies@customer.example.com",
        ),
        bus,
    )

    assert result.message.sender_email == "replies@customer.example.com"


def test_heic_attachment_is_stored_as_jpeg(db, bus):
    buffer = io.BytesIO()
    Image.new("RGB", (16, 16), "blue").save(buffer, format="HEIF")
    heic = buffer.getvalue()
    email = _email(
        "<heic.example.com>",
        attachments=[
            IncomingAttachment(
                filename="photo.heic", content=heic, content_type="image/heic", size=len(heic)
            ),
        ],
    )

    result = ticketing_service.ingest_email(db, email, bus)

    (attachment,) = db.scalars(
        select(Attachment).where(Attachment.message_id == result.message.id)
    ).all()
    assert (attachment.filename, attachment.mime_type) == ("photo.jpg", "image/jpeg")
    stored = attachment_service.read_file(attachment.file_path)
    assert stored.startswith(b"\xff\xd8\xff")
    assert attachment.size_bytes == len(stored)
    assert attachment.file_path.endswith("_photo.jpg")


def test_broken_heic_attachment_is_kept_as_original(db, bus):
    email = _email(
        "<photo@customer.example.com>",
        attachments=[
            IncomingAttachment(filename="IMG_0001.HEIC", content=b"not-a-heic", content_type="image/heic"),
            IncomingAttachment(filename="notes.txt", content=b"hello", content_type="text/plain"),
        ],
    )

    result = ticketing_service.ingest_email(db, email, bus)

    attachments = db.scalars(
        select(Attachment).where(Attachment.message_id == result.message.id).order_by(Attachment.id)
    ).all()
    assert [(a.filename, a.mime_type) for a in attachments] == [
        ("IMG_0001.HEIC", "image/heic"),
        ("notes.txt", "text/plain"),
    ]
    assert attachment_service.read_file(attachments[0].file_path) == b"not-a-heic"
    assert attachments[1].file_path.startswith(f"{result.ticket.id}/")


def test_failing_attachment_is_skipped(db, bus, monkeypatch):
    real_store = attachment_service.store_file

    def flaky_store(folder, filename, content):
        if filename == "bad.bin":
            raise OSError("disk full")
        return real_store(folder, filename, content)

    monkeypatch.setattr(attachment_service, "store_file", flaky_store)
    email = _email(
        "<files@customer.example.com>",
        attachments=[
            IncomingAttachment(filename="bad.bin", content=b"x", content_type="application/octet-stream"),
            IncomingAttachment(filename="good.txt", content=b"ok", content_type="text/plain"),
        ],
    )

    result = ticketing_service.ingest_email(db, email, bus)

    assert result.outcome == "created"
    names = db.scalars(select(Attachment.filename).where(Attachment.message_id == result.message.id)).all()
    assert names == ["good.txt"]


@pytest.mark.asyncio
async def test_inbound_endpoint(client, bus):
    payload = {
        "from_email": "casey@customer.example.com",
        "from_name": "Casey Customer",
        "subject": "Broken zipper",
        "body": "The zipper broke on day one.",
        "message_id": "<api@customer.example.com>",
        "attachments": [
            {
                "filename": "receipt.txt",
                "content_base64": base64.b64encode(b"receipt").decode(),
                "content_type": "text/plain",
            }
        ],
    }

    created = await client.post("/inbound/email", json=payload)
    duplicate = await client.post("/inbound/email", json=payload)

    assert created.status_code == 200
    assert created.json()["outcome"] == "created"
    assert created.json()["ticket_id"]
    assert duplicate.json() == {"outcome": "duplicate", "ticket_id": None, "message_id": None}


@pytest.mark.asyncio
async def test_inbound_endpoint_rejects_bad_attachment_encoding(client):
    response = await client.post(
        "/inbound/email",
        json={
            "from_email": "casey@customer.example.com",
            "attachments": [{"filename": "x.bin", "content_base64": "***"}],
        },
    )

    assert response.status_code == 400
