"""
Tests for email open tracking.

Covers the public pixel endpoint and read-receipt recording.
"""

import pytest
from sqlalchemy import select

from app.db.models import EmailOpen, Message
from app.routers.tracking import TRANSPARENT_GIF
from app.services import tracking_service


@pytest.fixture
def tracked_message(db, customer_ticket):
    message = Message(
        ticket_id=customer_ticket.id,
        sender_email="alex@support.example.com",
        body="We are on it.",
        tracking_token="a" * 64,
    )
    db.add(message)
    db.commit()
    return message


# =============================================================================
# Service Tests
# =============================================================================


def test_record_open(db, tracked_message):
    first = tracking_service.record_open(db, "a" * 64, ip_address="203.0.113.9", user_agent="Mail/1.0")
    second = tracking_service.record_open(db, "a" * 64)

    assert first.message_id == tracked_message.id
    assert first.ip_address == "203.0.113.9"
    assert first.user_agent == "Mail/1.0"
    assert second is not None

    db.refresh(tracked_message)
    assert len(tracked_message.email_opens) == 2
    assert tracked_message.first_opened_at == first.opened_at


def test_record_open_unknown_token(db, tracked_message):
    assert tracking_service.record_open(db, "missing") is None
    assert db.scalars(select(EmailOpen)).all() == []


# =============================================================================
# Endpoint Tests
# =============================================================================


@pytest.mark.asyncio
async def test_pixel_endpoint_records_open(client, db, tracked_message):
    response = await client.get(f"/api/track/{'a' * 64}", headers={"User-Agent": "Outlook"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/gif"
    assert "no-store" in response.headers["cache-control"]
    assert response.content == TRANSPARENT_GIF

    (email_open,) = db.scalars(select(EmailOpen)).all()
    assert email_open.user_agent == "Outlook"
    assert email_open.tracking_token == "a" * 64


@pytest.mark.asyncio
async def test_pixel_endpoint_unknown_token_still_returns_gif(client, db):
    response = await client.get("/api/track/does-not-exist")

    assert response.status_code == 200
    assert response.content == TRANSPARENT_GIF
    assert db.scalars(select(EmailOpen)).all() == []


@pytest.mark.asyncio
async def test_detail_exposes_read_receipts(authed_client, db, customer_ticket, tracked_message):
    tracking_service.record_open(db, "a" * 64)

    response = await authed_client.get(f"/tickets/{customer_ticket.id}")

    messages = {m["id"]: m for m in response.json()["messages"]}
    assert len(messages[tracked_message.id]["email_opens"]) == 1
    assert messages[tracked_message.id]["first_opened_at"] is not None
