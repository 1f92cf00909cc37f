"""Tests for deferred reply delivery and cancellation."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.core.event_bus import NEW_MESSAGE, TICKET_UPDATE
from app.db.enums import MessageType, TicketStatus
from app.db.models import Message, Ticket
from app.services import scheduled_delivery, ticketing_service


NOW = datetime.now(timezone.utc)


def _scheduled(db, ticket, *, minutes, body="Following up", sender_email="alex@support.example.com"):
    message = Message(
        ticket_id=ticket.id,
        sender_email=sender_email,
        sender_name="Alex Agent",
        body=body,
        body_html=f"<p>{body}</p>",
        type=MessageType.EMAIL,
        to_emails=[ticket.customer_email],
        cc_emails=["boss@customer.example.com"],
        scheduled_at=NOW + timedelta(minutes=minutes),
    )
    db.add(message)
    db.commit()
    return message


def test_due_messages_oldest_first(db, customer_ticket):
    later = _scheduled(db, customer_ticket, minutes=-1)
    earlier = _scheduled(db, customer_ticket, minutes=-10)
    _scheduled(db, customer_ticket, minutes=30)

    due = scheduled_delivery.get_due_messages(db, NOW)

    assert [m.id for m in due] == [earlier.id, later.id]


@pytest.mark.asyncio
async def test_process_sends_due_messages(db, bus, transport, agent, customer_ticket):
    first = _scheduled(db, customer_ticket, minutes=-10, body="First")
    second = _scheduled(db, customer_ticket, minutes=-5, body="Second")
    future = _scheduled(db, customer_ticket, minutes=60, body="Future")

    sent, failed = await scheduled_delivery.process_due_messages(db, bus, transport, NOW)

    assert (sent, failed) == (2, 0)
    assert [email.subject for email in transport.sent] == ["Re: Order 5521 never arrived"] * 2
    assert "First" in transport.sent[0].html
    assert "Second" in transport.sent[1].html
    # Stored recipients are used, and the author's signature is appended.
    assert transport.sent[0].to == ["casey@customer.example.com"]
    assert transport.sent[0].cc == ["boss@customer.example.com"]
    assert "<p>-- Alex</p>" in transport.sent[0].html

    db.expire_all()
    for message, expected_id in ((first, "<sent-1@support.example.com>"), (second, "<sent-2@support.example.com>")):
        reloaded = db.get(Message, message.id)
        assert reloaded.sent_at is not None
        assert reloaded.message_id == expected_id
        assert len(reloaded.tracking_token) == 64
    assert db.get(Message, future.id).is_pending
    assert db.get(Ticket, customer_ticket.id).status == TicketStatus.RESOLVED
    assert len(bus.events(NEW_MESSAGE)) == 2
    assert len(bus.events(TICKET_UPDATE)) == 2


@pytest.mark.asyncio
async def test_quotes_skip_pending_messages(db, bus, transport, customer_ticket):
    _scheduled(db, customer_ticket, minutes=-5, body="Due now")
    _scheduled(db, customer_ticket, minutes=60, body="Still waiting")

    await scheduled_delivery.process_due_messages(db, bus, transport, NOW)

    (email,) = transport.sent
    assert "Still waiting" not in email.html
    assert email.in_reply_to == "<order-5521@customer.example.com>"


@pytest.mark.asyncio
async def test_failed_send_stays_pending_and_retries(db, bus, transport, customer_ticket):
    message = _scheduled(db, customer_ticket, minutes=-1)
    transport.fail = True

    assert await scheduled_delivery.process_due_messages(db, bus, transport, NOW) == (0, 1)

    db.expire_all()
    pending = db.get(Message, message.id)
    assert pending.is_pending
    assert pending.tracking_token is None
    assert db.get(Ticket, customer_ticket.id).status == TicketStatus.NEW
    assert bus.published == []

    transport.fail = False
    assert await scheduled_delivery.process_due_messages(db, bus, transport, NOW) == (1, 0)
    db.expire_all()
    assert db.get(Message, message.id).sent_at is not None


@pytest.mark.asyncio
async def test_message_cancelled_mid_batch_is_skipped(db, bus, transport, customer_ticket, monkeypatch):
    first = _scheduled(db, customer_ticket, minutes=-10, body="First")
    second_id = _scheduled(db, customer_ticket, minutes=-5, body="Second").id
    third = _scheduled(db, customer_ticket, minutes=-1, body="Third")
    cancelled = []
    publish = bus.publish

    def publish_then_cancel(event_type, data):
        delivered = publish(event_type, data)
        if event_type == NEW_MESSAGE and not cancelled:
            # The agent cancels the next message while the batch is running.
            cancelled.append(ticketing_service.cancel_scheduled_message(db, second_id))
        return delivered

    monkeypatch.setattr(bus, "publish", publish_then_cancel)

    assert await scheduled_delivery.process_due_messages(db, bus, transport, NOW) == (2, 0)

    assert cancelled == [True]
    assert len(transport.sent) == 2
    assert "First" in transport.sent[0].html
    assert "Third" in transport.sent[1].html
    assert all("Second" not in email.html for email in transport.sent)
    db.expire_all()
    assert db.get(Message, first.id).sent_at is not None
    assert db.get(Message, third.id).sent_at is not None
    assert db.get(Message, second_id) is None


@pytest.mark.asyncio
async def test_unexpected_error_does_not_abort_batch(db, bus, transport, customer_ticket, monkeypatch):
    broken = _scheduled(db, customer_ticket, minutes=-10, body="Broken")
    healthy = _scheduled(db, customer_ticket, minutes=-5, body="Healthy")
    send = transport.send
    attempts = []

    async def send_rejecting_first(email):
        attempts.append(email)
        if len(attempts) == 1:
            raise ValueError("Header values may not contain linefeed or carriage return characters")
        return await send(email)

    monkeypatch.setattr(transport, "send", send_rejecting_first)

    assert await scheduled_delivery.process_due_messages(db, bus, transport, NOW) == (1, 1)

    assert len(attempts) == 2
    db.expire_all()
    assert db.get(Message, broken.id).is_pending
    assert db.get(Message, broken.id).tracking_token is None
    assert db.get(Message, healthy.id).sent_at is not None


@pytest.mark.asyncio
async def test_nothing_due(db, bus, transport, customer_ticket):
    _scheduled(db, customer_ticket, minutes=5)

    assert await scheduled_delivery.process_due_messages(db, bus, transport, NOW) == (0, 0)
    assert transport.sent == []


# =============================================================================
# Cancellation
# =============================================================================


def test_cancel_pending_message(db, customer_ticket):
    message = _scheduled(db, customer_ticket, minutes=30)
    message_id = message.id

    assert ticketing_service.cancel_scheduled_message(db, message_id) is True
    assert ticketing_service.cancel_scheduled_message(db, message_id) is False
    db.expire_all()
    assert db.get(Message, message_id) is None


def test_cancel_does_not_touch_sent_message(db, customer_ticket):
    message = _scheduled(db, customer_ticket, minutes=-30)
    message.sent_at = NOW
    db.commit()

    assert ticketing_service.cancel_scheduled_message(db, message.id) is False
    assert db.get(Message, message.id) is not None


@pytest.mark.asyncio
async def test_cancel_endpoint(authed_client, db, customer_ticket):
    message = _scheduled(db, customer_ticket, minutes=30)

    response = await authed_client.delete(f"/messages/{message.id}/scheduled")

    assert response.status_code == 200
    assert db.scalars(select(Message).where(Message.id == message.id)).first() is None


@pytest.mark.asyncio
async def test_cancel_endpoint_errors(authed_client, db, customer_ticket):
    inbound = db.scalars(select(Message).where(Message.ticket_id == customer_ticket.id)).one()

    missing = await authed_client.delete("/messages/9999/scheduled")
    not_scheduled = await authed_client.delete(f"/messages/{inbound.id}/scheduled")

    assert missing.status_code == 404
    assert not_scheduled.status_code == 400


@pytest.mark.asyncio
async def test_cancel_endpoint_loses_race_with_worker(authed_client, db, customer_ticket, monkeypatch):
    message = _scheduled(db, customer_ticket, minutes=-1)
    # The worker sends between the pending check and the guarded delete.
    monkeypatch.setattr(ticketing_service, "cancel_scheduled_message", lambda db, message_id: False)

    response = await authed_client.delete(f"/messages/{message.id}/scheduled")

    assert response.status_code == 409
    assert response.json()["detail"] == "Message was already sent"
