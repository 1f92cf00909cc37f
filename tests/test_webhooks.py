"""Tests for outbound webhook notifications."""

import httpx
import pytest

from app.core.config import settings
from app.db.models import Message
from app.services import webhook_service


@pytest.fixture
def webhook_url(monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_URL", "https://hooks.example.com/support")
    return settings.WEBHOOK_URL


def test_extract_recipients_prefers_columns():
    message = Message(
        to_emails=["support@example.com"],
        cc_emails=None,
        email_metadata={"to": ["ignored@example.com"], "cc": ["boss@customer.example.com"], "originalTo": "help@example.com"},
    )

    assert webhook_service.extract_recipients(message) == {
        "to": ["support@example.com"],
        "cc": ["boss@customer.example.com"],
        "original_to": "help@example.com",
    }


def test_extract_recipients_without_metadata():
    assert webhook_service.extract_recipients(Message()) == {"to": [], "cc": [], "original_to": None}


@pytest.mark.asyncio
async def test_dispatch_disabled_without_url(db, customer_ticket):
    message = customer_ticket.messages[0]

    assert webhook_service.notify_message(webhook_service.NEW_TICKET, customer_ticket, message, []) is None
    assert webhook_service.notify_ticket_update(customer_ticket, {"status": "open"}, "a@b.c") is None


@pytest.mark.asyncio
async def test_new_ticket_payload(db, customer_ticket, webhook_url, monkeypatch):
    delivered = []

    async def fake_deliver(payload):
        delivered.append(payload)
        return True

    monkeypatch.setattr(webhook_service, "deliver_webhook", fake_deliver)
    message = customer_ticket.messages[0]

    task = webhook_service.notify_message(webhook_service.NEW_TICKET, customer_ticket, message, [])
    await task

    (payload,) = delivered
    assert payload["event"] == "new_ticket"
    assert payload["ticket"]["id"] == customer_ticket.id
    assert payload["ticket"]["status"] == "new"
    assert payload["message"]["to"] == ["support@example.com"]
    assert payload["message"]["attachments"] == []
    assert isinstance(payload["ticket"]["created_at"], str)


@pytest.mark.asyncio
async def test_update_payload_skipped_without_changes(customer_ticket, webhook_url):
    assert webhook_service.notify_ticket_update(customer_ticket, {}, "a@b.c") is None


@pytest.mark.asyncio
async def test_patch_fires_ticket_update_webhook(authed_client, customer_ticket, webhook_url, monkeypatch):
    delivered = []

    async def fake_deliver(payload):
        delivered.append(payload)
        return True

    monkeypatch.setattr(webhook_service, "deliver_webhook", fake_deliver)

    response = await authed_client.patch(f"/tickets/{customer_ticket.id}", json={"priority": "urgent"})
    assert response.status_code == 200
    for task in list(webhook_service._background_tasks):
        await task

    (payload,) = delivered
    assert payload["event"] == "ticket_update"
    assert payload["changes"] == {"priority": "urgent"}
    assert payload["updated_by"] == "agent@support.example.com"


@pytest.mark.asyncio
async def test_deliver_webhook_posts_json(webhook_url, monkeypatch):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        webhook_service.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )

    assert await webhook_service.deliver_webhook({"event": "new_reply"}) is True
    assert str(seen[0].url) == webhook_url
    assert seen[0].headers["content-type"] == "application/json"
