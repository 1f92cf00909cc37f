"""Tests for audited ticket updates, history and the activity timeline."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.core.event_bus import TICKET_UPDATE
from app.db.enums import ChangeSource, TicketPriority, TicketStatus
from app.db.models import Ticket, TicketHistory
from app.services import audit_service


def _history(db, ticket_id):
    return db.scalars(
        select(TicketHistory).where(TicketHistory.ticket_id == ticket_id).order_by(TicketHistory.id)
    ).all()


def test_one_history_entry_per_changed_field(db, bus, agent, customer_ticket):
    ticket = audit_service.update_ticket(
        db,
        customer_ticket.id,
        {"status": TicketStatus.OPEN, "priority": TicketPriority.HIGH, "customer_name": "Casey Customer"},
        agent,
        bus,
    )

    assert ticket.status == TicketStatus.OPEN
    assert ticket.priority == TicketPriority.HIGH
    entries = _history(db, ticket.id)
    assert [(e.field_name, e.old_value, e.new_value) for e in entries] == [
        ("status", "new", "open"),
        ("priority", "normal", "high"),
    ]
    assert all(e.changed_by_user_id == agent.id for e in entries)
    assert all(e.changed_by_email == agent.email for e in entries)
    assert all(e.changed_by_name == "Alex Agent" for e in entries)
    assert all(e.change_source == ChangeSource.MANUAL for e in entries)
    assert bus.events(TICKET_UPDATE)[0]["priority"] == "high"


def test_no_op_update_writes_no_history(db, bus, agent, customer_ticket):
    audit_service.update_ticket(db, customer_ticket.id, {"status": "new"}, agent, bus)

    assert _history(db, customer_ticket.id) == []
    # Still broadcast so open views refresh.
    assert len(bus.events(TICKET_UPDATE)) == 1


def test_assign_by_email_and_unassign(db, bus, agent, admin, customer_ticket):
    audit_service.update_ticket(
        db, customer_ticket.id, {"assignee_email": admin.email}, agent, bus
    )
    audit_service.update_ticket(db, customer_ticket.id, {"assignee_email": None}, agent, bus)

    db.refresh(customer_ticket)
    assert customer_ticket.assignee_id is None
    assert [(e.old_value, e.new_value) for e in _history(db, customer_ticket.id)] == [
        (None, str(admin.id)),
        (str(admin.id), None),
    ]


def test_log_ticket_change_skips_unchanged_values(db, agent, customer_ticket):
    assert audit_service.log_ticket_change(db, customer_ticket.id, "status", "open", TicketStatus.OPEN, agent) is None
    assert _history(db, customer_ticket.id) == []


def test_history_failure_does_not_block_update(db, bus, agent, customer_ticket, monkeypatch):
    def failing_savepoint():
        raise OperationalError("INSERT INTO ticket_history", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "begin_nested", failing_savepoint)

    ticket = audit_service.update_ticket(
        db, customer_ticket.id, {"status": TicketStatus.RESOLVED}, agent, bus
    )

    monkeypatch.undo()
    db.expire_all()
    assert db.get(Ticket, ticket.id).status == TicketStatus.RESOLVED
    assert _history(db, ticket.id) == []


def test_naive_datetime_matching_stored_value_is_a_no_op(db, bus, agent, customer_ticket):
    audit_service.update_ticket(
        db, customer_ticket.id, {"follow_up_at": datetime(2030, 1, 1, 10, 0)}, agent, bus
    )
    audit_service.update_ticket(
        db, customer_ticket.id, {"follow_up_at": datetime(2030, 1, 1, 10, 0, tzinfo=timezone.utc)}, agent, bus
    )

    assert [(e.old_value, e.new_value) for e in _history(db, customer_ticket.id)] == [
        (None, "2030-01-01T10:00:00+00:00"),
    ]


def test_timeline_keeps_same_time_entries_in_write_order(db, customer_ticket):
    at = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)
    first = TicketHistory(
        ticket_id=customer_ticket.id, field_name="status", old_value="new", new_value="open", changed_at=at
    )
    second = TicketHistory(
        ticket_id=customer_ticket.id, field_name="priority", old_value="normal", new_value="high", changed_at=at
    )
    db.add(first)
    db.flush()
    db.add(second)
    db.commit()

    events = audit_service.build_timeline(db, customer_ticket.id)

    assert [event.kind for event in events] == ["message", "history", "history"]
    assert [event.entry.id for event in events[1:]] == [first.id, second.id]


# =============================================================================
# API
# =============================================================================


@pytest.mark.asyncio
async def test_patch_ticket(authed_client, db, agent, customer_ticket):
    response = await authed_client.patch(
        f"/tickets/{customer_ticket.id}",
        json={"status": "awaiting_customer", "follow_up_at": "2030-01-15T09:00:00Z"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "awaiting_customer"
    history = await authed_client.get(f"/tickets/{customer_ticket.id}/history")
    fields = [entry["field_name"] for entry in history.json()]
    # Newest first; both written in the same update.
    assert sorted(fields) == ["follow_up_at", "status"]


@pytest.mark.asyncio
async def test_patch_unknown_assignee_email_is_404(authed_client, customer_ticket):
    response = await authed_client.patch(
        f"/tickets/{customer_ticket.id}", json={"assignee_email": "ghost@support.example.com"}
    )

    assert response.status_code == 404
    assert response.json()["detail"] == "User not found with email: ghost@support.example.com"


@pytest.mark.asyncio
async def test_patch_unknown_assignee_id_is_404(authed_client, customer_ticket):
    response = await authed_client.patch(f"/tickets/{customer_ticket.id}", json={"assignee_id": 9999})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_patch_null_for_required_field_is_422(authed_client, customer_ticket):
    response = await authed_client.patch(f"/tickets/{customer_ticket.id}", json={"customer_email": None})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_patch_unknown_ticket_is_404(authed_client):
    response = await authed_client.patch("/tickets/4040", json={"status": "open"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_patch_same_naive_follow_up_twice_audits_once(authed_client, db, customer_ticket):
    for _ in range(2):
        response = await authed_client.patch(
            f"/tickets/{customer_ticket.id}", json={"follow_up_at": "2030-01-01T10:00:00"}
        )
        assert response.status_code == 200

    assert [(e.field_name, e.old_value, e.new_value) for e in _history(db, customer_ticket.id)] == [
        ("follow_up_at", None, "2030-01-01T10:00:00+00:00"),
    ]


@pytest.mark.asyncio
async def test_timeline_merges_messages_and_history(authed_client, db, agent, customer_ticket):
    await authed_client.post(f"/tickets/{customer_ticket.id}/reply", json={"body": "<p>On it</p>"})
    await authed_client.patch(f"/tickets/{customer_ticket.id}", json={"priority": "urgent"})

    response = await authed_client.get(f"/tickets/{customer_ticket.id}/timeline")

    assert response.status_code == 200
    items = response.json()["items"]
    assert [item["kind"] for item in items] == ["message", "history", "message", "history"]
    assert items[1]["entry"]["notes"] == "Auto-assigned when agent replied"
    assert items[3]["entry"]["field_name"] == "priority"
    timestamps = [item["at"] for item in items]
    assert timestamps == sorted(timestamps)


# =============================================================================
# Bulk operations
# =============================================================================


@pytest.mark.asyncio
async def test_bulk_update(authed_client, db, bus, agent):
    ids = []
    for subject in ("First", "Second"):
        created = await authed_client.post(
            "/tickets", json={"subject": subject, "customer_email": "dana@customer.example.com"}
        )
        ids.append(created.json()["id"])
    bus.published.clear()

    response = await authed_client.post(
        "/tickets/bulk-update", json={"ticket_ids": ids, "updates": {"status": "resolved"}}
    )

    assert response.status_code == 200
    assert response.json()["updated"] == 2
    assert {t["status"] for t in response.json()["tickets"]} == {"resolved"}
    assert len(bus.events(TICKET_UPDATE)) == 2
    assert len(db.scalars(select(TicketHistory)).all()) == 2


@pytest.mark.asyncio
async def test_bulk_update_requires_changes(authed_client, customer_ticket):
    response = await authed_client.post(
        "/tickets/bulk-update", json={"ticket_ids": [customer_ticket.id], "updates": {}}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_bulk_delete_is_admin_only(authed_client, db, admin, customer_ticket):
    forbidden = await authed_client.post(
        "/tickets/bulk-delete", json={"ticket_ids": [customer_ticket.id]}
    )
    assert forbidden.status_code == 403

    authed_client.headers["X-User-Id"] = str(admin.id)
    response = await authed_client.post(
        "/tickets/bulk-delete", json={"ticket_ids": [customer_ticket.id, 777]}
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "deleted": 1}
    db.expire_all()
    assert db.get(Ticket, customer_ticket.id) is None
