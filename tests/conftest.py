"""
Test configuration and fixtures.

Provides:
- Fresh in-memory SQLite schema per test
- Agent/admin users and an authenticated HTTPX AsyncClient
- An EventBus that records published events
- A fake mail transport
"""
import os
import tempfile
from typing import AsyncGenerator, Generator

# Settings are read at import time; configure before importing the app.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ATTACHMENTS_DIR", tempfile.mkdtemp(prefix="support-inbox-tests-"))
os.environ["SCHEDULED_WORKER_ENABLED"] = "False"
os.environ["SCHEDULED_SEND_DELAY_SECONDS"] = "0"
os.environ["WEBHOOK_URL"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from app.core.deps import get_db, get_event_bus, get_mail_transport
from app.core.event_bus import EventBus
from app.db.base import Base
from app.db.enums import Role
from app.db.models import User
from app.db.session import SessionLocal, engine
from app.main import app
from app.services.mail_transport import MailTransportError, OutboundEmail


# =============================================================================
# Fakes
# =============================================================================

class RecordingBus(EventBus):
    """EventBus that also keeps every published (event_type, data) pair."""

    def __init__(self):
        super().__init__(keepalive_seconds=0.05)
        self.published: list[tuple[str, object]] = []

    def publish(self, event_type, data):
        self.published.append((event_type, data))
        return super().publish(event_type, data)

    def events(self, event_type: str) -> list:
        return [data for kind, data in self.published if kind == event_type]


class FakeTransport:
    """Mail transport that records sends; set `fail` to simulate provider errors."""

    def __init__(self):
        self.sent: list[OutboundEmail] = []
        self.fail = False
        self._counter = 0

    async def send(self, email: OutboundEmail) -> str:
        if self.fail:
            raise MailTransportError("provider unavailable")
        self._counter += 1
        self.sent.append(email)
        return f"<sent-{self._counter}@support.example.com>"


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Session over a freshly created schema, dropped after the test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def agent(db: Session) -> User:
    user = User(
        email="agent@support.example.com",
        name="Alex Agent",
        role=Role.AGENT,
        signature="<p>-- Alex</p>",
        agent_email="alex@support.example.com",
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture(scope="function")
def admin(db: Session) -> User:
    user = User(email="admin@support.example.com", name="Ada Admin", role=Role.ADMIN)
    db.add(user)
    db.commit()
    return user


@pytest.fixture(scope="function")
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture(scope="function")
def transport() -> FakeTransport:
    return FakeTransport()


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(
    db: Session, bus: RecordingBus, transport: FakeTransport
) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated AsyncClient (public endpoints)."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_bus] = lambda: bus
    app.dependency_overrides[get_mail_transport] = lambda: transport

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(client: AsyncClient, agent: User) -> AsyncClient:
    """AsyncClient acting as the agent user."""
    client.headers["X-User-Id"] = str(agent.id)
    return client


# =============================================================================
# Data Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def customer_ticket(db: Session, bus: RecordingBus):
    """Ticket opened by an inbound customer email; the bus is cleared afterwards."""
    from app.services.ticketing_service import ParsedEmail, ingest_email

    result = ingest_email(
        db,
        ParsedEmail(
            from_email="casey@customer.example.com",
            from_name="Casey Customer",
            to=["support@example.com"],
            subject="Order 5521 never arrived",
            body="Hi, my order never arrived.",
            message_id="<order-5521@customer.example.com>",
        ),
        bus,
    )
    bus.published.clear()
    return result.ticket
