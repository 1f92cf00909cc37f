"""FastAPI application entry point."""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.core.config import settings
from app.core.event_bus import EventBus
from app.db import models  # noqa: F401  (register tables on Base.metadata)
from app.db.base import Base
from app.db.session import engine

logger = logging.getLogger(__name__)


# ============================================================================
# Lifespan
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DB_CREATE_ALL:
        Base.metadata.create_all(bind=engine)

    app.state.event_bus = EventBus(
        keepalive_seconds=settings.SSE_KEEPALIVE_SECONDS,
        queue_size=settings.SSE_QUEUE_SIZE,
    )

    scheduler = None
    if settings.SCHEDULED_WORKER_ENABLED:
        from app.services.scheduled_delivery import run_scheduler

        scheduler = asyncio.create_task(run_scheduler(app.state.event_bus), name="scheduled-delivery")

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await scheduler
        app.state.event_bus.close_all()


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Support Inbox API",
    description="Customer support ticketing: email threading, audit history, search and live updates",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
    lifespan=lifespan,
)

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-User-Id"],
    expose_headers=["Content-Disposition"],
)

# ============================================================================
# Routers
# ============================================================================

from app.routers import (  # noqa: E402
    attachments_router,
    events_router,
    inbound_router,
    messages_router,
    tags_router,
    tickets_router,
    tracking_router,
)

app.include_router(tickets_router)
app.include_router(messages_router)
app.include_router(tags_router)
app.include_router(attachments_router)

# Real-time updates (SSE)
app.include_router(events_router)

# Email tracking pixel (public)
app.include_router(tracking_router)

# Mail-polling collaborator hand-off
app.include_router(inbound_router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
