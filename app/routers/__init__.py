"""API routers."""

from app.routers.attachments import router as attachments_router
from app.routers.events import router as events_router
from app.routers.inbound import router as inbound_router
from app.routers.messages import router as messages_router
from app.routers.tags import router as tags_router
from app.routers.tickets import router as tickets_router
from app.routers.tracking import router as tracking_router

__all__ = [
    "attachments_router",
    "events_router",
    "inbound_router",
    "messages_router",
    "tags_router",
    "tickets_router",
    "tracking_router",
]
