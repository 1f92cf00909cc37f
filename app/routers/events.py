"""Server-sent event stream for real-time inbox updates."""

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.core.deps import get_current_user, get_event_bus
from app.core.event_bus import EventBus
from app.db.models import User
from app.utils.sse import STREAM_HEADERS

router = APIRouter(tags=["Events"])


@router.get("/events")
async def stream_events(
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
) -> StreamingResponse:
    """
    Open an SSE connection.

    Sends a `connected` frame, then every broadcast event, with a heartbeat
    comment while idle. There is no replay: reconnecting clients reload.
    """
    handle = bus.subscribe()
    return StreamingResponse(
        bus.stream(handle),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )
