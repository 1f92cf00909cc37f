"""
In-process event bus for real-time ticket updates.

Fans every published event out to all open SSE connections. There is no
persistence or replay: a client that connects after an event misses it and is
expected to reload its list.

Connections are tracked as opaque integer handles mapped to writer callables.
All registry mutations happen on the event loop thread, so no lock is needed;
publish iterates over a snapshot so a writer removed mid-broadcast neither
skips nor double-visits the remaining entries.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, AsyncIterator, Callable

from fastapi.encoders import jsonable_encoder

from app.utils.sse import format_sse, format_sse_comment, format_sse_data

logger = logging.getLogger(__name__)

Writer = Callable[[str], None]

# Event types
NEW_TICKET = "new-ticket"
TICKET_UPDATE = "ticket-update"
NEW_MESSAGE = "new-message"
MESSAGE_DELETED = "message-deleted"
VIEWER_JOINED = "viewer-joined"
VIEWER_LEFT = "viewer-left"
USER_COMPOSING = "user-composing"
TICKET_TAGS_UPDATED = "ticket-tags-updated"

CONNECTED_FRAME = format_sse_data({"type": "connected"})
HEARTBEAT_FRAME = format_sse_comment("heartbeat")

_CLOSE = object()


class EventBus:
    """Publish/subscribe registry of streaming connections."""

    def __init__(self, *, keepalive_seconds: float = 30.0, queue_size: int = 256):
        self.keepalive_seconds = keepalive_seconds
        self.queue_size = queue_size
        self._writers: dict[int, Writer] = {}
        self._queues: dict[int, asyncio.Queue] = {}
        self._ids = itertools.count(1)

    @property
    def client_count(self) -> int:
        return len(self._writers)

    def subscribe(self, writer: Writer | None = None) -> int:
        """
        Register a connection and return its handle.

        Without a writer, frames are buffered on a bounded queue drained by
        `stream()`. A full queue counts as a write failure (client too slow).
        """
        handle = next(self._ids)
        if writer is None:
            queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
            self._queues[handle] = queue
            writer = queue.put_nowait
        self._writers[handle] = writer
        logger.info("SSE client connected (clients=%s)", self.client_count)
        return handle

    def unsubscribe(self, handle: int) -> None:
        """Remove a connection. Unknown handles are ignored."""
        removed = self._writers.pop(handle, None)
        self._queues.pop(handle, None)
        if removed is not None:
            logger.info("SSE client disconnected (clients=%s)", self.client_count)

    def publish(self, event_type: str, data: Any) -> int:
        """
        Broadcast an event to every connection. Returns the number of
        connections written to. Never raises for a failing connection.
        """
        payload = {"type": event_type, "data": jsonable_encoder(data)}
        frame = format_sse(event_type, payload)

        delivered = 0
        failed: list[int] = []
        for handle, writer in list(self._writers.items()):
            try:
                writer(frame)
            except Exception:
                logger.warning("SSE write failed, dropping client %s", handle, exc_info=True)
                failed.append(handle)
            else:
                delivered += 1

        for handle in failed:
            self.unsubscribe(handle)

        if delivered:
            logger.debug("Broadcast %s to %s clients", event_type, delivered)
        return delivered

    async def stream(self, handle: int) -> AsyncIterator[str]:
        """
        Yield SSE frames for a queue-backed connection: the `connected` frame,
        then published events, with a heartbeat comment whenever the
        connection has been idle for `keepalive_seconds`.
        """
        queue = self._queues.get(handle)
        if queue is None:
            raise KeyError(f"Unknown or writer-backed handle {handle}")

        try:
            yield CONNECTED_FRAME
            while handle in self._writers:
                try:
                    frame = await asyncio.wait_for(queue.get(), timeout=self.keepalive_seconds)
                except asyncio.TimeoutError:
                    frame = HEARTBEAT_FRAME
                if frame is _CLOSE:
                    break
                yield frame
        finally:
            self.unsubscribe(handle)

    def close_all(self) -> None:
        """Ask every stream to finish and clear the registry (shutdown)."""
        for queue in list(self._queues.values()):
            try:
                queue.put_nowait(_CLOSE)
            except asyncio.QueueFull:
                # Stream exits on its next registry check.
                pass
        self._writers.clear()
        self._queues.clear()
        logger.info("All SSE connections closed")
