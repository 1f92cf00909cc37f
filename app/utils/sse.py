"""Server-sent events helpers."""

from __future__ import annotations

import json
from typing import Any


def _dumps(data: dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"))


def format_sse(event_type: str, data: dict[str, Any]) -> str:
    """Format a single SSE event payload."""
    return f"event: {event_type}\ndata: {_dumps(data)}\n\n"


def format_sse_data(data: dict[str, Any]) -> str:
    """Format an unnamed SSE message (delivered to the default `message` handler)."""
    return f"data: {_dumps(data)}\n\n"


def format_sse_comment(comment: str = "ping") -> str:
    """Format a comment line; conforming clients ignore it, proxies see traffic."""
    return f":{comment}\n\n"


STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Content-Encoding": "identity",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
