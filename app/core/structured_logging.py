"""Structured logging helpers (no message bodies or customer content)."""

from typing import Any


def build_log_context(
    *,
    ticket_id: int | None = None,
    message_id: int | None = None,
    user_id: int | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict suitable for `extra=`."""
    context: dict[str, Any] = {}
    if ticket_id is not None:
        context["ticket_id"] = ticket_id
    if message_id is not None:
        context["message_id"] = message_id
    if user_id is not None:
        context["user_id"] = user_id
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
