"""FastAPI dependencies for authentication, authorization, and database access."""

from typing import Generator

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.event_bus import EventBus
from app.db.session import SessionLocal
from app.services.mail_transport import MailTransport
from app.services.mail_transport import get_mail_transport as build_mail_transport


# Header carrying the authenticated agent id (set by the auth proxy in front of the API)
USER_HEADER = "X-User-Id"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    x_user_id: str | None = Header(default=None, alias=USER_HEADER),
    db: Session = Depends(get_db),
):
    """
    Resolve the acting agent.

    Raises:
        HTTPException 401: Missing header, unknown or inactive user
    """
    # Import here to avoid circular imports
    from app.db.models import User

    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user id")

    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.active:
        raise HTTPException(status_code=401, detail="Account disabled")
    return user


def require_admin(user=Depends(get_current_user)):
    """
    Raises:
        HTTPException 403: Caller is not an admin
    """
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def get_event_bus(request: Request) -> EventBus:
    """Process-wide broadcaster created in the app lifespan."""
    return request.app.state.event_bus


def get_mail_transport() -> MailTransport:
    return build_mail_transport()
