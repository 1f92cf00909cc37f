"""
Email Tracking Router.

Public read-receipt pixel embedded in outbound replies.
Unauthenticated since it is loaded by the recipient's mail client.
"""

import base64
import logging

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.deps import get_db
from app.services import tracking_service


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/track", tags=["tracking"])


# 1x1 transparent GIF
TRANSPARENT_GIF = base64.b64decode("R0lGODlhAQABAIAAAP///wAAACH5BAEAAAAALAAAAAABAAEAAAICRAEAOw==")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.get("/{token}")
async def track_open(
    token: str,
    request: Request,
    db: Session = Depends(get_db),
) -> Response:
    """
    Record an email open event and return a 1x1 transparent GIF.

    Called when the email client loads the tracking pixel.
    """
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")

    # Record the open (best effort, the pixel is always returned)
    try:
        tracking_service.record_open(
            db=db,
            token=token,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except SQLAlchemyError:
        db.rollback()
        logger.warning("Failed to record email open", exc_info=True)

    return Response(content=TRANSPARENT_GIF, media_type="image/gif", headers=NO_CACHE_HEADERS)
