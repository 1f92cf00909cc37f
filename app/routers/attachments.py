"""Attachment endpoints for file uploads and downloads."""

import os

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.deps import get_current_user, get_db
from app.db.models import User
from app.schemas.ticketing import UploadResponse
from app.services import attachment_service


router = APIRouter(prefix="/attachments", tags=["attachments"])

UPLOAD_FOLDER = "uploads"


@router.post("/upload", response_model=UploadResponse, status_code=201)
async def upload_attachment(
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
):
    """
    Store a file ahead of a reply. The returned `file_path` is passed back in
    the reply's `uploaded_files`.
    """
    content = await file.read()
    if len(content) > settings.MAX_ATTACHMENT_BYTES:
        raise HTTPException(status_code=413, detail="File too large")

    filename = file.filename or "attachment"
    content_type = file.content_type or "application/octet-stream"
    if attachment_service.is_heic(content_type, filename):
        content, filename, content_type = attachment_service.convert_heic_to_jpeg(content, filename)

    storage_key = attachment_service.store_file(UPLOAD_FOLDER, filename, content)
    return UploadResponse(
        filename=filename,
        file_path=storage_key,
        size=len(content),
        mime_type=content_type,
    )


@router.get("/{attachment_id}")
def download_attachment(
    attachment_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    attachment = attachment_service.get_attachment(db, attachment_id)
    if not attachment:
        raise HTTPException(status_code=404, detail="Attachment not found")

    try:
        path = attachment_service.resolve_path(attachment.file_path)
    except ValueError:
        raise HTTPException(status_code=404, detail="Attachment not found")
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="Attachment file missing")

    return FileResponse(
        path,
        media_type=attachment.mime_type or "application/octet-stream",
        filename=attachment.filename,
    )
