"""Attachment service: local file storage plus HEIC->JPEG normalization."""

import io
import logging
import os
import re
import shutil
import uuid
from dataclasses import dataclass

from fastapi import HTTPException
from PIL import Image
from pillow_heif import register_heif_opener
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.models import Attachment, Message

logger = logging.getLogger(__name__)

register_heif_opener()


# =============================================================================
# Configuration
# =============================================================================

HEIC_MIME_TYPES = {"image/heic", "image/heif"}
HEIC_EXTENSIONS = (".heic", ".heif")
JPEG_QUALITY = 90

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class IncomingAttachment:
    """Attachment bytes as handed over by the mail parser."""
    filename: str
    content: bytes
    content_type: str
    size: int | None = None


# =============================================================================
# Storage Backend
# =============================================================================

def _get_local_storage_path() -> str:
    """Get local storage directory path."""
    path = settings.ATTACHMENTS_DIR
    os.makedirs(path, exist_ok=True)
    return path


def _safe_filename(filename: str) -> str:
    name = _UNSAFE_FILENAME_CHARS.sub("_", os.path.basename(filename)).strip("._")
    return name or "attachment"


def store_file(folder: int | str, filename: str, content: bytes) -> str:
    """Write bytes under `folder` (a ticket id, or "uploads"). Returns the storage key."""
    storage_key = f"{folder}/{uuid.uuid4().hex}_{_safe_filename(filename)}"
    path = resolve_path(storage_key)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(content)
    return storage_key


def resolve_path(storage_key: str) -> str:
    """Absolute path for a storage key; refuses keys escaping the storage root."""
    root = os.path.realpath(_get_local_storage_path())
    path = os.path.realpath(os.path.join(root, storage_key))
    if os.path.commonpath([root, path]) != root:
        raise ValueError(f"Invalid storage key: {storage_key}")
    return path


def read_file(storage_key: str) -> bytes:
    with open(resolve_path(storage_key), "rb") as f:
        return f.read()


def delete_ticket_files(ticket_id: int) -> None:
    """Remove every stored file for a ticket (bulk delete)."""
    path = resolve_path(str(ticket_id))
    if os.path.isdir(path):
        shutil.rmtree(path, ignore_errors=True)


# =============================================================================
# HEIC conversion
# =============================================================================

def is_heic(content_type: str | None, filename: str) -> bool:
    lower_type = (content_type or "").lower()
    return lower_type in HEIC_MIME_TYPES or filename.lower().endswith(HEIC_EXTENSIONS)


def convert_heic_to_jpeg(content: bytes, filename: str) -> tuple[bytes, str, str]:
    """
    Convert HEIC/HEIF bytes to JPEG.

    Returns (content, filename, content_type). On failure the original
    bytes are returned under image/heic so the message is never lost.
    """
    try:
        with Image.open(io.BytesIO(content)) as image:
            output = io.BytesIO()
            image.convert("RGB").save(output, format="JPEG", quality=JPEG_QUALITY)
    except Exception:
        logger.exception("Failed to convert HEIC attachment %s", filename)
        return content, filename, "image/heic"

    new_filename = re.sub(r"\.hei[cf]$", ".jpg", filename, flags=re.IGNORECASE)
    logger.debug("Converted HEIC to JPEG: %s -> %s", filename, new_filename)
    return output.getvalue(), new_filename, "image/jpeg"


# =============================================================================
# Service Functions
# =============================================================================

def save_message_attachments(
    db: Session,
    message: Message,
    attachments: list[IncomingAttachment],
) -> list[Attachment]:
    """
    Store parsed attachments for a message.

    A failing attachment is logged and skipped; the rest are still saved.
    """
    saved: list[Attachment] = []
    for incoming in attachments:
        content = incoming.content
        filename = incoming.filename
        content_type = incoming.content_type
        size = incoming.size if incoming.size is not None else len(content)

        try:
            if is_heic(content_type, filename):
                content, filename, content_type = convert_heic_to_jpeg(content, filename)
                size = len(content)

            storage_key = store_file(message.ticket_id, filename, content)
        except Exception:
            logger.exception("Failed to save attachment %s", incoming.filename)
            continue

        attachment = Attachment(
            message_id=message.id,
            filename=filename,
            file_path=storage_key,
            size_bytes=size,
            mime_type=content_type,
        )
        db.add(attachment)
        saved.append(attachment)

    if saved:
        db.flush()
    return saved


def check_uploaded_files(uploads: list) -> None:
    """Reject uploads whose storage key is missing or outside the storage root."""
    for upload in uploads:
        try:
            path = resolve_path(upload.file_path)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid attachment path: {upload.filename}")
        if not os.path.isfile(path):
            raise HTTPException(status_code=400, detail=f"Attachment not found: {upload.filename}")


def record_uploaded_files(
    db: Session,
    message: Message,
    uploads: list,
) -> list[Attachment]:
    """Attach files already uploaded to storage (agent replies)."""
    records = []
    for upload in uploads:
        record = Attachment(
            message_id=message.id,
            filename=upload.filename,
            file_path=upload.file_path,
            size_bytes=upload.size,
            mime_type=upload.mime_type,
        )
        db.add(record)
        records.append(record)
    if records:
        db.flush()
    return records


def get_attachment(db: Session, attachment_id: int) -> Attachment | None:
    return db.query(Attachment).filter(Attachment.id == attachment_id).first()
