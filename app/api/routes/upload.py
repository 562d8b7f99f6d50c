"""
Upload routes for user files (images).
Receive the file via multipart, store it on disk, and keep a record per user.
"""
import logging
import os
from typing import List, Optional

from fastapi import APIRouter, Depends, status, UploadFile, File, Form, Request
from sqlalchemy.orm import Session
from app.core.errors import api_error, INVALID_FILE, UPLOAD_FAILED, NOT_FOUND, DELETE_FAILED
from app.db.session import get_db
from app.dependencies.auth import get_current_account
from app.models.upload import Upload
from app.models.user import User
from app.schemas.users import UploadResponse
from app.services import storage

logger = logging.getLogger(__name__)

router = APIRouter()


UPLOAD_CHUNK_BYTES = 1024 * 1024


def _too_large():
    return api_error(
        status.HTTP_400_BAD_REQUEST,
        INVALID_FILE,
        f"File exceeds maximum size of {storage.MAX_UPLOAD_BYTES // (1024 * 1024)}MB",
    )


async def _read_limited(file: UploadFile) -> bytes:
    """Read the upload in chunks, stopping as soon as it passes MAX_UPLOAD_BYTES."""
    if file.size is not None and file.size > storage.MAX_UPLOAD_BYTES:
        raise _too_large()
    chunks = []
    size = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        size += len(chunk)
        if size > storage.MAX_UPLOAD_BYTES:
            raise _too_large()
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("/uploads", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    request: Request,
    file: UploadFile = File(...),
    description: Optional[str] = Form(None),
    user: User = Depends(get_current_account),
    db: Session = Depends(get_db),
):
    content = await _read_limited(file)
    size = len(content)
    if size == 0:
        raise api_error(status.HTTP_400_BAD_REQUEST, INVALID_FILE, "File is empty")

    content_type = (file.content_type or "").strip().lower()
    if content_type not in storage.ALLOWED_IMAGE_TYPES:
        raise api_error(status.HTTP_400_BAD_REQUEST, INVALID_FILE, "Allowed: image (jpeg, png, gif, webp)")

    try:
        key = storage.save_file(user.clerk_id, content, file.filename or "file", content_type)
    except storage.StorageError:
        raise api_error(status.HTTP_500_INTERNAL_SERVER_ERROR, UPLOAD_FAILED, "Failed to save file")

    base_url = os.getenv("PUBLIC_API_URL", "").rstrip("/") or str(request.base_url).rstrip("/")
    record = Upload(
        user_id=user.id,
        filename=file.filename or key.rsplit("/", 1)[-1],
        url=storage.public_url(base_url, key),
        storage_key=key,
        file_type=content_type,
        file_size=size,
        description=description,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("[upload] %s stored %s (%s bytes)", user.clerk_id, key, size)
    return record


@router.get("/uploads", response_model=List[UploadResponse])
def list_uploads(user: User = Depends(get_current_account), db: Session = Depends(get_db)):
    return (
        db.query(Upload)
        .filter(Upload.user_id == user.id)
        .order_by(Upload.created_at.desc(), Upload.id.desc())
        .all()
    )


@router.delete("/uploads/{upload_id}")
def delete_upload(
    upload_id: int,
    user: User = Depends(get_current_account),
    db: Session = Depends(get_db),
):
    record = db.query(Upload).filter(Upload.id == upload_id).first()
    # Another user's file looks exactly like a missing one
    if not record or record.user_id != user.id:
        if record:
            logger.warning("[upload] %s tried to delete upload %s owned by another user", user.clerk_id, upload_id)
        raise api_error(status.HTTP_404_NOT_FOUND, NOT_FOUND, "File not found")

    try:
        storage.delete_file(record.storage_key)
    except storage.StorageError:
        raise api_error(status.HTTP_500_INTERNAL_SERVER_ERROR, DELETE_FAILED, "Failed to delete file")

    db.delete(record)
    db.commit()
    return {"success": True}
