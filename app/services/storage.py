"""
Local file storage for user uploads.
Files live under UPLOADS_DIR/<clerk id>/ and are served by the /uploads static mount.
"""
import logging
import os
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
_EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/gif": ".gif", "image/webp": ".webp"}


class StorageError(Exception):
    pass


def get_uploads_dir() -> Path:
    """Return the uploads directory, creating it if needed."""
    # Prefer env so deployment can set a persistent volume path
    base = os.getenv("UPLOADS_DIR")
    if base:
        d = Path(base)
    else:
        d = Path(__file__).resolve().parent.parent.parent / "uploads"
    d.mkdir(parents=True, exist_ok=True)
    return d


def _safe_segment(value: str) -> str:
    return "".join(c for c in value if c.isalnum() or c in "-_") or "anonymous"


def save_file(owner: str, content: bytes, filename: str, content_type: str) -> str:
    """Write `content` and return its storage key (path relative to the uploads dir)."""
    ext = Path(filename or "").suffix.lower() or _EXTENSIONS.get(content_type, "")
    key = f"{_safe_segment(owner)}/{uuid.uuid4().hex[:16]}{ext}"
    target = get_uploads_dir() / key
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
    except OSError as e:
        logger.error("[storage] write %s failed: %s", key, e)
        raise StorageError(str(e)) from e
    return key


def delete_file(key: str) -> None:
    """Remove a stored file. Missing files are fine; anything else raises StorageError."""
    root = get_uploads_dir().resolve()
    target = (root / key).resolve()
    if root not in target.parents:
        raise StorageError(f"Refusing to delete outside uploads dir: {key}")
    try:
        target.unlink()
    except FileNotFoundError:
        logger.info("[storage] %s already gone", key)
    except OSError as e:
        logger.error("[storage] delete %s failed: %s", key, e)
        raise StorageError(str(e)) from e


def delete_owner_files(owner: str) -> int:
    """Remove every file stored for `owner`; returns how many were removed."""
    folder = get_uploads_dir() / _safe_segment(owner)
    if not folder.is_dir():
        return 0
    removed = 0
    for path in folder.iterdir():
        try:
            path.unlink()
            removed += 1
        except OSError as e:
            raise StorageError(str(e)) from e
    try:
        folder.rmdir()
    except OSError:
        logger.warning("[storage] could not remove folder %s", folder)
    return removed


def public_url(base_url: str, key: str) -> str:
    return f"{base_url.rstrip('/')}/uploads/{key}"
