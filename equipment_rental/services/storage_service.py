from __future__ import annotations

import base64
import binascii
import logging
import os
import re
import uuid
from pathlib import Path

from services.errors import StorageUploadError


ALLOWED_IMAGE_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}
UPLOAD_PREFIXES = {"equipment", "customers"}
MAX_UPLOAD_BYTES = int(os.environ.get("MAX_UPLOAD_BYTES") or str(10 * 1024 * 1024))

STORAGE_LOGGER = logging.getLogger("equipment_rental.storage")

_BASE_DIR = Path(__file__).resolve().parent.parent
STATIC_DIR = Path(os.environ.get("STATIC_DIR") or (_BASE_DIR / "static"))
UPLOADS_DIR = STATIC_DIR / "uploads"
UPLOADS_URL_PREFIX = "/uploads"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_filename(file_name: str | None, content_type: str) -> str:
    base = os.path.basename(file_name or "").strip()
    base = _UNSAFE_CHARS.sub("_", base).strip("._")
    if not base:
        base = f"upload.{ALLOWED_IMAGE_TYPES[content_type]}"
    return base[-120:]


def upload_file(file_name: str | None, content: bytes, content_type: str | None, path_prefix: str, uploads_dir: Path | None = None) -> str:
    prefix = (path_prefix or "").strip().strip("/")
    if prefix not in UPLOAD_PREFIXES:
        raise StorageUploadError(f"Unknown upload location: {path_prefix}")
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise StorageUploadError("Unsupported file type. Please upload an image (jpg, png, webp, gif).")
    if not content:
        raise StorageUploadError("Uploaded file is empty.")
    if len(content) > MAX_UPLOAD_BYTES:
        raise StorageUploadError("Uploaded file is too large.")

    root = uploads_dir or UPLOADS_DIR
    filename = f"{uuid.uuid4().hex}_{_safe_filename(file_name, content_type)}"
    target_dir = root / prefix
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        with (target_dir / filename).open("wb") as output:
            output.write(content)
    except PermissionError as exc:
        STORAGE_LOGGER.error("Upload permission denied prefix=%s file=%s", prefix, filename)
        raise StorageUploadError("Permission denied while storing the upload.") from exc
    except OSError as exc:
        STORAGE_LOGGER.error("Upload failed prefix=%s file=%s error=%s", prefix, filename, exc)
        raise StorageUploadError("Could not store the upload.") from exc

    STORAGE_LOGGER.info("Stored upload prefix=%s file=%s bytes=%s", prefix, filename, len(content))
    return f"{UPLOADS_URL_PREFIX}/{prefix}/{filename}"


def upload_data_url(data_url: str, path_prefix: str, file_name: str | None = None, uploads_dir: Path | None = None) -> str:
    raw = (data_url or "").strip()
    if not raw.startswith("data:image/"):
        raise StorageUploadError("Invalid image payload format.")

    parts = raw.split(",", 1)
    if len(parts) != 2:
        raise StorageUploadError("Invalid data URL payload.")

    meta, b64_data = parts
    content_type = meta[len("data:"):].split(";", 1)[0]
    try:
        binary = base64.b64decode(b64_data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise StorageUploadError("Invalid base64 image data.") from exc
    return upload_file(file_name, binary, content_type, path_prefix, uploads_dir=uploads_dir)
