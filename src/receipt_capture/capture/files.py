"""Validation of uploaded receipt images."""

from __future__ import annotations

import io
import mimetypes
import os
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

from ..domain.models import CapturedImage, ImageSource
from ..logging import get_logger
from ..resilience.errors import FileRejected

LOG = get_logger("capture-files")

ALLOWED_MIME_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif"})
# Pillow format names the payload must decode as.
ALLOWED_FORMATS = frozenset({"JPEG", "PNG", "GIF"})

MAX_SINGLE_BYTES = 10 * 1024 * 1024
MAX_BATCH_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True)
class FileUpload:
    name: str
    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


def guess_mime(path: str) -> str:
    mt, _ = mimetypes.guess_type(path)
    return mt or "application/octet-stream"


def read_upload(path: str) -> FileUpload:
    """Load a file from disk as an upload; the mime type comes from the extension."""
    with open(path, "rb") as fh:
        data = fh.read()
    return FileUpload(name=os.path.basename(path), data=data, mime_type=guess_mime(path))


def sniff_format(data: bytes) -> Optional[str]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.format
    except (UnidentifiedImageError, OSError) as exc:
        LOG.debug(f"Payload is not a readable image: {exc}")
        return None


def max_bytes_for(batch: bool) -> int:
    return MAX_BATCH_BYTES if batch else MAX_SINGLE_BYTES


def validate_upload(upload: FileUpload, *, batch: bool = False) -> FileUpload:
    """Return ``upload`` if acceptable, else raise FileRejected with a reason."""
    mime = (upload.mime_type or "").lower()
    if mime not in ALLOWED_MIME_TYPES:
        raise FileRejected(
            "Please upload a valid image file (JPG, JPEG, PNG, or GIF)",
            filename=upload.name,
            reason="type",
        )
    limit = max_bytes_for(batch)
    if upload.size > limit:
        raise FileRejected(
            f"File size must be less than {limit // (1024 * 1024)}MB",
            filename=upload.name,
            reason="size",
        )
    fmt = sniff_format(upload.data)
    if fmt not in ALLOWED_FORMATS:
        raise FileRejected(
            "File content is not a JPG, PNG or GIF image",
            filename=upload.name,
            reason="content",
        )
    return upload


def to_captured_image(upload: FileUpload) -> CapturedImage:
    mime = "image/jpeg" if upload.mime_type.lower() == "image/jpg" else upload.mime_type.lower()
    return CapturedImage(data=upload.data, mime_type=mime, source=ImageSource.FILE, filename=upload.name)
