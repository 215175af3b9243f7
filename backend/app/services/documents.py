"""
Document Service — upload validation and document read/delete

Upload validation runs before any side effect:
  1. Non-empty body
  2. Size ≤ settings.max_upload_bytes          (413 FILE_TOO_LARGE)
  3. MIME type sniffed from magic bytes         (never the client header)
  4. MIME type in the entry point's allowed set (400 UNSUPPORTED_FILE_TYPE)

Deleting a document removes only its catalog row; the stored file is kept.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Collection

from app.core.config import settings
from app.core.errors import ValidationError
from app.models.documents import Document
from app.services.catalog import Catalog

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File type validation helpers
# ---------------------------------------------------------------------------

# Magic byte signatures, checked against the first bytes of the file
_MAGIC_BYTES: dict[bytes, str] = {
    b"%PDF":              "application/pdf",
    b"\x89PNG\r\n\x1a\n": "image/png",
    b"\xff\xd8\xff":      "image/jpeg",
}

_FILENAME_RE = re.compile(r"[\\/\x00-\x1f]+")


def detect_mime_type(head: bytes) -> str | None:
    """MIME type from magic bytes, or None when unrecognised."""
    for magic, mime in _MAGIC_BYTES.items():
        if head.startswith(magic):
            return mime
    if len(head) >= 12 and head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    return None


def sanitize_filename(filename: str | None) -> str:
    """Basename only, control characters and separators replaced."""
    basename = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    safe = _FILENAME_RE.sub("_", basename).strip()
    return safe[:255] or "upload"


def validate_upload(data: bytes, filename: str | None, allowed: Collection[str]) -> str:
    """
    Check one uploaded file; returns the detected MIME type.

    Raises:
        ValidationError: empty, too large, or unsupported type.
    """
    name = sanitize_filename(filename)

    if not data:
        raise ValidationError(f"'{name}' is empty.", field="file", error_code="EMPTY_FILE")

    if len(data) > settings.max_upload_bytes:
        max_mb = settings.max_upload_bytes // (1024 * 1024)
        raise ValidationError(
            f"'{name}' is {len(data):,} bytes; the limit is {max_mb} MB.",
            field="file",
            error_code="FILE_TOO_LARGE",
            status_code=413,
        )

    mime = detect_mime_type(data[:16])
    if mime is None or mime not in allowed:
        allowed_list = ", ".join(sorted(allowed))
        raise ValidationError(
            f"'{name}' has an unsupported type '{mime or 'unknown'}'. Allowed: {allowed_list}.",
            field="file",
            error_code="UNSUPPORTED_FILE_TYPE",
        )
    return mime


def validate_sample_count(count: int) -> None:
    if not settings.min_sample_files <= count <= settings.max_sample_files:
        raise ValidationError(
            f"Between {settings.min_sample_files} and {settings.max_sample_files} sample files are required "
            f"(got {count}).",
            field="files",
            error_code="INVALID_SAMPLE_COUNT",
        )


# ---------------------------------------------------------------------------
# Document read / delete
# ---------------------------------------------------------------------------

KEPT_FILE_WARNING = "El archivo se conserva en el almacenamiento; elimínelo manualmente si ya no es necesario."


class DocumentService:
    """Stateless service object: one instance per request."""

    def __init__(self, catalog: Catalog) -> None:
        self._catalog = catalog

    async def list(self, owner_id: uuid.UUID) -> list[Document]:
        return await self._catalog.list_documents(owner_id)

    async def get(self, owner_id: uuid.UUID, document_id: uuid.UUID) -> Document:
        return await self._catalog.get_document(owner_id, document_id)

    async def delete(self, owner_id: uuid.UUID, document_id: uuid.UUID) -> tuple[Document, list[str]]:
        doc = await self._catalog.delete_document(owner_id, document_id)
        warnings = [KEPT_FILE_WARNING] if doc.file_id else []
        return doc, warnings
