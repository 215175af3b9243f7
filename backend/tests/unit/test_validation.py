"""
Unit Tests — upload validation
══════════════════════════════
  ✅ MIME type from magic bytes (PDF, PNG, JPEG, WEBP), never the header
  ✅ Empty → EMPTY_FILE; over the limit → FILE_TOO_LARGE (413)
  ✅ Type outside the entry point's allowed set → UNSUPPORTED_FILE_TYPE
  ✅ Filenames reduced to a safe basename
  ✅ Sample count bounds 2..10
"""

from __future__ import annotations

import pytest

from app.core.config import settings
from app.core.errors import ValidationError
from app.schemas.documents import ALLOWED_SAMPLE_TYPES, ALLOWED_UPLOAD_TYPES
from app.services.documents import (
    detect_mime_type,
    sanitize_filename,
    validate_sample_count,
    validate_upload,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize("fixture, mime", [
    ("sample_pdf_bytes",  "application/pdf"),
    ("sample_png_bytes",  "image/png"),
    ("sample_jpeg_bytes", "image/jpeg"),
    ("sample_webp_bytes", "image/webp"),
])
def test_detect_mime_type(request, fixture, mime):
    assert detect_mime_type(request.getfixturevalue(fixture)[:16]) == mime


def test_unknown_magic(exe_bytes):
    assert detect_mime_type(exe_bytes[:16]) is None


def test_valid_upload(sample_pdf_bytes):
    assert validate_upload(sample_pdf_bytes, "factura.pdf", ALLOWED_UPLOAD_TYPES) == "application/pdf"


def test_misleading_extension_uses_content(sample_png_bytes):
    assert validate_upload(sample_png_bytes, "factura.pdf", ALLOWED_UPLOAD_TYPES) == "image/png"


def test_empty_file():
    with pytest.raises(ValidationError) as exc_info:
        validate_upload(b"", "x.pdf", ALLOWED_UPLOAD_TYPES)
    assert exc_info.value.error_code == "EMPTY_FILE"


def test_too_large():
    data = b"%PDF" + b"0" * settings.max_upload_bytes
    with pytest.raises(ValidationError) as exc_info:
        validate_upload(data, "big.pdf", ALLOWED_UPLOAD_TYPES)
    assert exc_info.value.error_code == "FILE_TOO_LARGE"
    assert exc_info.value.status_code == 413


def test_exactly_at_limit_accepted():
    data = b"%PDF" + b"0" * (settings.max_upload_bytes - 4)
    assert validate_upload(data, "max.pdf", ALLOWED_UPLOAD_TYPES) == "application/pdf"


def test_unsupported_type(exe_bytes):
    with pytest.raises(ValidationError) as exc_info:
        validate_upload(exe_bytes, "virus.pdf", ALLOWED_UPLOAD_TYPES)
    assert exc_info.value.error_code == "UNSUPPORTED_FILE_TYPE"
    assert exc_info.value.status_code == 400


def test_webp_not_allowed_as_sample(sample_webp_bytes):
    with pytest.raises(ValidationError):
        validate_upload(sample_webp_bytes, "x.webp", ALLOWED_SAMPLE_TYPES)


@pytest.mark.parametrize("raw, expected", [
    ("factura.pdf",                 "factura.pdf"),
    ("../../etc/passwd",            "passwd"),
    ("C:\\Users\\ana\\boleta.png",  "boleta.png"),
    ("",                            "upload"),
    (None,                          "upload"),
])
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected


@pytest.mark.parametrize("count, ok", [(1, False), (2, True), (10, True), (11, False)])
def test_sample_count(count, ok):
    if ok:
        validate_sample_count(count)
    else:
        with pytest.raises(ValidationError):
            validate_sample_count(count)
