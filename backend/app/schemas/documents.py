"""
API Schemas — request/response bodies for documents and document types

Covers:
  - POST /api/v1/documents/upload and the document read/delete endpoints
  - CRUD on /api/v1/document-types and infer-from-samples
  - The uniform error envelope returned by every 4xx/5xx response

Design decisions:
  - ids are server-generated UUIDs; owner_id never appears in a request body.
  - MIME types are sniffed from magic bytes; the client header is ignored.
  - Field types in requests are open vocabulary; they are normalized before
    they reach the catalog.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.analysis import ConsolidatedField, FieldDefinition


# ---------------------------------------------------------------------------
# Allowed MIME types: enforced before any side effect
# ---------------------------------------------------------------------------

ALLOWED_UPLOAD_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "image/png",
        "image/jpeg",
        "image/webp",
    }
)

ALLOWED_SAMPLE_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "image/png",
        "image/jpeg",
    }
)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error: may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Document types
# ---------------------------------------------------------------------------

class FieldInput(BaseModel):
    """A field as submitted by a client; type is normalized server-side."""
    name:        str = Field(..., min_length=1, max_length=100)
    type:        str = "string"
    label:       str = Field("", max_length=200)
    required:    bool = False
    description: str | None = None


class DocumentTypeCreate(BaseModel):
    name:        str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    fields:      list[FieldInput] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class DocumentTypeUpdate(BaseModel):
    name:        str | None = Field(None, min_length=1, max_length=200)
    description: str | None = None
    fields:      list[FieldInput] | None = None

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class DocumentTypeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:          UUID
    name:        str
    description: str | None = None
    fields:      list[FieldDefinition]
    folder_id:   str | None = None
    folder_path: str | None = None
    created_at:  datetime | None = None
    updated_at:  datetime | None = None


class CreatedDocumentType(BaseModel):
    """One type reported by infer-from-samples."""
    id:              UUID
    name:            str
    description:     str | None = None
    fields:          list[ConsolidatedField]
    field_count:     int
    sample_count:    int
    documents_saved: int
    is_new:          bool


class InferFromSamplesResponse(BaseModel):
    success:                   bool
    message:                   str
    created_types:             list[CreatedDocumentType]
    total_documents_processed: int
    total_types_created:       int


class DeleteTypeResponse(BaseModel):
    success:           bool = True
    message:           str
    deleted_documents: int
    warnings:          list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class DocumentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                 UUID
    document_type_id:   UUID | None = None
    document_type_name: str | None = None
    filename:           str
    file_id:            str | None = None
    file_link:          str | None = None
    extracted_data:     dict[str, Any] | None = None
    inferred_data:      dict[str, Any] | None = None
    confidence_score:   float | None = None
    status:             str
    created_at:         datetime | None = None
    updated_at:         datetime | None = None


class DocumentDetailOut(DocumentOut):
    ocr_raw_text: str | None = None


class UploadResponse(BaseModel):
    success:               bool = True
    message:               str
    document:              DocumentOut
    was_classified:        bool
    created_others_folder: bool


class DeleteDocumentResponse(BaseModel):
    success:  bool = True
    message:  str
    warnings: list[str] = Field(default_factory=list)
