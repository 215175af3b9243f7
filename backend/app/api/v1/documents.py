"""
Documents API Router

  POST   /api/v1/documents/upload   run the single-document pipeline
  GET    /api/v1/documents          owner's documents, newest first
  GET    /api/v1/documents/{id}     one document, including raw OCR text
  DELETE /api/v1/documents/{id}     remove the catalog row (file is kept)

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification → owner_id (never client-supplied)  │
  │ 2. Size guard while reading the multipart body          │
  │ 3. File type validation (magic bytes)                   │
  │ 4. DocumentProcessingService.process()                  │
  │ 5. UploadResponse (201)                                 │
  └─────────────────────────────────────────────────────────┘

Errors are raised as IntakeError subclasses and rendered by the handlers
registered in app.main.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, File, UploadFile, status

from app.auth.dependencies import CurrentOwner, DocClassifier, Extractor, OwnerCatalog, OwnerFileStore
from app.core.config import settings
from app.models.documents import Document
from app.schemas.documents import (
    ALLOWED_UPLOAD_TYPES,
    DeleteDocumentResponse,
    DocumentDetailOut,
    DocumentOut,
    ErrorResponse,
    UploadResponse,
)
from app.services.documents import DocumentService, sanitize_filename, validate_upload
from app.services.pipeline import DocumentProcessingService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)


def document_out(doc: Document, type_name: str | None = None, detail: bool = False) -> DocumentOut:
    model = DocumentDetailOut if detail else DocumentOut
    out = model.model_validate(doc)
    if type_name is None and "document_type" in doc.__dict__ and doc.document_type is not None:
        type_name = doc.document_type.name
    return out.model_copy(update={"document_type_name": type_name})


async def read_upload(file: UploadFile) -> bytes:
    """Read at most max_upload_bytes + 1 so oversize bodies fail validation."""
    return await file.read(settings.max_upload_bytes + 1)


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload, classify and extract one document",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid file or no document types configured"},
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        502: {"model": ErrorResponse, "description": "OCR, model or storage failure"},
    },
)
async def upload_document(
    owner:      CurrentOwner,
    catalog:    OwnerCatalog,
    file_store: OwnerFileStore,
    extractor:  Extractor,
    classifier: DocClassifier,
    file:       UploadFile = File(..., description="PDF, PNG, JPEG or WEBP, max 10 MB"),
) -> UploadResponse:
    data = await read_upload(file)
    mime_type = validate_upload(data, file.filename, ALLOWED_UPLOAD_TYPES)

    service = DocumentProcessingService(
        catalog=catalog,
        file_store=file_store,
        extractor=extractor,
        classifier=classifier,
    )
    result = await service.process(
        data=data,
        filename=sanitize_filename(file.filename),
        mime_type=mime_type,
        owner_id=owner.owner_id,
    )

    return UploadResponse(
        message=result.message,
        document=document_out(result.document, result.document_type.name),
        was_classified=result.was_classified,
        created_others_folder=result.created_others_folder,
    )


# ---------------------------------------------------------------------------
# Read / delete
# ---------------------------------------------------------------------------

@router.get("", response_model=list[DocumentOut], summary="List the owner's documents")
async def list_documents(owner: CurrentOwner, catalog: OwnerCatalog) -> list[DocumentOut]:
    docs = await DocumentService(catalog).list(owner.owner_id)
    return [document_out(doc) for doc in docs]


@router.get(
    "/{document_id}",
    response_model=DocumentDetailOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get one document",
)
async def get_document(document_id: UUID, owner: CurrentOwner, catalog: OwnerCatalog) -> DocumentOut:
    doc = await DocumentService(catalog).get(owner.owner_id, document_id)
    return document_out(doc, detail=True)


@router.delete(
    "/{document_id}",
    response_model=DeleteDocumentResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Delete a document record",
)
async def delete_document(document_id: UUID, owner: CurrentOwner, catalog: OwnerCatalog) -> DeleteDocumentResponse:
    doc, warnings = await DocumentService(catalog).delete(owner.owner_id, document_id)
    return DeleteDocumentResponse(
        message=f'Documento "{doc.filename}" eliminado',
        warnings=warnings,
    )
