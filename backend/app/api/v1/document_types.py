"""
Document Types API Router

  POST   /api/v1/document-types                      create
  GET    /api/v1/document-types                      list (newest first)
  GET    /api/v1/document-types/{id}                 get
  PATCH  /api/v1/document-types/{id}                 rename / re-describe / replace fields
  DELETE /api/v1/document-types/{id}                 delete type and its documents
  POST   /api/v1/document-types/infer-from-samples   discover types from 2-10 samples
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, File, Query, UploadFile, status

from app.api.v1.documents import read_upload
from app.auth.dependencies import CurrentOwner, DocClassifier, OwnerCatalog, OwnerFileStore
from app.schemas.documents import (
    ALLOWED_SAMPLE_TYPES,
    CreatedDocumentType,
    DeleteTypeResponse,
    DocumentTypeCreate,
    DocumentTypeOut,
    DocumentTypeUpdate,
    ErrorResponse,
    InferFromSamplesResponse,
)
from app.services.document_types import DocumentTypeService
from app.services.documents import sanitize_filename, validate_sample_count, validate_upload
from app.services.inference import SampleFile, TypeInferenceService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/document-types",
    tags=["Document Types"],
)


@router.post(
    "",
    response_model=DocumentTypeOut,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse, "description": "Name already used by this owner"}},
    summary="Create a document type",
)
async def create_document_type(
    payload:    DocumentTypeCreate,
    owner:      CurrentOwner,
    catalog:    OwnerCatalog,
    file_store: OwnerFileStore,
) -> DocumentTypeOut:
    row = await DocumentTypeService(catalog, file_store).create(owner.owner_id, payload)
    return DocumentTypeOut.model_validate(row)


@router.get("", response_model=list[DocumentTypeOut], summary="List document types")
async def list_document_types(
    owner:      CurrentOwner,
    catalog:    OwnerCatalog,
    file_store: OwnerFileStore,
) -> list[DocumentTypeOut]:
    rows = await DocumentTypeService(catalog, file_store).list(owner.owner_id)
    return [DocumentTypeOut.model_validate(r) for r in rows]


# ---------------------------------------------------------------------------
# POST /document-types/infer-from-samples
# Declared before /{type_id} routes so the literal path wins.
# ---------------------------------------------------------------------------

@router.post(
    "/infer-from-samples",
    response_model=InferFromSamplesResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Wrong file count or unsupported file"},
        413: {"model": ErrorResponse, "description": "A file exceeds the size limit"},
    },
    summary="Discover document types from sample files",
)
async def infer_from_samples(
    owner:          CurrentOwner,
    catalog:        OwnerCatalog,
    file_store:     OwnerFileStore,
    classifier:     DocClassifier,
    files:          list[UploadFile] = File(..., description="2-10 PDF, PNG or JPEG files"),
    upload_samples: bool = Query(True, description="Also store the samples as documents"),
) -> InferFromSamplesResponse:
    validate_sample_count(len(files))

    samples = []
    for upload in files:
        data = await read_upload(upload)
        mime_type = validate_upload(data, upload.filename, ALLOWED_SAMPLE_TYPES)
        samples.append(SampleFile(filename=sanitize_filename(upload.filename), data=data, mime_type=mime_type))

    service = TypeInferenceService(catalog=catalog, file_store=file_store, classifier=classifier)
    outcome = await service.infer_from_samples(samples, owner.owner_id, upload_samples=upload_samples)

    return InferFromSamplesResponse(
        success=outcome.success,
        message=outcome.message,
        created_types=[
            CreatedDocumentType(
                id=t.id,
                name=t.name,
                description=t.description,
                fields=t.fields,
                field_count=len(t.fields),
                sample_count=t.sample_count,
                documents_saved=t.documents_saved,
                is_new=t.is_new,
            )
            for t in outcome.types
        ],
        total_documents_processed=outcome.total_documents_processed,
        total_types_created=outcome.total_types_created,
    )


@router.get(
    "/{type_id}",
    response_model=DocumentTypeOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get a document type",
)
async def get_document_type(
    type_id:    UUID,
    owner:      CurrentOwner,
    catalog:    OwnerCatalog,
    file_store: OwnerFileStore,
) -> DocumentTypeOut:
    row = await DocumentTypeService(catalog, file_store).get(owner.owner_id, type_id)
    return DocumentTypeOut.model_validate(row)


@router.patch(
    "/{type_id}",
    response_model=DocumentTypeOut,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Update a document type",
)
async def update_document_type(
    type_id:    UUID,
    payload:    DocumentTypeUpdate,
    owner:      CurrentOwner,
    catalog:    OwnerCatalog,
    file_store: OwnerFileStore,
) -> DocumentTypeOut:
    row = await DocumentTypeService(catalog, file_store).update(owner.owner_id, type_id, payload)
    return DocumentTypeOut.model_validate(row)


@router.delete(
    "/{type_id}",
    response_model=DeleteTypeResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Delete a document type and its documents",
)
async def delete_document_type(
    type_id:    UUID,
    owner:      CurrentOwner,
    catalog:    OwnerCatalog,
    file_store: OwnerFileStore,
) -> DeleteTypeResponse:
    deleted, warnings = await DocumentTypeService(catalog, file_store).delete(owner.owner_id, type_id)
    return DeleteTypeResponse(
        message="Tipo de documento eliminado",
        deleted_documents=deleted,
        warnings=warnings,
    )
