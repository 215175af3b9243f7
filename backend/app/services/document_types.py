"""
Document Type Service — explicit CRUD on DocumentType

  create  name unique per owner (ConflictError, checked before any folder
          is made); the folder is created best-effort, a storage failure
          leaves the type without a folder
  update  rename re-checks uniqueness; fields are re-normalized
  delete  removes the type and its documents; the storage folder is kept
"""

from __future__ import annotations

import logging
import uuid

from app.core.errors import ConflictError, ExternalServiceError
from app.models.documents import DocumentType
from app.schemas.documents import DocumentTypeCreate, DocumentTypeUpdate
from app.services.catalog import Catalog
from app.storage.s3 import FileStore

logger = logging.getLogger(__name__)

KEPT_FOLDER_WARNING = "La carpeta de almacenamiento del tipo se conserva y debe eliminarse manualmente."


class DocumentTypeService:
    """Stateless service object: one instance per request."""

    def __init__(self, catalog: Catalog, file_store: FileStore) -> None:
        self._catalog = catalog
        self._files   = file_store

    async def create(self, owner_id: uuid.UUID, payload: DocumentTypeCreate) -> DocumentType:
        clash = await self._catalog.find_type_by_name(owner_id, payload.name)
        if clash is not None:
            raise ConflictError(f'A document type named "{clash.name}" already exists', existing=clash)

        folder_id = folder_path = None
        try:
            folder = await self._files.get_or_create_folder(payload.name)
            folder_id, folder_path = folder.id, folder.link
        except ExternalServiceError:
            logger.exception("Type folder not created | owner=%s name=%r", owner_id, payload.name)

        return await self._catalog.save_type(
            owner_id=owner_id,
            name=payload.name,
            fields=payload.fields,
            description=payload.description,
            folder_id=folder_id,
            folder_path=folder_path,
        )

    async def list(self, owner_id: uuid.UUID) -> list[DocumentType]:
        return await self._catalog.find_types_by_owner(owner_id)

    async def get(self, owner_id: uuid.UUID, type_id: uuid.UUID) -> DocumentType:
        return await self._catalog.get_type(owner_id, type_id)

    async def update(self, owner_id: uuid.UUID, type_id: uuid.UUID, payload: DocumentTypeUpdate) -> DocumentType:
        return await self._catalog.update_type(
            owner_id,
            type_id,
            name=payload.name,
            description=payload.description,
            fields=payload.fields,
        )

    async def delete(self, owner_id: uuid.UUID, type_id: uuid.UUID) -> tuple[int, list[str]]:
        row = await self._catalog.get_type(owner_id, type_id)
        has_folder = bool(row.folder_id)
        deleted = await self._catalog.delete_type(owner_id, type_id)

        warnings: list[str] = []
        if deleted:
            warnings.append(f"Se eliminaron {deleted} documentos asociados a este tipo.")
        if has_folder:
            warnings.append(KEPT_FOLDER_WARNING)
        return deleted, warnings
