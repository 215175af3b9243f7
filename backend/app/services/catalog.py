"""
Catalog — owner-scoped persistence of DocumentType and Document rows

Every query filters on owner_id explicitly; the owner always comes from the
verified JWT, never from a request body.

Name uniqueness (owner, name) is checked case-insensitively before insert
(read-then-write). The UNIQUE constraint on the table is the final guard:
an IntegrityError on flush is reported the same way, as ConflictError, so a
concurrent creator can fall back to the row that won.

Every insert flushes inside its own savepoint, so a rejected row leaves the
request transaction usable for the writes that follow.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, Mapping

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models.documents import Document, DocumentType
from app.processing.normalization import schema_payload

logger = logging.getLogger(__name__)


class Catalog:
    """
    Stateless service object: one instance per request, bound to the
    request's session.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Document types
    # ------------------------------------------------------------------

    async def find_types_by_owner(self, owner_id: uuid.UUID) -> list[DocumentType]:
        result = await self._db.execute(
            select(DocumentType)
            .where(DocumentType.owner_id == owner_id)
            .order_by(DocumentType.created_at.desc())
        )
        return list(result.scalars().all())

    async def find_type_by_name(self, owner_id: uuid.UUID, name: str) -> DocumentType | None:
        result = await self._db.execute(
            select(DocumentType).where(
                DocumentType.owner_id == owner_id,
                func.lower(func.trim(DocumentType.name)) == name.strip().lower(),
            )
        )
        return result.scalars().first()

    async def get_type(self, owner_id: uuid.UUID, type_id: uuid.UUID) -> DocumentType:
        result = await self._db.execute(
            select(DocumentType).where(
                DocumentType.id == type_id,
                DocumentType.owner_id == owner_id,
            )
        )
        row = result.scalars().first()
        if row is None:
            raise NotFoundError(f"Document type {type_id} not found")
        return row

    async def save_type(
        self,
        owner_id:    uuid.UUID,
        name:        str,
        fields:      Iterable[Mapping | object],
        description: str | None = None,
        folder_id:   str | None = None,
        folder_path: str | None = None,
    ) -> DocumentType:
        """
        Insert a new type. Fields are normalized to the closed type set here.

        Raises:
            ConflictError: a type with the same name (any case) exists;
                           .existing holds that row when it could be read.
        """
        name = name.strip()
        existing = await self.find_type_by_name(owner_id, name)
        if existing is not None:
            raise ConflictError(f'A document type named "{existing.name}" already exists', existing=existing)

        row = DocumentType(
            owner_id=owner_id,
            name=name,
            description=description,
            field_schema=schema_payload(fields),
            folder_id=folder_id,
            folder_path=folder_path,
        )
        try:
            async with self._db.begin_nested():
                self._db.add(row)
                await self._db.flush()
        except IntegrityError as exc:
            logger.warning("Catalog | concurrent type creation owner=%s name=%r", owner_id, name)
            raise ConflictError(
                f'A document type named "{name}" already exists',
                existing=await self.find_type_by_name(owner_id, name),
            ) from exc

        logger.info(
            "Catalog | type saved owner=%s id=%s name=%r fields=%d",
            owner_id, row.id, name, len(row.fields),
        )
        return row

    async def update_type(
        self,
        owner_id:    uuid.UUID,
        type_id:     uuid.UUID,
        *,
        name:        str | None = None,
        description: str | None = None,
        fields:      Iterable[Mapping | object] | None = None,
    ) -> DocumentType:
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Document type name must not be blank", field="name")

        row = await self.get_type(owner_id, type_id)

        if name is not None and name.lower() != row.name.strip().lower():
            clash = await self.find_type_by_name(owner_id, name)
            if clash is not None and clash.id != row.id:
                raise ConflictError(f'A document type named "{clash.name}" already exists', existing=clash)
        if name is not None:
            row.name = name
        if description is not None:
            row.description = description
        if fields is not None:
            row.field_schema = schema_payload(fields)

        await self._db.flush()
        logger.info("Catalog | type updated owner=%s id=%s", owner_id, type_id)
        return row

    async def delete_type(self, owner_id: uuid.UUID, type_id: uuid.UUID) -> int:
        """Delete a type and (by cascade) its documents; returns the document count."""
        row = await self.get_type(owner_id, type_id)
        count = await self.count_documents(owner_id, type_id)
        await self._db.delete(row)
        await self._db.flush()
        logger.warning("Catalog | type deleted owner=%s id=%s documents=%d", owner_id, type_id, count)
        return count

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def save_document(
        self,
        owner_id:         uuid.UUID,
        document_type_id: uuid.UUID,
        filename:         str,
        file_id:          str | None,
        file_link:        str | None,
        extracted_data:   dict | None,
        inferred_data:    dict | None = None,
        ocr_raw_text:     str | None = None,
        confidence_score: float | None = None,
        status:           str = "completed",
    ) -> Document:
        doc = Document(
            owner_id=owner_id,
            document_type_id=document_type_id,
            filename=filename,
            file_id=file_id,
            file_link=file_link,
            extracted_data=extracted_data,
            inferred_data=inferred_data,
            ocr_raw_text=ocr_raw_text,
            confidence_score=confidence_score,
            status=status,
        )
        async with self._db.begin_nested():
            self._db.add(doc)
            await self._db.flush()
        logger.info(
            "Catalog | document saved owner=%s id=%s type=%s status=%s",
            owner_id, doc.id, document_type_id, status,
        )
        return doc

    async def list_documents(self, owner_id: uuid.UUID) -> list[Document]:
        result = await self._db.execute(
            select(Document)
            .options(selectinload(Document.document_type))
            .where(Document.owner_id == owner_id)
            .order_by(Document.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_document(self, owner_id: uuid.UUID, document_id: uuid.UUID) -> Document:
        result = await self._db.execute(
            select(Document)
            .options(selectinload(Document.document_type))
            .where(Document.id == document_id, Document.owner_id == owner_id)
        )
        doc = result.scalars().first()
        if doc is None:
            raise NotFoundError(f"Document {document_id} not found")
        return doc

    async def delete_document(self, owner_id: uuid.UUID, document_id: uuid.UUID) -> Document:
        doc = await self.get_document(owner_id, document_id)
        await self._db.delete(doc)
        await self._db.flush()
        logger.warning("Catalog | document deleted owner=%s id=%s", owner_id, document_id)
        return doc

    async def count_documents(self, owner_id: uuid.UUID, type_id: uuid.UUID) -> int:
        result = await self._db.execute(
            select(func.count(Document.id)).where(
                Document.owner_id == owner_id,
                Document.document_type_id == type_id,
            )
        )
        return int(result.scalar_one())
