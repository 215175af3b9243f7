"""
SQLAlchemy ORM Models — Document Types, Documents & Storage Tokens

Using SQLAlchemy 2.x typed mapped classes for full async support.

Ownership note: every catalog row carries owner_id. The owner is taken from
the verified JWT and passed through; queries always filter on it explicitly.

Schema: intake (set via __table_args__)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# DocumentType model: intake.document_types
# ---------------------------------------------------------------------------

class DocumentType(Base):
    """
    A named schema describing which fields to extract from a class of documents.

    field_schema is stored as {"fields": [FieldDefinition, ...]} where every
    field type is one of string | number | date | boolean | array. Types are
    normalized before they reach this table (see processing/normalization.py).

    Created explicitly, lazily as the catch-all type, or by the inference
    orchestrator. Never deleted automatically.
    """

    __tablename__ = "document_types"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_document_types_owner_name"),
        Index("idx_document_types_owner_id", "owner_id"),
        {"schema": "intake"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    field_schema: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=lambda: {"fields": []},
        comment='{"fields": [{name, type, label, required, description}]}',
    )

    # File store folder for documents of this type
    folder_id: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Folder key prefix in the file store",
    )
    folder_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    documents: Mapped[list["Document"]] = relationship(
        back_populates="document_type",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def fields(self) -> list[dict]:
        return list((self.field_schema or {}).get("fields", []))

    def __repr__(self) -> str:
        return f"<DocumentType id={self.id} owner={self.owner_id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# Document model: intake.documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One successfully processed upload.

    A row is written only by the final step of a pipeline run; a run that
    fails earlier leaves no row behind.

    extracted_data : {"summary": str, "fields": [FieldWithValue, ...]}
    inferred_data  : {"inferred_type", "summary", "key_fields"}: catch-all only
    """

    __tablename__ = "documents"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'completed', 'failed')",
            name="documents_status_check",
        ),
        CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 1)",
            name="documents_confidence_range",
        ),
        Index("idx_documents_owner_id",         "owner_id"),
        Index("idx_documents_document_type_id", "document_type_id"),
        {"schema": "intake"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    document_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("intake.document_types.id", ondelete="CASCADE"),
        nullable=True,
    )

    filename: Mapped[str] = mapped_column(Text, nullable=False)

    # File store reference
    file_id:   Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="Object key")
    file_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    extracted_data: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    inferred_data:  Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    ocr_raw_text:   Mapped[Optional[str]]  = mapped_column(Text, nullable=True)

    confidence_score: Mapped[Optional[float]] = mapped_column(
        Numeric(5, 2, asdecimal=False),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="processing",
        server_default="processing",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    document_type: Mapped[Optional[DocumentType]] = relationship(back_populates="documents")

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} owner={self.owner_id} "
            f"status={self.status} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# StorageCredential model: intake.storage_credentials
# ---------------------------------------------------------------------------

class StorageCredential(Base):
    """
    Persisted short-lived file store credentials (single row).

    Read and refreshed by storage/tokens.py; expires_at is epoch milliseconds.
    """

    __tablename__ = "storage_credentials"
    __table_args__ = ({"schema": "intake"},)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    access_key_id:     Mapped[str]           = mapped_column(Text, nullable=False)
    secret_access_key: Mapped[str]           = mapped_column(Text, nullable=False)
    session_token:     Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at:        Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<StorageCredential id={self.id} expires_at={self.expires_at}>"
