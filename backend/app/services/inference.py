"""
Type-Inference Orchestrator — discover document types from samples

Input: 2-10 sample files, the owner, and whether samples should also be
stored as real documents.

  ┌──────────────────────────────────────────────────────────────────────┐
  │ 1. Classify & group   open vision inference per file (bounded fan-out)│
  │                       label matched to an existing type by exact name │
  │ 2. Homologate         merge equivalent NEW labels (skipped when ≤ 1)  │
  │ 3. Per group          existing type → extract + store samples         │
  │                       new type      → consolidate → create type       │
  │                                       → re-extract + store samples    │
  │ 4. Aggregate          created/updated types with field/sample counts  │
  └──────────────────────────────────────────────────────────────────────┘

Failure policy:
  - A file whose inference fails is logged and left out of every group.
  - A group that fails is logged and left out of the result.
  - Consolidation failure aborts that new type entirely (no partial schema).
  - Homologation failure keeps the un-merged groups.
  - A name collision right before creation (ConflictError) switches the
    group to the existing-type branch.
  - A sample whose row cannot be written is rolled back to its own
    savepoint; its upload is deleted and the rest of the batch continues.
  - Without upload, a group that matched an existing type writes nothing
    and is not reported.

Model calls fan out through bounded_gather(); catalog writes stay
sequential because they share one AsyncSession.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence, TypeVar

from app.classification.classifier import Classifier
from app.classification.matching import find_exact, normalize_name
from app.core.config import settings
from app.core.errors import ConflictError
from app.models.documents import DocumentType
from app.processing.consolidation import ProcessedDocument
from app.processing.normalization import normalize_field_type
from app.schemas.analysis import ConsolidatedField, ExtractionResult, InferredFieldsResult
from app.services.catalog import Catalog
from app.services.documents import validate_sample_count
from app.storage.s3 import FileStore

logger = logging.getLogger(__name__)

SAMPLE_CONFIDENCE = 0.95

ItemT   = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


# ---------------------------------------------------------------------------
# Bounded fan-out
# ---------------------------------------------------------------------------

async def bounded_gather(
    items: Sequence[ItemT],
    call:  Callable[[ItemT], Awaitable[ResultT]],
    limit: int,
) -> list[ResultT | Exception]:
    """
    Run call(item) for every item with at most *limit* in flight.

    Results keep input order; an Exception raised by one call is returned
    in its slot instead of cancelling the others.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def run(item: ItemT) -> ResultT | Exception:
        async with semaphore:
            try:
                return await call(item)
            except Exception as exc:
                return exc

    return list(await asyncio.gather(*(run(item) for item in items)))


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SampleFile:
    filename:  str
    data:      bytes
    mime_type: str


@dataclass
class _Member:
    sample:    SampleFile
    inference: InferredFieldsResult


@dataclass
class TypeGroup:
    label:    str
    existing: DocumentType | None = None
    members:  list[_Member] = field(default_factory=list)


@dataclass
class InferredTypeSummary:
    id:              uuid.UUID
    name:            str
    description:     str | None
    fields:          list[ConsolidatedField]
    sample_count:    int
    documents_saved: int
    is_new:          bool


@dataclass
class InferenceOutcome:
    types: list[InferredTypeSummary]

    @property
    def total_types_created(self) -> int:
        return sum(1 for t in self.types if t.is_new)

    @property
    def total_documents_processed(self) -> int:
        return sum(t.sample_count for t in self.types)

    @property
    def success(self) -> bool:
        return bool(self.types)

    @property
    def message(self) -> str:
        if not self.types:
            return "No se pudo inferir ningún tipo de documento a partir de los ejemplos"
        updated = len(self.types) - self.total_types_created
        return (
            f"Se procesaron {self.total_documents_processed} documentos: "
            f"{self.total_types_created} tipos creados, {updated} tipos existentes actualizados"
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TypeInferenceService:
    """
    Stateless service object: one instance per request.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        catalog:         Catalog,
        file_store:      FileStore,
        classifier:      Classifier,
        max_concurrency: int | None = None,
    ) -> None:
        self._catalog    = catalog
        self._files      = file_store
        self._classifier = classifier
        self._limit      = max_concurrency or settings.inference_max_concurrency

    async def infer_from_samples(
        self,
        samples:        Sequence[SampleFile],
        owner_id:       uuid.UUID,
        upload_samples: bool = True,
    ) -> InferenceOutcome:
        validate_sample_count(len(samples))

        logger.info(
            "Inference start | owner=%s samples=%d upload=%s",
            owner_id, len(samples), upload_samples,
        )

        # ---- Stage 1: Classify & group -----------------------------------
        existing_types = await self._catalog.find_types_by_owner(owner_id)
        groups = await self._classify_and_group(samples, existing_types)

        # ---- Stage 2: Homologate new labels ------------------------------
        groups = await self._homologate(groups)

        # ---- Stage 3: Per-group branch -----------------------------------
        summaries: list[InferredTypeSummary] = []
        for group in groups:
            try:
                if group.existing is not None:
                    summary = await self._apply_existing(group, group.existing, owner_id, upload_samples)
                else:
                    summary = await self._create_new(group, owner_id, upload_samples)
            except Exception:
                logger.exception(
                    "Inference group failed | owner=%s label=%r samples=%d",
                    owner_id, group.label, len(group.members),
                )
                continue
            if summary is not None:
                summaries.append(summary)

        # ---- Stage 4: Aggregate ------------------------------------------
        outcome = InferenceOutcome(types=summaries)
        logger.info(
            "Inference done | owner=%s groups=%d created=%d documents=%d",
            owner_id, len(groups), outcome.total_types_created, outcome.total_documents_processed,
        )
        return outcome

    # ------------------------------------------------------------------
    # Stage 1
    # ------------------------------------------------------------------

    async def _classify_and_group(
        self,
        samples:        Sequence[SampleFile],
        existing_types: Sequence[DocumentType],
    ) -> list[TypeGroup]:
        results = await bounded_gather(
            samples,
            lambda s: self._classifier.infer_unclassified_vision(s.data, s.mime_type),
            self._limit,
        )

        groups: dict[str, TypeGroup] = {}
        for sample, result in zip(samples, results):
            if isinstance(result, Exception):
                logger.error(
                    "Inference sample failed | file=%s error=%s: %s",
                    sample.filename, type(result).__name__, result,
                )
                continue

            label = result.inferred_type.strip()
            existing = find_exact(label, existing_types)
            key = f"existing:{existing.id}" if existing is not None else f"new:{normalize_name(label)}"
            group = groups.setdefault(
                key,
                TypeGroup(label=existing.name if existing is not None else label, existing=existing),
            )
            group.members.append(_Member(sample=sample, inference=result))
            logger.info(
                "Inference sample | file=%s label=%r existing=%s",
                sample.filename, label, existing.id if existing is not None else None,
            )

        return list(groups.values())

    # ------------------------------------------------------------------
    # Stage 2
    # ------------------------------------------------------------------

    async def _homologate(self, groups: list[TypeGroup]) -> list[TypeGroup]:
        new_groups = [g for g in groups if g.existing is None]
        if len(new_groups) <= 1:
            return groups

        try:
            merges = await self._classifier.homologate_labels([g.label for g in new_groups])
        except Exception:
            logger.exception("Homologation failed, keeping original labels")
            return groups

        if not merges:
            return groups

        renamed: dict[str, str] = {}
        for merge in merges:
            for variant in merge.variants:
                renamed[normalize_name(variant)] = merge.canonical_name

        result: list[TypeGroup] = []
        merged: dict[str, TypeGroup] = {}
        for group in groups:
            if group.existing is not None:
                result.append(group)
                continue
            canonical = renamed.get(normalize_name(group.label))
            if canonical is None:
                target_key = normalize_name(group.label)
                if target_key in merged:
                    merged[target_key].members.extend(group.members)
                    continue
                merged[target_key] = group
                result.append(group)
                continue

            target_key = normalize_name(canonical)
            target = merged.get(target_key)
            if target is None:
                target = TypeGroup(label=canonical)
                merged[target_key] = target
                result.append(target)
            target.members.extend(group.members)
            logger.info("Homologation | %r → %r", group.label, canonical)

        return result

    # ------------------------------------------------------------------
    # Stage 3: existing type
    # ------------------------------------------------------------------

    async def _apply_existing(
        self,
        group:          TypeGroup,
        document_type:  DocumentType,
        owner_id:       uuid.UUID,
        upload_samples: bool,
    ) -> InferredTypeSummary | None:
        """Store the group's samples under an existing type; nothing to report when not uploading."""
        if not upload_samples:
            logger.info("Inference | %r matches an existing type, samples not stored", document_type.name)
            return None
        saved = await self._store_samples(group, document_type, owner_id)

        description = f"{document_type.description or document_type.name} ({saved} documentos agregados)"
        return InferredTypeSummary(
            id=document_type.id,
            name=document_type.name,
            description=description,
            fields=[
                ConsolidatedField(
                    name=f["name"],
                    type=f.get("type") or "string",
                    label=f.get("label") or f["name"],
                    required=bool(f.get("required")),
                    description=f.get("description"),
                    frequency=1.0,
                )
                for f in document_type.fields
            ],
            sample_count=len(group.members),
            documents_saved=saved,
            is_new=False,
        )

    # ------------------------------------------------------------------
    # Stage 3: new type
    # ------------------------------------------------------------------

    async def _create_new(
        self,
        group:          TypeGroup,
        owner_id:       uuid.UUID,
        upload_samples: bool,
    ) -> InferredTypeSummary | None:
        processed = [
            ProcessedDocument(
                filename=m.sample.filename,
                inferred_type=group.label,
                fields=list(m.inference.key_fields),
                data=m.sample.data,
                mime_type=m.sample.mime_type,
                summary=m.inference.summary,
            )
            for m in group.members
        ]

        # A failure here aborts the group before anything is written
        consolidated = await self._classifier.consolidate_fields(group.label, processed)

        clash = await self._catalog.find_type_by_name(owner_id, consolidated.type_name)
        if clash is not None:
            logger.info("Inference | %r already exists, using existing type", consolidated.type_name)
            return await self._apply_existing(group, clash, owner_id, upload_samples)

        folder = await self._files.get_or_create_folder(consolidated.type_name)
        try:
            document_type = await self._catalog.save_type(
                owner_id=owner_id,
                name=consolidated.type_name,
                fields=consolidated.consolidated_fields,
                description=consolidated.description,
                folder_id=folder.id,
                folder_path=folder.link,
            )
        except ConflictError as exc:
            existing = exc.existing or await self._catalog.find_type_by_name(owner_id, consolidated.type_name)
            if existing is None:
                raise
            logger.info("Inference | %r created concurrently, using existing type", consolidated.type_name)
            return await self._apply_existing(group, existing, owner_id, upload_samples)

        saved = 0
        if upload_samples:
            saved = await self._store_samples(group, document_type, owner_id)

        return InferredTypeSummary(
            id=document_type.id,
            name=document_type.name,
            description=document_type.description,
            fields=[
                cf.model_copy(update={"type": normalize_field_type(cf.type)})
                for cf in consolidated.consolidated_fields
            ],
            sample_count=consolidated.sample_count,
            documents_saved=saved,
            is_new=True,
        )

    # ------------------------------------------------------------------
    # Sample persistence (both branches)
    # ------------------------------------------------------------------

    async def _store_samples(
        self,
        group:         TypeGroup,
        document_type: DocumentType,
        owner_id:      uuid.UUID,
    ) -> int:
        """
        Extract every sample against the type's stored schema, upload it to
        the type's folder and persist it. Returns the number stored.
        """
        extractions = await bounded_gather(
            group.members,
            lambda m: self._classifier.extract_fields_vision(m.sample.data, m.sample.mime_type, document_type),
            self._limit,
        )

        folder_id = document_type.folder_id
        if not folder_id:
            folder = await self._files.get_or_create_folder(document_type.name)
            folder_id = document_type.folder_id = folder.id
            document_type.folder_path = folder.link

        saved = 0
        for member, extraction in zip(group.members, extractions):
            if isinstance(extraction, Exception):
                logger.error(
                    "Inference extraction failed | file=%s type=%r error=%s: %s",
                    member.sample.filename, document_type.name, type(extraction).__name__, extraction,
                )
                continue
            try:
                await self._store_one(member.sample, extraction, document_type, folder_id, owner_id)
            except Exception:
                logger.exception(
                    "Inference sample not stored | file=%s type=%r",
                    member.sample.filename, document_type.name,
                )
                continue
            saved += 1
        return saved

    async def _store_one(
        self,
        sample:        SampleFile,
        extraction:    ExtractionResult,
        document_type: DocumentType,
        folder_id:     str,
        owner_id:      uuid.UUID,
    ) -> None:
        uploaded = await self._files.upload(sample.data, sample.filename, sample.mime_type, folder_id)
        try:
            await self._catalog.save_document(
                owner_id=owner_id,
                document_type_id=document_type.id,
                filename=sample.filename,
                file_id=uploaded.id,
                file_link=uploaded.link,
                extracted_data=extraction.as_record(),
                confidence_score=SAMPLE_CONFIDENCE,
                status="completed",
            )
        except Exception:
            try:
                await self._files.delete(uploaded.id)
            except Exception:
                logger.exception("Inference cleanup failed | file=%s", uploaded.id)
            raise
