"""
Single-Document Pipeline

Orchestrates one upload end to end, strictly sequentially:

  Staged → TextExtracted → Classified → TypeResolved → FieldsExtracted
         → Relocated → Persisted

  1. Stage     upload the bytes into the "Processing" folder, get a public URL
  2. Extract   quality-gated text extraction against that URL
  3. Load      the owner's DocumentTypes (none configured → ValidationError)
  4. Classify  text against the candidates (threshold-gated)
  5. Resolve   two-tier name match; no match or is_others → catch-all type,
               with vision inference producing inferred_data
  6. Fields    vision extraction against the resolved schema (catch-all
               reuses the inference from step 5)
  7. Relocate  move the staged object into the type's folder
  8. Persist   Document row, status=completed

Compensation:
  Any exception after staging deletes the staged (or already relocated)
  object exactly once, best-effort, then re-raises the original error.
  If staging itself fails there is nothing to delete.

No retries happen here; each external call is attempted once.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from app.classification.classifier import Classifier
from app.classification.matching import FuzzyMatch, NoMatch, match_type_name
from app.core.config import settings
from app.core.errors import ConflictError, ValidationError
from app.models.documents import Document, DocumentType
from app.processing.extractor import TextExtractor
from app.schemas.analysis import ClassificationResult, InferredFieldsResult
from app.services.catalog import Catalog
from app.storage.s3 import FileRef, FileStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Catch-all type
# ---------------------------------------------------------------------------

CATCH_ALL_DESCRIPTION = (
    "Documentos sin clasificación automática. "
    "Los campos se infieren dinámicamente para cada documento."
)

CATCH_ALL_FIELDS: list[dict] = [
    {
        "name": "document_title",
        "type": "string",
        "label": "Título del Documento",
        "required": False,
        "description": "Título o nombre del documento",
    },
    {
        "name": "document_category",
        "type": "string",
        "label": "Categoría",
        "required": False,
        "description": "Categoría inferida del documento",
    },
    {
        "name": "key_entities",
        "type": "string",
        "label": "Resumen/Entidades Clave",
        "required": False,
        "description": "Resumen y entidades clave detectadas",
    },
]


async def resolve_catch_all_type(
    catalog:    Catalog,
    file_store: FileStore,
    owner_id:   uuid.UUID,
    name:       str | None = None,
) -> tuple[DocumentType, bool]:
    """
    Return (catch-all type, created_now). First writer wins: a ConflictError
    while creating means another request created it, so that row is used.
    """
    name = name or settings.others_folder_name

    existing = await catalog.find_type_by_name(owner_id, name)
    if existing is not None:
        return existing, False

    folder = await file_store.get_or_create_folder(name)
    try:
        row = await catalog.save_type(
            owner_id=owner_id,
            name=name,
            fields=CATCH_ALL_FIELDS,
            description=CATCH_ALL_DESCRIPTION,
            folder_id=folder.id,
            folder_path=folder.link,
        )
    except ConflictError as exc:
        row = exc.existing or await catalog.find_type_by_name(owner_id, name)
        if row is None:
            raise
        logger.info("Catch-all type created concurrently | owner=%s id=%s", owner_id, row.id)
        return row, False

    logger.info("Catch-all type created | owner=%s id=%s", owner_id, row.id)
    return row, True


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class ProcessingResult:
    document:              Document
    document_type:         DocumentType
    was_classified:        bool
    created_others_folder: bool
    message:               str


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class DocumentProcessingService:
    """
    Stateless service object: one instance per request.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        catalog:    Catalog,
        file_store: FileStore,
        extractor:  TextExtractor,
        classifier: Classifier,
    ) -> None:
        self._catalog    = catalog
        self._files      = file_store
        self._extractor  = extractor
        self._classifier = classifier

    async def process(
        self,
        data:      bytes,
        filename:  str,
        mime_type: str,
        owner_id:  uuid.UUID,
    ) -> ProcessingResult:
        logger.info(
            "Pipeline start | owner=%s file=%s size=%d mime=%s",
            owner_id, filename, len(data), mime_type,
        )

        # Id of the object to delete on failure; follows the file when moved
        live_file_id: str | None = None

        try:
            # ---- Step 1: Stage -------------------------------------------
            processing = await self._files.get_or_create_folder(settings.processing_folder_name)
            staged = await self._files.upload(data, filename, mime_type, processing.id)
            live_file_id = staged.id
            staged_url = await self._files.public_url(staged.id)

            # ---- Step 2: Extract text ------------------------------------
            text = await self._extractor.extract(staged_url, mime_type)
            logger.info(
                "Pipeline text | file=%s method=%s chars=%d degraded=%s",
                filename, text.method, len(text.text), text.degraded,
            )

            # ---- Step 3: Load candidate types ----------------------------
            candidates = await self._catalog.find_types_by_owner(owner_id)
            if not candidates:
                raise ValidationError(
                    "No document types configured. Create at least one document type before uploading.",
                    error_code="NO_DOCUMENT_TYPES",
                )

            # ---- Step 4: Classify ----------------------------------------
            classification = await self._classifier.classify(text.text, candidates)

            # ---- Step 5: Resolve type ------------------------------------
            document_type = self._resolve_known_type(classification, candidates)

            inferred: InferredFieldsResult | None = None
            created_others = False
            if document_type is None:
                inferred = await self._classifier.infer_unclassified_vision(data, mime_type)
                document_type, created_others = await resolve_catch_all_type(
                    self._catalog, self._files, owner_id,
                )

            # ---- Step 6: Extract fields ----------------------------------
            if inferred is None:
                extraction = await self._classifier.extract_fields_vision(data, mime_type, document_type)
                extracted_data = extraction.as_record()
            else:
                extracted_data = {
                    "summary": inferred.summary,
                    "fields":  [f.model_dump(mode="json") for f in inferred.key_fields],
                }

            # ---- Step 7: Relocate ----------------------------------------
            target_folder = await self._type_folder(document_type)
            moved: FileRef = await self._files.move(live_file_id, target_folder)
            live_file_id = moved.id

            # ---- Step 8: Persist -----------------------------------------
            document = await self._catalog.save_document(
                owner_id=owner_id,
                document_type_id=document_type.id,
                filename=filename,
                file_id=moved.id,
                file_link=moved.link,
                extracted_data=extracted_data,
                inferred_data=inferred.as_record() if inferred is not None else None,
                ocr_raw_text=text.text,
                confidence_score=classification.confidence,
                status="completed",
            )

        except Exception:
            logger.exception("Pipeline failed | owner=%s file=%s", owner_id, filename)
            if live_file_id is not None:
                await self._compensate(live_file_id)
            raise

        was_classified = inferred is None
        if was_classified:
            message = f'Documento clasificado como "{document_type.name}" y guardado exitosamente'
        else:
            message = (
                f'Documento guardado en "{document_type.name}" con datos inferidos. '
                f'El modelo sugiere que podría ser: "{inferred.inferred_type}"'
            )

        logger.info(
            "Pipeline done | owner=%s document=%s type=%s classified=%s",
            owner_id, document.id, document_type.name, was_classified,
        )
        return ProcessingResult(
            document=document,
            document_type=document_type,
            was_classified=was_classified,
            created_others_folder=created_others,
            message=message,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_known_type(
        classification: ClassificationResult,
        candidates:     list[DocumentType],
    ) -> DocumentType | None:
        if classification.is_others:
            return None

        match = match_type_name(classification.matched_type_name, candidates)
        if isinstance(match, NoMatch):
            logger.warning(
                "No stored type matches %r, using catch-all type",
                classification.matched_type_name,
            )
            return None
        if isinstance(match, FuzzyMatch):
            logger.info(
                "Type resolved by containment | classified=%r stored=%r",
                classification.matched_type_name, match.candidate.name,
            )
        return match.candidate

    async def _type_folder(self, document_type: DocumentType) -> str:
        if document_type.folder_id:
            return document_type.folder_id
        folder = await self._files.get_or_create_folder(document_type.name)
        document_type.folder_id   = folder.id
        document_type.folder_path = folder.link
        return folder.id

    async def _compensate(self, file_id: str) -> None:
        try:
            await self._files.delete(file_id)
            logger.info("Pipeline compensation | deleted file=%s", file_id)
        except Exception:
            logger.exception("Pipeline compensation failed | file=%s", file_id)
