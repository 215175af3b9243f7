"""
Classifier — contract and LLM-backed adapter

The Classifier is the only component that talks to the reasoning model.
Every operation is one model call whose reply is decoded into a typed
payload (app/schemas/analysis.py) by the validating decoder.

  ┌────────────────────────────┬───────────────────────────────────────┐
  │ operation                  │ returns                               │
  ├────────────────────────────┼───────────────────────────────────────┤
  │ classify                   │ ClassificationResult (threshold-gated)│
  │ extract_fields[_vision]    │ ExtractionResult aligned to the schema│
  │ infer_unclassified[_vision]│ InferredFieldsResult (open types)     │
  │ homologate_labels          │ list[MergeGroup] (conservative)       │
  │ consolidate_fields         │ ConsolidatedType                      │
  └────────────────────────────┴───────────────────────────────────────┘

Failure modes:
  ExternalServiceError: every provider failed (raised by the gateway)
  ParseError: the reply could not be decoded into its schema
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Protocol, Sequence

from app.classification import prompts
from app.classification.decoding import decode_model_output
from app.classification.matching import normalize_name
from app.core.config import settings
from app.llm.gateway import Attachment, LLMGateway
from app.processing.consolidation import ConsolidatedType, ProcessedDocument, consolidate
from app.schemas.analysis import (
    ClassificationPayload,
    ClassificationResult,
    ConsolidationPayload,
    ExtractionPayload,
    ExtractionResult,
    FieldWithValue,
    HomologationPayload,
    InferencePayload,
    InferredFieldsResult,
    MergeGroup,
)

logger = logging.getLogger(__name__)


class TypeDescriptor(Protocol):
    """What the classifier needs to know about a DocumentType."""
    id: Any
    name: str
    description: str | None

    @property
    def fields(self) -> list[dict]: ...


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class Classifier(ABC):

    @abstractmethod
    async def classify(self, text: str, candidates: Sequence[TypeDescriptor]) -> ClassificationResult:
        ...

    @abstractmethod
    async def extract_fields(self, text: str, document_type: TypeDescriptor) -> ExtractionResult:
        ...

    @abstractmethod
    async def extract_fields_vision(
        self, data: bytes, mime_type: str, document_type: TypeDescriptor
    ) -> ExtractionResult:
        ...

    @abstractmethod
    async def infer_unclassified(self, text: str) -> InferredFieldsResult:
        ...

    @abstractmethod
    async def infer_unclassified_vision(self, data: bytes, mime_type: str) -> InferredFieldsResult:
        ...

    @abstractmethod
    async def homologate_labels(self, labels: Sequence[str]) -> list[MergeGroup]:
        ...

    @abstractmethod
    async def consolidate_fields(
        self, type_label: str, documents: Sequence[ProcessedDocument]
    ) -> ConsolidatedType:
        ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def align_to_schema(fields: Sequence[FieldWithValue], schema_fields: Sequence[dict]) -> list[FieldWithValue]:
    """
    Project extracted fields onto the schema: one entry per schema field,
    in schema order, value taken from the reply by name (None when absent).
    """
    by_name = {normalize_name(f.name): f for f in fields}
    aligned = []
    for spec in schema_fields:
        found = by_name.get(normalize_name(spec.get("name")))
        aligned.append(FieldWithValue(
            name=spec["name"],
            type=spec.get("type") or "string",
            label=spec.get("label") or spec["name"],
            required=bool(spec.get("required")),
            description=spec.get("description"),
            value=found.value if found is not None else None,
        ))
    return aligned


def conservative_merges(groups: Sequence[MergeGroup], labels: Sequence[str]) -> list[MergeGroup]:
    """
    Keep only merges of two or more of the submitted labels.

    Variants are mapped back to the submitted spelling; a label is claimed
    by the first group that lists it.
    """
    known   = {normalize_name(label): label for label in labels}
    claimed: set[str] = set()
    kept:    list[MergeGroup] = []
    for group in groups:
        variants = []
        for variant in group.variants:
            key = normalize_name(variant)
            if key in known and key not in claimed:
                claimed.add(key)
                variants.append(known[key])
        if len(variants) >= 2:
            kept.append(MergeGroup(canonical_name=group.canonical_name.strip(), variants=variants))
        else:
            claimed.difference_update(normalize_name(v) for v in variants)
    return kept


# ---------------------------------------------------------------------------
# LLM adapter
# ---------------------------------------------------------------------------

class LLMClassifier(Classifier):
    """
    Classifier backed by the LLM gateway.

    Stateless apart from its gateway; safe to share across requests.
    """

    def __init__(self, gateway: LLMGateway | None = None, threshold: float | None = None) -> None:
        self._gateway   = gateway or LLMGateway()
        self._threshold = settings.classification_confidence_threshold if threshold is None else threshold

    @property
    def threshold(self) -> float:
        return self._threshold

    async def _ask(self, prompt: str, schema, attachment: Attachment | None = None):
        response = await self._gateway.invoke(
            system_prompt=prompts.SYSTEM_PROMPT,
            user_prompt=prompt,
            attachment=attachment,
        )
        return decode_model_output(response.content, schema)

    # -----------------------------------------------------------------------

    async def classify(self, text: str, candidates: Sequence[TypeDescriptor]) -> ClassificationResult:
        payload: ClassificationPayload = await self._ask(
            prompts.render_classify(text, candidates, self._threshold),
            ClassificationPayload,
        )
        result = ClassificationResult.gated(payload, self._threshold)
        logger.info(
            "Classifier | classify matched=%s confidence=%.2f is_others=%s",
            result.matched_type_name, result.confidence, result.is_others,
        )
        return result

    async def extract_fields(self, text: str, document_type: TypeDescriptor) -> ExtractionResult:
        payload: ExtractionPayload = await self._ask(
            prompts.render_extract(document_type.name, document_type.description, document_type.fields, text=text),
            ExtractionPayload,
        )
        return ExtractionResult(
            summary=payload.summary,
            fields=align_to_schema(payload.fields, document_type.fields),
        )

    async def extract_fields_vision(
        self, data: bytes, mime_type: str, document_type: TypeDescriptor
    ) -> ExtractionResult:
        payload: ExtractionPayload = await self._ask(
            prompts.render_extract(document_type.name, document_type.description, document_type.fields),
            ExtractionPayload,
            attachment=Attachment(data=data, mime_type=mime_type),
        )
        logger.info(
            "Classifier | vision extraction type=%s fields=%d",
            document_type.name, len(payload.fields),
        )
        return ExtractionResult(
            summary=payload.summary,
            fields=align_to_schema(payload.fields, document_type.fields),
        )

    async def infer_unclassified(self, text: str) -> InferredFieldsResult:
        payload: InferencePayload = await self._ask(prompts.render_infer(text), InferencePayload)
        return InferredFieldsResult(
            inferred_type=payload.inferred_type.strip(),
            summary=payload.summary,
            key_fields=payload.key_fields,
        )

    async def infer_unclassified_vision(self, data: bytes, mime_type: str) -> InferredFieldsResult:
        payload: InferencePayload = await self._ask(
            prompts.render_infer(),
            InferencePayload,
            attachment=Attachment(data=data, mime_type=mime_type),
        )
        logger.info(
            "Classifier | vision inference type=%r fields=%d",
            payload.inferred_type, len(payload.key_fields),
        )
        return InferredFieldsResult(
            inferred_type=payload.inferred_type.strip(),
            summary=payload.summary,
            key_fields=payload.key_fields,
        )

    async def homologate_labels(self, labels: Sequence[str]) -> list[MergeGroup]:
        if len(labels) <= 1:
            return []
        payload: HomologationPayload = await self._ask(prompts.render_homologate(labels), HomologationPayload)
        merges = conservative_merges(payload.merges, labels)
        logger.info("Classifier | homologation labels=%d merges=%d", len(labels), len(merges))
        return merges

    async def consolidate_fields(
        self, type_label: str, documents: Sequence[ProcessedDocument]
    ) -> ConsolidatedType:
        proposal: ConsolidationPayload = await self._ask(
            prompts.render_consolidate(type_label, [doc.fields for doc in documents]),
            ConsolidationPayload,
        )
        consolidated = consolidate(type_label, documents, proposal)
        logger.info(
            "Classifier | consolidated type=%r samples=%d fields=%d",
            type_label, consolidated.sample_count, len(consolidated.consolidated_fields),
        )
        return consolidated
