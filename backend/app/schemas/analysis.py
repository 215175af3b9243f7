"""
Analysis Schemas — typed shapes of everything the reasoning model returns

Two families live here:

  *Payload models: the raw JSON contract requested from the model. Keys
                     use the camelCase/snake_case spelling the prompts ask
                     for (aliases), so decoding is a plain model_validate().
  Result models: what the rest of the application consumes.

Decoding goes through classification/decoding.py; a payload that fails
validation is a ParseError, never a partially-filled object.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


FieldType = Literal["string", "number", "date", "boolean", "array"]


# ---------------------------------------------------------------------------
# Field shapes
# ---------------------------------------------------------------------------

class FieldDefinition(BaseModel):
    """One persisted field of a DocumentType schema (closed type vocabulary)."""
    name:        str = Field(..., min_length=1)
    type:        FieldType
    label:       str = Field(..., min_length=1)
    required:    bool = False
    description: str | None = None

    @field_validator("name", "label")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class FieldWithValue(BaseModel):
    """
    A field as emitted by extraction or inference.

    type is open vocabulary here ("email", "currency", ...): it is only
    normalized when a schema is written to the catalog.
    """
    model_config = ConfigDict(populate_by_name=True)

    name:        str = Field(..., min_length=1)
    type:        str = "string"
    label:       str = ""
    required:    bool = False
    description: str | None = None
    value:       Any = None

    @field_validator("type", mode="before")
    @classmethod
    def _type_or_default(cls, value: Any) -> str:
        return value if isinstance(value, str) and value.strip() else "string"

    @field_validator("required", mode="before")
    @classmethod
    def _required_or_false(cls, value: Any) -> bool:
        return bool(value) if value is not None else False


class ConsolidatedField(BaseModel):
    """
    A canonical field plus the fraction of samples it was observed in.

    type is still open vocabulary; the catalog normalizes it on write.
    """
    name:        str = Field(..., min_length=1)
    type:        str = "string"
    label:       str = Field(..., min_length=1)
    required:    bool = False
    description: str | None = None
    frequency:   float = Field(..., ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# Model output payloads
# ---------------------------------------------------------------------------

class ClassificationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    matched_type_id:   str | None = Field(None, alias="matchedTypeId")
    matched_type_name: str | None = Field(None, alias="matchedTypeName")
    confidence:        float = Field(..., ge=0.0, le=1.0)
    is_others:         bool = Field(False, alias="isOthers")
    inferred_type:     str | None = Field(None, alias="inferredType")
    suggested_fields:  list[FieldWithValue] = Field(default_factory=list, alias="suggestedFields")
    reasoning:         str | None = None

    @field_validator("matched_type_id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> str | None:
        return None if value in (None, "") else str(value)

    @field_validator("suggested_fields", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class ExtractionPayload(BaseModel):
    summary: str
    fields:  list[FieldWithValue]


class InferencePayload(BaseModel):
    inferred_type: str = Field(..., min_length=1)
    summary:       str
    key_fields:    list[FieldWithValue]


class MergeGroup(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    canonical_name: str = Field(..., min_length=1)
    variants:       list[str] = Field(default_factory=list)


class HomologationPayload(BaseModel):
    merges: list[MergeGroup]


class ConsolidationFieldPayload(BaseModel):
    """One canonical field proposed by the model, with the raw names it merges."""
    name:        str = Field(..., min_length=1)
    type:        str = "string"
    label:       str = ""
    description: str | None = None
    variants:    list[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def _type_or_default(cls, value: Any) -> str:
        return value if isinstance(value, str) and value.strip() else "string"


class ConsolidationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type_description:    str | None = Field(None, alias="typeDescription")
    consolidated_fields: list[ConsolidationFieldPayload] = Field(..., alias="consolidatedFields")


# ---------------------------------------------------------------------------
# Results consumed by services
# ---------------------------------------------------------------------------

class ClassificationResult(BaseModel):
    """
    Outcome of classifying a document against the owner's types.

    is_others is forced to True whenever confidence is below the threshold,
    whatever the model proposed (see gated()).
    """
    matched_type_id:   str | None = None
    matched_type_name: str | None = None
    confidence:        float = Field(..., ge=0.0, le=1.0)
    is_others:         bool
    inferred_type:     str | None = None
    suggested_fields:  list[FieldWithValue] = Field(default_factory=list)
    reasoning:         str | None = None

    @classmethod
    def gated(cls, payload: ClassificationPayload, threshold: float) -> "ClassificationResult":
        is_others = payload.is_others or payload.confidence < threshold
        return cls(
            matched_type_id=payload.matched_type_id,
            matched_type_name=payload.matched_type_name,
            confidence=payload.confidence,
            is_others=is_others,
            inferred_type=payload.inferred_type if is_others else None,
            suggested_fields=payload.suggested_fields if is_others else [],
            reasoning=payload.reasoning,
        )


class ExtractionResult(BaseModel):
    summary: str
    fields:  list[FieldWithValue]

    def as_record(self) -> dict:
        return self.model_dump(mode="json")


class InferredFieldsResult(BaseModel):
    inferred_type: str
    summary:       str
    key_fields:    list[FieldWithValue]

    def as_record(self) -> dict:
        return self.model_dump(mode="json")
