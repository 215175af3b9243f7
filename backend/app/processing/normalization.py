"""
Field type normalization.

Extraction and inference emit an open type vocabulary ("currency",
"integer", "email", "datetime", ...). The catalog only stores the closed
set string | number | date | boolean | array. normalize_field_type() is
total: anything unrecognised becomes "string".

Applied once, at the boundary where a schema is written to the catalog.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from app.schemas.analysis import FieldDefinition, FieldType

_TYPE_TABLE: dict[str, FieldType] = {
    "number":    "number",
    "integer":   "number",
    "int":       "number",
    "float":     "number",
    "decimal":   "number",
    "currency":  "number",
    "date":      "date",
    "datetime":  "date",
    "timestamp": "date",
    "boolean":   "boolean",
    "bool":      "boolean",
    "array":     "array",
    "list":      "array",
}


def _as_mapping(field: Mapping | object) -> Mapping:
    if isinstance(field, Mapping):
        return field
    if hasattr(field, "model_dump"):
        return field.model_dump()
    return vars(field)


def normalize_field_type(raw: str | None) -> FieldType:
    """Map any emitted type label onto one of the five canonical types."""
    if not isinstance(raw, str):
        return "string"
    return _TYPE_TABLE.get(raw.strip().lower(), "string")


def normalize_field(field: Mapping | object) -> FieldDefinition:
    """
    Build a persisted FieldDefinition from a raw field (dict or model).

    A blank label falls back to the field name.
    """
    data  = _as_mapping(field)
    name  = str(data.get("name") or "").strip()
    label = str(data.get("label") or "").strip() or name
    return FieldDefinition(
        name=name,
        type=normalize_field_type(data.get("type")),
        label=label,
        required=bool(data.get("required") or False),
        description=data.get("description") or None,
    )


def normalize_fields(fields: Iterable[Mapping | object]) -> list[FieldDefinition]:
    """Normalize a field list, dropping nameless entries and duplicate names."""
    seen: set[str] = set()
    out:  list[FieldDefinition] = []
    for field in fields:
        data = _as_mapping(field)
        name = str(data.get("name") or "").strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        out.append(normalize_field(data))
    return out


def schema_payload(fields: Iterable[Mapping | object]) -> dict:
    """The JSONB value stored in DocumentType.field_schema."""
    return {"fields": [f.model_dump(mode="json") for f in normalize_fields(fields)]}
