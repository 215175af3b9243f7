"""
Field Consolidation Engine — deterministic post-processing

The reasoning model proposes which raw field names denote the same concept
(ConsolidationPayload). Everything that must be reproducible is computed
here, without I/O:

  frequency  = documents containing the field / documents in the group
               (a document "contains" a canonical field when any of its
               raw field names or labels equals the canonical name, label
               or one of the proposed variants, case-insensitively)
  required   = frequency >= 0.5
  order      = stable sort by (frequency desc, first-seen position)
  cap        = at most 20 fields

first-seen position is (document index, field index) of the earliest raw
field the canonical field absorbed; fields never observed rank last, in
proposal order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from app.schemas.analysis import ConsolidatedField, ConsolidationPayload, FieldWithValue

MAX_CONSOLIDATED_FIELDS = 20
REQUIRED_FREQUENCY      = 0.5

_NEVER_SEEN = (float("inf"), float("inf"))


@dataclass
class ProcessedDocument:
    """One sample file after open inference (inference-only, transient)."""
    filename:      str
    inferred_type: str
    fields:        list[FieldWithValue]
    data:          bytes
    mime_type:     str
    summary:       str = ""


@dataclass
class ConsolidatedType:
    type_name:           str
    description:         str
    consolidated_fields: list[ConsolidatedField]
    sample_documents:    list[ProcessedDocument] = field(default_factory=list)

    @property
    def sample_count(self) -> int:
        return len(self.sample_documents)


def _key(text: str | None) -> str:
    return " ".join((text or "").split()).casefold()


def default_type_description(type_name: str, sample_count: int) -> str:
    return f'Tipo de documento "{type_name}" creado automáticamente a partir de {sample_count} ejemplos'


def consolidate(
    type_label: str,
    documents:  Sequence[ProcessedDocument],
    proposal:   ConsolidationPayload,
) -> ConsolidatedType:
    """
    Turn the model's merge proposal into a ConsolidatedType.

    Raises:
        ValueError: if *documents* is empty.
    """
    if not documents:
        raise ValueError("consolidation needs at least one document")

    total = len(documents)

    # Per document: the raw keys it carries, and where each key first appears
    doc_keys: list[dict[str, tuple[int, int]]] = []
    for doc_index, doc in enumerate(documents):
        keys: dict[str, tuple[int, int]] = {}
        for field_index, raw in enumerate(doc.fields):
            for k in (_key(raw.name), _key(raw.label)):
                if k:
                    keys.setdefault(k, (doc_index, field_index))
        doc_keys.append(keys)

    ranked: list[tuple[float, tuple, ConsolidatedField]] = []
    seen_names: set[str] = set()

    for proposed in proposal.consolidated_fields:
        name = proposed.name.strip()
        if not name or _key(name) in seen_names:
            continue
        seen_names.add(_key(name))

        aliases = {_key(a) for a in (name, proposed.label, *proposed.variants) if _key(a)}

        hits = 0
        first_seen = _NEVER_SEEN
        for keys in doc_keys:
            positions = [keys[a] for a in aliases if a in keys]
            if positions:
                hits += 1
                first_seen = min(first_seen, min(positions))

        frequency = hits / total
        ranked.append((
            frequency,
            first_seen,
            ConsolidatedField(
                name=name,
                type=proposed.type,
                label=proposed.label.strip() or name,
                required=frequency >= REQUIRED_FREQUENCY,
                description=proposed.description or None,
                frequency=frequency,
            ),
        ))

    ranked.sort(key=lambda item: (-item[0], item[1]))

    return ConsolidatedType(
        type_name=type_label,
        description=(proposal.type_description or "").strip() or default_type_description(type_label, total),
        consolidated_fields=[cf for _, _, cf in ranked[:MAX_CONSOLIDATED_FIELDS]],
        sample_documents=list(documents),
    )
