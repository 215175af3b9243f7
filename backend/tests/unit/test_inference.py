"""
Unit Tests — TypeInferenceService (sample-based type discovery)
═══════════════════════════════════════════════════════════════
Coverage targets:
  ✅ bounded_gather: order kept, concurrency never above the limit,
     exceptions returned in place
  ✅ sample count outside 2-10 → INVALID_SAMPLE_COUNT before any model call
  ✅ samples of one label → one new type with consolidated fields
  ✅ a label equal to an existing type → samples added to that type
  ✅ homologation merges equivalent labels; failure keeps them apart
  ✅ per-file inference failure drops only that file
  ✅ consolidation failure aborts only that group, nothing written
  ✅ ConflictError on create → existing-type branch
  ✅ upload_samples=False stores nothing; matched existing types are not reported
  ✅ failed sample save deletes its uploaded file
  ✅ a database error on one sample leaves the other groups stored
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import DBAPIError

from app.core.errors import ConflictError, ExternalServiceError, ParseError, ValidationError
from app.processing.consolidation import ConsolidatedType
from app.schemas.analysis import (
    ConsolidatedField,
    ExtractionResult,
    FieldWithValue,
    InferredFieldsResult,
    MergeGroup,
)
from app.services.inference import SAMPLE_CONFIDENCE, SampleFile, TypeInferenceService, bounded_gather

pytestmark = [pytest.mark.unit, pytest.mark.inference]


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _sample(name: str, data: bytes = b"%PDF-1.4 sample") -> SampleFile:
    return SampleFile(filename=name, data=data + name.encode(), mime_type="application/pdf")


def _inferred(label: str, *fields: str) -> InferredFieldsResult:
    return InferredFieldsResult(
        inferred_type=label,
        summary=f"Documento tipo {label}",
        key_fields=[FieldWithValue(name=f, label=f.title(), value="v") for f in fields],
    )


def _by_file(mapping: dict[str, object]):
    """side_effect for infer_unclassified_vision keyed by the sample bytes suffix."""
    async def _infer(data: bytes, mime_type: str):
        for name, outcome in mapping.items():
            if data.endswith(name.encode()):
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        raise AssertionError("unexpected sample")
    return _infer


def _consolidated(label: str, documents, *names: str, type_: str = "currency") -> ConsolidatedType:
    return ConsolidatedType(
        type_name=label,
        description=f"Tipo {label}",
        consolidated_fields=[
            ConsolidatedField(name=n, type=type_, label=n.title(), required=True, frequency=1.0) for n in names
        ],
        sample_documents=list(documents),
    )


def _extraction(*_args) -> ExtractionResult:
    return ExtractionResult(summary="s", fields=[FieldWithValue(name="total", value=1)])


@pytest.fixture
def service(mock_catalog, mock_file_store, mock_classifier):
    return TypeInferenceService(
        catalog=mock_catalog,
        file_store=mock_file_store,
        classifier=mock_classifier,
        max_concurrency=2,
    )


@pytest.fixture(autouse=True)
def default_extraction(mock_classifier):
    async def _extract(data, mime_type, document_type):
        return _extraction()
    mock_classifier.extract_fields_vision.side_effect = _extract


@pytest.fixture(autouse=True)
def default_consolidation(mock_classifier):
    async def _consolidate(label, documents):
        names = []
        for doc in documents:
            names.extend(f.name for f in doc.fields if f.name not in names)
        return _consolidated(label, documents, *names)
    mock_classifier.consolidate_fields.side_effect = _consolidate


# ─────────────────────────────────────────────────────────────────────────────
# bounded_gather
# ─────────────────────────────────────────────────────────────────────────────

class TestBoundedGather:

    async def test_limit_and_order(self):
        in_flight = 0
        peak = 0

        async def call(i: int) -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return i * 10

        results = await bounded_gather(list(range(7)), call, limit=3)
        assert results == [0, 10, 20, 30, 40, 50, 60]
        assert peak == 3

    async def test_exception_returned_in_slot(self):
        async def call(i: int) -> int:
            if i == 1:
                raise ParseError("bad")
            return i

        results = await bounded_gather([0, 1, 2], call, limit=2)
        assert results[0] == 0
        assert isinstance(results[1], ParseError)
        assert results[2] == 2


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("count", [0, 1, 11])
async def test_sample_count_validated_first(service, owner_id, mock_classifier, count):
    with pytest.raises(ValidationError) as exc_info:
        await service.infer_from_samples([_sample(f"s{i}") for i in range(count)], owner_id)
    assert exc_info.value.error_code == "INVALID_SAMPLE_COUNT"
    mock_classifier.infer_unclassified_vision.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────────────
# New types
# ─────────────────────────────────────────────────────────────────────────────

class TestNewTypes:

    async def test_single_label_creates_one_type(
        self, service, owner_id, mock_catalog, mock_classifier, mock_file_store,
    ):
        mock_classifier.infer_unclassified_vision.side_effect = _by_file({
            "a": _inferred("Factura", "numero", "total"),
            "b": _inferred("factura", "total", "rut_emisor"),
        })

        outcome = await service.infer_from_samples([_sample("a"), _sample("b")], owner_id)

        assert outcome.success is True
        assert outcome.total_types_created == 1
        assert outcome.total_documents_processed == 2
        created = outcome.types[0]
        assert created.is_new is True
        assert created.name == "Factura"
        assert created.sample_count == 2
        assert created.documents_saved == 2
        assert [f.type for f in created.fields] == ["number", "number", "number"]

        mock_classifier.homologate_labels.assert_not_awaited()
        save = mock_catalog.save_type.await_args.kwargs
        assert save["name"] == "Factura"
        assert save["folder_id"] == "workspace/Factura"
        assert mock_file_store.upload.await_count == 2
        assert all(
            c.kwargs["confidence_score"] == SAMPLE_CONFIDENCE
            for c in mock_catalog.save_document.await_args_list
        )

    async def test_samples_reextracted_against_consolidated_schema(
        self, service, owner_id, mock_catalog, mock_classifier,
    ):
        mock_classifier.infer_unclassified_vision.side_effect = _by_file({
            "a": _inferred("Orden", "numero_orden", "proveedor"),
            "b": _inferred("Orden", "nro_orden"),
            "c": _inferred("Orden", "numero_orden", "fecha_entrega"),
        })

        async def _consolidate(label, documents):
            return ConsolidatedType(
                type_name=label,
                description="Órdenes de compra",
                consolidated_fields=[
                    ConsolidatedField(name="A", type="string", label="A", required=True,  frequency=1.0),
                    ConsolidatedField(name="B", type="string", label="B", required=False, frequency=0.33),
                ],
                sample_documents=list(documents),
            )
        mock_classifier.consolidate_fields.side_effect = _consolidate

        async def _extract(data, mime_type, document_type):
            return ExtractionResult(summary="re", fields=[
                FieldWithValue(name=f["name"], value=f"{f['name']}-value") for f in document_type.fields
            ])
        mock_classifier.extract_fields_vision.side_effect = _extract

        await service.infer_from_samples([_sample("a"), _sample("b"), _sample("c")], owner_id)

        assert mock_classifier.extract_fields_vision.await_count == 3
        for c in mock_classifier.extract_fields_vision.await_args_list:
            assert [f["name"] for f in c.args[2].fields] == ["A", "B"]
        stored = [c.kwargs["extracted_data"] for c in mock_catalog.save_document.await_args_list]
        assert len(stored) == 3
        for record in stored:
            assert [f["name"] for f in record["fields"]] == ["A", "B"]
            assert record["summary"] == "re"

    async def test_upload_samples_false(self, service, owner_id, mock_classifier, mock_file_store, mock_catalog):
        mock_classifier.infer_unclassified_vision.side_effect = _by_file({
            "a": _inferred("Boleta", "total"),
            "b": _inferred("Boleta", "total"),
        })

        outcome = await service.infer_from_samples([_sample("a"), _sample("b")], owner_id, upload_samples=False)

        assert outcome.types[0].documents_saved == 0
        mock_file_store.upload.assert_not_awaited()
        mock_catalog.save_document.assert_not_awaited()
        mock_classifier.extract_fields_vision.assert_not_awaited()

    async def test_homologation_merges_labels(self, service, owner_id, mock_classifier, mock_catalog):
        mock_classifier.infer_unclassified_vision.side_effect = _by_file({
            "a": _inferred("Factura", "total"),
            "b": _inferred("Factura Electrónica", "total"),
            "c": _inferred("Contrato", "partes"),
        })
        mock_classifier.homologate_labels.return_value = [
            MergeGroup(canonical_name="Factura", variants=["Factura", "Factura Electrónica"]),
        ]

        outcome = await service.infer_from_samples([_sample("a"), _sample("b"), _sample("c")], owner_id)

        assert sorted((t.name, t.sample_count) for t in outcome.types) == [("Contrato", 1), ("Factura", 2)]
        assert mock_catalog.save_type.await_count == 2
        labels = mock_classifier.homologate_labels.await_args.args[0]
        assert sorted(labels) == ["Contrato", "Factura", "Factura Electrónica"]

    async def test_homologation_failure_keeps_groups(self, service, owner_id, mock_classifier):
        mock_classifier.infer_unclassified_vision.side_effect = _by_file({
            "a": _inferred("Factura", "total"),
            "b": _inferred("Factura Electrónica", "total"),
        })
        mock_classifier.homologate_labels.side_effect = ExternalServiceError("llm", "down")

        outcome = await service.infer_from_samples([_sample("a"), _sample("b")], owner_id)
        assert sorted(t.name for t in outcome.types) == ["Factura", "Factura Electrónica"]

    async def test_failed_file_is_skipped(self, service, owner_id, mock_classifier):
        mock_classifier.infer_unclassified_vision.side_effect = _by_file({
            "a": _inferred("Factura", "total"),
            "b": ParseError("bad json"),
            "c": _inferred("Factura", "total"),
        })

        outcome = await service.infer_from_samples([_sample("a"), _sample("b"), _sample("c")], owner_id)
        assert outcome.total_documents_processed == 2
        assert outcome.types[0].sample_count == 2

    async def test_consolidation_failure_aborts_group_only(
        self, service, owner_id, mock_classifier, mock_catalog, mock_file_store,
    ):
        mock_classifier.infer_unclassified_vision.side_effect = _by_file({
            "a": _inferred("Factura", "total"),
            "b": _inferred("Contrato", "partes"),
        })

        async def _consolidate(label, documents):
            if label == "Factura":
                raise ParseError("unreadable")
            return _consolidated(label, documents, "partes")

        mock_classifier.consolidate_fields.side_effect = _consolidate

        outcome = await service.infer_from_samples([_sample("a"), _sample("b")], owner_id)

        assert [t.name for t in outcome.types] == ["Contrato"]
        assert [c.kwargs["name"] for c in mock_catalog.save_type.await_args_list] == ["Contrato"]
        assert all("Contrato" in c.args[3] for c in mock_file_store.upload.await_args_list)

    async def test_all_groups_fail(self, service, owner_id, mock_classifier):
        mock_classifier.infer_unclassified_vision.side_effect = ExternalServiceError("llm", "down")
        outcome = await service.infer_from_samples([_sample("a"), _sample("b")], owner_id)
        assert outcome.success is False
        assert outcome.types == []


# ─────────────────────────────────────────────────────────────────────────────
# Existing types
# ─────────────────────────────────────────────────────────────────────────────

class TestExistingTypes:

    async def test_label_matches_existing_type(
        self, service, owner_id, make_type, invoice_fields, mock_catalog, mock_classifier,
    ):
        factura = make_type("Factura", invoice_fields, folder_id="workspace/Factura")
        mock_catalog.find_types_by_owner.return_value = [factura]
        mock_classifier.infer_unclassified_vision.side_effect = _by_file({
            "a": _inferred("FACTURA", "numero"),
            "b": _inferred("factura", "total"),
        })

        outcome = await service.infer_from_samples([_sample("a"), _sample("b")], owner_id)

        summary = outcome.types[0]
        assert summary.is_new is False
        assert summary.id == factura.id
        assert summary.documents_saved == 2
        assert summary.description.endswith("(2 documentos agregados)")
        assert [f.name for f in summary.fields] == ["invoice_number", "total", "issue_date"]
        assert all(f.frequency == 1.0 for f in summary.fields)
        assert outcome.total_types_created == 0
        mock_catalog.save_type.assert_not_awaited()
        mock_classifier.consolidate_fields.assert_not_awaited()
        for c in mock_classifier.extract_fields_vision.await_args_list:
            assert c.args[2] is factura

    async def test_existing_type_not_reported_without_upload(
        self, service, owner_id, make_type, invoice_fields, mock_catalog, mock_classifier, mock_file_store,
    ):
        factura = make_type("Factura", invoice_fields, folder_id="workspace/Factura")
        mock_catalog.find_types_by_owner.return_value = [factura]
        mock_classifier.infer_unclassified_vision.side_effect = _by_file({
            "a": _inferred("Factura", "total"),
            "b": _inferred("Contrato", "partes"),
        })

        outcome = await service.infer_from_samples([_sample("a"), _sample("b")], owner_id, upload_samples=False)

        assert [t.name for t in outcome.types] == ["Contrato"]
        assert outcome.total_documents_processed == 1
        assert outcome.message.endswith("1 tipos creados, 0 tipos existentes actualizados")
        mock_file_store.upload.assert_not_awaited()
        mock_catalog.save_document.assert_not_awaited()

    async def test_conflict_on_create_uses_existing(
        self, service, owner_id, make_type, mock_catalog, mock_classifier,
    ):
        winner = make_type("Boleta", [{"name": "total", "type": "number", "label": "Total"}])
        mock_classifier.infer_unclassified_vision.side_effect = _by_file({
            "a": _inferred("Boleta", "total"),
            "b": _inferred("Boleta", "total"),
        })
        mock_catalog.save_type.side_effect = ConflictError("exists", existing=winner)

        outcome = await service.infer_from_samples([_sample("a"), _sample("b")], owner_id)

        summary = outcome.types[0]
        assert summary.is_new is False
        assert summary.id == winner.id
        assert summary.documents_saved == 2

    async def test_name_clash_after_consolidation(
        self, service, owner_id, make_type, mock_catalog, mock_classifier,
    ):
        existing = make_type("Boleta de Venta")
        mock_classifier.infer_unclassified_vision.side_effect = _by_file({
            "a": _inferred("Boleta", "total"),
            "b": _inferred("Boleta", "total"),
        })

        async def _consolidate(label, documents):
            return _consolidated("Boleta de Venta", documents, "total")

        mock_classifier.consolidate_fields.side_effect = _consolidate
        mock_catalog.find_type_by_name.return_value = existing

        outcome = await service.infer_from_samples([_sample("a"), _sample("b")], owner_id)
        assert outcome.types[0].id == existing.id
        mock_catalog.save_type.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────────────
# Sample persistence
# ─────────────────────────────────────────────────────────────────────────────

async def test_failed_sample_save_deletes_upload(service, owner_id, mock_classifier, mock_catalog, mock_file_store):
    mock_classifier.infer_unclassified_vision.side_effect = _by_file({
        "a": _inferred("Boleta", "total"),
        "b": _inferred("Boleta", "total"),
    })
    original = mock_catalog.save_document.side_effect

    async def _save(**kwargs):
        if kwargs["filename"] == "b":
            raise RuntimeError("db down")
        return await original(**kwargs)

    mock_catalog.save_document.side_effect = _save

    outcome = await service.infer_from_samples([_sample("a"), _sample("b")], owner_id)

    assert outcome.types[0].documents_saved == 1
    assert outcome.types[0].sample_count == 2
    mock_file_store.delete.assert_awaited_once()
    assert mock_file_store.delete.await_args.args[0].endswith("-b")


async def test_database_error_on_one_sample_keeps_other_groups(
    service, owner_id, mock_classifier, mock_catalog, mock_file_store,
):
    mock_classifier.infer_unclassified_vision.side_effect = _by_file({
        "a": _inferred("Factura", "total"),
        "b": _inferred("Contrato", "partes"),
        "c": _inferred("Contrato", "partes"),
    })
    original = mock_catalog.save_document.side_effect

    async def _save(**kwargs):
        if kwargs["filename"] == "a":
            raise DBAPIError("INSERT INTO intake.documents", {}, Exception("unsupported Unicode escape sequence"))
        return await original(**kwargs)

    mock_catalog.save_document.side_effect = _save

    outcome = await service.infer_from_samples([_sample("a"), _sample("b"), _sample("c")], owner_id)

    saved = {t.name: t.documents_saved for t in outcome.types}
    assert saved == {"Factura": 0, "Contrato": 2}
    assert [c.kwargs["name"] for c in mock_catalog.save_type.await_args_list] == ["Factura", "Contrato"]
    mock_file_store.delete.assert_awaited_once()
