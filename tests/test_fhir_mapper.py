"""Tests for the FHIR mapper – instance <-> document conversion."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from idmp_registry.errors import (
    AmbiguousChoice,
    DepthExceeded,
    DocumentValidationError,
    MissingRequiredField,
    TypeMismatch,
    UnsupportedResourceType,
)
from idmp_registry.schemas.fields import FieldKind, number_field, text_field
from idmp_registry.schemas.idmp import manufactured_item, medicinal_product, name_from_legacy_string, substance
from idmp_registry.schemas.shapes import ATC_SYSTEM, CAS_SYSTEM, MPID_SYSTEM, UCUM_SYSTEM
from idmp_registry.schemas.values import ChoiceValue, CodeableConcept, Component, Quantity
from idmp_registry.services.fhir_mapper import FhirMapper, bundle, medication_to_medicinal_product, operation_outcome


def _content(doc):
    """A document without its server-assigned envelope."""
    return {k: v for k, v in doc.items() if k not in ("id", "meta")}


def _install(registry, *definitions):
    for definition in definitions:
        registry.upsert(definition.name, definition.group, definition.fields, definition.description)


@pytest.fixture
def mapper(store):
    return FhirMapper(store)


# ---------------------------------------------------------------------------
# Instance -> document
# ---------------------------------------------------------------------------

def test_substance_document(store, mapper, paracetamol_types):
    instance = store.create(
        "Substance", "paracetamol", "/IDMP/Substance",
        {"identifier": "362O9ITL9D", "name": "Paracétamol"},
    )
    doc = mapper.to_document(instance)

    assert _content(doc) == {
        "resourceType": "Substance",
        "identifier": [{"value": "362O9ITL9D"}],
        "code": {"text": "Paracétamol"},
    }
    assert doc["id"] == instance.id
    assert doc["meta"]["versionId"] == "1"
    assert "casNumber" not in doc


def test_ingredient_rendered_as_item_reference(store, mapper, paracetamol_types):
    paracetamol = store.create("Substance", "paracetamol", "/IDMP/Substance", {"identifier": "362O9ITL9D"})
    product = store.create(
        "MedicinalProduct", "tylenol", "/IDMP/MedicinalProduct",
        {"identifier": "MPID-1", "ingredient": [paracetamol.id]},
    )
    doc = mapper.to_document(product)

    assert doc["ingredient"] == [{"itemReference": {"reference": f"Substance/{paracetamol.id}"}}]
    assert doc["identifier"] == [{"system": MPID_SYSTEM, "value": "MPID-1"}]


def test_cas_number_uses_its_own_identifier_system(store, mapper, paracetamol_types):
    instance = store.create(
        "Substance", "paracetamol", "/IDMP/Substance",
        {"identifier": "362O9ITL9D", "casNumber": "103-90-2"},
    )
    assert mapper.to_document(instance)["identifier"] == [
        {"value": "362O9ITL9D"},
        {"use": "secondary", "system": CAS_SYSTEM, "value": "103-90-2"},
    ]


def test_dangling_reference_keeps_first_allowed_type(store, mapper, paracetamol_types):
    paracetamol = store.create("Substance", "paracetamol", "/IDMP/Substance", {"identifier": "362O9ITL9D"})
    product = store.create(
        "MedicinalProduct", "tylenol", "/IDMP/MedicinalProduct", {"ingredient": [paracetamol.id]}
    )
    store.delete(paracetamol.id)
    doc = mapper.to_document(store.get_by_id(product.id))
    assert doc["ingredient"][0]["itemReference"]["reference"] == f"Substance/{paracetamol.id}"


def test_type_without_shape_uses_identifier_array(store, mapper, registry):
    registry.upsert(
        "Measure",
        "Test",
        [
            text_field("identifier", "Identifier", unique=True),
            number_field("amount", "Amount", decimal_precision=2),
        ],
    )
    instance = store.create("Measure", "m1", "/Test", {"identifier": "M1", "amount": Decimal("1.50")})
    doc = mapper.to_document(instance)

    assert doc["identifier"] == [{"value": "M1"}]
    assert doc["amount"] == Decimal("1.50")
    assert mapper.from_document(doc) == instance.values


# ---------------------------------------------------------------------------
# Document -> values
# ---------------------------------------------------------------------------

def test_round_trip_of_full_product(store, mapper, registry):
    _install(registry, substance(), medicinal_product(), manufactured_item())
    paracetamol = store.create(
        "Substance", "paracetamol", "/IDMP/Substance", {"identifier": "362O9ITL9D", "name": "Paracetamol"}
    )
    values = {
        "identifier": "MPID-1",
        "name": [name_from_legacy_string("Tylenol 500 mg", "BAN")],
        "classification": [CodeableConcept.of(ATC_SYSTEM, "N02BE01", display="paracetamol")],
        "statusDate": datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc),
        "ingredient": [paracetamol.id],
        "characteristic": [
            Component(
                values={
                    "propertyType": CodeableConcept(text="Tablet weight"),
                    "value": ChoiceValue(FieldKind.QUANTITY, Quantity(value=Decimal("650"), unit="mg", system=UCUM_SYSTEM)),
                }
            )
        ],
    }
    instance = store.create("MedicinalProduct", "tylenol", "/IDMP/MedicinalProduct", values)
    doc = mapper.to_document(instance)

    assert doc["name"][0]["productName"] == "Tylenol 500 mg"
    assert doc["characteristic"][0]["valueQuantity"]["unit"] == "mg"
    assert mapper.from_document(doc) == instance.values


def test_unknown_resource_type(mapper):
    with pytest.raises(UnsupportedResourceType):
        mapper.from_document({"resourceType": "Patient"})


def test_all_missing_required_fields_reported_together(mapper, registry):
    _install(registry, substance(), medicinal_product())
    doc = {"resourceType": "MedicinalProduct", "name": [{"type": {"text": "BAN"}}]}

    with pytest.raises(DocumentValidationError) as excinfo:
        mapper.from_document(doc)

    missing = [e.field_name for e in excinfo.value.errors]
    assert all(isinstance(e, MissingRequiredField) for e in excinfo.value.errors)
    assert missing == ["identifier", "name.productName", "ingredient"]
    assert {issue["code"] for issue in excinfo.value.issues()} == {"required"}


def test_two_choice_alternatives_rejected(mapper, registry):
    _install(registry, substance(), medicinal_product())
    doc = {
        "resourceType": "MedicinalProduct",
        "identifier": [{"value": "MPID-1"}],
        "name": [{"productName": "Tylenol"}],
        "characteristic": [
            {"type": {"text": "Colour"}, "valueBoolean": True, "valueMarkdown": "white"}
        ],
    }
    with pytest.raises(AmbiguousChoice):
        mapper.from_document(doc)


def test_ambiguous_identifier_rejected(mapper, paracetamol_types):
    doc = {
        "resourceType": "Substance",
        "identifier": [{"value": "362O9ITL9D"}, {"system": "urn:other", "value": "X"}],
    }
    with pytest.raises(AmbiguousChoice):
        mapper.from_document(doc)


def test_component_nesting_beyond_max_depth(mapper, registry):
    _install(registry, manufactured_item())
    tablet_type = {"text": "Layer"}
    doc = {
        "resourceType": "ManufacturedItem",
        "manufacturedDoseForm": {"text": "Tablet"},
        "component": [
            {
                "type": tablet_type,
                "component": [{"type": tablet_type, "component": [{"type": tablet_type}]}],
            }
        ],
    }
    with pytest.raises(DepthExceeded):
        mapper.from_document(doc)

    doc["component"][0]["component"][0].pop("component")
    values = mapper.from_document(doc)
    assert values["component"][0].depth() == 2


def test_reference_to_disallowed_type(mapper, paracetamol_types):
    doc = {
        "resourceType": "MedicinalProduct",
        "ingredient": [{"itemReference": {"reference": "Organization/abc"}}],
    }
    with pytest.raises(TypeMismatch, match="cannot reference"):
        mapper.from_document(doc)


def test_naive_datetime_rejected(mapper, registry):
    _install(registry, substance())
    doc = {
        "resourceType": "Substance",
        "identifier": [{"value": "362O9ITL9D"}],
        "code": {"text": "Paracetamol"},
        "expiry": "2027-01-01T00:00:00",
    }
    with pytest.raises(TypeMismatch, match="UTC offset"):
        mapper.from_document(doc)


# ---------------------------------------------------------------------------
# Document helpers
# ---------------------------------------------------------------------------

def test_bundle_wraps_documents():
    doc = {"resourceType": "Substance", "id": "abc"}
    result = bundle([doc], total=5, base_url="http://testserver/api/v1/fhir/")
    assert result["type"] == "searchset"
    assert result["total"] == 5
    assert result["entry"][0]["fullUrl"] == "http://testserver/api/v1/fhir/Substance/abc"
    assert result["entry"][0]["search"] == {"mode": "match"}


def test_medication_transform():
    medication = {
        "resourceType": "Medication",
        "id": "med-1",
        "code": {
            "coding": [
                {"system": ATC_SYSTEM, "code": "N02BE01", "display": "paracetamol"},
                {"system": "http://snomed.info/sct", "code": "322236009", "display": "Paracetamol 500mg tablet"},
            ]
        },
        "doseForm": {"text": "Tablet"},
        "ingredient": [{"item": {"reference": {"reference": "Substance/abc"}}}],
    }
    product = medication_to_medicinal_product(medication)

    assert product["resourceType"] == "MedicinalProduct"
    assert product["name"] == [{"productName": "paracetamol"}]
    assert product["classification"] == [{"coding": [medication["code"]["coding"][0]]}]
    assert product["combinedPharmaceuticalDoseForm"] == {"text": "Tablet"}
    assert product["ingredient"] == [{"itemReference": {"reference": "Substance/abc"}}]


def test_medication_transform_rejects_other_resources():
    with pytest.raises(UnsupportedResourceType):
        medication_to_medicinal_product({"resourceType": "Substance"})


def test_error_renders_as_operation_outcome():
    outcome = AmbiguousChoice("2 MedicinalProducts match code 'N02BE01'").to_operation_outcome()
    assert outcome == operation_outcome(
        [{"severity": "error", "code": "multiple-matches", "diagnostics": "2 MedicinalProducts match code 'N02BE01'"}]
    )
    assert outcome["resourceType"] == "OperationOutcome"
