"""Tests for JSON schema validation of FHIR documents."""

import pytest

from idmp_registry.errors import DocumentValidationError
from idmp_registry.schemas.fhir import build_document_schema
from idmp_registry.schemas.idmp import manufactured_item, medicinal_product, substance
from idmp_registry.services.schema_registry import ResourceType
from idmp_registry.services.validation import check_document, validate_against_schema


def _resource_type(definition):
    return ResourceType(definition.name, definition.group, tuple(definition.fields), definition.description)


SUBSTANCE_SCHEMA = build_document_schema(_resource_type(substance()))
PRODUCT_SCHEMA = build_document_schema(_resource_type(medicinal_product()))


def _make_product(**overrides):
    doc = {
        "resourceType": "MedicinalProduct",
        "identifier": [{"value": "MPID-1"}],
        "name": [{"productName": "Tylenol"}],
        "classification": [{"coding": [{"system": "http://www.whocc.no/atc", "code": "N02BE01"}]}],
        "ingredient": [{"itemReference": {"reference": "Substance/abc"}}],
    }
    doc.update(overrides)
    return doc


def test_valid_substance():
    record = {
        "resourceType": "Substance",
        "identifier": [{"value": "362O9ITL9D"}],
        "code": {"text": "Paracetamol"},
        "expiry": "2027-01-01T00:00:00Z",
    }
    assert validate_against_schema(record, SUBSTANCE_SCHEMA) == []


def test_missing_required_elements():
    errors = validate_against_schema({"resourceType": "Substance"}, SUBSTANCE_SCHEMA)
    assert any("identifier" in e for e in errors)
    assert any("code" in e for e in errors)


def test_wrong_resource_type_constant():
    errors = validate_against_schema(_make_product(resourceType="Medication"), PRODUCT_SCHEMA)
    assert any(e.startswith("resourceType:") for e in errors)


def test_valid_product():
    assert validate_against_schema(_make_product(), PRODUCT_SCHEMA) == []


def test_reference_target_type_checked():
    doc = _make_product(ingredient=[{"itemReference": {"reference": "Organization/abc"}}])
    errors = validate_against_schema(doc, PRODUCT_SCHEMA)
    assert any(e.startswith("ingredient.0.itemReference.reference:") for e in errors)


def test_invalid_datetime_format():
    doc = _make_product(statusDate="01/05/2024")
    assert validate_against_schema(doc, PRODUCT_SCHEMA)


def test_choice_alternatives_are_typed():
    doc = _make_product(characteristic=[{"type": {"text": "Scored"}, "valueBoolean": "yes"}])
    errors = validate_against_schema(doc, PRODUCT_SCHEMA)
    assert any("valueBoolean" in e for e in errors)


def test_recursive_component_schema_uses_definitions():
    schema = build_document_schema(_resource_type(manufactured_item()))
    assert schema["properties"]["component"]["items"] == {"$ref": "#/definitions/component"}
    assert "component" in schema["definitions"]["component"]["properties"]

    doc = {
        "resourceType": "ManufacturedItem",
        "manufacturedDoseForm": {"text": "Tablet"},
        "component": [{"type": {"text": "Core"}, "component": [{"function": [{"text": "Coating"}]}]}],
    }
    errors = validate_against_schema(doc, schema)
    assert errors == ["component.0.component.0: 'type' is a required property"]


def test_check_document_collects_every_error():
    with pytest.raises(DocumentValidationError) as excinfo:
        check_document({"resourceType": "MedicinalProduct"}, _resource_type(medicinal_product()))
    assert len(excinfo.value.errors) == 3
    assert {issue["code"] for issue in excinfo.value.issues()} == {"value"}
