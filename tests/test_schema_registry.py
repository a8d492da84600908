"""Tests for the schema registry."""

import pytest

from idmp_registry.errors import DuplicateFieldName, InvalidFieldSpec, NotFound, UnknownReferencedType
from idmp_registry.schemas.fields import concept_field, reference_field, text_field


def _substance_fields():
    return [
        text_field("identifier", "UNII", unique=True),
        text_field("name", "Name"),
        text_field("casNumber", "CAS Number"),
    ]


def test_upsert_creates_type(registry):
    created = registry.upsert("Substance", "IDMP", _substance_fields(), "Substance (ISO 11238)")
    assert created.version == 1
    assert created.field_names == ["identifier", "name", "casNumber"]
    assert registry.get("Substance") == created


def test_upsert_is_idempotent(registry):
    first = registry.upsert("Substance", "IDMP", _substance_fields())
    second = registry.upsert("Substance", "IDMP", _substance_fields())
    assert second == first
    assert second.version == 1


def test_changed_fields_bump_version(registry):
    registry.upsert("Substance", "IDMP", _substance_fields())
    changed = registry.upsert("Substance", "IDMP", _substance_fields() + [concept_field("category")])
    assert changed.version == 2
    assert changed.get_field("category") is not None


def test_change_clears_derived_document_schema(registry):
    registry.upsert("Substance", "IDMP", _substance_fields())
    assert registry.set_document_schema("Substance", {"type": "object"}) is True
    assert registry.set_document_schema("Substance", {"type": "object"}) is False

    registry.upsert("Substance", "IDMP", _substance_fields()[:2])
    assert registry.get("Substance").document_schema is None


def test_duplicate_field_names_rejected(registry):
    with pytest.raises(DuplicateFieldName):
        registry.upsert("Substance", "IDMP", [text_field("name"), text_field("name")])


def test_empty_type_name_rejected(registry):
    with pytest.raises(InvalidFieldSpec):
        registry.upsert("", "IDMP", _substance_fields())


def test_forward_reference_accepted_then_resolved(registry):
    registry.upsert(
        "Ingredient",
        "IDMP",
        [reference_field("usedFor", "For", ["MedicinalProduct"], multiple=True, element="for")],
    )
    assert registry.unresolved_references() == ["Ingredient.usedFor -> MedicinalProduct"]
    with pytest.raises(UnknownReferencedType) as excinfo:
        registry.resolve()
    assert excinfo.value.missing == ["Ingredient.usedFor -> MedicinalProduct"]

    registry.upsert("MedicinalProduct", "IDMP", [text_field("identifier")])
    registry.resolve()
    assert registry.unresolved_references() == []


def test_get_unknown_type(registry):
    assert registry.find("Nope") is None
    with pytest.raises(NotFound):
        registry.get("Nope")


def test_rename_field_carries_values(registry, store):
    registry.upsert("Substance", "IDMP", _substance_fields())
    instance = store.create("Substance", "paracetamol", "/IDMP/Substance", {"casNumber": "103-90-2"})

    renamed = registry.rename_field("Substance", "casNumber", "cas")
    assert renamed.field_names == ["identifier", "name", "cas"]
    assert store.get_by_id(instance.id).values == {"cas": "103-90-2"}

    # applying the same rename again is a no-op
    assert registry.rename_field("Substance", "casNumber", "cas").version == renamed.version


def test_remove_type(registry):
    registry.upsert("Substance", "IDMP", _substance_fields())
    registry.remove("Substance")
    assert "Substance" not in registry.names()
    with pytest.raises(NotFound):
        registry.remove("Substance")
