"""Tests for the resource store – locations, uniqueness and reference integrity."""

import pytest

from idmp_registry.errors import DuplicateKey, NotFound, TypeMismatch
from idmp_registry.schemas.fields import reference_field, text_field
from idmp_registry.services import resource_store

SUBSTANCES = "/IDMP/Substance"
PRODUCTS = "/IDMP/MedicinalProduct"


def _make_substance(store, key="paracetamol", identifier="362O9ITL9D", **values):
    return store.create("Substance", key, SUBSTANCES, {"identifier": identifier, **values})


def test_create_and_read_back(store, paracetamol_types):
    created = _make_substance(store, name="Paracétamol")

    assert created.path == "/IDMP/Substance/paracetamol"
    assert created.version_id == 1
    assert store.get_by_id(created.id).values == {"identifier": "362O9ITL9D", "name": "Paracétamol"}
    assert store.get_by_location("/IDMP/Substance/paracetamol").id == created.id


def test_parent_path_is_normalized(store, paracetamol_types):
    created = store.create("Substance", "ibuprofen", "IDMP/Substance/", {"identifier": "WK2XYI10QM"})
    assert created.parent == "/IDMP/Substance"


def test_duplicate_location_rejected(store, paracetamol_types):
    _make_substance(store)
    with pytest.raises(DuplicateKey):
        _make_substance(store, identifier="OTHER")
    # a different key at the same parent is fine
    assert _make_substance(store, key="paracetamol-2", identifier="OTHER").key == "paracetamol-2"


def test_unique_field_enforced(store, paracetamol_types):
    _make_substance(store)
    with pytest.raises(DuplicateKey, match="identifier"):
        _make_substance(store, key="acetaminophen")


def test_unknown_type_and_field(store, paracetamol_types):
    with pytest.raises(NotFound):
        store.create("Patient", "p1", "/", {})
    with pytest.raises(TypeMismatch, match="no field"):
        store.create("Substance", "x", SUBSTANCES, {"colour": "white"})


def test_key_with_slash_rejected(store, paracetamol_types):
    with pytest.raises(TypeMismatch, match="Invalid key"):
        store.create("Substance", "a/b", SUBSTANCES, {})


def test_reference_must_point_at_allowed_type(store, registry, paracetamol_types):
    registry.upsert("Organization", "IDMP", [text_field("name")])
    org = store.create("Organization", "acme", "/IDMP/Organization", {"name": "Acme Pharma"})

    with pytest.raises(TypeMismatch, match="cannot reference a Organization"):
        store.create("MedicinalProduct", "tylenol", PRODUCTS, {"ingredient": [org.id]})
    with pytest.raises(TypeMismatch, match="unknown instance"):
        store.create("MedicinalProduct", "tylenol", PRODUCTS, {"ingredient": ["missing-id"]})

    substance = _make_substance(store)
    product = store.create("MedicinalProduct", "tylenol", PRODUCTS, {"ingredient": [substance.id]})
    assert product.values["ingredient"] == [substance.id]


def test_update_merges_and_clears(store, paracetamol_types):
    created = _make_substance(store, name="Paracetamol", casNumber="103-90-2")

    updated = store.update(created.id, {"name": "Paracétamol", "casNumber": None})
    assert updated.values == {"identifier": "362O9ITL9D", "name": "Paracétamol"}
    assert updated.version_id == 2


def test_update_checks_uniqueness_against_other_instances(store, paracetamol_types):
    _make_substance(store)
    other = _make_substance(store, key="ibuprofen", identifier="WK2XYI10QM")
    with pytest.raises(DuplicateKey):
        store.update(other.id, {"identifier": "362O9ITL9D"})
    # re-writing an instance's own value is not a clash
    assert store.update(other.id, {"identifier": "WK2XYI10QM"}).version_id == 2


def test_delete_leaves_referrers_untouched(store, paracetamol_types):
    substance = _make_substance(store)
    product = store.create("MedicinalProduct", "tylenol", PRODUCTS, {"ingredient": [substance.id]})

    store.delete(substance.id)
    assert store.find_by_id(substance.id) is None
    assert store.get_by_id(product.id).values["ingredient"] == [substance.id]
    with pytest.raises(NotFound):
        store.delete(substance.id)


def test_iter_after_resumes_past_mark(store, paracetamol_types):
    first = _make_substance(store)
    second = _make_substance(store, key="ibuprofen", identifier="WK2XYI10QM")

    seen = list(store.iter_after("Substance"))
    assert [instance.id for _, instance in seen] == [first.id, second.id]
    mark = seen[0][0]
    assert [instance.id for _, instance in store.iter_after("Substance", mark)] == [second.id]


def test_multi_reference_to_several_types(store, registry, paracetamol_types):
    registry.upsert(
        "ClinicalUseDefinition",
        "IDMP",
        [reference_field("subject", "Subject", ["MedicinalProduct", "Substance"], multiple=True)],
    )
    substance = _make_substance(store)
    product = store.create("MedicinalProduct", "tylenol", PRODUCTS, {"ingredient": [substance.id]})
    use = store.create(
        "ClinicalUseDefinition", "hepatotoxicity", "/IDMP/ClinicalUseDefinition",
        {"subject": [product.id, substance.id]},
    )
    assert store.type_of(use.values["subject"][0]) == "MedicinalProduct"
    assert store.count("ClinicalUseDefinition") == 1


def test_conflicting_insert_keeps_the_open_transaction(store, paracetamol_types, monkeypatch):
    """An insert that loses the location race rolls back only itself."""
    first = store.create("Substance", "paracetamol", "/IDMP/Substance", {"name": "Paracetamol"})
    # pretend another writer took the location after our existence check
    monkeypatch.setattr(store, "_find_at", lambda parent, key: None)
    with pytest.raises(DuplicateKey):
        store.create("Substance", "paracetamol", "/IDMP/Substance", {"name": "Acetaminophen"})
    monkeypatch.undo()

    assert store.get_by_id(first.id).values == {"name": "Paracetamol"}
    assert store.count("Substance") == 1
    assert paracetamol_types.find("MedicinalProduct") is not None


def test_location_locks_come_from_a_fixed_pool(store, paracetamol_types):
    for n in range(resource_store.LOCK_STRIPES * 3):
        store.create("Substance", f"substance-{n}", "/IDMP/Substance", {"name": f"Substance {n}"})

    assert len(resource_store._key_locks) == resource_store.LOCK_STRIPES
    lock = resource_store._lock_for("/IDMP/Substance", "substance-1")
    assert lock is resource_store._lock_for("/IDMP/Substance", "substance-1")
