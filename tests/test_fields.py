"""Tests for the field catalog and per-kind value checks – no database required."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from idmp_registry.errors import AmbiguousChoice, DepthExceeded, DuplicateFieldName, InvalidFieldSpec, TypeMismatch
from idmp_registry.schemas.fields import (
    FieldDefinition,
    FieldKind,
    choice_field,
    component_field,
    concept_field,
    date_field,
    datetime_field,
    define_field,
    number_field,
    reference_field,
    select_field,
    text_field,
    walk_fields,
)
from idmp_registry.schemas.values import (
    ChoiceValue,
    CodeableConcept,
    Component,
    Quantity,
    check_value,
    decode_value,
    encode_value,
    iter_references,
)


def _make_tree(depth):
    node = Component(values={"label": f"level-{depth}"})
    if depth > 1:
        node.children.append(_make_tree(depth - 1))
    return node


# ---------------------------------------------------------------------------
# Construction-time validation
# ---------------------------------------------------------------------------

def test_text_field_defaults():
    field = text_field("name", "Name")
    assert field.kind == FieldKind.TEXT
    assert field.max_length == 255
    assert not field.mandatory


def test_empty_name_rejected():
    with pytest.raises(InvalidFieldSpec):
        text_field("  ")


def test_zero_max_length_rejected():
    with pytest.raises(InvalidFieldSpec, match="max length"):
        text_field("name", max_length=0)


def test_reference_without_types_rejected():
    with pytest.raises(InvalidFieldSpec, match="at least one resource type"):
        reference_field("ingredient", "Ingredient", [])


def test_choice_needs_two_alternatives():
    with pytest.raises(InvalidFieldSpec):
        choice_field("value", "Value", [FieldKind.QUANTITY])


def test_unknown_kind_rejected():
    with pytest.raises(InvalidFieldSpec, match="Unknown field kind"):
        define_field("blob", "payload")


def test_unknown_option_rejected():
    with pytest.raises(InvalidFieldSpec, match="unknown options"):
        define_field(FieldKind.TEXT, "name", colour="red")


def test_only_repeatable_kinds_take_multiple():
    with pytest.raises(InvalidFieldSpec, match="cannot be repeated"):
        text_field("name", multiple=True)


def test_component_sub_field_names_must_be_unique():
    with pytest.raises(DuplicateFieldName):
        component_field("name", "Name", [text_field("productName"), text_field("productName")])


def test_recursive_component_defaults_depth_and_child_element():
    field = component_field("packaging", "Packaging", [text_field("identifier")], recursive=True)
    assert field.max_depth == 2
    assert field.child_element == "packaging"


def test_definition_round_trips_through_dict():
    field = component_field(
        "strength",
        "Strength",
        [
            choice_field("presentation", "Presentation", [FieldKind.QUANTITY, FieldKind.TEXT]),
            concept_field("basis", "Basis"),
        ],
        multiple=True,
    )
    assert FieldDefinition.from_dict(field.to_dict()) == field


def test_walk_fields_yields_dotted_paths():
    field = component_field("name", "Name", [text_field("productName"), concept_field("usage")])
    paths = [path for path, _ in walk_fields([field])]
    assert paths == ["name", "name.productName", "name.usage"]


# ---------------------------------------------------------------------------
# Value checks
# ---------------------------------------------------------------------------

def test_text_too_long():
    with pytest.raises(TypeMismatch, match="longer than"):
        check_value(text_field("code", max_length=3), "ABCD")


def test_number_precision_overflow():
    field = number_field("strength", decimal_precision=2)
    assert check_value(field, "1.25") == Decimal("1.25")
    with pytest.raises(TypeMismatch, match="decimal places"):
        check_value(field, "1.255")


def test_boolean_is_not_a_number():
    with pytest.raises(TypeMismatch):
        check_value(number_field("amount"), True)


def test_naive_datetime_rejected():
    field = datetime_field("statusDate")
    with pytest.raises(TypeMismatch, match="UTC offset"):
        check_value(field, datetime(2024, 1, 1, 12, 0))
    aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert check_value(field, aware) == aware


def test_date_field_rejects_datetime():
    with pytest.raises(TypeMismatch):
        check_value(date_field("validFrom"), datetime(2024, 1, 1, tzinfo=timezone.utc))


def test_select_value_must_be_an_option():
    field = select_field("status", "Status", ["active", "inactive"])
    with pytest.raises(TypeMismatch):
        check_value(field, "retired")


def test_choice_rejects_two_populated_alternatives():
    with pytest.raises(AmbiguousChoice):
        ChoiceValue.from_alternatives(
            {
                FieldKind.QUANTITY: Quantity(value=Decimal("500"), unit="mg"),
                FieldKind.TEXT: "500 mg",
            }
        )


def test_choice_rejects_disallowed_alternative():
    field = choice_field("value", "Value", [FieldKind.QUANTITY, FieldKind.TEXT])
    with pytest.raises(TypeMismatch, match="not an allowed alternative"):
        check_value(field, ChoiceValue(FieldKind.BOOLEAN, True))


def test_recursive_component_depth_limit():
    field = component_field("packaging", "Packaging", [text_field("label")], recursive=True, max_depth=2)
    assert check_value(field, _make_tree(2)).depth() == 2
    with pytest.raises(DepthExceeded):
        check_value(field, _make_tree(3))


def test_non_recursive_component_rejects_children():
    field = component_field("name", "Name", [text_field("label")])
    with pytest.raises(TypeMismatch, match="does not nest"):
        check_value(field, _make_tree(2))


def test_iter_references_reaches_into_components():
    field = component_field(
        "containedItem",
        "Contained Item",
        [reference_field("item", "Item", ["ManufacturedItem"])],
        multiple=True,
    )
    value = [Component(values={"item": "abc"}), Component(values={"item": "def"})]
    assert [target for _, target in iter_references(field, value)] == ["abc", "def"]


def test_storage_codec_keeps_typed_values():
    field = component_field(
        "characteristic",
        "Characteristic",
        [
            concept_field("propertyType", element="type"),
            choice_field("value", "Value", [FieldKind.QUANTITY, FieldKind.DATE]),
        ],
        multiple=True,
    )
    value = [
        Component(
            values={
                "propertyType": CodeableConcept.of("http://example.org/props", "shelf-life"),
                "value": ChoiceValue(FieldKind.DATE, date(2027, 3, 31)),
            }
        )
    ]
    stored = encode_value(field, value)
    assert stored[0]["values"]["value"] == {"kind": "date", "value": "2027-03-31"}
    assert decode_value(field, stored) == value
