"""
Embedded value types and the per-kind value checks.

Codings, CodeableConcepts, Quantities, components and choice values are owned
by the instance that holds them; they have no identity of their own and are
stored inline with the instance's field values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator

from idmp_registry.errors import AmbiguousChoice, DepthExceeded, TypeMismatch
from idmp_registry.schemas.fields import FieldDefinition, FieldKind


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coding:
    system: str | None = None
    code: str | None = None
    display: str | None = None
    version: str | None = None
    user_selected: bool | None = None

    def to_fhir(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.system is not None:
            data["system"] = self.system
        if self.version is not None:
            data["version"] = self.version
        if self.code is not None:
            data["code"] = self.code
        if self.display is not None:
            data["display"] = self.display
        if self.user_selected is not None:
            data["userSelected"] = self.user_selected
        return data

    @classmethod
    def from_fhir(cls, data: dict[str, Any]) -> Coding:
        if not isinstance(data, dict):
            raise TypeMismatch(f"Coding must be an object, got {type(data).__name__}")
        return cls(
            system=data.get("system"),
            code=data.get("code"),
            display=data.get("display"),
            version=data.get("version"),
            user_selected=data.get("userSelected"),
        )


@dataclass(frozen=True)
class CodeableConcept:
    text: str | None = None
    coding: tuple[Coding, ...] = ()

    @classmethod
    def of(cls, system: str | None, code: str, display: str | None = None, text: str | None = None) -> CodeableConcept:
        return cls(text=text, coding=(Coding(system=system, code=code, display=display),))

    @property
    def codes(self) -> list[str]:
        return [c.code for c in self.coding if c.code is not None]

    def to_fhir(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.text is not None:
            data["text"] = self.text
        if self.coding:
            data["coding"] = [c.to_fhir() for c in self.coding]
        return data

    @classmethod
    def from_fhir(cls, data: dict[str, Any]) -> CodeableConcept:
        if not isinstance(data, dict):
            raise TypeMismatch(f"CodeableConcept must be an object, got {type(data).__name__}")
        codings = data.get("coding") or []
        if not isinstance(codings, list):
            raise TypeMismatch("CodeableConcept.coding must be an array")
        return cls(text=data.get("text"), coding=tuple(Coding.from_fhir(c) for c in codings))


@dataclass(frozen=True)
class Quantity:
    value: Decimal | None = None
    unit: str | None = None
    system: str | None = None
    code: str | None = None
    comparator: str | None = None

    def to_fhir(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.value is not None:
            data["value"] = self.value
        if self.comparator is not None:
            data["comparator"] = self.comparator
        for key in ("unit", "system", "code"):
            if getattr(self, key) is not None:
                data[key] = getattr(self, key)
        return data

    @classmethod
    def from_fhir(cls, data: dict[str, Any]) -> Quantity:
        if not isinstance(data, dict):
            raise TypeMismatch(f"Quantity must be an object, got {type(data).__name__}")
        raw = data.get("value")
        return cls(
            value=to_decimal(raw, "Quantity.value") if raw is not None else None,
            unit=data.get("unit"),
            system=data.get("system"),
            code=data.get("code"),
            comparator=data.get("comparator"),
        )

    def to_storage(self) -> dict[str, Any]:
        data = self.to_fhir()
        if self.value is not None:
            data["value"] = str(self.value)
        return data


@dataclass
class Component:
    """An embedded record; recursive components carry children of the same shape."""

    values: dict[str, Any] = field(default_factory=dict)
    children: list[Component] = field(default_factory=list)

    def depth(self) -> int:
        return 1 + max((child.depth() for child in self.children), default=0)


@dataclass(frozen=True)
class ChoiceValue:
    """The single populated alternative of a polymorphic value[x] field."""

    kind: FieldKind
    value: Any

    @classmethod
    def from_alternatives(cls, alternatives: dict[FieldKind | str, Any]) -> ChoiceValue | None:
        populated = [(FieldKind(k), v) for k, v in alternatives.items() if v is not None]
        if len(populated) > 1:
            kinds = ", ".join(kind.value for kind, _ in populated)
            raise AmbiguousChoice(f"More than one choice alternative is populated: {kinds}")
        if not populated:
            return None
        kind, value = populated[0]
        return cls(kind=kind, value=value)


# ---------------------------------------------------------------------------
# Per-kind checks
# ---------------------------------------------------------------------------

def to_decimal(value: Any, label: str) -> Decimal:
    if isinstance(value, bool):
        raise TypeMismatch(f"{label}: expected a number, got a boolean")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise TypeMismatch(f"{label}: '{value}' is not a number") from None
    else:
        raise TypeMismatch(f"{label}: expected a number, got {type(value).__name__}")
    if not result.is_finite():
        raise TypeMismatch(f"{label}: number must be finite")
    return result


def decimal_places(value: Decimal) -> int:
    exponent = value.as_tuple().exponent
    return -exponent if isinstance(exponent, int) and exponent < 0 else 0


def alternative_field(choice: FieldDefinition, kind: FieldKind) -> FieldDefinition:
    """Synthetic field describing one alternative of a choice field."""
    return FieldDefinition(
        name=choice.name,
        kind=kind,
        title=choice.title,
        referenced_types=choice.referenced_types if kind == FieldKind.SINGLE_REFERENCE else (),
        decimal_precision=choice.decimal_precision if kind == FieldKind.NUMBER else None,
    )


def _expect(value: Any, expected: type | tuple[type, ...], label: str, what: str) -> None:
    if not isinstance(value, expected):
        raise TypeMismatch(f"{label}: expected {what}, got {type(value).__name__}")


def _as_list(value: Any, label: str) -> list[Any]:
    if not isinstance(value, (list, tuple)):
        raise TypeMismatch(f"{label}: expected a list, got {type(value).__name__}")
    return list(value)


def check_value(definition: FieldDefinition, value: Any, depth: int = 1) -> Any:
    """
    Validate a value against its field definition and return it normalized.

    Raises TypeMismatch when the value does not match the field kind.
    """
    label = f"Field '{definition.name}'"
    if definition.is_repeated and definition.kind not in (FieldKind.MULTI_SELECT, FieldKind.MULTI_REFERENCE):
        return [_check_single(definition, item, label, depth) for item in _as_list(value, label)]
    return _check_single(definition, value, label, depth)


def _check_single(definition: FieldDefinition, value: Any, label: str, depth: int) -> Any:
    kind = definition.kind

    if kind in (FieldKind.TEXT, FieldKind.LONGTEXT):
        _expect(value, str, label, "a string")
        if definition.max_length is not None and len(value) > definition.max_length:
            raise TypeMismatch(f"{label}: longer than {definition.max_length} characters")
        return value

    if kind == FieldKind.DATE:
        if isinstance(value, datetime) or not isinstance(value, date):
            raise TypeMismatch(f"{label}: expected a calendar date")
        return value

    if kind == FieldKind.DATETIME:
        _expect(value, datetime, label, "a datetime")
        if value.tzinfo is None or value.utcoffset() is None:
            raise TypeMismatch(f"{label}: datetime must carry a UTC offset")
        return value

    if kind == FieldKind.NUMBER:
        number = to_decimal(value, label)
        precision = definition.decimal_precision
        if precision is not None and decimal_places(number) > precision:
            raise TypeMismatch(f"{label}: {number} has more than {precision} decimal places")
        return number

    if kind == FieldKind.BOOLEAN:
        _expect(value, bool, label, "a boolean")
        return value

    if kind == FieldKind.SINGLE_SELECT:
        _expect(value, str, label, "a string")
        if value not in definition.options:
            raise TypeMismatch(f"{label}: '{value}' is not one of {list(definition.options)}")
        return value

    if kind == FieldKind.MULTI_SELECT:
        items = _as_list(value, label)
        for item in items:
            if item not in definition.options:
                raise TypeMismatch(f"{label}: '{item}' is not one of {list(definition.options)}")
        return items

    if kind == FieldKind.SINGLE_REFERENCE:
        _expect(value, str, label, "an instance id")
        return value

    if kind == FieldKind.MULTI_REFERENCE:
        items = _as_list(value, label)
        for item in items:
            _expect(item, str, label, "an instance id")
        return items

    if kind == FieldKind.CODEABLE_CONCEPT:
        _expect(value, CodeableConcept, label, "a CodeableConcept")
        return value

    if kind == FieldKind.QUANTITY:
        _expect(value, Quantity, label, "a Quantity")
        return value

    if kind == FieldKind.POLYMORPHIC_CHOICE:
        _expect(value, ChoiceValue, label, "a ChoiceValue")
        if value.kind not in definition.alternatives:
            raise TypeMismatch(f"{label}: '{value.kind.value}' is not an allowed alternative")
        inner = check_value(alternative_field(definition, value.kind), value.value, depth)
        return ChoiceValue(kind=value.kind, value=inner)

    if kind == FieldKind.COMPONENT:
        _expect(value, Component, label, "a Component")
        if definition.recursive and depth > definition.max_depth:
            raise DepthExceeded(f"{label}: nesting exceeds max depth {definition.max_depth}")
        checked: dict[str, Any] = {}
        for name, sub_value in value.values.items():
            sub = definition.sub_field(name)
            if sub is None:
                raise TypeMismatch(f"{label}: unknown sub-field '{name}'")
            if sub_value is not None:
                checked[name] = check_value(sub, sub_value, depth)
        if value.children and not definition.recursive:
            raise TypeMismatch(f"{label}: component does not nest")
        children = [_check_single(definition, child, label, depth + 1) for child in value.children]
        return Component(values=checked, children=children)

    raise TypeMismatch(f"{label}: unsupported kind {kind!r}")


def iter_references(definition: FieldDefinition, value: Any) -> Iterator[tuple[FieldDefinition, str]]:
    """Yield (field, referenced id) for every reference held by a value."""
    if value is None:
        return
    if definition.kind == FieldKind.SINGLE_REFERENCE:
        yield definition, value
    elif definition.kind == FieldKind.MULTI_REFERENCE:
        for item in value:
            yield definition, item
    elif definition.kind == FieldKind.POLYMORPHIC_CHOICE:
        yield from iter_references(alternative_field(definition, value.kind), value.value)
    elif definition.kind == FieldKind.COMPONENT:
        components = value if isinstance(value, list) else [value]
        for component in components:
            yield from _component_references(definition, component)


def _component_references(definition: FieldDefinition, component: Component) -> Iterator[tuple[FieldDefinition, str]]:
    for name, sub_value in component.values.items():
        sub = definition.sub_field(name)
        if sub is not None:
            yield from iter_references(sub, sub_value)
    for child in component.children:
        yield from _component_references(definition, child)


# ---------------------------------------------------------------------------
# Storage codec (JSON-safe form kept in the resources table)
# ---------------------------------------------------------------------------

def encode_value(definition: FieldDefinition, value: Any) -> Any:
    if value is None:
        return None
    if definition.multiple:
        return [_encode_single(definition, item) for item in value]
    return _encode_single(definition, value)


def _encode_single(definition: FieldDefinition, value: Any) -> Any:
    kind = definition.kind
    if kind in (FieldKind.DATE, FieldKind.DATETIME):
        return value.isoformat()
    if kind == FieldKind.NUMBER:
        return str(value)
    if kind in (FieldKind.MULTI_SELECT, FieldKind.MULTI_REFERENCE):
        return list(value)
    if kind == FieldKind.CODEABLE_CONCEPT:
        return value.to_fhir()
    if kind == FieldKind.QUANTITY:
        return value.to_storage()
    if kind == FieldKind.POLYMORPHIC_CHOICE:
        return {
            "kind": value.kind.value,
            "value": _encode_single(alternative_field(definition, value.kind), value.value),
        }
    if kind == FieldKind.COMPONENT:
        return {
            "values": {
                name: encode_value(definition.sub_field(name), sub_value)
                for name, sub_value in value.values.items()
            },
            "children": [_encode_single(definition, child) for child in value.children],
        }
    return value


def decode_value(definition: FieldDefinition, raw: Any) -> Any:
    if raw is None:
        return None
    if definition.multiple:
        return [_decode_single(definition, item) for item in raw]
    return _decode_single(definition, raw)


def _decode_single(definition: FieldDefinition, raw: Any) -> Any:
    kind = definition.kind
    if kind == FieldKind.DATE:
        return date.fromisoformat(raw)
    if kind == FieldKind.DATETIME:
        return datetime.fromisoformat(raw)
    if kind == FieldKind.NUMBER:
        return Decimal(raw)
    if kind in (FieldKind.MULTI_SELECT, FieldKind.MULTI_REFERENCE):
        return list(raw)
    if kind == FieldKind.CODEABLE_CONCEPT:
        return CodeableConcept.from_fhir(raw)
    if kind == FieldKind.QUANTITY:
        return Quantity.from_fhir(raw)
    if kind == FieldKind.POLYMORPHIC_CHOICE:
        alt_kind = FieldKind(raw["kind"])
        return ChoiceValue(
            kind=alt_kind,
            value=_decode_single(alternative_field(definition, alt_kind), raw["value"]),
        )
    if kind == FieldKind.COMPONENT:
        values = {}
        for name, sub_raw in raw.get("values", {}).items():
            sub = definition.sub_field(name)
            if sub is not None:
                values[name] = decode_value(sub, sub_raw)
        children = [_decode_single(definition, child) for child in raw.get("children", [])]
        return Component(values=values, children=children)
    return raw
