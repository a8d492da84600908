"""
Field/type catalog.

Declarative descriptors for the field kinds a resource schema is built from.
Every constructor validates its input at construction time, so a broken field
never reaches the registry.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator

from idmp_registry.config import settings
from idmp_registry.errors import DuplicateFieldName, InvalidFieldSpec


class FieldKind(str, Enum):
    TEXT = "text"
    LONGTEXT = "longtext"
    DATE = "date"
    DATETIME = "datetime"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SINGLE_SELECT = "single-select"
    MULTI_SELECT = "multi-select"
    SINGLE_REFERENCE = "single-reference"
    MULTI_REFERENCE = "multi-reference"
    POLYMORPHIC_CHOICE = "polymorphic-choice"
    CODEABLE_CONCEPT = "codeable-concept"
    QUANTITY = "quantity"
    COMPONENT = "component"


TEXT_KINDS = {FieldKind.TEXT, FieldKind.LONGTEXT}
SELECT_KINDS = {FieldKind.SINGLE_SELECT, FieldKind.MULTI_SELECT}
REFERENCE_KINDS = {FieldKind.SINGLE_REFERENCE, FieldKind.MULTI_REFERENCE}
REPEATABLE_KINDS = {FieldKind.CODEABLE_CONCEPT, FieldKind.QUANTITY, FieldKind.COMPONENT}

# value[x] suffix emitted for each alternative a choice field may hold
CHOICE_SUFFIXES: dict[FieldKind, str] = {
    FieldKind.TEXT: "String",
    FieldKind.LONGTEXT: "Markdown",
    FieldKind.BOOLEAN: "Boolean",
    FieldKind.DATE: "Date",
    FieldKind.DATETIME: "DateTime",
    FieldKind.NUMBER: "Decimal",
    FieldKind.CODEABLE_CONCEPT: "CodeableConcept",
    FieldKind.QUANTITY: "Quantity",
    FieldKind.SINGLE_REFERENCE: "Reference",
}

DEFAULT_TEXT_LENGTH = 255
DEFAULT_DECIMAL_PRECISION = 2


@dataclass(frozen=True)
class FieldDefinition:
    """A single typed field of a resource type (or of a component)."""

    name: str
    kind: FieldKind
    title: str = ""
    mandatory: bool = False
    unique: bool = False
    tooltip: str = ""
    max_length: int | None = None
    referenced_types: tuple[str, ...] = ()
    decimal_precision: int | None = None
    options: tuple[str, ...] = ()
    alternatives: tuple[FieldKind, ...] = ()
    fields: tuple[FieldDefinition, ...] = ()
    multiple: bool = False
    recursive: bool = False
    max_depth: int | None = None
    element: str | None = None
    child_element: str | None = None

    @property
    def is_reference(self) -> bool:
        return self.kind in REFERENCE_KINDS

    @property
    def is_repeated(self) -> bool:
        return self.multiple or self.kind in (FieldKind.MULTI_SELECT, FieldKind.MULTI_REFERENCE)

    @property
    def fhir_element(self) -> str:
        return self.element or self.name

    def sub_field(self, name: str) -> FieldDefinition | None:
        for sub in self.fields:
            if sub.name == name:
                return sub
        return None

    def to_dict(self) -> dict[str, Any]:
        """Declarative form persisted by the schema registry."""
        data: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "title": self.title,
            "mandatory": self.mandatory,
            "unique": self.unique,
        }
        if self.tooltip:
            data["tooltip"] = self.tooltip
        if self.max_length is not None:
            data["max_length"] = self.max_length
        if self.referenced_types:
            data["referenced_types"] = list(self.referenced_types)
        if self.decimal_precision is not None:
            data["decimal_precision"] = self.decimal_precision
        if self.options:
            data["options"] = list(self.options)
        if self.alternatives:
            data["alternatives"] = [kind.value for kind in self.alternatives]
        if self.fields:
            data["fields"] = [sub.to_dict() for sub in self.fields]
        if self.multiple:
            data["multiple"] = True
        if self.recursive:
            data["recursive"] = True
            data["max_depth"] = self.max_depth
        if self.element:
            data["element"] = self.element
        if self.child_element:
            data["child_element"] = self.child_element
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldDefinition:
        options = dict(data)
        kind = options.pop("kind")
        name = options.pop("name")
        title = options.pop("title", "")
        if "fields" in options:
            options["fields"] = [cls.from_dict(sub) for sub in options["fields"]]
        return define_field(kind, name, title, **options)


def define_field(kind: FieldKind | str, name: str, title: str = "", **options: Any) -> FieldDefinition:
    """
    Build a validated FieldDefinition.

    Raises InvalidFieldSpec when the name is empty, a text-like field has a
    non-positive max length, a reference field names no type, or a choice
    field offers fewer than two alternatives.
    """
    try:
        kind = FieldKind(kind)
    except ValueError:
        raise InvalidFieldSpec(f"Unknown field kind: {kind!r}") from None

    if not name or not name.strip():
        raise InvalidFieldSpec("Field name must not be empty")
    label = f"Field '{name}'"

    max_length = options.pop("max_length", None)
    if kind == FieldKind.TEXT and max_length is None:
        max_length = DEFAULT_TEXT_LENGTH
    if kind in TEXT_KINDS and max_length is not None and max_length <= 0:
        raise InvalidFieldSpec(f"{label}: max length must be >= 1, got {max_length}")

    referenced_types = tuple(options.pop("referenced_types", ()) or ())
    try:
        alternatives = tuple(FieldKind(alt) for alt in options.pop("alternatives", ()) or ())
    except ValueError as exc:
        raise InvalidFieldSpec(f"{label}: {exc}") from None
    if kind in REFERENCE_KINDS or FieldKind.SINGLE_REFERENCE in alternatives:
        if not referenced_types or not all(t and t.strip() for t in referenced_types):
            raise InvalidFieldSpec(f"{label}: reference fields must name at least one resource type")

    options_set = tuple(options.pop("options", ()) or ())
    if kind in SELECT_KINDS and not options_set:
        raise InvalidFieldSpec(f"{label}: select fields need at least one option")

    decimal_precision = options.pop("decimal_precision", None)
    if kind == FieldKind.NUMBER:
        if decimal_precision is None:
            decimal_precision = DEFAULT_DECIMAL_PRECISION
        if decimal_precision < 0:
            raise InvalidFieldSpec(f"{label}: decimal precision must be >= 0")

    if kind == FieldKind.POLYMORPHIC_CHOICE:
        if len(alternatives) < 2:
            raise InvalidFieldSpec(f"{label}: a choice field needs at least 2 alternatives")
        if len(set(alternatives)) != len(alternatives):
            raise InvalidFieldSpec(f"{label}: duplicate choice alternatives")
        unsupported = [alt.value for alt in alternatives if alt not in CHOICE_SUFFIXES]
        if unsupported:
            raise InvalidFieldSpec(f"{label}: unsupported choice alternatives {unsupported}")
    elif alternatives:
        raise InvalidFieldSpec(f"{label}: only choice fields take alternatives")

    multiple = bool(options.pop("multiple", False))
    if multiple and kind not in REPEATABLE_KINDS:
        raise InvalidFieldSpec(f"{label}: kind '{kind.value}' cannot be repeated")

    sub_fields = tuple(options.pop("fields", ()) or ())
    recursive = bool(options.pop("recursive", False))
    max_depth = options.pop("max_depth", None)
    child_element = options.pop("child_element", None)
    if kind == FieldKind.COMPONENT:
        if not sub_fields:
            raise InvalidFieldSpec(f"{label}: a component needs at least one sub-field")
        check_unique_names(sub_fields, f"component '{name}'")
        if recursive:
            if max_depth is None:
                max_depth = settings.MAX_COMPOSITE_DEPTH
            if max_depth < 1:
                raise InvalidFieldSpec(f"{label}: max depth must be >= 1")
            child_element = child_element or name
            if any(sub.name == child_element for sub in sub_fields):
                raise DuplicateFieldName(
                    f"{label}: child element '{child_element}' clashes with a sub-field"
                )
    elif sub_fields or recursive:
        raise InvalidFieldSpec(f"{label}: only components take sub-fields")

    definition = FieldDefinition(
        name=name,
        kind=kind,
        title=title or name,
        mandatory=bool(options.pop("mandatory", False)),
        unique=bool(options.pop("unique", False)),
        tooltip=options.pop("tooltip", "") or "",
        max_length=max_length,
        referenced_types=referenced_types,
        decimal_precision=decimal_precision,
        options=options_set,
        alternatives=alternatives,
        fields=sub_fields,
        multiple=multiple,
        recursive=recursive,
        max_depth=max_depth if recursive else None,
        element=options.pop("element", None),
        child_element=child_element if recursive else None,
    )
    if options:
        raise InvalidFieldSpec(f"{label}: unknown options {sorted(options)}")
    return definition


def check_unique_names(fields: tuple[FieldDefinition, ...] | list[FieldDefinition], owner: str) -> None:
    seen: set[str] = set()
    for definition in fields:
        if definition.name in seen:
            raise DuplicateFieldName(f"Duplicate field name '{definition.name}' in {owner}")
        seen.add(definition.name)


def walk_fields(
    fields: tuple[FieldDefinition, ...] | list[FieldDefinition], prefix: str = ""
) -> Iterator[tuple[str, FieldDefinition]]:
    """Yield (dotted path, field) for every field, including component sub-fields."""
    for definition in fields:
        path = f"{prefix}{definition.name}"
        yield path, definition
        if definition.fields:
            yield from walk_fields(definition.fields, prefix=f"{path}.")


# ---------------------------------------------------------------------------
# Convenience constructors
# ---------------------------------------------------------------------------

def text_field(name: str, title: str = "", max_length: int = DEFAULT_TEXT_LENGTH, **options: Any) -> FieldDefinition:
    return define_field(FieldKind.TEXT, name, title, max_length=max_length, **options)


def longtext_field(name: str, title: str = "", **options: Any) -> FieldDefinition:
    return define_field(FieldKind.LONGTEXT, name, title, **options)


def number_field(name: str, title: str = "", decimal_precision: int = DEFAULT_DECIMAL_PRECISION, **options: Any) -> FieldDefinition:
    return define_field(FieldKind.NUMBER, name, title, decimal_precision=decimal_precision, **options)


def boolean_field(name: str, title: str = "", **options: Any) -> FieldDefinition:
    return define_field(FieldKind.BOOLEAN, name, title, **options)


def date_field(name: str, title: str = "", **options: Any) -> FieldDefinition:
    return define_field(FieldKind.DATE, name, title, **options)


def datetime_field(name: str, title: str = "", **options: Any) -> FieldDefinition:
    return define_field(FieldKind.DATETIME, name, title, **options)


def select_field(name: str, title: str, options: list[str], multiple: bool = False, **kwargs: Any) -> FieldDefinition:
    kind = FieldKind.MULTI_SELECT if multiple else FieldKind.SINGLE_SELECT
    return define_field(kind, name, title, options=options, **kwargs)


def concept_field(name: str, title: str = "", **options: Any) -> FieldDefinition:
    return define_field(FieldKind.CODEABLE_CONCEPT, name, title, **options)


def quantity_field(name: str, title: str = "", **options: Any) -> FieldDefinition:
    return define_field(FieldKind.QUANTITY, name, title, **options)


def reference_field(name: str, title: str, classes: list[str], multiple: bool = False, **options: Any) -> FieldDefinition:
    kind = FieldKind.MULTI_REFERENCE if multiple else FieldKind.SINGLE_REFERENCE
    return define_field(kind, name, title, referenced_types=classes, **options)


def choice_field(name: str, title: str, alternatives: list[FieldKind], **options: Any) -> FieldDefinition:
    return define_field(FieldKind.POLYMORPHIC_CHOICE, name, title, alternatives=alternatives, **options)


def component_field(name: str, title: str, fields: list[FieldDefinition], **options: Any) -> FieldDefinition:
    return define_field(FieldKind.COMPONENT, name, title, fields=fields, **options)
