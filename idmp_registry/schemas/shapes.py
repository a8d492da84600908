"""
FHIR shape tables.

A shape says where a field lands in the FHIR document of its resource type.
Fields without an entry fall back to their own element name (or the
`element` path override on the field definition).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from idmp_registry.errors import AmbiguousChoice, TypeMismatch
from idmp_registry.schemas.fields import CHOICE_SUFFIXES, FieldDefinition, FieldKind

# ---------------------------------------------------------------------------
# Terminology / identifier systems
# ---------------------------------------------------------------------------
ATC_SYSTEM = "http://www.whocc.no/atc"
MPID_SYSTEM = "urn:oid:2.16.840.1.113883.3.1937"
CAS_SYSTEM = "http://fdasis.nlm.nih.gov"
SUBSTANCE_CATEGORY_SYSTEM = "http://hl7.org/fhir/substance-category"
PRODUCT_TYPE_SYSTEM = "http://hl7.org/fhir/medicinal-product-type"
NAME_TYPE_SYSTEM = "http://hl7.org/fhir/medicinal-product-name-type"
LEGAL_STATUS_SYSTEM = "http://hl7.org/fhir/legal-status-of-supply"
UCUM_SYSTEM = "http://unitsofmeasure.org"


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

def get_path(node: dict[str, Any], path: str) -> Any:
    for part in path.split("."):
        if not isinstance(node, dict):
            raise TypeMismatch(f"Element '{path}' is not nested in an object")
        node = node.get(part)
        if node is None:
            return None
    return node


def set_path(node: dict[str, Any], path: str, value: Any) -> None:
    *parents, last = path.split(".")
    for part in parents:
        node = node.setdefault(part, {})
    node[last] = value


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ElementRule:
    """Place the field fragment at a (dotted) element path."""

    path: str

    def emit(self, doc: dict[str, Any], fragment: Any, shape: Shape) -> None:
        set_path(doc, self.path, fragment)

    def extract(self, doc: dict[str, Any], definition: FieldDefinition, shape: Shape) -> Any:
        return get_path(doc, self.path)


@dataclass(frozen=True)
class IdentifierRule:
    """
    One entry of the identifier[] array, picked by system.

    A rule without a system takes the entries whose system is not claimed by
    another identifier rule of the same shape. With `default`, a rule that
    has a system also accepts entries that carry no system at all.
    """

    system: str | None = None
    use: str | None = None
    default: bool = False

    def emit(self, doc: dict[str, Any], fragment: Any, shape: Shape) -> None:
        entry: dict[str, Any] = {}
        if self.use:
            entry["use"] = self.use
        if self.system:
            entry["system"] = self.system
        entry["value"] = fragment
        doc.setdefault("identifier", []).append(entry)

    def _accepts(self, entry: dict[str, Any], claimed: set[str]) -> bool:
        system = entry.get("system")
        if self.system is None:
            return system not in claimed
        return system == self.system or (self.default and system is None)

    def extract(self, doc: dict[str, Any], definition: FieldDefinition, shape: Shape) -> Any:
        entries = doc.get("identifier") or []
        if not isinstance(entries, list):
            raise TypeMismatch("identifier must be an array")
        claimed = shape.identifier_systems()
        matches = [e for e in entries if isinstance(e, dict) and self._accepts(e, claimed)]
        if len(matches) > 1:
            raise AmbiguousChoice(
                f"{len(matches)} identifiers match system {self.system or '(none)'} for '{definition.name}'"
            )
        return matches[0].get("value") if matches else None


@dataclass(frozen=True)
class ItemReferenceRule:
    """References wrapped in an object, e.g. ingredient[].itemReference."""

    path: str
    wrapper: str = "itemReference"

    def emit(self, doc: dict[str, Any], fragment: Any, shape: Shape) -> None:
        if isinstance(fragment, list):
            set_path(doc, self.path, [{self.wrapper: ref} for ref in fragment])
        else:
            set_path(doc, self.path, {self.wrapper: fragment})

    def extract(self, doc: dict[str, Any], definition: FieldDefinition, shape: Shape) -> Any:
        raw = get_path(doc, self.path)
        if raw is None:
            return None
        if isinstance(raw, list):
            return [_unwrap(item, self.wrapper, self.path) for item in raw]
        return _unwrap(raw, self.wrapper, self.path)


def _unwrap(item: Any, wrapper: str, path: str) -> Any:
    if not isinstance(item, dict) or wrapper not in item:
        raise TypeMismatch(f"Each '{path}' entry needs a '{wrapper}'")
    return item[wrapper]


@dataclass(frozen=True)
class ChoiceRule:
    """A value[x] element: exactly one `<prefix><Suffix>` key is present."""

    prefix: str = "value"

    def emit(self, doc: dict[str, Any], fragment: tuple[FieldKind, Any], shape: Shape) -> None:
        kind, value = fragment
        doc[self.prefix + CHOICE_SUFFIXES[kind]] = value

    def extract(self, doc: dict[str, Any], definition: FieldDefinition, shape: Shape) -> Any:
        present = [
            (kind, doc[self.prefix + CHOICE_SUFFIXES[kind]])
            for kind in definition.alternatives
            if doc.get(self.prefix + CHOICE_SUFFIXES[kind]) is not None
        ]
        if len(present) > 1:
            keys = ", ".join(self.prefix + CHOICE_SUFFIXES[kind] for kind, _ in present)
            raise AmbiguousChoice(f"Only one of {keys} may be present")
        return present[0] if present else None


Rule = ElementRule | IdentifierRule | ItemReferenceRule | ChoiceRule


def default_rule(definition: FieldDefinition) -> Rule:
    if definition.kind == FieldKind.POLYMORPHIC_CHOICE:
        return ChoiceRule(prefix=definition.fhir_element)
    return ElementRule(definition.fhir_element)


# ---------------------------------------------------------------------------
# Shapes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SearchParam:
    field: str
    op: str = "eq"


@dataclass
class Shape:
    rules: dict[str, Rule]
    search: dict[str, SearchParam]

    def rule_for(self, definition: FieldDefinition) -> Rule:
        return self.rules.get(definition.name) or default_rule(definition)

    def identifier_systems(self) -> set[str]:
        return {
            rule.system
            for rule in self.rules.values()
            if isinstance(rule, IdentifierRule) and rule.system
        }


SHAPES: dict[str, Shape] = {
    "Organization": Shape(
        rules={"identifier": IdentifierRule()},
        search={
            "identifier": SearchParam("identifier"),
            "name": SearchParam("name", "contains"),
        },
    ),
    "Substance": Shape(
        rules={
            "identifier": IdentifierRule(),
            "casNumber": IdentifierRule(system=CAS_SYSTEM, use="secondary"),
            "name": ElementRule("code.text"),
        },
        search={
            "identifier": SearchParam("identifier"),
            "name": SearchParam("name", "contains"),
            "cas": SearchParam("casNumber"),
            "category": SearchParam("category"),
        },
    ),
    "Ingredient": Shape(
        rules={
            "identifier": IdentifierRule(),
            "substance": ItemReferenceRule("substance.code", wrapper="reference"),
            "manufacturer": ItemReferenceRule("manufacturer", wrapper="manufacturer"),
        },
        search={"role": SearchParam("role")},
    ),
    "ManufacturedItem": Shape(
        rules={"identifier": IdentifierRule()},
        search={"dose-form": SearchParam("manufacturedDoseForm")},
    ),
    "PackagedProduct": Shape(
        rules={"identifier": IdentifierRule()},
        search={
            "identifier": SearchParam("identifier"),
            "name": SearchParam("name", "contains"),
        },
    ),
    "RegulatedAuthorization": Shape(
        rules={"identifier": IdentifierRule()},
        search={"identifier": SearchParam("identifier"), "status": SearchParam("status")},
    ),
    "ClinicalUseDefinition": Shape(
        rules={"identifier": IdentifierRule()},
        search={"type": SearchParam("useType")},
    ),
    "MedicinalProduct": Shape(
        rules={
            "identifier": IdentifierRule(system=MPID_SYSTEM, default=True),
            "ingredient": ItemReferenceRule("ingredient"),
        },
        search={
            "identifier": SearchParam("identifier"),
            "name": SearchParam("name", "contains"),
            "classification": SearchParam("classification"),
            "type": SearchParam("productType"),
            "legal-status": SearchParam("legalStatusOfSupply"),
        },
    ),
}

GENERIC_SHAPE = Shape(rules={"identifier": IdentifierRule()}, search={"identifier": SearchParam("identifier")})


def shape_for(type_name: str) -> Shape:
    return SHAPES.get(type_name, GENERIC_SHAPE)
