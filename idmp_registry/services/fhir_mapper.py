"""
FHIR mapper – converts resource instances to FHIR JSON documents and back.

Field placement comes from the shape tables in schemas/shapes.py; values are
converted per field kind. Absent values are omitted from documents, never
written as null.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any

from idmp_registry.config import settings
from idmp_registry.errors import (
    DocumentValidationError,
    MissingRequiredField,
    TypeMismatch,
    UnsupportedResourceType,
    operation_outcome,
)
from idmp_registry.schemas.fields import FieldDefinition, FieldKind
from idmp_registry.schemas.shapes import (
    ATC_SYSTEM,
    GENERIC_SHAPE,
    default_rule,
    shape_for,
)
from idmp_registry.schemas.values import (
    ChoiceValue,
    CodeableConcept,
    Component,
    Quantity,
    alternative_field,
    check_value,
    to_decimal,
)
from idmp_registry.services.resource_store import ResourceInstance, ResourceStore

logger = logging.getLogger(__name__)

__all__ = ["FhirMapper", "bundle", "medication_to_medicinal_product", "operation_outcome"]


def _absent(value: Any) -> bool:
    return value is None or value == [] or value == {}


class FhirMapper:
    def __init__(self, store: ResourceStore):
        self.store = store
        self.registry = store.registry

    # -- instance -> document ------------------------------------------------

    def to_document(self, instance: ResourceInstance) -> dict[str, Any]:
        resource_type = self.registry.get(instance.resource_type)
        shape = shape_for(instance.resource_type)

        doc: dict[str, Any] = {
            "resourceType": instance.resource_type,
            "id": instance.id,
            "meta": self._meta(instance),
        }
        for definition in resource_type.fields:
            value = instance.values.get(definition.name)
            if _absent(value):
                continue
            shape.rule_for(definition).emit(doc, self._to_fhir(definition, value), shape)
        return doc

    def _meta(self, instance: ResourceInstance) -> dict[str, Any]:
        meta: dict[str, Any] = {"versionId": str(instance.version_id)}
        last_updated = instance.updated_at or instance.created_at
        if last_updated is not None:
            # SQLite hands back naive timestamps; they are stored as UTC
            if last_updated.tzinfo is None:
                last_updated = last_updated.replace(tzinfo=timezone.utc)
            meta["lastUpdated"] = last_updated.isoformat()
        meta["source"] = settings.META_SOURCE
        return meta

    def _to_fhir(self, definition: FieldDefinition, value: Any) -> Any:
        if definition.multiple:
            return [self._single_to_fhir(definition, item) for item in value]
        return self._single_to_fhir(definition, value)

    def _single_to_fhir(self, definition: FieldDefinition, value: Any) -> Any:
        kind = definition.kind
        if kind in (FieldKind.DATE, FieldKind.DATETIME):
            return value.isoformat()
        if kind == FieldKind.MULTI_SELECT:
            return list(value)
        if kind == FieldKind.SINGLE_REFERENCE:
            return self._reference(definition, value)
        if kind == FieldKind.MULTI_REFERENCE:
            return [self._reference(definition, item) for item in value]
        if kind in (FieldKind.CODEABLE_CONCEPT, FieldKind.QUANTITY):
            return value.to_fhir()
        if kind == FieldKind.POLYMORPHIC_CHOICE:
            return value.kind, self._single_to_fhir(alternative_field(definition, value.kind), value.value)
        if kind == FieldKind.COMPONENT:
            return self._component_to_fhir(definition, value)
        return value

    def _reference(self, definition: FieldDefinition, target_id: str) -> dict[str, str]:
        # A deleted target keeps its dangling reference under the first allowed type
        target_type = self.store.type_of(target_id) or definition.referenced_types[0]
        return {"reference": f"{target_type}/{target_id}"}

    def _component_to_fhir(self, definition: FieldDefinition, component: Component) -> dict[str, Any]:
        node: dict[str, Any] = {}
        for sub in definition.fields:
            value = component.values.get(sub.name)
            if _absent(value):
                continue
            default_rule(sub).emit(node, self._to_fhir(sub, value), GENERIC_SHAPE)
        if component.children:
            node[definition.child_element] = [
                self._component_to_fhir(definition, child) for child in component.children
            ]
        return node

    # -- document -> values --------------------------------------------------

    def from_document(self, doc: dict[str, Any]) -> dict[str, Any]:
        """
        Parse a FHIR document into field values of its resource type.

        Every missing mandatory field (including mandatory sub-fields of
        components) is reported at once in a DocumentValidationError.
        """
        if not isinstance(doc, dict):
            raise TypeMismatch("A FHIR document must be a JSON object")
        type_name = doc.get("resourceType")
        resource_type = self.registry.find(type_name) if isinstance(type_name, str) else None
        if resource_type is None:
            raise UnsupportedResourceType(f"Unsupported resourceType: {type_name!r}")

        shape = shape_for(type_name)
        missing: list[str] = []
        values: dict[str, Any] = {}
        for definition in resource_type.fields:
            raw = shape.rule_for(definition).extract(doc, definition, shape)
            if _absent(raw):
                if definition.mandatory:
                    missing.append(definition.name)
                continue
            converted = self._from_fhir(definition, raw, missing, definition.name)
            values[definition.name] = check_value(definition, converted)

        if missing:
            raise DocumentValidationError(
                [MissingRequiredField(name, type_name) for name in missing],
                diagnostics=f"{type_name}: missing required field(s) {', '.join(missing)}",
            )
        return values

    def _from_fhir(self, definition: FieldDefinition, raw: Any, missing: list[str], path: str) -> Any:
        if definition.multiple:
            if not isinstance(raw, list):
                raise TypeMismatch(f"'{path}' must be an array")
            return [self._single_from_fhir(definition, item, missing, path) for item in raw]
        return self._single_from_fhir(definition, raw, missing, path)

    def _single_from_fhir(self, definition: FieldDefinition, raw: Any, missing: list[str], path: str) -> Any:
        kind = definition.kind
        if kind == FieldKind.DATE:
            return _parse_temporal(date, raw, path)
        if kind == FieldKind.DATETIME:
            return _parse_temporal(datetime, raw, path)
        if kind == FieldKind.NUMBER:
            return to_decimal(raw, f"'{path}'")
        if kind == FieldKind.SINGLE_REFERENCE:
            return _reference_id(definition, raw, path)
        if kind == FieldKind.MULTI_REFERENCE:
            if not isinstance(raw, list):
                raise TypeMismatch(f"'{path}' must be an array")
            return [_reference_id(definition, item, path) for item in raw]
        if kind == FieldKind.CODEABLE_CONCEPT:
            return CodeableConcept.from_fhir(raw)
        if kind == FieldKind.QUANTITY:
            return Quantity.from_fhir(raw)
        if kind == FieldKind.POLYMORPHIC_CHOICE:
            alt_kind, inner = raw
            alternative = alternative_field(definition, alt_kind)
            return ChoiceValue(kind=alt_kind, value=self._single_from_fhir(alternative, inner, missing, path))
        if kind == FieldKind.COMPONENT:
            return self._component_from_fhir(definition, raw, missing, path)
        return raw

    def _component_from_fhir(
        self, definition: FieldDefinition, node: Any, missing: list[str], path: str
    ) -> Component:
        if not isinstance(node, dict):
            raise TypeMismatch(f"'{path}' must be an object")
        values: dict[str, Any] = {}
        for sub in definition.fields:
            sub_path = f"{path}.{sub.name}"
            raw = default_rule(sub).extract(node, sub, GENERIC_SHAPE)
            if _absent(raw):
                if sub.mandatory:
                    missing.append(sub_path)
                continue
            values[sub.name] = self._from_fhir(sub, raw, missing, sub_path)

        children: list[Component] = []
        if definition.recursive:
            raw_children = node.get(definition.child_element) or []
            if not isinstance(raw_children, list):
                raise TypeMismatch(f"'{path}.{definition.child_element}' must be an array")
            children = [
                self._component_from_fhir(definition, child, missing, f"{path}.{definition.child_element}")
                for child in raw_children
            ]
        return Component(values=values, children=children)


def _parse_temporal(cls: type, raw: Any, path: str) -> Any:
    if not isinstance(raw, str):
        raise TypeMismatch(f"'{path}' must be an ISO-8601 string")
    try:
        return cls.fromisoformat(raw)
    except ValueError:
        raise TypeMismatch(f"'{path}': '{raw}' is not a valid {cls.__name__}") from None


def _reference_id(definition: FieldDefinition, raw: Any, path: str) -> str:
    reference = raw.get("reference") if isinstance(raw, dict) else None
    if not isinstance(reference, str) or "/" not in reference:
        raise TypeMismatch(f"'{path}' must hold a reference of the form '<Type>/<id>'")
    target_type, _, target_id = reference.rpartition("/")
    if target_type not in definition.referenced_types or not target_id:
        raise TypeMismatch(
            f"'{path}' cannot reference {reference} "
            f"(allowed: {', '.join(definition.referenced_types)})"
        )
    return target_id


# ---------------------------------------------------------------------------
# Document-level helpers
# ---------------------------------------------------------------------------

def bundle(resources: list[dict[str, Any]], total: int, base_url: str = "") -> dict[str, Any]:
    """Wrap documents in a searchset Bundle."""
    base = base_url.rstrip("/")
    return {
        "resourceType": "Bundle",
        "type": "searchset",
        "total": total,
        "entry": [
            {
                "fullUrl": f"{base}/{resource['resourceType']}/{resource['id']}",
                "resource": resource,
                "search": {"mode": "match"},
            }
            for resource in resources
        ],
    }


def medication_to_medicinal_product(medication: dict[str, Any]) -> dict[str, Any]:
    """
    Build a MedicinalProduct document from a FHIR Medication.

    code.text (or the first coding display) becomes the product name, ATC
    codings become the classification, the dose form becomes the combined
    pharmaceutical dose form and ingredient item references are kept.
    """
    if not isinstance(medication, dict) or medication.get("resourceType") != "Medication":
        raise UnsupportedResourceType("Only Medication resources can be transformed")

    product: dict[str, Any] = {"resourceType": "MedicinalProduct"}
    if medication.get("identifier"):
        product["identifier"] = medication["identifier"]

    code = medication.get("code") or {}
    codings = code.get("coding") or []
    product_name = code.get("text") or next((c.get("display") for c in codings if c.get("display")), None)
    if product_name:
        product["name"] = [{"productName": product_name}]

    atc = [c for c in codings if c.get("system") == ATC_SYSTEM]
    if atc:
        product["classification"] = [{"coding": atc}]

    form = medication.get("doseForm") or medication.get("form")
    if form:
        product["combinedPharmaceuticalDoseForm"] = form

    references = []
    for entry in medication.get("ingredient") or []:
        item = entry.get("item") or {}
        reference = entry.get("itemReference") or item.get("reference")
        if reference:
            references.append({"itemReference": reference})
    if references:
        product["ingredient"] = references

    logger.info("Transformed Medication %s to MedicinalProduct", medication.get("id", "<new>"))
    return product
