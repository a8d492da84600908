"""
Derived JSON schemas for FHIR documents.

Each registered resource type gets a Draft-7 schema generated from its field
definitions and its shape table. It is a structural contract for incoming
documents (envelope, element types, CodeableConcept/Reference/Quantity
fragments); full FHIR conformance is out of scope.
"""

from __future__ import annotations

import copy
from typing import Any

from idmp_registry.schemas.fields import CHOICE_SUFFIXES, FieldDefinition, FieldKind
from idmp_registry.schemas.shapes import (
    ChoiceRule,
    ElementRule,
    IdentifierRule,
    ItemReferenceRule,
    default_rule,
    shape_for,
)
from idmp_registry.schemas.values import alternative_field

DATE_PATTERN = "^\\d{4}-\\d{2}-\\d{2}$"
DATETIME_PATTERN = "^\\d{4}-\\d{2}-\\d{2}T\\d{2}:\\d{2}(:\\d{2}(\\.\\d+)?)?(Z|[+-]\\d{2}:\\d{2})$"

CODING_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "system": {"type": "string"},
        "version": {"type": "string"},
        "code": {"type": "string"},
        "display": {"type": "string"},
        "userSelected": {"type": "boolean"},
    },
}

CODEABLE_CONCEPT_SCHEMA: dict = {
    "type": "object",
    "description": "Free text plus zero or more codings.",
    "properties": {
        "text": {"type": "string"},
        "coding": {"type": "array", "items": CODING_SCHEMA},
    },
}

QUANTITY_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "value": {"type": "number"},
        "comparator": {"type": "string", "enum": ["<", "<=", ">=", ">", "ad"]},
        "unit": {"type": "string"},
        "system": {"type": "string"},
        "code": {"type": "string"},
    },
}

IDENTIFIER_SCHEMA: dict = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["value"],
        "properties": {
            "use": {"type": "string"},
            "system": {"type": "string"},
            "value": {"type": "string", "minLength": 1},
        },
    },
}

META_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "versionId": {"type": "string"},
        "lastUpdated": {"type": "string"},
        "source": {"type": "string"},
    },
}


def reference_schema(targets: tuple[str, ...]) -> dict:
    alternatives = "|".join(targets)
    return {
        "type": "object",
        "required": ["reference"],
        "properties": {
            "reference": {"type": "string", "pattern": f"^({alternatives})/[^/]+$"},
            "display": {"type": "string"},
        },
    }


def _merge(target: dict, path: str, fragment: dict) -> None:
    """Place a fragment at a dotted element path inside an object schema."""
    *parents, last = path.split(".")
    node = target
    for part in parents:
        node = node.setdefault("properties", {}).setdefault(part, {"type": "object"})
    node.setdefault("properties", {})[last] = fragment


def _value_schema(definition: FieldDefinition, definitions: dict, ref_name: str) -> dict:
    kind = definition.kind
    if kind in (FieldKind.TEXT, FieldKind.LONGTEXT):
        schema: dict[str, Any] = {"type": "string"}
        if definition.max_length:
            schema["maxLength"] = definition.max_length
    elif kind == FieldKind.DATE:
        schema = {"type": "string", "pattern": DATE_PATTERN}
    elif kind == FieldKind.DATETIME:
        schema = {"type": "string", "pattern": DATETIME_PATTERN}
    elif kind == FieldKind.NUMBER:
        schema = {"type": "number"}
    elif kind == FieldKind.BOOLEAN:
        schema = {"type": "boolean"}
    elif kind == FieldKind.SINGLE_SELECT:
        schema = {"type": "string", "enum": list(definition.options)}
    elif kind == FieldKind.MULTI_SELECT:
        schema = {"type": "array", "items": {"type": "string", "enum": list(definition.options)}}
    elif kind == FieldKind.SINGLE_REFERENCE:
        schema = reference_schema(definition.referenced_types)
    elif kind == FieldKind.MULTI_REFERENCE:
        schema = {"type": "array", "items": reference_schema(definition.referenced_types)}
    elif kind == FieldKind.CODEABLE_CONCEPT:
        schema = copy.deepcopy(CODEABLE_CONCEPT_SCHEMA)
    elif kind == FieldKind.QUANTITY:
        schema = copy.deepcopy(QUANTITY_SCHEMA)
    elif kind == FieldKind.COMPONENT:
        schema = _component_schema(definition, definitions, ref_name)
    else:
        raise ValueError(f"No standalone schema for kind {kind.value}")

    if definition.multiple:
        return {"type": "array", "items": schema}
    return schema


def _component_schema(definition: FieldDefinition, definitions: dict, ref_name: str) -> dict:
    schema: dict[str, Any] = {"type": "object", "properties": {}}
    required = []
    for sub in definition.fields:
        _place(schema, sub, default_rule(sub), definitions, f"{ref_name}.{sub.name}")
        if sub.mandatory:
            required.append(sub.fhir_element.split(".")[0])
    if required:
        schema["required"] = required
    if definition.recursive:
        definitions[ref_name] = schema
        schema["properties"][definition.child_element] = {
            "type": "array",
            "items": {"$ref": f"#/definitions/{ref_name}"},
        }
        return {"$ref": f"#/definitions/{ref_name}"}
    return schema


def _place(target: dict, definition: FieldDefinition, rule, definitions: dict, ref_name: str) -> None:
    properties = target.setdefault("properties", {})
    if isinstance(rule, IdentifierRule):
        properties["identifier"] = copy.deepcopy(IDENTIFIER_SCHEMA)
    elif isinstance(rule, ChoiceRule):
        for kind in definition.alternatives:
            alternative = alternative_field(definition, kind)
            properties[rule.prefix + CHOICE_SUFFIXES[kind]] = _value_schema(alternative, definitions, ref_name)
    elif isinstance(rule, ItemReferenceRule):
        wrapped = {
            "type": "object",
            "required": [rule.wrapper],
            "properties": {rule.wrapper: reference_schema(definition.referenced_types)},
        }
        if definition.is_repeated:
            wrapped = {"type": "array", "items": wrapped}
        _merge(target, rule.path, wrapped)
    elif isinstance(rule, ElementRule):
        _merge(target, rule.path, _value_schema(definition, definitions, ref_name))


def _top_element(rule) -> str:
    if isinstance(rule, IdentifierRule):
        return "identifier"
    if isinstance(rule, ChoiceRule):
        return rule.prefix
    return rule.path.split(".")[0]


def build_document_schema(resource_type) -> dict:
    """
    Generate the Draft-7 schema for documents of a resource type.

    Mandatory fields make their top-level element required; recursive
    components are expressed through #/definitions references.
    """
    shape = shape_for(resource_type.name)
    definitions: dict[str, Any] = {}
    schema: dict[str, Any] = {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": f"FHIR {resource_type.name}",
        "type": "object",
        "properties": {
            "resourceType": {"type": "string", "const": resource_type.name},
            "id": {"type": "string"},
            "meta": copy.deepcopy(META_SCHEMA),
        },
    }
    if resource_type.description:
        schema["description"] = resource_type.description

    required = ["resourceType"]
    for definition in resource_type.fields:
        rule = shape.rule_for(definition)
        _place(schema, definition, rule, definitions, definition.name)
        top = _top_element(rule)
        # choice elements have no single key to require
        if definition.mandatory and not isinstance(rule, ChoiceRule) and top not in required:
            required.append(top)
    schema["required"] = required
    if definitions:
        schema["definitions"] = definitions
    return schema
