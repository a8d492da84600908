"""
JSON Schema validation service.

Documents are checked against the derived schema of their resource type,
collecting all errors rather than failing on the first one.
"""

from typing import Any

import jsonschema

from idmp_registry.errors import DocumentValidationError, TypeMismatch
from idmp_registry.schemas.fhir import build_document_schema


def validate_against_schema(data: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    """
    Validate a dict against a JSON schema.
    Returns a list of error messages (empty list = valid).
    """
    validator = jsonschema.Draft7Validator(schema)
    return [_describe(error) for error in validator.iter_errors(data)]


def _describe(error: jsonschema.ValidationError) -> str:
    location = ".".join(str(part) for part in error.absolute_path)
    return f"{location}: {error.message}" if location else error.message


def check_document(doc: dict[str, Any], resource_type) -> None:
    """Raise DocumentValidationError listing every schema violation of a document."""
    schema = resource_type.document_schema or build_document_schema(resource_type)
    errors = validate_against_schema(doc, schema)
    if errors:
        raise DocumentValidationError(
            [TypeMismatch(message) for message in errors],
            diagnostics=f"{resource_type.name} document failed schema validation ({len(errors)} error(s))",
        )
