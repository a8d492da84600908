"""
Error taxonomy for the registry.

Every error carries a stable FHIR issue code and an HTTP status so the API
layer can render it as an OperationOutcome without knowing which component
raised it.
"""

from __future__ import annotations

from typing import Any


class RegistryError(Exception):
    """Base class for all typed registry failures."""

    code = "exception"
    status_code = 500
    severity = "error"

    def __init__(self, diagnostics: str):
        super().__init__(diagnostics)
        self.diagnostics = diagnostics

    def issues(self) -> list[dict[str, Any]]:
        return [
            {
                "severity": self.severity,
                "code": self.code,
                "diagnostics": self.diagnostics,
            }
        ]

    def to_operation_outcome(self) -> dict[str, Any]:
        return operation_outcome(self.issues())


class InvalidFieldSpec(RegistryError):
    code = "invalid"
    status_code = 400


class DuplicateFieldName(RegistryError):
    code = "duplicate"
    status_code = 400


class UnknownReferencedType(RegistryError):
    code = "invalid"
    status_code = 400

    def __init__(self, diagnostics: str, missing: list[str] | None = None):
        super().__init__(diagnostics)
        self.missing = missing or []


class DuplicateKey(RegistryError):
    code = "duplicate"
    status_code = 409


class TypeMismatch(RegistryError):
    code = "value"
    status_code = 400


class DepthExceeded(TypeMismatch):
    code = "structure"


class AmbiguousChoice(RegistryError):
    code = "multiple-matches"
    status_code = 400


class MissingRequiredField(RegistryError):
    code = "required"
    status_code = 400

    def __init__(self, field_name: str, resource_type: str | None = None):
        where = f"{resource_type}.{field_name}" if resource_type else field_name
        super().__init__(f"Missing required field '{where}'")
        self.field_name = field_name
        self.resource_type = resource_type


class DocumentValidationError(RegistryError):
    """Aggregates every problem found in one document."""

    code = "invalid"
    status_code = 400

    def __init__(self, errors: list[RegistryError], diagnostics: str | None = None):
        super().__init__(
            diagnostics or "; ".join(error.diagnostics for error in errors)
        )
        self.errors = errors

    def issues(self) -> list[dict[str, Any]]:
        issues: list[dict[str, Any]] = []
        for error in self.errors:
            issues.extend(error.issues())
        return issues or super().issues()


class UnsupportedResourceType(RegistryError):
    code = "not-supported"
    status_code = 400


class NotFound(RegistryError):
    code = "not-found"
    status_code = 404


class MigrationStepFailed(RegistryError):
    code = "processing"
    status_code = 500

    def __init__(self, step: str, reason: str):
        super().__init__(f"Step '{step}' failed: {reason}")
        self.step = step
        self.reason = reason


def operation_outcome(issues: list[dict[str, Any]]) -> dict[str, Any]:
    return {"resourceType": "OperationOutcome", "issue": issues}
