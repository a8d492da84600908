"""
FastAPI routes – the FHIR REST surface plus schema and admin endpoints.

Every RegistryError raised below is rendered as an OperationOutcome by the
exception handler installed in main.py.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import simplejson
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from idmp_registry.config import settings
from idmp_registry.errors import (
    AmbiguousChoice,
    NotFound,
    TypeMismatch,
    UnsupportedResourceType,
)
from idmp_registry.etl.pipeline import diagnose, run_install
from idmp_registry.models.database import get_db
from idmp_registry.schemas.api import (
    DiagnosticsResponse,
    HealthResponse,
    PipelineResult,
    ResourceTypeOut,
    ResourceTypeSummary,
)
from idmp_registry.schemas.shapes import ATC_SYSTEM, MPID_SYSTEM, shape_for
from idmp_registry.services.audit import log_action
from idmp_registry.services.fhir_mapper import FhirMapper, bundle, medication_to_medicinal_product
from idmp_registry.services.resource_store import Clause, ResourceInstance, ResourceStore
from idmp_registry.services.validation import check_document

logger = logging.getLogger(__name__)

router = APIRouter()

ACTOR = "api_user"
CONTROL_PARAMS = {"_count", "_offset", "_sort"}


def _fhir_base(request: Request) -> str:
    return f"{str(request.base_url).rstrip('/')}/api/v1/fhir"


class FhirJSONResponse(JSONResponse):
    """JSON response that writes Decimal values as exact JSON numbers."""

    media_type = "application/fhir+json"

    def render(self, content: Any) -> bytes:
        return simplejson.dumps(content, use_decimal=True, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _fhir_response(doc: dict[str, Any], status_code: int = 200, headers: dict[str, str] | None = None) -> FhirJSONResponse:
    return FhirJSONResponse(status_code=status_code, content=doc, headers=headers)


async def fhir_body(request: Request) -> Any:
    """Parse the request body keeping JSON decimals as Decimal."""
    raw = await request.body()
    try:
        return simplejson.loads(raw, use_decimal=True)
    except simplejson.JSONDecodeError as exc:
        raise TypeMismatch(f"Request body is not valid JSON: {exc.msg}") from None


def _instance_of(store: ResourceStore, resource_type: str, resource_id: str) -> ResourceInstance:
    instance = store.get_by_id(resource_id)
    if instance.resource_type != resource_type:
        raise NotFound(f"{resource_type}/{resource_id} not found")
    return instance


def _check_envelope(doc: dict[str, Any], resource_type: str, store: ResourceStore):
    if not isinstance(doc, dict):
        raise TypeMismatch("Request body must be a JSON object")
    if doc.get("resourceType") != resource_type:
        raise TypeMismatch(
            f"resourceType '{doc.get('resourceType')}' does not match endpoint '{resource_type}'"
        )
    registered = store.registry.find(resource_type)
    if registered is None:
        raise UnsupportedResourceType(f"Unsupported resourceType: {resource_type!r}")
    check_document(doc, registered)
    return registered


def _int_param(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise TypeMismatch(f"{name} must be an integer") from None
    if value < 0:
        raise TypeMismatch(f"{name} must be >= 0")
    return value


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError as exc:
        logger.error("Health check failed: %s", exc)
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database=db_status,
    )


# ---------------------------------------------------------------------------
# FHIR operations (declared before the {resource_type} routes they shadow)
# ---------------------------------------------------------------------------

def _lookup(store: ResourceStore, code: str | None, system: str | None) -> FhirJSONResponse:
    """Find the single product carrying an MPID or ATC code."""
    if not code:
        raise TypeMismatch("$lookup needs a 'code' parameter")
    matches: dict[str, ResourceInstance] = {}
    if system in (None, MPID_SYSTEM):
        for instance in store.query("MedicinalProduct", {"identifier": code})[0]:
            matches[instance.id] = instance
    if system in (None, ATC_SYSTEM):
        for instance in store.query("MedicinalProduct", {"classification": code})[0]:
            matches[instance.id] = instance

    if not matches:
        raise NotFound(f"No MedicinalProduct with code '{code}'")
    if len(matches) > 1:
        raise AmbiguousChoice(f"{len(matches)} MedicinalProducts match code '{code}'")
    (instance,) = matches.values()
    return _fhir_response(FhirMapper(store).to_document(instance))


def _lookup_parameters(body: Any) -> dict[str, Any]:
    """code/system from a Parameters resource or a plain JSON object."""
    if not isinstance(body, dict):
        raise TypeMismatch("Request body must be a JSON object")
    if body.get("resourceType") != "Parameters":
        return body
    found: dict[str, Any] = {}
    for parameter in body.get("parameter") or []:
        for element in ("valueCode", "valueString", "valueUri"):
            if element in parameter:
                found[parameter.get("name")] = parameter[element]
    return found


@router.get("/fhir/MedicinalProduct/$lookup")
def lookup_medicinal_product(code: str, system: str | None = None, db: Session = Depends(get_db)):
    return _lookup(ResourceStore(db), code, system)


@router.post("/fhir/MedicinalProduct/$lookup")
def lookup_medicinal_product_post(request: Request, body: Any = Depends(fhir_body), db: Session = Depends(get_db)):
    """Same as GET; body parameters override the query string."""
    parameters = {**request.query_params, **_lookup_parameters(body)}
    return _lookup(ResourceStore(db), parameters.get("code"), parameters.get("system"))


@router.post("/fhir/$idmp-transform")
def idmp_transform(medication: Any = Depends(fhir_body)):
    """Convert a FHIR Medication into an IDMP MedicinalProduct document (not stored)."""
    return _fhir_response(medication_to_medicinal_product(medication))


# ---------------------------------------------------------------------------
# FHIR REST
# ---------------------------------------------------------------------------

@router.get("/fhir/{resource_type}")
def search_resources(resource_type: str, request: Request, db: Session = Depends(get_db)):
    """
    Search a resource type and return a searchset Bundle.

    Shape search parameters (identifier, name, classification, ...) apply
    first; any other parameter naming a field is matched by equality.
    """
    store = ResourceStore(db)
    registered = store.registry.find(resource_type)
    if registered is None:
        raise UnsupportedResourceType(f"Unsupported resourceType: {resource_type!r}")

    shape = shape_for(resource_type)
    clauses = []
    for name, value in request.query_params.multi_items():
        if name in CONTROL_PARAMS:
            continue
        param = shape.search.get(name)
        if param is not None:
            clauses.append(Clause(param.field, value, param.op))
        elif registered.get_field(name) is not None:
            clauses.append(Clause(name, value))
        else:
            raise TypeMismatch(f"Unknown search parameter '{name}' for {resource_type}")

    count = _int_param(request, "_count", settings.DEFAULT_PAGE_SIZE)
    offset = _int_param(request, "_offset", 0)
    items, total = store.query(
        resource_type, clauses, limit=count, offset=offset, sort=request.query_params.get("_sort")
    )
    mapper = FhirMapper(store)
    return _fhir_response(bundle([mapper.to_document(i) for i in items], total, _fhir_base(request)))


@router.get("/fhir/{resource_type}/{resource_id}")
def read_resource(resource_type: str, resource_id: str, db: Session = Depends(get_db)):
    store = ResourceStore(db)
    instance = _instance_of(store, resource_type, resource_id)
    log_action(db, actor=ACTOR, action="read", resource_type=resource_type, resource_id=resource_id)
    db.commit()
    return _fhir_response(FhirMapper(store).to_document(instance))


@router.post("/fhir/{resource_type}")
def create_resource(
    resource_type: str,
    request: Request,
    doc: Any = Depends(fhir_body),
    db: Session = Depends(get_db),
):
    """Validate, map and store a FHIR document; 201 with Location on success."""
    store = ResourceStore(db)
    _check_envelope(doc, resource_type, store)
    mapper = FhirMapper(store)
    values = mapper.from_document(doc)

    key = f"{resource_type.lower()}-{uuid.uuid4().hex[:12]}"
    parent = f"{settings.RESOURCE_ROOT}/{resource_type}"
    instance = store.create(resource_type, key, parent, values)
    log_action(
        db,
        actor=ACTOR,
        action="create",
        resource_type=resource_type,
        resource_id=instance.id,
        detail={"path": instance.path},
    )
    db.commit()

    location = f"{_fhir_base(request)}/{resource_type}/{instance.id}"
    return _fhir_response(mapper.to_document(instance), status_code=201, headers={"Location": location})


@router.put("/fhir/{resource_type}/{resource_id}")
def update_resource(
    resource_type: str,
    resource_id: str,
    doc: Any = Depends(fhir_body),
    db: Session = Depends(get_db),
):
    """Replace the field values of an existing instance."""
    store = ResourceStore(db)
    registered = _check_envelope(doc, resource_type, store)
    if doc.get("id") not in (None, resource_id):
        raise TypeMismatch(f"Document id '{doc['id']}' does not match '{resource_id}'")
    _instance_of(store, resource_type, resource_id)

    mapper = FhirMapper(store)
    values = mapper.from_document(doc)
    replacement = {definition.name: values.get(definition.name) for definition in registered.fields}
    instance = store.update(resource_id, replacement)
    log_action(db, actor=ACTOR, action="update", resource_type=resource_type, resource_id=resource_id)
    db.commit()
    return _fhir_response(mapper.to_document(instance))


@router.delete("/fhir/{resource_type}/{resource_id}", status_code=204)
def delete_resource(resource_type: str, resource_id: str, db: Session = Depends(get_db)):
    store = ResourceStore(db)
    _instance_of(store, resource_type, resource_id)
    store.delete(resource_id)
    log_action(db, actor=ACTOR, action="delete", resource_type=resource_type, resource_id=resource_id)
    db.commit()
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Schema registry
# ---------------------------------------------------------------------------

@router.get("/schema", response_model=list[ResourceTypeSummary])
def list_resource_types(db: Session = Depends(get_db)):
    store = ResourceStore(db)
    return [
        ResourceTypeSummary(name=t.name, group=t.group, version=t.version, field_count=len(t.fields))
        for t in store.registry.list_all()
    ]


@router.get("/schema/{name}", response_model=ResourceTypeOut)
def get_resource_type(name: str, db: Session = Depends(get_db)):
    resource_type = ResourceStore(db).registry.get(name)
    return ResourceTypeOut(
        name=resource_type.name,
        group=resource_type.group,
        description=resource_type.description,
        version=resource_type.version,
        fields=[definition.to_dict() for definition in resource_type.fields],
        document_schema=resource_type.document_schema,
        updated_at=resource_type.updated_at,
    )


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@router.post("/admin/install", response_model=PipelineResult)
def install(db: Session = Depends(get_db)):
    """Run the IDMP install plan (types, derived schemas, legacy migration, validation)."""
    return PipelineResult(**run_install(db))


@router.get("/admin/diagnostics", response_model=DiagnosticsResponse)
def diagnostics(db: Session = Depends(get_db)):
    return DiagnosticsResponse(**diagnose(db))
