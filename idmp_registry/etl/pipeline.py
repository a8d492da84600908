"""
IDMP install, migration and cleanup plans.

The install plan registers the IDMP resource types, regenerates their
derived document schemas, converts legacy flat records into typed instances
and validates the result:

    install-base-types -> install-support-types -> rebuild-derived-artifacts
        -> migrate-legacy-data -> validate

Every step is safe to repeat. A second run over an installed registry
reports zero schema changes and zero created records.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete
from sqlalchemy.orm import Session

from idmp_registry.config import settings
from idmp_registry.errors import (
    AmbiguousChoice,
    DocumentValidationError,
    DuplicateKey,
    MigrationStepFailed,
    MissingRequiredField,
    NotFound,
    RegistryError,
    TypeMismatch,
)
from idmp_registry.etl.dag import DAG
from idmp_registry.models.registry import MigrationCheckpoint, PipelineRun
from idmp_registry.schemas.fhir import build_document_schema
from idmp_registry.schemas.idmp import (
    REQUIRED_FIELDS,
    TypeDefinition,
    base_types,
    name_from_legacy_string,
    support_types,
)
from idmp_registry.schemas.shapes import (
    ATC_SYSTEM,
    LEGAL_STATUS_SYSTEM,
    PRODUCT_TYPE_SYSTEM,
    SUBSTANCE_CATEGORY_SYSTEM,
)
from idmp_registry.schemas.values import CodeableConcept, iter_references
from idmp_registry.services.resource_store import ResourceInstance, ResourceStore
from idmp_registry.services.schema_registry import ResourceType, SchemaRegistry

logger = logging.getLogger(__name__)

MIGRATE_STEP = "migrate-legacy-data"


# ---------------------------------------------------------------------------
# Install steps (each receives and returns a context dict)
# ---------------------------------------------------------------------------


def _install(db: Session, definitions: list[TypeDefinition]) -> tuple[list[str], int]:
    registry = SchemaRegistry(db)
    changes = 0
    for definition in definitions:
        before = registry.find(definition.name)
        after = registry.upsert(definition.name, definition.group, definition.fields, definition.description)
        if before is None or before.version != after.version:
            changes += 1
    return [d.name for d in definitions], changes


def install_base_types(context: dict[str, Any]) -> dict[str, Any]:
    """Organization, Substance and Ingredient."""
    names, changes = _install(context["db"], base_types())
    logger.info("Base types installed: %s (%d changed)", ", ".join(names), changes)
    return {"base_types": names, "base_schema_changes": changes}


def install_support_types(context: dict[str, Any]) -> dict[str, Any]:
    names, changes = _install(context["db"], support_types())
    logger.info("Support types installed: %s (%d changed)", ", ".join(names), changes)
    return {"support_types": names, "support_schema_changes": changes}


def rebuild_derived_artifacts(context: dict[str, Any]) -> dict[str, Any]:
    """
    Resolve forward references, then regenerate each type's document schema.
    An unresolved reference fails the step.
    """
    registry = SchemaRegistry(context["db"])
    registry.resolve()
    changed = 0
    for resource_type in registry.list_all():
        if registry.set_document_schema(resource_type.name, build_document_schema(resource_type)):
            changed += 1
    logger.info("Derived document schemas regenerated: %d changed", changed)
    return {
        "derived_schema_changes": changed,
        "schema_changes": (
            context.get("base_schema_changes", 0) + context.get("support_schema_changes", 0) + changed
        ),
    }


# ---------------------------------------------------------------------------
# Legacy migration
# ---------------------------------------------------------------------------


def _concept(system: str, code: str | None) -> CodeableConcept | None:
    return CodeableConcept.of(system, code) if code else None


def _require(resource_type: ResourceType, values: dict[str, Any]) -> None:
    missing = [
        MissingRequiredField(d.name, resource_type.name)
        for d in resource_type.mandatory_fields
        if values.get(d.name) in (None, [])
    ]
    if missing:
        raise DocumentValidationError(missing)


def convert_legacy_substance(store: ResourceStore, legacy: ResourceInstance) -> dict[str, Any]:
    values = legacy.values
    category = _concept(SUBSTANCE_CATEGORY_SYSTEM, values.get("substanceType"))
    return {
        "identifier": values.get("code"),
        "name": values.get("substanceName"),
        "casNumber": values.get("casNumber"),
        "category": [category] if category else None,
    }


def _migrated_substance(store: ResourceStore, legacy_id: str) -> str:
    legacy = store.find_by_id(legacy_id)
    if legacy is None or not legacy.values.get("code"):
        raise TypeMismatch(f"Legacy substance '{legacy_id}' has no UNII code to link")
    matches, total = store.query("Substance", {"identifier": legacy.values["code"]})
    if total == 0:
        raise NotFound(f"Substance {legacy.values['code']} has not been migrated yet")
    if total > 1:
        raise AmbiguousChoice(f"{total} substances share identifier {legacy.values['code']}")
    return matches[0].id


def convert_legacy_product(store: ResourceStore, legacy: ResourceInstance) -> dict[str, Any]:
    values = legacy.values
    names = []
    if values.get("name"):
        names.append(name_from_legacy_string(values["name"], "BAN"))
    if values.get("nonproprietaryName"):
        names.append(name_from_legacy_string(values["nonproprietaryName"], "INN"))
    classification = _concept(ATC_SYSTEM, values.get("atcCode"))
    return {
        "identifier": values.get("mpid"),
        "name": names or None,
        "productType": _concept(PRODUCT_TYPE_SYSTEM, values.get("productType")),
        "classification": [classification] if classification else None,
        "legalStatusOfSupply": _concept(LEGAL_STATUS_SYSTEM, values.get("legalStatusOfSupply")),
        "description": values.get("description"),
        "ingredient": [_migrated_substance(store, i) for i in values.get("ingredients") or []] or None,
    }


# Substances first so products can link to them
LEGACY_CONVERTERS: list[tuple[str, str, Callable[[ResourceStore, ResourceInstance], dict[str, Any]]]] = [
    ("LegacySubstance", "Substance", convert_legacy_substance),
    ("LegacyMedicinalProduct", "MedicinalProduct", convert_legacy_product),
]


def _checkpoint(db: Session, source_type: str) -> MigrationCheckpoint:
    checkpoint = db.get(MigrationCheckpoint, (MIGRATE_STEP, source_type))
    if checkpoint is None:
        checkpoint = MigrationCheckpoint(step=MIGRATE_STEP, source_type=source_type, high_water_mark=0)
        db.add(checkpoint)
        db.flush()
    return checkpoint


def migrate_legacy_data(context: dict[str, Any]) -> dict[str, Any]:
    """
    Convert legacy flat records one at a time, resuming past the stored
    high-water mark. Item failures are reported, not raised; a missing
    target type (a schema problem) fails the step.

    The mark only moves over items that were created or already present,
    so a failed item and everything after it are revisited on the next run.
    """
    db: Session = context["db"]
    store = ResourceStore(db)
    registry = store.registry
    outcomes: list[dict[str, Any]] = []

    for source_type, target_type, convert in LEGACY_CONVERTERS:
        if registry.find(source_type) is None:
            logger.warning("Legacy type %s is not registered – skipping", source_type)
            outcomes.append({"source_type": source_type, "outcome": "skipped", "reason": "type not registered"})
            continue

        target = registry.get(target_type)
        checkpoint = _checkpoint(db, source_type)
        advancing = True
        for seq, legacy in store.iter_after(source_type, checkpoint.high_water_mark):
            outcome: dict[str, Any] = {"source_type": source_type, "source_id": legacy.id}
            try:
                values = {k: v for k, v in convert(store, legacy).items() if v is not None}
                _require(target, values)
                created = store.create(
                    target_type, f"{legacy.key}-fhir", legacy.parent, values, published=legacy.published
                )
                outcome.update(outcome="created", target_id=created.id)
            except DuplicateKey as exc:
                logger.warning("Skipping %s/%s: %s", source_type, legacy.id, exc)
                outcome.update(outcome="skipped", reason=str(exc))
            except RegistryError as exc:
                logger.warning("Migration of %s/%s failed: %s", source_type, legacy.id, exc)
                outcome.update(outcome="failed", reason=str(exc))
            outcomes.append(outcome)
            if outcome["outcome"] == "failed":
                advancing = False
            elif advancing:
                checkpoint.high_water_mark = seq
                checkpoint.updated_at = datetime.now(timezone.utc)
                db.flush()

    created = sum(1 for o in outcomes if o["outcome"] == "created")
    failed = sum(1 for o in outcomes if o["outcome"] == "failed")
    logger.info("Legacy migration: %d created, %d failed, %d outcomes", created, failed, len(outcomes))
    return {"migration_outcomes": outcomes, "records_created": created, "item_failures": failed}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate(context: dict[str, Any]) -> dict[str, Any]:
    """
    Required types and fields exist, references resolve and published
    instances carry their mandatory fields. Errors fail the step; warnings
    (dangling instance references) are only reported.
    """
    db: Session = context["db"]
    store = ResourceStore(db)
    registry = store.registry
    errors: list[str] = []
    warnings: list[str] = []

    for type_name, field_names in REQUIRED_FIELDS.items():
        resource_type = registry.find(type_name)
        if resource_type is None:
            errors.append(f"Resource type {type_name} is not registered")
            continue
        errors.extend(
            f"{type_name}.{name} is not defined"
            for name in field_names
            if resource_type.get_field(name) is None
        )

    product = registry.find("MedicinalProduct")
    ingredient = product.get_field("ingredient") if product else None
    if ingredient is not None and "Substance" not in ingredient.referenced_types:
        errors.append("MedicinalProduct.ingredient must reference Substance")

    errors.extend(f"Unresolved reference {ref}" for ref in registry.unresolved_references())

    for type_name in REQUIRED_FIELDS:
        resource_type = registry.find(type_name)
        if resource_type is None:
            continue
        instances, _ = store.query(type_name)
        for instance in instances:
            if instance.published:
                errors.extend(
                    f"{type_name}/{instance.id} is missing mandatory field '{d.name}'"
                    for d in resource_type.mandatory_fields
                    if instance.values.get(d.name) in (None, [])
                )
            for name, value in instance.values.items():
                for definition, target_id in iter_references(resource_type.get_field(name), value):
                    if store.type_of(target_id) is None:
                        warnings.append(f"{type_name}/{instance.id}.{definition.name} -> {target_id} is dangling")

    for warning in warnings:
        logger.warning("Validation: %s", warning)
    if errors:
        raise MigrationStepFailed("validate", f"{len(errors)} error(s): " + "; ".join(errors))
    logger.info("Validation passed with %d warning(s)", len(warnings))
    return {"validation_errors": errors, "validation_warnings": warnings}


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


def _installed_type_names() -> list[str]:
    return [d.name for d in base_types() + support_types()]


def _delete_instances(db: Session, targets: list[str]) -> dict[str, int]:
    store = ResourceStore(db)
    deleted: dict[str, int] = {}
    for type_name in targets:
        if store.registry.find(type_name) is None:
            continue
        ids = store.ids_of_type(type_name)
        for instance_id in ids:
            store.delete(instance_id)
        deleted[type_name] = len(ids)
    logger.info("Cleanup deleted %d instance(s)", sum(deleted.values()))
    return deleted


def build_cleanup_pipeline(types: list[str] | None = None, remove_definitions: bool = False) -> DAG:
    """Delete instances (and optionally the type definitions) through the store."""
    # products first so nothing is left pointing at a half-deleted graph
    targets = list(types) if types else list(reversed(_installed_type_names()))

    def delete_instances(context: dict[str, Any]) -> dict[str, Any]:
        return {"deleted": _delete_instances(context["db"], targets)}

    def remove_types(context: dict[str, Any]) -> dict[str, Any]:
        db: Session = context["db"]
        registry = SchemaRegistry(db)
        removed = []
        for type_name in targets:
            if registry.find(type_name) is not None:
                registry.remove(type_name)
                removed.append(type_name)
        db.execute(delete(MigrationCheckpoint))
        db.flush()
        return {"removed_types": removed}

    dag = DAG("idmp-cleanup")
    dag.add_task("delete-instances", delete_instances)
    if remove_definitions:
        dag.add_task("remove-definitions", remove_types, depends_on=["delete-instances"])
    return dag


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

SAMPLE_SUBSTANCES = [
    {"key": "paracetamol", "identifier": "362O9ITL9D", "name": "Paracétamol", "casNumber": "103-90-2"},
    {"key": "ibuprofen", "identifier": "WK2XYI10QM", "name": "Ibuprofène", "casNumber": "15687-27-1"},
    {"key": "aspirin", "identifier": "R16CO5Y76E", "name": "Aspirine", "casNumber": "50-78-2"},
]

SAMPLE_PRODUCTS = [
    {"key": "doliprane-500mg", "mpid": "FR-MP-001", "name": "Doliprane 500mg", "atc": "N02BE01", "substance": "362O9ITL9D"},
    {"key": "advil-400mg", "mpid": "FR-MP-002", "name": "Advil 400mg", "atc": "M01AE01", "substance": "WK2XYI10QM"},
    {"key": "aspirine-500mg", "mpid": "FR-MP-003", "name": "Aspirine UPSA 500mg", "atc": "N02BA01", "substance": "R16CO5Y76E"},
]


def _create_sample(store: ResourceStore, type_name: str, key: str, values: dict[str, Any]) -> dict[str, Any]:
    outcome: dict[str, Any] = {"source_type": "sample", "source_id": key}
    try:
        _require(store.registry.get(type_name), values)
        created = store.create(type_name, key, f"{settings.RESOURCE_ROOT}/{type_name}", values)
        outcome.update(outcome="created", target_id=created.id)
    except DuplicateKey as exc:
        outcome.update(outcome="skipped", reason=str(exc))
    return outcome


def seed_sample_data(context: dict[str, Any]) -> dict[str, Any]:
    """
    Create a small conforming registry: three substances and one product
    per substance. Samples already present are skipped, so a re-run
    creates nothing.
    """
    store = ResourceStore(context["db"])
    outcomes = []
    for sample in SAMPLE_SUBSTANCES:
        values = {k: v for k, v in sample.items() if k != "key"}
        values["category"] = [CodeableConcept.of(SUBSTANCE_CATEGORY_SYSTEM, "chemical")]
        outcomes.append(_create_sample(store, "Substance", sample["key"], values))

    for sample in SAMPLE_PRODUCTS:
        substances, total = store.query("Substance", {"identifier": sample["substance"]})
        if total != 1:
            raise NotFound(f"Sample substance {sample['substance']} is missing or duplicated")
        values = {
            "identifier": sample["mpid"],
            "name": [name_from_legacy_string(sample["name"], "BAN")],
            "productType": CodeableConcept.of(PRODUCT_TYPE_SYSTEM, "chemical"),
            "classification": [CodeableConcept.of(ATC_SYSTEM, sample["atc"])],
            "legalStatusOfSupply": CodeableConcept.of(LEGAL_STATUS_SYSTEM, "otc"),
            "ingredient": [substances[0].id],
        }
        outcomes.append(_create_sample(store, "MedicinalProduct", sample["key"], values))

    created = sum(1 for o in outcomes if o["outcome"] == "created")
    logger.info("Sample data: %d created, %d already present", created, len(outcomes) - created)
    return {"migration_outcomes": outcomes, "records_created": created}


# ---------------------------------------------------------------------------
# Plans and runs
# ---------------------------------------------------------------------------


def build_idmp_install_pipeline() -> DAG:
    """
    Assemble the IDMP install DAG:

        install-base-types -> install-support-types -> rebuild-derived-artifacts
            -> migrate-legacy-data -> validate
    """
    dag = DAG("idmp-install")
    dag.add_task("install-base-types", install_base_types)
    dag.add_task("install-support-types", install_support_types, depends_on=["install-base-types"])
    dag.add_task(
        "rebuild-derived-artifacts",
        rebuild_derived_artifacts,
        depends_on=["install-base-types", "install-support-types"],
    )
    dag.add_task(MIGRATE_STEP, migrate_legacy_data, depends_on=["rebuild-derived-artifacts"])
    dag.add_task("validate", validate, depends_on=[MIGRATE_STEP])
    return dag


def build_seed_pipeline(reset: bool = False) -> DAG:
    """
    Install the IDMP types and create the sample registry. With `reset`,
    every IDMP instance is deleted first.
    """
    dag = DAG("idmp-seed")
    dag.add_task("install-base-types", install_base_types)
    dag.add_task("install-support-types", install_support_types, depends_on=["install-base-types"])
    dag.add_task(
        "rebuild-derived-artifacts",
        rebuild_derived_artifacts,
        depends_on=["install-base-types", "install-support-types"],
    )
    seed_after = ["rebuild-derived-artifacts"]
    if reset:
        targets = list(reversed(_installed_type_names()))
        dag.add_task(
            "delete-instances",
            lambda context: {"deleted": _delete_instances(context["db"], targets)},
            depends_on=["rebuild-derived-artifacts"],
        )
        seed_after = ["delete-instances"]
    dag.add_task("seed-sample-data", seed_sample_data, depends_on=seed_after)
    return dag


def build_validate_pipeline() -> DAG:
    dag = DAG("idmp-validate")
    dag.add_task("validate", validate)
    return dag


def run_pipeline(db: Session, dag: DAG) -> dict[str, Any]:
    """
    Run a plan, record it in pipeline_runs and commit.

    Work done before a failed step is committed as well, so an aborted
    migration resumes from its high-water mark on the next run.
    """
    run = PipelineRun(
        pipeline_name=dag.name,
        status="in_progress",
        started_at=datetime.now(timezone.utc),
        dag_definition=dag.to_dict(),
    )
    db.add(run)
    db.flush()

    summary = dag.run(initial_context={"db": db})

    results: dict[str, Any] = {}
    for task in dag.tasks.values():
        results.update(task.result)

    run.status = summary["status"]
    run.completed_at = datetime.now(timezone.utc)
    run.records_created = results.get("records_created", 0)
    run.schema_changes = results.get("schema_changes", 0)
    run.failed_step = summary["failed_step"]
    run.errors = [summary["error"]] if summary["error"] else []
    db.commit()

    summary.update(
        run_id=run.id,
        records_created=run.records_created,
        schema_changes=run.schema_changes,
        item_failures=results.get("item_failures", 0),
        migration_outcomes=results.get("migration_outcomes", []),
        warnings=results.get("validation_warnings", []),
    )
    return summary


def run_install(db: Session) -> dict[str, Any]:
    return run_pipeline(db, build_idmp_install_pipeline())


def diagnose(db: Session) -> dict[str, Any]:
    """Registration status and instance counts per type."""
    store = ResourceStore(db)
    registry = store.registry
    registered = {resource_type.name: resource_type for resource_type in registry.list_all()}
    types = []
    for type_name in sorted(set(_installed_type_names()) | set(registered)):
        resource_type = registered.get(type_name)
        types.append(
            {
                "name": type_name,
                "registered": resource_type is not None,
                "group": resource_type.group if resource_type else None,
                "version": resource_type.version if resource_type else None,
                "instances": store.count(type_name),
            }
        )

    checkpoints = {
        cp.source_type: cp.high_water_mark
        for cp in db.query(MigrationCheckpoint).filter(MigrationCheckpoint.step == MIGRATE_STEP)
    }
    return {
        "types": types,
        "unresolved_references": registry.unresolved_references(),
        "checkpoints": checkpoints,
    }
