"""
Resource store – CRUD over resource instances with location semantics.

Instances live at a location (parent path + key), hold typed field values
checked against their resource type, and reference other instances by id
only. Deleting an instance never touches the instances it references.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from idmp_registry.errors import DuplicateKey, NotFound, TypeMismatch
from idmp_registry.models.registry import ResourceRecord
from idmp_registry.schemas.fields import FieldDefinition, FieldKind
from idmp_registry.schemas.values import (
    ChoiceValue,
    CodeableConcept,
    Component,
    Quantity,
    alternative_field,
    check_value,
    decode_value,
    encode_value,
    iter_references,
    to_decimal,
)
from idmp_registry.services.schema_registry import ResourceType, SchemaRegistry

logger = logging.getLogger(__name__)

# Fixed pool of striped locks; two locations may share a stripe.
LOCK_STRIPES = 64
_key_locks = [threading.Lock() for _ in range(LOCK_STRIPES)]


def _lock_for(parent: str, key: str) -> threading.Lock:
    return _key_locks[hash((parent, key)) % LOCK_STRIPES]


@dataclass
class ResourceInstance:
    id: str
    resource_type: str
    key: str
    parent: str
    published: bool
    values: dict[str, Any]
    version_id: int = 1
    created_at: datetime | None = field(default=None, compare=False)
    updated_at: datetime | None = field(default=None, compare=False)

    @property
    def path(self) -> str:
        return join_path(self.parent, self.key)


@dataclass(frozen=True)
class Clause:
    """One filter clause; a query matches when every clause matches."""

    field: str
    value: Any
    op: str = "eq"

    def __post_init__(self):
        if self.op not in ("eq", "contains"):
            raise ValueError(f"Unsupported clause operator: {self.op}")


def normalize_parent(parent: str | None) -> str:
    if not parent:
        return "/"
    parent = "/" + parent.strip("/")
    return parent


def join_path(parent: str, key: str) -> str:
    return f"{parent.rstrip('/')}/{key}"


class ResourceStore:
    def __init__(self, db: Session, registry: SchemaRegistry | None = None):
        self.db = db
        self.registry = registry or SchemaRegistry(db)

    # -- create / read ------------------------------------------------------

    def create(
        self,
        type_name: str,
        key: str,
        parent: str | None,
        values: Mapping[str, Any],
        published: bool = True,
    ) -> ResourceInstance:
        resource_type = self.registry.get(type_name)
        if not key or "/" in key:
            raise TypeMismatch(f"Invalid key {key!r}")
        parent = normalize_parent(parent)
        checked = self._check_values(resource_type, values)
        self._check_references(resource_type, checked)

        with _lock_for(parent, key):
            if self._find_at(parent, key) is not None:
                raise DuplicateKey(f"An instance already exists at {join_path(parent, key)}")
            self._check_unique(resource_type, checked)
            record = ResourceRecord(
                resource_type=type_name,
                key=key,
                parent=parent,
                published=published,
                values=self._encode(resource_type, checked),
                version_id=1,
            )
            try:
                # savepoint: a losing insert must not discard the caller's open transaction
                with self.db.begin_nested():
                    self.db.add(record)
            except IntegrityError:
                raise DuplicateKey(f"An instance already exists at {join_path(parent, key)}") from None

        logger.info("Created %s/%s at %s", type_name, record.id, join_path(parent, key))
        return self._to_instance(record, resource_type)

    def get_by_id(self, instance_id: str) -> ResourceInstance:
        record = self._record(instance_id)
        return self._to_instance(record, self.registry.get(record.resource_type))

    def find_by_id(self, instance_id: str) -> ResourceInstance | None:
        try:
            return self.get_by_id(instance_id)
        except NotFound:
            return None

    def get_by_location(self, path: str) -> ResourceInstance:
        parent, _, key = path.rstrip("/").rpartition("/")
        record = self._find_at(normalize_parent(parent), key) if key else None
        if record is None:
            raise NotFound(f"No instance at {path}")
        return self._to_instance(record, self.registry.get(record.resource_type))

    def type_of(self, instance_id: str) -> str | None:
        return self.db.scalar(
            select(ResourceRecord.resource_type).where(ResourceRecord.id == instance_id)
        )

    # -- update / delete ----------------------------------------------------

    def update(
        self,
        instance_id: str,
        values: Mapping[str, Any],
        published: bool | None = None,
    ) -> ResourceInstance:
        """Merge values into the instance; a None value clears the field."""
        record = self._record(instance_id)
        resource_type = self.registry.get(record.resource_type)
        checked = self._check_values(resource_type, values)
        self._check_references(resource_type, checked)

        current = self._decode(resource_type, record.values)
        for name, value in values.items():
            if value is None:
                current.pop(name, None)
        current.update(checked)
        self._check_unique(resource_type, checked, exclude_id=record.id)

        record.values = self._encode(resource_type, current)
        if published is not None:
            record.published = published
        record.version_id = (record.version_id or 0) + 1
        record.updated_at = datetime.now(timezone.utc)
        self.db.flush()
        logger.info("Updated %s/%s (version %d)", record.resource_type, record.id, record.version_id)
        return self._to_instance(record, resource_type)

    def delete(self, instance_id: str) -> None:
        """Remove an instance with its embedded values; references to it are left as-is."""
        record = self._record(instance_id)
        self.db.delete(record)
        self.db.flush()
        logger.info("Deleted %s/%s", record.resource_type, instance_id)

    # -- listing ------------------------------------------------------------

    def query(
        self,
        type_name: str,
        filters: Mapping[str, Any] | list[Clause] | None = None,
        limit: int | None = None,
        offset: int = 0,
        sort: str | None = None,
    ) -> tuple[list[ResourceInstance], int]:
        """
        Return one page of matching instances and the total match count.

        Filters are a conjunction of clauses. Equality on a CodeableConcept
        matches any of its coding codes; "contains" is a case-insensitive
        substring match. Insertion order unless sort names a field.
        """
        resource_type = self.registry.get(type_name)
        clauses = _to_clauses(filters)
        for clause in clauses:
            if resource_type.get_field(clause.field) is None:
                raise TypeMismatch(f"{type_name} has no field '{clause.field}'")

        records = self.db.scalars(
            select(ResourceRecord)
            .where(ResourceRecord.resource_type == type_name)
            .order_by(ResourceRecord.seq)
        )
        matched = [
            instance
            for instance in (self._to_instance(r, resource_type) for r in records)
            if all(
                _matches(resource_type.get_field(c.field), instance.values.get(c.field), c)
                for c in clauses
            )
        ]

        if sort:
            descending = sort.startswith("-")
            sort_field = sort.lstrip("-")
            definition = resource_type.get_field(sort_field)
            if definition is None:
                raise TypeMismatch(f"{type_name} has no field '{sort_field}'")
            present = [i for i in matched if i.values.get(sort_field) is not None]
            missing = [i for i in matched if i.values.get(sort_field) is None]
            present.sort(
                key=lambda i: _sort_value(definition, i.values[sort_field]), reverse=descending
            )
            matched = present + missing

        total = len(matched)
        end = None if limit is None else offset + limit
        return matched[offset:end], total

    def count(self, type_name: str) -> int:
        return self.db.scalar(
            select(func.count()).select_from(ResourceRecord).where(ResourceRecord.resource_type == type_name)
        )

    def iter_after(self, type_name: str, after_seq: int = 0) -> Iterator[tuple[int, ResourceInstance]]:
        """Yield (insertion sequence, instance) past a high-water mark."""
        resource_type = self.registry.get(type_name)
        records = self.db.scalars(
            select(ResourceRecord)
            .where(ResourceRecord.resource_type == type_name, ResourceRecord.seq > after_seq)
            .order_by(ResourceRecord.seq)
        ).all()
        for record in records:
            yield record.seq, self._to_instance(record, resource_type)

    def ids_of_type(self, type_name: str) -> list[str]:
        return list(
            self.db.scalars(
                select(ResourceRecord.id)
                .where(ResourceRecord.resource_type == type_name)
                .order_by(ResourceRecord.seq)
            )
        )

    # -- internals ----------------------------------------------------------

    def _record(self, instance_id: str) -> ResourceRecord:
        record = self.db.scalar(select(ResourceRecord).where(ResourceRecord.id == instance_id))
        if record is None:
            raise NotFound(f"Resource '{instance_id}' not found")
        return record

    def _find_at(self, parent: str, key: str) -> ResourceRecord | None:
        return self.db.scalar(
            select(ResourceRecord).where(ResourceRecord.parent == parent, ResourceRecord.key == key)
        )

    def _check_values(self, resource_type: ResourceType, values: Mapping[str, Any]) -> dict[str, Any]:
        checked: dict[str, Any] = {}
        for name, value in values.items():
            definition = resource_type.get_field(name)
            if definition is None:
                raise TypeMismatch(f"{resource_type.name} has no field '{name}'")
            if value is not None:
                checked[name] = check_value(definition, value)
        return checked

    def _check_references(self, resource_type: ResourceType, values: dict[str, Any]) -> None:
        for name, value in values.items():
            for definition, target_id in iter_references(resource_type.get_field(name), value):
                target_type = self.type_of(target_id)
                if target_type is None:
                    raise TypeMismatch(
                        f"Field '{definition.name}' references unknown instance '{target_id}'"
                    )
                if target_type not in definition.referenced_types:
                    raise TypeMismatch(
                        f"Field '{definition.name}' cannot reference a {target_type} "
                        f"(allowed: {', '.join(definition.referenced_types)})"
                    )

    def _check_unique(
        self, resource_type: ResourceType, values: dict[str, Any], exclude_id: str | None = None
    ) -> None:
        unique_fields = [d for d in resource_type.fields if d.unique and d.name in values]
        if not unique_fields:
            return
        records = self.db.scalars(
            select(ResourceRecord).where(ResourceRecord.resource_type == resource_type.name)
        )
        for record in records:
            if record.id == exclude_id:
                continue
            for definition in unique_fields:
                if record.values.get(definition.name) == encode_value(definition, values[definition.name]):
                    raise DuplicateKey(
                        f"{resource_type.name}.{definition.name} value is already used by {record.id}"
                    )

    def _encode(self, resource_type: ResourceType, values: dict[str, Any]) -> dict[str, Any]:
        return {name: encode_value(resource_type.get_field(name), value) for name, value in values.items()}

    def _decode(self, resource_type: ResourceType, raw: dict[str, Any]) -> dict[str, Any]:
        values = {}
        for name, stored in (raw or {}).items():
            definition = resource_type.get_field(name)
            if definition is None:
                logger.warning("Ignoring stored value for undefined field %s.%s", resource_type.name, name)
                continue
            values[name] = decode_value(definition, stored)
        return values

    def _to_instance(self, record: ResourceRecord, resource_type: ResourceType) -> ResourceInstance:
        return ResourceInstance(
            id=record.id,
            resource_type=record.resource_type,
            key=record.key,
            parent=record.parent,
            published=record.published,
            values=self._decode(resource_type, record.values),
            version_id=record.version_id,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


# ---------------------------------------------------------------------------
# Filter helpers
# ---------------------------------------------------------------------------

def _to_clauses(filters: Mapping[str, Any] | list[Clause] | None) -> list[Clause]:
    if not filters:
        return []
    if isinstance(filters, Mapping):
        return [
            value if isinstance(value, Clause) else Clause(field=name, value=value)
            for name, value in filters.items()
        ]
    return list(filters)


def search_terms(definition: FieldDefinition, value: Any, op: str = "eq") -> list[Any]:
    """Flatten a field value into the scalar terms a clause is compared with."""
    if value is None:
        return []
    if isinstance(value, list):
        terms = []
        for item in value:
            terms.extend(search_terms(definition, item, op))
        return terms
    if isinstance(value, CodeableConcept):
        terms = value.codes
        if op == "contains":
            terms = terms + [value.text] + [c.display for c in value.coding]
        return [t for t in terms if t is not None]
    if isinstance(value, Quantity):
        return [value.value] if value.value is not None else []
    if isinstance(value, ChoiceValue):
        return search_terms(alternative_field(definition, value.kind), value.value, op)
    if isinstance(value, Component):
        terms = []
        for name, sub_value in value.values.items():
            sub = definition.sub_field(name)
            if sub is not None:
                terms.extend(search_terms(sub, sub_value, op))
        for child in value.children:
            terms.extend(search_terms(definition, child, op))
        return terms
    if isinstance(value, (date, datetime)):
        return [value.isoformat()]
    return [value]


def _equal(term: Any, target: Any) -> bool:
    if isinstance(term, bool):
        if isinstance(target, str):
            return term == (target.lower() == "true")
        return term == target
    if isinstance(term, Decimal):
        try:
            return term == to_decimal(target, "filter")
        except TypeMismatch:
            return False
    return str(term) == str(target)


def _matches(definition: FieldDefinition, value: Any, clause: Clause) -> bool:
    terms = search_terms(definition, value, clause.op)
    if clause.op == "contains":
        needle = str(clause.value).lower()
        return any(needle in str(term).lower() for term in terms)
    return any(_equal(term, clause.value) for term in terms)


def _sort_value(definition: FieldDefinition, value: Any) -> Any:
    if definition.kind in (FieldKind.TEXT, FieldKind.LONGTEXT, FieldKind.SINGLE_SELECT):
        return value.lower()
    if definition.kind in (FieldKind.NUMBER, FieldKind.BOOLEAN, FieldKind.DATE, FieldKind.DATETIME):
        return value
    terms = search_terms(definition, value)
    return str(terms[0]) if terms else ""
