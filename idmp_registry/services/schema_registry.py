"""
Schema registry – stores resource type definitions and upserts them
idempotently.

Reference fields may name types that are not registered yet, so mutually
recursive schemas can be declared in any order. Those forward references are
checked later by resolve().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from idmp_registry.errors import InvalidFieldSpec, NotFound, UnknownReferencedType
from idmp_registry.models.registry import ResourceRecord, ResourceTypeRecord
from idmp_registry.schemas.fields import FieldDefinition, check_unique_names, walk_fields

logger = logging.getLogger(__name__)


@dataclass
class ResourceType:
    name: str
    group: str
    fields: tuple[FieldDefinition, ...]
    description: str | None = None
    version: int = 1
    document_schema: dict[str, Any] | None = None
    updated_at: datetime | None = field(default=None, compare=False)

    def get_field(self, name: str) -> FieldDefinition | None:
        for definition in self.fields:
            if definition.name == name:
                return definition
        return None

    @property
    def field_names(self) -> list[str]:
        return [definition.name for definition in self.fields]

    @property
    def mandatory_fields(self) -> list[FieldDefinition]:
        return [definition for definition in self.fields if definition.mandatory]


class SchemaRegistry:
    def __init__(self, db: Session):
        self.db = db

    # -- reads --------------------------------------------------------------

    def find(self, name: str) -> ResourceType | None:
        record = self.db.get(ResourceTypeRecord, name)
        return _to_resource_type(record) if record else None

    def get(self, name: str) -> ResourceType:
        resource_type = self.find(name)
        if resource_type is None:
            raise NotFound(f"Resource type '{name}' is not registered")
        return resource_type

    def list_all(self) -> list[ResourceType]:
        records = self.db.scalars(select(ResourceTypeRecord).order_by(ResourceTypeRecord.name))
        return [_to_resource_type(record) for record in records]

    def names(self) -> set[str]:
        return set(self.db.scalars(select(ResourceTypeRecord.name)))

    # -- writes -------------------------------------------------------------

    def upsert(
        self,
        name: str,
        group: str,
        fields: list[FieldDefinition] | tuple[FieldDefinition, ...],
        description: str | None = None,
    ) -> ResourceType:
        """
        Create the type or replace its field list.

        Applying the same definition twice leaves the stored type untouched,
        so its version (and deep equality) is unchanged.
        """
        if not name or not name.strip():
            raise InvalidFieldSpec("Resource type name must not be empty")
        for definition in fields:
            if not isinstance(definition, FieldDefinition):
                raise InvalidFieldSpec(f"{name}: fields must be FieldDefinition instances")
        check_unique_names(fields, f"resource type '{name}'")
        serialized = [definition.to_dict() for definition in fields]

        record = self.db.get(ResourceTypeRecord, name)
        if record is None:
            record = ResourceTypeRecord(
                name=name,
                group=group,
                description=description,
                fields=serialized,
                version=1,
            )
            self.db.add(record)
            logger.info("Creating resource type '%s' (%d fields)", name, len(fields))
        else:
            new_description = record.description if description is None else description
            if (
                record.fields == serialized
                and record.group == group
                and record.description == new_description
            ):
                logger.debug("Resource type '%s' unchanged", name)
                return _to_resource_type(record)
            record.fields = serialized
            record.group = group
            record.description = new_description
            record.version = (record.version or 0) + 1
            record.document_schema = None
            logger.info("Updated resource type '%s' to version %d", name, record.version)
        self.db.flush()
        return _to_resource_type(record)

    def set_document_schema(self, name: str, schema: dict[str, Any]) -> bool:
        """Store a derived document schema; returns True when it changed."""
        record = self.db.get(ResourceTypeRecord, name)
        if record is None:
            raise NotFound(f"Resource type '{name}' is not registered")
        if record.document_schema == schema:
            return False
        record.document_schema = schema
        self.db.flush()
        return True

    def rename_field(self, type_name: str, old: str, new: str) -> ResourceType:
        """Rename a field and carry stored values over; a no-op once applied."""
        resource_type = self.get(type_name)
        if resource_type.get_field(old) is None:
            if resource_type.get_field(new) is not None:
                return resource_type
            raise NotFound(f"{type_name} has no field '{old}'")
        fields = []
        for definition in resource_type.fields:
            if definition.name == old:
                data = definition.to_dict()
                data["name"] = new
                definition = FieldDefinition.from_dict(data)
            fields.append(definition)
        updated = self.upsert(type_name, resource_type.group, fields, resource_type.description)

        records = self.db.scalars(select(ResourceRecord).where(ResourceRecord.resource_type == type_name))
        for record in records:
            if old in record.values:
                values = dict(record.values)
                values[new] = values.pop(old)
                record.values = values
        self.db.flush()
        logger.info("Renamed %s.%s to %s", type_name, old, new)
        return updated

    def remove(self, name: str) -> None:
        record = self.db.get(ResourceTypeRecord, name)
        if record is None:
            raise NotFound(f"Resource type '{name}' is not registered")
        self.db.delete(record)
        self.db.flush()
        logger.info("Removed resource type '%s'", name)

    # -- validation ---------------------------------------------------------

    def unresolved_references(self) -> list[str]:
        known = self.names()
        missing = []
        for resource_type in self.list_all():
            for path, definition in walk_fields(resource_type.fields):
                for target in definition.referenced_types:
                    if target not in known:
                        missing.append(f"{resource_type.name}.{path} -> {target}")
        return missing

    def resolve(self) -> None:
        """Check every forward reference now points at a registered type."""
        missing = self.unresolved_references()
        if missing:
            raise UnknownReferencedType(
                "Unknown referenced types: " + ", ".join(missing), missing=missing
            )


def _to_resource_type(record: ResourceTypeRecord) -> ResourceType:
    return ResourceType(
        name=record.name,
        group=record.group,
        fields=tuple(FieldDefinition.from_dict(data) for data in record.fields),
        description=record.description,
        version=record.version,
        document_schema=record.document_schema,
        updated_at=record.updated_at,
    )
