"""
Persistence tables for the registry.

Schema definitions are keyed by resource type name, resource instances by
their id with a unique (parent, key) location. Embedded values (codings,
concepts, components) live inside the instance's JSON values column.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from idmp_registry.models.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _now():
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Resource type – a named schema
# ---------------------------------------------------------------------------
class ResourceTypeRecord(Base):
    __tablename__ = "resource_types"

    name = Column(String(128), primary_key=True)
    group = Column(String(64), nullable=False, default="IDMP")
    description = Column(Text, nullable=True)
    fields = Column(JSONType, nullable=False, comment="Ordered field definitions")
    version = Column(Integer, nullable=False, default=1)
    document_schema = Column(JSONType, nullable=True, comment="Derived JSON Schema")
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)


# ---------------------------------------------------------------------------
# Resource instance
# ---------------------------------------------------------------------------
class ResourceRecord(Base):
    __tablename__ = "resources"

    seq = Column(Integer, primary_key=True, autoincrement=True, comment="Insertion order")
    id = Column(String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4()))
    resource_type = Column(String(128), nullable=False)
    key = Column(String(255), nullable=False)
    parent = Column(String(512), nullable=False, default="/")
    published = Column(Boolean, nullable=False, default=True)
    values = Column(JSONType, nullable=False, default=dict)
    version_id = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("parent", "key", name="uq_resource_location"),
        Index("ix_resources_type", "resource_type"),
    )


# ---------------------------------------------------------------------------
# Migration checkpoint – high-water mark per (step, source type)
# ---------------------------------------------------------------------------
class MigrationCheckpoint(Base):
    __tablename__ = "migration_checkpoints"

    step = Column(String(128), primary_key=True)
    source_type = Column(String(128), primary_key=True)
    high_water_mark = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)


# ---------------------------------------------------------------------------
# Audit Log – immutable trail of API actions
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    actor = Column(String(128), nullable=False, comment="User or service identity")
    action = Column(String(64), nullable=False, comment="create | read | update | delete")
    resource_type = Column(String(128), nullable=False)
    resource_id = Column(String(36), nullable=False)
    detail = Column(JSONType, comment="Context for the action")
    timestamp = Column(DateTime(timezone=True), default=_now, nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)


# ---------------------------------------------------------------------------
# Pipeline Run – install/migrate/cleanup history
# ---------------------------------------------------------------------------
class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    pipeline_name = Column(String(128), nullable=False)
    status = Column(
        Enum("not_started", "in_progress", "completed", "aborted", name="pipeline_status_enum"),
        default="not_started",
    )
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True), nullable=True)
    records_created = Column(Integer, default=0)
    schema_changes = Column(Integer, default=0)
    failed_step = Column(String(128), nullable=True)
    errors = Column(JSONType, default=list)
    dag_definition = Column(JSONType, comment="Snapshot of the DAG that was executed")
