"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema registry
# ---------------------------------------------------------------------------

class ResourceTypeSummary(BaseModel):
    name: str
    group: str
    version: int
    field_count: int


class ResourceTypeOut(BaseModel):
    name: str
    group: str
    description: str | None = None
    version: int
    fields: list[dict[str, Any]]
    document_schema: dict[str, Any] | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------

class TaskSummary(BaseModel):
    status: str
    duration_ms: float | None = None
    error: str | None = None


class MigrationOutcome(BaseModel):
    source_type: str
    outcome: str
    source_id: str | None = None
    target_id: str | None = None
    reason: str | None = None


class PipelineResult(BaseModel):
    run_id: str
    pipeline: str
    status: str
    tasks: dict[str, TaskSummary]
    failed_step: str | None = None
    error: str | None = None
    records_created: int = 0
    schema_changes: int = 0
    item_failures: int = 0
    migration_outcomes: list[MigrationOutcome] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class TypeDiagnostics(BaseModel):
    name: str
    registered: bool
    group: str | None = None
    version: int | None = None
    instances: int = 0


class DiagnosticsResponse(BaseModel):
    types: list[TypeDiagnostics]
    unresolved_references: list[str]
    checkpoints: dict[str, int]


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
