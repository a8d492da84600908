"""Shared fixtures – every test gets its own in-memory SQLite database."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from idmp_registry.main import app
from idmp_registry.models.database import Base, get_db
from idmp_registry.schemas.fields import reference_field, text_field
from idmp_registry.services.resource_store import ResourceStore
from idmp_registry.services.schema_registry import SchemaRegistry


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def registry(db_session):
    return SchemaRegistry(db_session)


@pytest.fixture
def store(db_session, registry):
    return ResourceStore(db_session, registry)


@pytest.fixture
def paracetamol_types(registry):
    """Substance and MedicinalProduct in their minimal shape."""
    registry.upsert(
        "Substance",
        "IDMP",
        [
            text_field("identifier", "UNII", unique=True),
            text_field("name", "Name"),
            text_field("casNumber", "CAS Number"),
        ],
    )
    registry.upsert(
        "MedicinalProduct",
        "IDMP",
        [
            text_field("identifier", "MPID", unique=True),
            reference_field("ingredient", "Ingredient", ["Substance"], multiple=True),
        ],
    )
    return registry


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
