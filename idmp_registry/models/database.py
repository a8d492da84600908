from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from idmp_registry.config import settings


def make_engine(url: str):
    """Create an engine; SQLite needs cross-thread access for the API."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, pool_size=5)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


class Base(DeclarativeBase):
    pass


def get_db():
    """FastAPI dependency that yields a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
