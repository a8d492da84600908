"""
FastAPI application entrypoint.

Run locally:  uvicorn idmp_registry.main:app --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from idmp_registry.api.routes import router
from idmp_registry.config import settings
from idmp_registry.errors import RegistryError
from idmp_registry.models.database import Base, engine

logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s")

logger = logging.getLogger(__name__)

app = FastAPI(
    title="IDMP Registry API",
    description=(
        "Schema-driven registry of IDMP medicinal product resources, "
        "served as FHIR documents."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")


@app.exception_handler(RegistryError)
async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
    """Render any typed registry failure as an OperationOutcome."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_operation_outcome())


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
