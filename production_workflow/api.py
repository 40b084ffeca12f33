"""
FastAPI application for the production workflow engine.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .db.base import init_database
from .errors import WorkflowError
from .logging_config import configure_logging
from .routes import (
    automation_router,
    batches_router,
    tasks_router,
    workflows_router,
)

# Initialize structured logging
logger = structlog.get_logger()

settings = get_settings()

STATUS_BY_KIND = {
    "not_found": 404,
    "validation": 400,
    "conflict": 409,
    "dependency": 502,
    "permission": 403,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    configure_logging(settings)
    logger.info("Starting Production Workflow", environment=settings.environment)

    try:
        init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error("Failed to start application", error=str(e))
        raise

    yield

    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="Batch and stage workflow engine for production operations",
    version=importlib.metadata.version("production-workflow"),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(
            "Request failed",
            path=request.url.path,
            code=exc.code,
            message=exc.message,
        )
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "kind": exc.kind,
                "code": exc.code,
                "message": exc.message,
                "details": exc.details,
            }
        },
    )


@app.get("/health", tags=["system"])
async def health() -> dict:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.get("/version", tags=["system"])
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": importlib.metadata.version("production-workflow")}


app.include_router(workflows_router)
app.include_router(batches_router)
app.include_router(tasks_router)
app.include_router(automation_router)
