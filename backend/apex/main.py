"""Apex FastAPI application.

Entry point for the API server:
    uvicorn apex.main:app --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apex.api.health import router as health_router
from apex.api.v1.scans import router as scans_router
from apex.config import settings
from apex.db.database import create_db_and_tables
from apex.middleware.auth import APIKeyAuthMiddleware

# Import SQL models so SQLModel metadata registers them
from apex.models.scan import Fix, Scan, Violation  # noqa: F401

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    create_db_and_tables()

    from apex.api.v1.scans import set_dependencies
    from apex.db.records import get_store
    from apex.integrations.escrow import get_escrow_gate

    set_dependencies(store=get_store(), escrow=get_escrow_gate())
    logger.info("Apex API ready (celery=%s)", bool(settings.celery_broker_url))

    yield


app = FastAPI(
    title="Apex",
    description="Accessibility audits and AI remediation for web repositories",
    version="0.1.0",
    lifespan=lifespan,
)

# Middleware (order matters: first added = outermost)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)
app.add_middleware(APIKeyAuthMiddleware)


# Global exception handler: internal details never reach the client
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    if isinstance(exc, HTTPException):
        raise exc
    logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error."},
    )


# Routes
app.include_router(health_router)
app.include_router(scans_router)


@app.get("/")
async def root():
    return {"name": "Apex", "version": "0.1.0", "status": "running"}
