"""Health check endpoint: database, broker, sandbox runtime."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel

from apex.config import settings

router = APIRouter()

VERSION = "0.1.0"

# Check outcome severities, ordered. "error" on a required check makes the service unhealthy.
OK, WARNING, ERROR = "ok", "warning", "error"


class HealthStatus(BaseModel):
    status: str  # "healthy" | "degraded" | "unhealthy"
    version: str
    checks: dict[str, dict]
    timestamp: datetime


def _probe_database() -> dict:
    from sqlalchemy import text

    from apex.db.database import engine

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            mode = conn.execute(text("PRAGMA journal_mode")).scalar()
    except Exception as e:
        return {"status": ERROR, "detail": str(e)[:100]}
    return {"status": OK, "detail": f"journal_mode={mode}"}


def _probe_broker() -> dict:
    """The broker is optional: scans fall back to in-process tasks without it."""
    from apex.celery_app import is_celery_enabled

    if not is_celery_enabled():
        return {"status": WARNING, "detail": "Not configured (asyncio fallback)"}
    try:
        import redis

        redis.from_url(settings.celery_broker_url, socket_timeout=2).ping()
    except Exception as e:
        # Reported as a warning: dispatch degrades to asyncio when delay() fails.
        return {"status": WARNING, "detail": f"Broker unreachable: {str(e)[:100]}"}
    return {"status": OK, "detail": "Broker reachable"}


async def _probe_sandbox() -> dict:
    from apex.execution.sandbox import get_sandbox

    if not await asyncio.to_thread(get_sandbox().is_available):
        return {"status": ERROR, "detail": "Docker daemon not reachable; scans cannot run"}
    return {"status": OK, "detail": f"image={settings.sandbox_image}, mem={settings.sandbox_memory_limit}"}


@router.get("/health", response_model=HealthStatus)
async def health_check() -> HealthStatus:
    checks = {
        "database": await asyncio.to_thread(_probe_database),
        "celery": await asyncio.to_thread(_probe_broker),
        "sandbox": await _probe_sandbox(),
        "escrow": {"status": OK if settings.escrow_enabled else "disabled", "detail": ""},
    }

    severities = {check["status"] for check in checks.values()}
    if ERROR in severities:
        status = "unhealthy"
    elif WARNING in severities:
        status = "degraded"
    else:
        status = "healthy"

    return HealthStatus(status=status, version=VERSION, checks=checks, timestamp=datetime.now(timezone.utc))
