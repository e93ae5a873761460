"""Celery tasks for scan and fix jobs.

These tasks wrap the async pipeline runners inside synchronous Celery tasks
using asyncio.run(). Each task gets its own event loop.

Tasks receive a credential reference, never the clone token itself (see
apex.tasks.credentials). Both runners record their own failures on the Scan
row; an exception that escapes here is a bug or an infrastructure problem
(e.g. the database).
"""

from __future__ import annotations

import asyncio
import logging

from apex.celery_app import celery_app
from apex.tasks.credentials import claim_token

logger = logging.getLogger(__name__)


@celery_app.task(
    name="apex.tasks.scan_tasks.run_scan",
    bind=True,
    max_retries=1,
    default_retry_delay=30,
)
def run_scan(self, scan_id: str, token_ref: str) -> dict:
    """Clone, boot, scan and score one repository."""
    logger.info("Celery task started: scan %s (task_id=%s)", scan_id, self.request.id)

    try:
        status = asyncio.run(execute_scan(scan_id, claim_token(token_ref)))
        logger.info("Celery task completed: scan %s → %s", scan_id, status)
        return {"scan_id": scan_id, "status": status}
    except Exception as exc:
        logger.error("Celery task failed: scan %s: %s", scan_id, exc, exc_info=True)
        raise


@celery_app.task(
    name="apex.tasks.scan_tasks.generate_fixes",
    bind=True,
    max_retries=1,
    default_retry_delay=30,
)
def generate_fixes(self, scan_id: str, token_ref: str) -> dict:
    """Run the AI fixer for a completed scan."""
    logger.info("Celery task started: fixes for %s (task_id=%s)", scan_id, self.request.id)

    try:
        status = asyncio.run(execute_fixes(scan_id, claim_token(token_ref)))
        logger.info("Celery task completed: fixes for %s → %s", scan_id, status)
        return {"scan_id": scan_id, "status": status}
    except Exception as exc:
        logger.error("Celery task failed: fixes for %s: %s", scan_id, exc, exc_info=True)
        raise


async def execute_scan(scan_id: str, token: str) -> str:
    """Async scan execution (also used by the asyncio fallback)."""
    from apex.pipeline.scan_runner import ScanRunner

    scan = await ScanRunner().run(scan_id, token)
    return scan.status


async def execute_fixes(scan_id: str, token: str) -> str:
    """Async fix execution (also used by the asyncio fallback)."""
    from apex.fixer.orchestrator import FixOrchestrator

    scan = await FixOrchestrator().generate_fixes(scan_id, token)
    return scan.status
