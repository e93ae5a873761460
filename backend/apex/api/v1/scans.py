"""Scan API endpoints — create, inspect, fix, review and refund scans.

POST /api/v1/scans — create a scan and enqueue the scan job
GET /api/v1/scans — list scans (newest first)
GET /api/v1/scans/{id} — scan with violations and fixes
GET /api/v1/scans/{id}/report — severity summary + AODA mapping
POST /api/v1/scans/{id}/retry — re-run a failed scan
POST /api/v1/scans/{id}/fix — enqueue the AI fixer for a complete scan
PATCH /api/v1/scans/{id}/fixes/{fix_id} — accept/reject a fix
POST /api/v1/scans/{id}/refund-escrow — reclaim escrow of a failed scan

Jobs go through Celery when a broker is configured, otherwise they run as
asyncio tasks inside the API process.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Literal

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from apex.config import settings
from apex.db.records import ScanStore, get_store
from apex.engines.scoring import generate_report_summary, get_aoda_info
from apex.errors import EscrowLockError, RefundNotAllowedError
from apex.execution.repository import build_repo_url
from apex.integrations.escrow import EscrowGate, EscrowLock, check_refund_allowed, get_escrow_gate
from apex.models.scan import Fix, Scan, Violation
from apex.workflows.engine import IllegalTransitionError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["scans"])

# Module-level references, set by main.py at startup (tests override)
_store: ScanStore | None = None
_escrow: EscrowGate | None = None
_background_tasks: set[asyncio.Task] = set()

_REPO_PART = r"^[A-Za-z0-9_.-]+$"


def set_dependencies(store: ScanStore | None = None, escrow: EscrowGate | None = None) -> None:
    """Wire up dependencies (called from main.py lifespan)."""
    global _store, _escrow
    _store = store
    _escrow = escrow


def _get_store() -> ScanStore:
    return _store or get_store()


def _get_escrow() -> EscrowGate:
    return _escrow or get_escrow_gate()


def _get_scan(scan_id: str) -> Scan:
    scan = _get_store().get_scan(scan_id)
    if scan is None:
        raise HTTPException(status_code=404, detail=f"Scan not found: {scan_id}")
    return scan


# === Request / Response Models ===


class EscrowLockInput(BaseModel):
    """Escrow already locked by the payer for this scan."""

    owner: str = Field(min_length=1)
    sequence: int = Field(ge=0)
    tx_hash: str = Field(min_length=1)
    release_after: datetime | None = None
    cancel_after: datetime | None = None


class CreateScanRequest(BaseModel):
    repo_owner: str = Field(pattern=_REPO_PART, max_length=100)
    repo_name: str = Field(pattern=_REPO_PART, max_length=100)
    branch: str = Field(default="main", min_length=1, max_length=255)
    user_id: str = ""
    github_token: str = ""  # Falls back to settings.github_token
    escrow: EscrowLockInput | None = None  # Locked by the payer beforehand
    payer: str = ""  # Without a prior lock, the service locks the scan fee against this account


class FixRequest(BaseModel):
    github_token: str = ""


class FixStatusRequest(BaseModel):
    status: Literal["pending", "accepted", "rejected"]


class ScanResponse(BaseModel):
    id: str
    user_id: str
    repo_owner: str
    repo_name: str
    repo_url: str
    branch: str
    status: str
    score: int | None = None
    score_after: int | None = None
    error_message: str | None = None
    before_screenshot: str | None = None
    after_screenshot: str | None = None
    escrow_refunded_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ViolationResponse(BaseModel):
    id: str
    rule_id: str
    impact: str
    description: str
    help_url: str | None = None
    wcag_criteria: list[str] = Field(default_factory=list)
    aoda_relevant: bool = False
    target_element: str | None = None
    html_snippet: str | None = None
    score: float = 0.0


class FixResponse(BaseModel):
    id: str
    violation_id: str
    file_path: str
    original_code: str
    fixed_code: str
    explanation: str | None = None
    status: str
    applied: bool


class ScanDetailResponse(ScanResponse):
    violations: list[ViolationResponse] = Field(default_factory=list)
    fixes: list[FixResponse] = Field(default_factory=list)


class ReportResponse(BaseModel):
    scan_id: str
    summary: dict
    aoda: list[dict[str, str]] = Field(default_factory=list)


class RefundResponse(BaseModel):
    scan_id: str
    tx_hash: str


def _scan_response(scan: Scan) -> ScanResponse:
    return ScanResponse.model_validate(scan, from_attributes=True)


def _violation_response(violation: Violation) -> ViolationResponse:
    return ViolationResponse.model_validate(violation, from_attributes=True)


def _fix_response(fix: Fix) -> FixResponse:
    return FixResponse.model_validate(fix, from_attributes=True)


# === Endpoints ===


@router.post("/scans", response_model=ScanResponse, status_code=202)
async def create_scan(request: CreateScanRequest) -> ScanResponse:
    """Create a scan record and start the scan job in the background.

    With payments enabled, the scan fee is locked before the record exists;
    a refused lock creates nothing (402).
    """
    store = _get_store()
    lock = EscrowLock(**request.escrow.model_dump()) if request.escrow is not None else None
    escrow = _get_escrow()
    if lock is None and request.payer and escrow.enabled:
        try:
            lock = await escrow.lock("scan", request.payer)
        except EscrowLockError as e:
            raise HTTPException(status_code=402, detail=str(e))

    scan = store.create_scan(
        Scan(
            user_id=request.user_id,
            repo_owner=request.repo_owner,
            repo_name=request.repo_name,
            repo_url=build_repo_url(request.repo_owner, request.repo_name),
            branch=request.branch,
        )
    )
    if lock is not None:
        scan = store.record_escrow_lock(scan.id, lock)

    _dispatch("scan", scan.id, request.github_token or settings.github_token)
    logger.info("Scan %s created for %s/%s@%s", scan.id, scan.repo_owner, scan.repo_name, scan.branch)
    return _scan_response(scan)


@router.get("/scans", response_model=list[ScanResponse])
async def list_scans(user_id: str | None = None, limit: int = 50) -> list[ScanResponse]:
    limit = max(1, min(limit, 200))
    return [_scan_response(s) for s in _get_store().list_scans(user_id=user_id, limit=limit)]


@router.get("/scans/{scan_id}", response_model=ScanDetailResponse)
async def get_scan(scan_id: str) -> ScanDetailResponse:
    scan = _get_scan(scan_id)
    store = _get_store()
    return ScanDetailResponse(
        **_scan_response(scan).model_dump(),
        violations=[_violation_response(v) for v in store.list_violations(scan_id)],
        fixes=[_fix_response(f) for f in store.list_fixes(scan_id)],
    )


@router.get("/scans/{scan_id}/report", response_model=ReportResponse)
async def get_report(scan_id: str) -> ReportResponse:
    _get_scan(scan_id)
    violations = _get_store().list_violations(scan_id)
    criteria = sorted({c for v in violations for c in (v.wcag_criteria or [])})
    return ReportResponse(
        scan_id=scan_id,
        summary=generate_report_summary(violations),
        aoda=get_aoda_info(criteria),
    )


@router.post("/scans/{scan_id}/retry", response_model=ScanResponse, status_code=202)
async def retry_scan(scan_id: str, request: FixRequest | None = None) -> ScanResponse:
    """Re-run a failed scan from the clone step."""
    scan = _get_scan(scan_id)
    if scan.status != "failed":
        raise HTTPException(status_code=400, detail=f"Only failed scans can be retried (status: {scan.status})")
    token = (request.github_token if request else "") or settings.github_token
    _dispatch("scan", scan_id, token)
    return _scan_response(scan)


@router.post("/scans/{scan_id}/fix", response_model=ScanResponse, status_code=202)
async def generate_fixes(scan_id: str, request: FixRequest | None = None) -> ScanResponse:
    """Start the AI fixer for a complete scan."""
    scan = _get_scan(scan_id)
    if scan.status == "fixing":
        raise HTTPException(status_code=409, detail="Fixes are already being generated for this scan")
    if scan.status != "complete":
        raise HTTPException(status_code=400, detail=f"Scan must be complete before fixing (status: {scan.status})")

    # Claim the scan before enqueueing so a second request sees 409
    try:
        scan = _get_store().transition(scan_id, "fixing")
    except IllegalTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    token = (request.github_token if request else "") or settings.github_token
    _dispatch("fix", scan_id, token)
    return _scan_response(scan)


@router.patch("/scans/{scan_id}/fixes/{fix_id}", response_model=FixResponse)
async def update_fix_status(scan_id: str, fix_id: str, request: FixStatusRequest) -> FixResponse:
    _get_scan(scan_id)
    fix = _get_store().update_fix_status(scan_id, fix_id, request.status)
    if fix is None:
        raise HTTPException(status_code=404, detail=f"Fix not found: {fix_id}")
    return _fix_response(fix)


@router.post("/scans/{scan_id}/refund-escrow", response_model=RefundResponse)
async def refund_escrow(scan_id: str) -> RefundResponse:
    """Return escrowed funds for a failed scan once the cancel window opens."""
    scan = _get_scan(scan_id)
    try:
        lock = check_refund_allowed(scan)
        tx_hash = await _get_escrow().refund(lock)
    except RefundNotAllowedError as e:
        raise HTTPException(status_code=400, detail=str(e))

    _get_store().mark_refunded(scan_id)
    logger.info("Escrow refunded for scan %s (sequence %s)", scan_id, lock.sequence)
    return RefundResponse(scan_id=scan_id, tx_hash=tx_hash)


# === Dispatch Helper ===


def _dispatch(job: Literal["scan", "fix"], scan_id: str, token: str) -> None:
    """Run a job via Celery or, without a broker, as an asyncio task.

    Celery jobs get a credential reference; the token stays out of the broker.
    """
    from apex.celery_app import is_celery_enabled

    if is_celery_enabled():
        try:
            from apex.tasks import scan_tasks
            from apex.tasks.credentials import stash_token

            task = scan_tasks.run_scan if job == "scan" else scan_tasks.generate_fixes
            task.delay(scan_id, stash_token(token))
            return
        except Exception as e:
            logger.warning("Celery dispatch failed, falling back to asyncio: %s", e)

    task = asyncio.create_task(_run_background(job, scan_id, token))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def _run_background(job: str, scan_id: str, token: str) -> None:
    """Background job execution (asyncio fallback)."""
    from apex.tasks.scan_tasks import execute_fixes, execute_scan

    try:
        if job == "scan":
            status = await execute_scan(scan_id, token)
        else:
            status = await execute_fixes(scan_id, token)
        logger.info("Background %s job for %s finished: %s", job, scan_id, status)
    except Exception as e:
        logger.error("Background %s job for %s failed: %s", job, scan_id, e, exc_info=True)
