"""Scan job models.

Includes: Scan (SQL), Violation (SQL), Fix (SQL).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from sqlmodel import JSON, Column, SQLModel
from sqlmodel import Field as SQLField

# === Status values ===

ScanStatus = Literal["pending", "cloning", "scanning", "fixing", "complete", "failed"]

ImpactLevel = Literal["critical", "serious", "moderate", "minor"]

FixStatus = Literal["pending", "accepted", "rejected"]


# === SQL Tables ===


class Scan(SQLModel, table=True):
    """One audit run against one repository + branch."""

    __tablename__ = "scan"

    id: str = SQLField(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = ""
    repo_owner: str
    repo_name: str
    repo_url: str
    branch: str = "main"
    status: str = "pending"  # ScanStatus
    score: int | None = None  # before-fix score
    score_after: int | None = None
    error_message: str | None = None  # failure reason, or progress ticker while fixing
    before_screenshot: str | None = None  # base64 PNG
    after_screenshot: str | None = None
    container_id: str | None = None

    # Escrow (set together or not at all)
    escrow_owner: str | None = None
    escrow_sequence: int | None = None
    escrow_tx_hash: str | None = None
    escrow_release_after: datetime | None = None
    escrow_cancel_after: datetime | None = None
    escrow_refunded_at: datetime | None = None

    created_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))


class Violation(SQLModel, table=True):
    """One accessibility failure on one DOM node."""

    __tablename__ = "violation"

    id: str = SQLField(default_factory=lambda: str(uuid4()), primary_key=True)
    scan_id: str = SQLField(foreign_key="scan.id", index=True)
    rule_id: str
    impact: str  # ImpactLevel
    description: str = ""
    help_url: str | None = None
    wcag_criteria: list[str] = SQLField(default_factory=list, sa_column=Column(JSON))
    aoda_relevant: bool = False
    target_element: str | None = None
    html_snippet: str | None = None
    score: float = 0.0  # impact weight
    created_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))


class Fix(SQLModel, table=True):
    """A proposed remediation for exactly one Violation."""

    __tablename__ = "fix"

    id: str = SQLField(default_factory=lambda: str(uuid4()), primary_key=True)
    scan_id: str = SQLField(foreign_key="scan.id", index=True)
    violation_id: str = SQLField(foreign_key="violation.id", unique=True)
    file_path: str
    original_code: str = ""
    fixed_code: str = ""
    explanation: str | None = None
    status: str = "pending"  # FixStatus
    applied: bool = False  # patch landed in the working tree
    created_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))
