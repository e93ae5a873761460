"""Probe artifact models — the contract between the in-sandbox probe and the host.

The probe writes, under /output:
    <label>-scan-results.json   ScanReport
    <label>.png                 full-page screenshot
    <label>-scan-error.json     ProbeFailure (instead of the results file)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

ProbeFailureKind = Literal["no_app", "scan", "unexpected"]


class NodeViolation(BaseModel):
    """One rule-engine finding on one DOM node."""

    rule_id: str
    impact: str | None = None
    description: str = ""
    help_url: str | None = None
    tags: list[str] = Field(default_factory=list)
    target_element: str | None = None
    html_snippet: str | None = None


class ScanReport(BaseModel):
    """Flattened scan result for one page load."""

    url: str
    strategy: str = ""
    rules: list[str] | None = None
    violations: list[NodeViolation] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def node_count(self) -> int:
        return len(self.violations)


class ProbeFailure(BaseModel):
    error: str
    kind: ProbeFailureKind = "unexpected"


def results_filename(label: str) -> str:
    return f"{label}-scan-results.json"


def error_filename(label: str) -> str:
    return f"{label}-scan-error.json"


def screenshot_filename(label: str) -> str:
    return f"{label}.png"
