"""AI fixer models (Pydantic-only).

FixRecord mirrors the JSON artifact the coding agent is asked to write:
    {"fixes": [{"filePath", "originalCode", "fixedCode", "explanation", "violationId"}]}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ViolationSummary(BaseModel):
    """The subset of a Violation the agent prompt needs."""

    id: str
    rule_id: str
    impact: str
    description: str = ""
    target_element: str | None = None
    html_snippet: str | None = None
    wcag_criteria: list[str] = Field(default_factory=list)


class FixRecord(BaseModel):
    """One machine-applicable fix extracted from agent output."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    file_path: str = Field(default="", alias="filePath")
    original_code: str = Field(default="", alias="originalCode")
    fixed_code: str = Field(default="", alias="fixedCode")
    explanation: str = ""
    violation_id: str = Field(default="", alias="violationId")


class FixBatch(BaseModel):
    """A prioritized group of violations sent to the agent in one invocation."""

    index: int
    violations: list[ViolationSummary]
    use_thinking: bool = False

    @property
    def violation_ids(self) -> list[str]:
        return [v.id for v in self.violations]

    @property
    def rule_ids(self) -> list[str]:
        return sorted({v.rule_id for v in self.violations})


# === Extraction results (tagged variants) ===

ExtractionSource = Literal[
    "artifact_file",
    "raw_json",
    "embedded_json",
    "event_stream",
    "patch_text",
    "workspace_diff",
    "extraction_retry",
]


@dataclass
class ExtractionHit:
    """A strategy produced at least one fix."""

    source: ExtractionSource
    fixes: list[FixRecord]
    found: Literal[True] = True


@dataclass
class ExtractionMiss:
    """A strategy found nothing; reason is diagnostic only."""

    source: ExtractionSource
    reason: str = ""
    found: Literal[False] = False


ExtractionResult = ExtractionHit | ExtractionMiss


@dataclass
class BatchOutcome:
    """What one batch produced."""

    batch_index: int
    fixes: list[FixRecord] = field(default_factory=list)
    source: str = ""
    elapsed_seconds: float = 0.0
    diagnostic: str = ""
    verification: str = ""


@dataclass
class WorkerReport:
    """What one parallel worker produced across its batches."""

    worker_index: int
    fixes: dict[tuple[str, str, str], FixRecord] = field(default_factory=dict)  # (violation, file, original)
    attempted_batches: int = 0
    processed_violations: int = 0
    diagnostics: list[str] = field(default_factory=list)
    warning: str | None = None

    def add(self, fix: FixRecord) -> bool:
        """Record a fix; False if this exact edit was already recorded."""
        key = (fix.violation_id, fix.file_path, fix.original_code)
        if key in self.fixes:
            return False
        self.fixes[key] = fix
        return True
