"""Scoring & classification — weighted compliance score and WCAG → AODA mapping.

Pure functions, no I/O.

Score:
    score([])  = 100
    score(vs)  = max(0, round(100 - Σweight / (len(vs) × 10) × 100))

The denominator is the maximum possible weight for the set (count × 10),
so the score measures average severity per affected node. Violations are
node-granular (one row per DOM node), and that granularity is part of the
score's definition.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from typing import Any

IMPACT_WEIGHTS: dict[str, int] = {
    "critical": 10,
    "serious": 7,
    "moderate": 4,
    "minor": 1,
}
MAX_IMPACT_WEIGHT = 10
UNKNOWN_IMPACT_WEIGHT = 1

# WCAG 2.0 A/AA success criteria covered by the Ontario IASR
# Information and Communications Standard.
WCAG_TO_AODA: dict[str, str] = {
    "1.1.1": "Non-text Content",
    "1.2.1": "Audio-only and Video-only",
    "1.2.2": "Captions (Prerecorded)",
    "1.2.3": "Audio Description or Media Alternative",
    "1.3.1": "Info and Relationships",
    "1.3.2": "Meaningful Sequence",
    "1.3.3": "Sensory Characteristics",
    "1.4.1": "Use of Color",
    "1.4.2": "Audio Control",
    "1.4.3": "Contrast (Minimum)",
    "1.4.4": "Resize Text",
    "1.4.5": "Images of Text",
    "2.1.1": "Keyboard",
    "2.1.2": "No Keyboard Trap",
    "2.2.1": "Timing Adjustable",
    "2.2.2": "Pause, Stop, Hide",
    "2.3.1": "Three Flashes or Below Threshold",
    "2.4.1": "Bypass Blocks",
    "2.4.2": "Page Titled",
    "2.4.3": "Focus Order",
    "2.4.4": "Link Purpose (In Context)",
    "2.4.5": "Multiple Ways",
    "2.4.6": "Headings and Labels",
    "2.4.7": "Focus Visible",
    "3.1.1": "Language of Page",
    "3.1.2": "Language of Parts",
    "3.2.1": "On Focus",
    "3.2.2": "On Input",
    "3.2.3": "Consistent Navigation",
    "3.2.4": "Consistent Identification",
    "3.3.1": "Error Identification",
    "3.3.2": "Labels or Instructions",
    "3.3.3": "Error Suggestion",
    "3.3.4": "Error Prevention (Legal, Financial, Data)",
    "4.1.1": "Parsing",
    "4.1.2": "Name, Role, Value",
}

REPORT_DISCLAIMER = (
    "This report is generated by automated tools and covers approximately 57% of accessibility issues. "
    "It does not constitute legal compliance certification under AODA/IASR. "
    "Manual review by accessibility experts is required for full compliance. "
    "AODA requires conformance to WCAG 2.0 Level AA for the Information and Communications Standard."
)

_WCAG_TAG_RE = re.compile(r"^wcag(\d)(\d)(\d+)$")
_CRITERION_RE = re.compile(r"^\d\.\d\.\d+$")


def get_impact_weight(impact: str | None) -> int:
    """Weight for an impact level; unknown or missing impact counts as minor."""
    return IMPACT_WEIGHTS.get((impact or "").lower(), UNKNOWN_IMPACT_WEIGHT)


def _impact_of(violation: Any) -> str | None:
    if isinstance(violation, Mapping):
        return violation.get("impact")
    return getattr(violation, "impact", None)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_accessibility_score(violations: Iterable[Any]) -> int:
    """Weighted 0–100 score over node-level violations.

    Accepts Violation rows, dicts, or anything with an ``impact`` attribute.
    Order-independent.
    """
    weights = [get_impact_weight(_impact_of(v)) for v in violations]
    if not weights:
        return 100

    max_possible = len(weights) * MAX_IMPACT_WEIGHT
    raw = 100 - (sum(weights) / max_possible) * 100
    return max(0, min(100, _round_half_up(raw)))


def tag_to_criterion(tag: str) -> str | None:
    """'wcag143' → '1.4.3', 'wcag1410' → '1.4.10'; non-criterion tags → None.

    Level tags such as 'wcag2aa' or 'wcag21a' carry letters and never match.
    """
    match = _WCAG_TAG_RE.match(tag.strip().lower())
    if not match:
        return None
    return f"{match.group(1)}.{match.group(2)}.{match.group(3)}"


def extract_wcag_criteria(tags: Iterable[str]) -> list[str]:
    """Map rule-engine tags to de-duplicated 'X.Y.Z' criterion ids, in tag order."""
    criteria: list[str] = []
    for tag in tags:
        criterion = tag_to_criterion(tag)
        if criterion and criterion not in criteria:
            criteria.append(criterion)
    return criteria


def _as_criterion(value: str) -> str | None:
    value = value.strip()
    if _CRITERION_RE.match(value):
        return value
    return tag_to_criterion(value)


def is_aoda_relevant(wcag_criteria: Iterable[str]) -> bool:
    """True if any criterion (either 'X.Y.Z' or a raw 'wcagXYZ' tag) is in the AODA table."""
    return any(_as_criterion(c) in WCAG_TO_AODA for c in wcag_criteria)


def get_aoda_info(wcag_criteria: Iterable[str]) -> list[dict[str, str]]:
    """Criterion id + description for every AODA-relevant criterion."""
    results: list[dict[str, str]] = []
    for value in wcag_criteria:
        criterion = _as_criterion(value)
        if criterion in WCAG_TO_AODA:
            results.append({"criterion": criterion, "description": WCAG_TO_AODA[criterion]})
    return results


def generate_report_summary(violations: Iterable[Any]) -> dict[str, Any]:
    """Aggregate counts, score, and disclaimer for the report view."""
    items = list(violations)

    def _get(v: Any, key: str) -> Any:
        return v.get(key) if isinstance(v, Mapping) else getattr(v, key, None)

    by_severity = {level: 0 for level in IMPACT_WEIGHTS}
    for v in items:
        impact = (_get(v, "impact") or "").lower()
        if impact in by_severity:
            by_severity[impact] += 1

    return {
        "total_violations": len(items),
        "by_severity": by_severity,
        "aoda_relevant_count": sum(1 for v in items if _get(v, "aoda_relevant")),
        "score": calculate_accessibility_score(items),
        "disclaimer": REPORT_DISCLAIMER,
    }
