"""Batch planning for the fix run.

Ordering: rule priority desc (color-contrast 3, other contrast rules 2,
everything else 0), then impact desc, then violation id asc. Contrast
violations travel together in larger batches (they share one stylesheet fix
pattern); everything else goes one small chunk at a time.
"""

from __future__ import annotations

from apex.config import MAX_FIXER_WORKERS
from apex.models.fixes import FixBatch, ViolationSummary

_IMPACT_PRIORITY = {"critical": 4, "serious": 3, "moderate": 2, "minor": 1}


def impact_priority(impact: str | None) -> int:
    return _IMPACT_PRIORITY.get((impact or "").lower(), 0)


def is_contrast_rule(rule_id: str | None) -> bool:
    return "contrast" in (rule_id or "").lower()


def rule_priority(rule_id: str | None) -> int:
    normalized = (rule_id or "").lower()
    if normalized == "color-contrast":
        return 3
    if is_contrast_rule(normalized):
        return 2
    return 0


def sort_violations(violations: list[ViolationSummary]) -> list[ViolationSummary]:
    return sorted(
        violations,
        key=lambda v: (-rule_priority(v.rule_id), -impact_priority(v.impact), v.id),
    )


def _chunks(items: list[ViolationSummary], size: int) -> list[list[ViolationSummary]]:
    size = max(1, size)
    return [items[i : i + size] for i in range(0, len(items), size)]


def build_batches(
    violations: list[ViolationSummary],
    *,
    batch_size: int = 1,
    contrast_batch_size: int = 25,
    max_batches: int = 50,
    contrast_thinking: bool = True,
    all_thinking: bool = False,
) -> tuple[list[FixBatch], list[str]]:
    """Plan batches. Returns (batches, diagnostics).

    Each violation id appears in at most one batch.
    """
    seen: set[str] = set()
    unique: list[ViolationSummary] = []
    for violation in sort_violations(violations):
        if violation.id in seen:
            continue
        seen.add(violation.id)
        unique.append(violation)

    contrast = [v for v in unique if is_contrast_rule(v.rule_id)]
    others = [v for v in unique if not is_contrast_rule(v.rule_id)]

    planned: list[tuple[list[ViolationSummary], bool]] = []
    for chunk in _chunks(contrast, contrast_batch_size):
        planned.append((chunk, all_thinking or contrast_thinking))
    for chunk in _chunks(others, batch_size):
        planned.append((chunk, all_thinking))

    diagnostics: list[str] = []
    max_batches = max(1, max_batches)
    if len(planned) > max_batches:
        diagnostics.append(f"batch limit reached ({max_batches})")
        planned = planned[:max_batches]

    batches = [
        FixBatch(index=i + 1, violations=chunk, use_thinking=thinking)
        for i, (chunk, thinking) in enumerate(planned)
    ]
    return batches, diagnostics


def effective_worker_count(requested: int, batch_count: int) -> int:
    """Clamp to 1..MAX_FIXER_WORKERS and never more workers than batches."""
    return max(1, min(requested, MAX_FIXER_WORKERS, max(batch_count, 1)))


def partition_round_robin(batches: list[FixBatch], workers: int) -> list[list[FixBatch]]:
    """Batch i goes to worker i % workers."""
    workers = max(1, workers)
    partitions: list[list[FixBatch]] = [[] for _ in range(workers)]
    for i, batch in enumerate(batches):
        partitions[i % workers].append(batch)
    return partitions
