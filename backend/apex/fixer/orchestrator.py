"""AI Fix Orchestrator — the fixing run of a completed scan.

    complete → fixing → complete | failed

  1. clear the scan's previous fixes, clone the primary tree, start its sandbox
  2. plan batches, set up up to N workers (worker 0 = primary tree; others get
     a copied tree and their own sandbox), partition batches round-robin
  3. run workers concurrently; one worker's failure never sinks the others
  4. merge fixes by violation id, apply every fix to the primary tree,
     persist Fix rows with their applied flag, write diff.patch
  5. re-scan the patched app for score_after (inferred if the re-scan fails)

Fixes are persisted after every batch so a poller sees them as they arrive,
together with a progress ticker in error_message.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from apex.config import settings
from apex.db.records import ScanStore, get_store
from apex.engines.sanitize import sanitize_diagnostic, sanitize_error_message
from apex.engines.scoring import calculate_accessibility_score
from apex.errors import ApexError
from apex.execution.repository import RepositoryMaterializer
from apex.execution.sandbox import DockerSandbox, WorkDirs, cleanup_workdirs, create_workdirs, get_sandbox
from apex.fixer.agent import CodingAgentRunner
from apex.fixer.batching import build_batches, effective_worker_count, partition_round_robin
from apex.fixer.budget import EmptyBatchBreaker, FixBudget
from apex.fixer.patching import apply_fixes
from apex.fixer.verification import BatchVerifier
from apex.fixer.worker import FixWorker
from apex.models.execution import SandboxHandle
from apex.models.fixes import BatchOutcome, FixRecord, ViolationSummary, WorkerReport
from apex.models.scan import Scan, Violation
from apex.pipeline.probe_runner import run_probe

logger = logging.getLogger(__name__)


@dataclass
class _Lane:
    index: int
    handle: SandboxHandle
    dirs: WorkDirs | None = None  # None for the primary lane (owned by the run)


@dataclass
class _Progress:
    batches: int = 0
    fix_keys: set[str] = field(default_factory=set)


def to_summary(violation: Violation) -> ViolationSummary:
    return ViolationSummary(
        id=violation.id,
        rule_id=violation.rule_id,
        impact=violation.impact,
        description=violation.description,
        target_element=violation.target_element,
        html_snippet=violation.html_snippet,
        wcag_criteria=list(violation.wcag_criteria or []),
    )


def merge_reports(results: list[WorkerReport | BaseException]) -> tuple[list[FixRecord], list[WorkerReport], list[str]]:
    """Union worker fixes; failed workers become diagnostics (workers numbered from 1)."""
    fixes: dict[tuple[str, str, str], FixRecord] = {}
    reports: list[WorkerReport] = []
    diagnostics: list[str] = []
    for index, result in enumerate(results):
        if isinstance(result, BaseException):
            diagnostics.append(f"worker {index + 1} failed: {sanitize_diagnostic(str(result) or type(result).__name__)}")
            continue
        reports.append(result)
        for key, fix in result.fixes.items():
            fixes.setdefault(key, fix)
    return list(fixes.values()), reports, diagnostics


def progress_message(fix_count: int, batches: int, elapsed: int, total: int) -> str:
    return (
        f"AI fixer progress: {fix_count} fix(es) captured after {batches} batch(es). "
        f"Elapsed {elapsed}s/{total}s."
    )


class FixOrchestrator:
    """Generates, applies and scores AI fixes for one scan."""

    def __init__(
        self,
        store: ScanStore | None = None,
        sandbox: DockerSandbox | None = None,
        materializer: RepositoryMaterializer | None = None,
        agent: CodingAgentRunner | None = None,
        workers: int | None = None,
        clock=time.monotonic,
    ) -> None:
        self._store = store or get_store()
        self._sandbox = sandbox or get_sandbox()
        self._materializer = materializer or RepositoryMaterializer()
        self._agent = agent or CodingAgentRunner(self._sandbox)
        self._workers = settings.fixer_workers if workers is None else workers
        self._clock = clock

    async def generate_fixes(self, scan_id: str, token: str) -> Scan:
        """Run the fixing phase; the returned record is complete or failed.

        Raises:
            KeyError: If the scan does not exist.
            IllegalTransitionError: If the scan is neither complete nor already claimed for fixing.
        """
        scan = self._store.get_scan(scan_id)
        if scan is None:
            raise KeyError(scan_id)
        if scan.status != "fixing":  # the API claims the scan before enqueueing
            scan = self._store.transition(scan_id, "fixing")
        self._store.clear_fixes(scan_id)
        violations = self._store.list_violations(scan_id)
        if not violations:
            return self._store.transition(scan_id, "complete", "No violations to fix.", score_after=scan.score)

        dirs = create_workdirs()
        lanes: list[_Lane] = []
        try:
            await self._materializer.clone(scan.repo_url, token, dirs.repo_dir, scan.branch)
            primary = await self._sandbox.create(dirs.repo_dir, dirs.output_dir)
            lanes.append(_Lane(index=0, handle=primary))
            self._store.update_scan(scan_id, container_id=primary.container_id)
            await self._agent.check_credentials(primary)
            return await self._run(scan, violations, token, dirs, lanes)
        except ApexError as e:
            logger.warning("Fix run for scan %s failed: %s", scan_id, e)
            return self._store.transition(scan_id, "failed", sanitize_error_message(str(e), extra_secrets=[token]))
        except Exception as e:
            logger.exception("Fix run for scan %s crashed", scan_id)
            message = sanitize_error_message(f"Fix generation failed: {type(e).__name__}: {e}", extra_secrets=[token])
            return self._store.transition(scan_id, "failed", message)
        finally:
            for lane in lanes:
                await self._sandbox.destroy(lane.handle)
                cleanup_workdirs(lane.dirs)
            cleanup_workdirs(dirs)

    async def _run(
        self,
        scan: Scan,
        violations: list[Violation],
        token: str,
        dirs: WorkDirs,
        lanes: list[_Lane],
    ) -> Scan:
        scan_id = scan.id
        batches, diagnostics = build_batches(
            [to_summary(v) for v in violations],
            batch_size=settings.fixer_batch_size,
            contrast_batch_size=settings.fixer_contrast_batch_size,
            max_batches=settings.fixer_max_batches,
            contrast_thinking=settings.fixer_contrast_thinking,
            all_thinking=settings.fixer_all_thinking,
        )
        wanted = effective_worker_count(self._workers, len(batches))
        diagnostics += await self._add_lanes(scan, token, dirs.repo_dir, wanted, lanes)

        budget = FixBudget(
            settings.fixer_total_timeout_seconds,
            settings.fixer_batch_timeout_seconds,
            settings.fixer_min_batch_timeout_seconds,
            clock=self._clock,
        )
        progress = _Progress()
        verifier = BatchVerifier(self._sandbox) if settings.fixer_self_verify else None

        async def on_batch(worker_index: int, outcome: BatchOutcome) -> None:
            progress.batches += 1
            for fix in outcome.fixes:
                if self._store.upsert_fix(scan_id, fix, applied=False) is not None:
                    progress.fix_keys.add(fix.violation_id)
            self._store.set_progress(
                scan_id,
                progress_message(len(progress.fix_keys), progress.batches, budget.elapsed(), budget.total_seconds),
            )

        partitions = partition_round_robin(batches, len(lanes))
        workers = [
            FixWorker(
                lane.index,
                lane.handle,
                self._agent,
                budget,
                breaker=EmptyBatchBreaker(settings.fixer_empty_batch_limit),
                verifier=verifier,
                on_batch=on_batch,
            )
            for lane in lanes
        ]
        logger.info("Scan %s: %d batch(es) across %d worker(s)", scan_id, len(batches), len(workers))
        results = await asyncio.gather(
            *(worker.run(part) for worker, part in zip(workers, partitions)),
            return_exceptions=True,
        )

        fixes, reports, worker_diagnostics = merge_reports(list(results))
        diagnostics += worker_diagnostics
        for report in reports:
            diagnostics += report.diagnostics
        warnings = list(dict.fromkeys(r.warning for r in reports if r.warning))
        # the last batch may have used up the budget without a worker noticing
        if budget.exhausted() and budget.warning() not in warnings:
            warnings.insert(0, budget.warning())
        warnings += [f"AI fixer {d}." for d in worker_diagnostics]
        processed = sum(r.processed_violations for r in reports)
        attempted = sum(r.attempted_batches for r in reports)

        if not fixes:
            notes = " ".join(warnings)
            extra = sanitize_diagnostic(" | ".join(diagnostics))
            parts = [
                f"No fixes were produced by the AI fixer (model: {self._agent.model}).",
                notes,
                f"Processed {processed} violation(s) across {attempted} batch(es).",
                extra or ("" if notes else "The model returned no applicable edits."),
            ]
            message = sanitize_error_message(" ".join(p for p in parts if p), extra_secrets=[token])
            return self._store.transition(scan_id, "complete", message, score_after=scan.score)

        primary = lanes[0].handle
        results_by_fix = await asyncio.to_thread(apply_fixes, primary.repo_dir, fixes)
        applied_violations = {r.fix.violation_id for r in results_by_fix if r.applied}
        unapplied = 0
        persisted: set[str] = set()
        for result in results_by_fix:
            violation_id = result.fix.violation_id
            if violation_id in persisted:
                continue
            applied = violation_id in applied_violations
            if self._store.upsert_fix(scan_id, result.fix, applied=applied) is not None:
                persisted.add(violation_id)
                if not applied:
                    unapplied += 1

        diff = await asyncio.to_thread(RepositoryMaterializer.diff_text, primary.repo_dir)
        if diff.strip():
            Path(dirs.output_dir, "diff.patch").write_text(diff, encoding="utf-8")

        if unapplied:
            warnings.append(f"{unapplied} fix(es) could not be applied automatically and are recorded for manual review.")

        after = await run_probe(self._sandbox, primary, "after")
        if after.ok:
            score_after = calculate_accessibility_score(after.report.violations)
            after_screenshot = after.screenshot_b64
        else:
            fixed_ids = {f.violation_id for f in self._store.list_fixes(scan_id)}
            remaining = [v for v in violations if v.id not in fixed_ids]
            score_after = calculate_accessibility_score(remaining)
            after_screenshot = None
            warnings.append(f"Post-fix re-scan failed; using inferred score. {after.error or ''}".strip())

        if diagnostics:
            logger.info("Scan %s fix diagnostics: %s", scan_id, " | ".join(diagnostics))
        message = " ".join(warnings) or None
        scan = self._store.transition(
            scan_id,
            "complete",
            sanitize_error_message(message, extra_secrets=[token]) if message else None,
            score_after=score_after,
            after_screenshot=after_screenshot,
        )
        logger.info(
            "Scan %s fixing complete: %d fix(es), score %s → %s", scan_id, len(persisted), scan.score, score_after
        )
        return scan

    async def _add_lanes(
        self,
        scan: Scan,
        token: str,
        primary_repo: str,
        wanted: int,
        lanes: list[_Lane],
    ) -> list[str]:
        """Copy the primary tree and start a sandbox for workers 1..wanted-1.

        Runs before any worker starts so copies never see agent edits.
        A worker that cannot be set up is skipped with a diagnostic.
        """
        diagnostics: list[str] = []
        for index in range(1, wanted):
            worker_dirs = create_workdirs(prefix=f"apex-w{index}-")
            try:
                how = await self._materializer.duplicate(
                    primary_repo, worker_dirs.repo_dir, scan.repo_url, token, scan.branch
                )
                handle = await self._sandbox.create(worker_dirs.repo_dir, worker_dirs.output_dir)
            except ApexError as e:
                cleanup_workdirs(worker_dirs)
                diagnostics.append(f"worker {index + 1} failed: {sanitize_diagnostic(str(e), extra_secrets=[token])}")
                continue
            logger.info("Worker %d ready (%s of primary tree)", index, how)
            lanes.append(_Lane(index=len(lanes), handle=handle, dirs=worker_dirs))
        return diagnostics
