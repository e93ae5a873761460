"""FixWorker — runs a sequence of batches against one sandbox + working tree.

Batches within a worker are strictly sequential. Before each batch the shared
budget is checked; after each batch the empty-batch breaker is updated and
the on_batch callback (persistence + progress) is awaited.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from apex.config import settings
from apex.fixer import workspace
from apex.fixer.agent import AgentRun, CodingAgentRunner
from apex.fixer.budget import EmptyBatchBreaker, FixBudget
from apex.fixer.extraction import ExtractionContext, compact_diagnostic, run_extraction_chain
from apex.fixer.prompts import build_extraction_prompt, build_fix_prompt
from apex.fixer.verification import BatchVerifier, describe_delta
from apex.models.execution import SandboxHandle
from apex.models.fixes import BatchOutcome, ExtractionHit, FixBatch, WorkerReport

logger = logging.getLogger(__name__)

RETRY_TIMEOUT_SECONDS = 45

BatchCallback = Callable[[int, BatchOutcome], Awaitable[None]]


class FixWorker:
    """One parallel lane of the fix run."""

    def __init__(
        self,
        index: int,
        handle: SandboxHandle,
        agent: CodingAgentRunner,
        budget: FixBudget,
        *,
        breaker: EmptyBatchBreaker | None = None,
        verifier: BatchVerifier | None = None,
        on_batch: BatchCallback | None = None,
        extraction_retry: bool | None = None,
        instant_failure_seconds: float | None = None,
    ) -> None:
        self.index = index
        self.handle = handle
        self._agent = agent
        self._budget = budget
        self._breaker = breaker or EmptyBatchBreaker(settings.fixer_empty_batch_limit)
        self._verifier = verifier
        self._on_batch = on_batch
        self._extraction_retry = settings.fixer_extraction_retry if extraction_retry is None else extraction_retry
        self._instant_failure_seconds = (
            settings.fixer_instant_failure_seconds if instant_failure_seconds is None else instant_failure_seconds
        )

    async def run(self, batches: list[FixBatch]) -> WorkerReport:
        report = WorkerReport(worker_index=self.index)
        for batch in batches:
            if self._budget.exhausted():
                report.warning = self._budget.warning()
                report.diagnostics.append("overall timeout budget reached")
                logger.info("Worker %d: budget exhausted before batch %d", self.index, batch.index)
                break

            report.attempted_batches += 1
            report.processed_violations += len(batch.violations)
            outcome = await self.run_batch(batch)

            for fix in outcome.fixes:
                report.add(fix)
            if outcome.diagnostic:
                report.diagnostics.append(f"batch {batch.index}: {outcome.diagnostic}")
            if outcome.verification:
                report.diagnostics.append(f"batch {batch.index}: {outcome.verification}")

            self._breaker.record(len(outcome.fixes))
            if self._on_batch is not None:
                await self._on_batch(self.index, outcome)

            if self._breaker.is_open:
                report.diagnostics.append(self._breaker.diagnostic())
                report.warning = report.warning or f"AI fixer {self._breaker.diagnostic()}."
                break
        return report

    async def run_batch(self, batch: FixBatch) -> BatchOutcome:
        timeout = self._budget.batch_timeout()
        tag = f"w{self.index}-b{batch.index}"
        single_id = batch.violation_ids[0] if len(batch.violation_ids) == 1 else ""

        before_count = None
        if self._verifier is not None:
            before_count = await self._verifier.count(self.handle, batch, "before", self.index)

        pre_batch = await asyncio.to_thread(workspace.snapshot, self.handle.repo_dir)
        run = await self._agent.run(
            self.handle, build_fix_prompt(batch.violations), timeout, batch.use_thinking, tag=tag
        )
        instant = run.elapsed_seconds < self._instant_failure_seconds

        async def retry() -> AgentRun | None:
            if self._budget.exhausted():
                return None
            retry_timeout = min(RETRY_TIMEOUT_SECONDS, self._budget.batch_timeout())
            return await self._agent.run(
                self.handle, build_extraction_prompt(batch.violation_ids), retry_timeout, False, tag=f"{tag}-retry"
            )

        ctx = ExtractionContext(
            batch=batch,
            run=run,
            workspace_changes=lambda: workspace.diff_since(self.handle.repo_dir, pre_batch, single_id),
            retry=retry if self._extraction_retry and not instant else None,
        )
        result = await run_extraction_chain(ctx)

        outcome = BatchOutcome(batch_index=batch.index, elapsed_seconds=run.elapsed_seconds)
        if isinstance(result, ExtractionHit):
            outcome.fixes = result.fixes
            outcome.source = result.source
        else:
            diagnostic = compact_diagnostic(run) or "agent returned no applicable edits"
            if instant:
                diagnostic = f"likely immediate agent failure ({run.elapsed_seconds:.1f}s): {diagnostic}"
            outcome.diagnostic = diagnostic

        if self._verifier is not None:
            after_count = await self._verifier.count(self.handle, batch, "after", self.index)
            outcome.verification = describe_delta(before_count, after_count)

        logger.info(
            "Worker %d batch %d: %d fix(es) from %s in %.1fs",
            self.index,
            batch.index,
            len(outcome.fixes),
            outcome.source or "nothing",
            outcome.elapsed_seconds,
        )
        return outcome
