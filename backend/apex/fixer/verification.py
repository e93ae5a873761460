"""Optional per-batch self-verification.

Reboots the app and re-runs the rule engine scoped to the batch's rule ids,
before and after the batch. The node-count delta is a cheap signal that the
batch helped; it never blocks or rolls back a batch.
"""

from __future__ import annotations

import logging

from apex.execution.sandbox import DockerSandbox
from apex.models.execution import SandboxHandle
from apex.models.fixes import FixBatch
from apex.pipeline.probe_runner import run_probe

logger = logging.getLogger(__name__)


class BatchVerifier:
    def __init__(self, sandbox: DockerSandbox, timeout: float | None = None) -> None:
        self._sandbox = sandbox
        self._timeout = timeout

    async def count(self, handle: SandboxHandle, batch: FixBatch, phase: str, worker_index: int = 0) -> int | None:
        """Node violations for the batch's rules, or None if the probe failed."""
        label = f"verify-w{worker_index}-b{batch.index}-{phase}"
        run = await run_probe(
            self._sandbox, handle, label, rules=batch.rule_ids, verify=True, timeout=self._timeout
        )
        if not run.ok:
            logger.info("Verification %s failed: %s", label, run.error)
            return None
        return run.report.node_count


def describe_delta(before: int | None, after: int | None) -> str:
    if before is None or after is None:
        return "verify: unavailable"
    if after < before:
        trend = "improved"
    elif after > before:
        trend = "regressed"
    else:
        trend = "unchanged"
    return f"verify: {before} → {after} node(s) ({trend})"
