"""Scan job — clone → boot → scan → score.

    pending/failed → cloning → scanning → complete
                          ↘          ↘
                           failed     failed

Violations are stored one row per DOM node, classified against the WCAG →
AODA table. The job's sandbox and temp directories are always torn down.
"""

from __future__ import annotations

import logging

from apex.db.records import ScanStore, get_store
from apex.engines.sanitize import sanitize_error_message
from apex.engines.scoring import (
    calculate_accessibility_score,
    extract_wcag_criteria,
    get_impact_weight,
    is_aoda_relevant,
)
from apex.errors import ApexError
from apex.execution.repository import RepositoryMaterializer
from apex.execution.sandbox import DockerSandbox, cleanup_workdirs, create_workdirs, get_sandbox
from apex.integrations.escrow import EscrowGate, get_escrow_gate, lock_from_scan
from apex.models.execution import SandboxHandle
from apex.models.probe import NodeViolation
from apex.models.scan import Scan, Violation
from apex.pipeline.probe_runner import run_probe

logger = logging.getLogger(__name__)


def build_violation_rows(scan_id: str, nodes: list[NodeViolation]) -> list[Violation]:
    """Classify probe rows into Violation records."""
    rows: list[Violation] = []
    for node in nodes:
        criteria = extract_wcag_criteria(node.tags)
        rows.append(
            Violation(
                scan_id=scan_id,
                rule_id=node.rule_id,
                impact=node.impact or "minor",
                description=node.description,
                help_url=node.help_url,
                wcag_criteria=criteria,
                aoda_relevant=is_aoda_relevant(criteria),
                target_element=node.target_element,
                html_snippet=node.html_snippet,
                score=float(get_impact_weight(node.impact)),
            )
        )
    return rows


class ScanRunner:
    """Runs one scan job end to end against the job record store."""

    def __init__(
        self,
        store: ScanStore | None = None,
        sandbox: DockerSandbox | None = None,
        materializer: RepositoryMaterializer | None = None,
        escrow: EscrowGate | None = None,
    ) -> None:
        self._store = store or get_store()
        self._sandbox = sandbox or get_sandbox()
        self._materializer = materializer or RepositoryMaterializer()
        self._escrow = escrow or get_escrow_gate()

    async def run(self, scan_id: str, token: str) -> Scan:
        """Execute the scan; the returned record is complete or failed.

        Raises:
            KeyError: If the scan does not exist.
            IllegalTransitionError: If the scan is not pending or failed.
        """
        scan = self._store.transition(scan_id, "cloning")
        dirs = create_workdirs()
        handle: SandboxHandle | None = None
        try:
            await self._materializer.clone(scan.repo_url, token, dirs.repo_dir, scan.branch)

            handle = await self._sandbox.create(dirs.repo_dir, dirs.output_dir)
            self._store.transition(scan_id, "scanning", container_id=handle.container_id)

            probe = await run_probe(self._sandbox, handle, "before")
            if not probe.ok:
                raise probe.as_error()

            rows = build_violation_rows(scan_id, probe.report.violations)
            self._store.replace_violations(scan_id, rows)
            score = calculate_accessibility_score(rows)
            scan = self._store.transition(
                scan_id,
                "complete",
                score=score,
                score_after=None,
                before_screenshot=probe.screenshot_b64,
                after_screenshot=None,
            )
            logger.info("Scan %s complete: %d violation(s), score %d", scan_id, len(rows), score)
        except ApexError as e:
            logger.warning("Scan %s failed: %s", scan_id, e)
            return self._store.transition(scan_id, "failed", sanitize_error_message(str(e), extra_secrets=[token]))
        except Exception as e:
            logger.exception("Scan %s crashed", scan_id)
            message = sanitize_error_message(f"Scan failed: {type(e).__name__}: {e}", extra_secrets=[token])
            return self._store.transition(scan_id, "failed", message)
        finally:
            await self._sandbox.destroy(handle)
            cleanup_workdirs(dirs)

        await self._release_escrow(scan)
        return scan

    async def _release_escrow(self, scan: Scan) -> None:
        lock = lock_from_scan(scan)
        if lock is None or not self._escrow.enabled:
            return
        try:
            tx_hash = await self._escrow.release(lock)
            logger.info("Released escrow %s/%s for scan %s (tx %s)", lock.owner, lock.sequence, scan.id, tx_hash)
        except Exception as e:
            # Funds stay locked; the payer can refund after cancel_after.
            logger.warning("Escrow release for scan %s failed: %s", scan.id, e)
