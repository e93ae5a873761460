"""Scan job state machine — transition table + guards.

Manages the Scan.status lifecycle:

    pending → cloning → scanning → {complete | failed}
    complete → fixing → {complete | failed}     (re-entrant)
    failed → cloning                            (user retry)
"""

from __future__ import annotations

from datetime import datetime, timezone

from apex.errors import ApexError
from apex.models.scan import Scan

# === State Transition Table ===
# Key: (from_state, to_state) → guard description
# Absent pair → illegal transition

LEGAL_TRANSITIONS: dict[tuple[str, str], str] = {
    # From pending
    ("pending", "cloning"): "Scan job picked up",
    ("pending", "failed"): "Job could not start (e.g. sandbox unavailable)",
    # From cloning
    ("cloning", "scanning"): "Repository materialized",
    ("cloning", "failed"): "Clone failed",
    # From scanning
    ("scanning", "complete"): "Violations stored and score computed",
    ("scanning", "failed"): "No runnable app, or rule engine failed",
    # From complete
    ("complete", "fixing"): "User triggers fix generation",
    # From fixing
    ("fixing", "complete"): "Fix run finished (including 'nothing to fix')",
    ("fixing", "failed"): "Fix run aborted",
    # From failed
    ("failed", "cloning"): "User retries the scan",
}


class IllegalTransitionError(ApexError):
    """Raised when attempting an illegal state transition."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal transition: {from_state} → {to_state}. "
            f"See LEGAL_TRANSITIONS for valid transitions."
        )


class ScanStateMachine:
    """Stateless transition enforcement for Scan records.

    All state lives on the Scan row; the machine only validates and mutates.
    It does not prevent two jobs for the same repository — callers decide that
    before creating a Scan.

    Usage:
        machine = ScanStateMachine()
        machine.start_clone(scan)
        machine.start_scan(scan)
        machine.complete(scan)
    """

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return (from_state, to_state) in LEGAL_TRANSITIONS

    def transition(self, scan: Scan, to_state: str) -> None:
        """Move scan to to_state.

        Raises:
            IllegalTransitionError: If the transition is not legal.
        """
        from_state = scan.status
        if not self.can_transition(from_state, to_state):
            raise IllegalTransitionError(from_state, to_state)
        scan.status = to_state
        scan.updated_at = datetime.now(timezone.utc)

    def start_clone(self, scan: Scan) -> None:
        self.transition(scan, "cloning")
        scan.error_message = None

    def start_scan(self, scan: Scan) -> None:
        self.transition(scan, "scanning")

    def start_fixing(self, scan: Scan) -> None:
        self.transition(scan, "fixing")
        scan.error_message = None
        scan.score_after = None
        scan.after_screenshot = None

    def complete(self, scan: Scan, message: str | None = None) -> None:
        self.transition(scan, "complete")
        scan.error_message = message

    def fail(self, scan: Scan, error: str) -> None:
        self.transition(scan, "failed")
        scan.error_message = error
