"""ScanStore — the narrow read/write contract over Scan, Violation and Fix rows.

Every method opens its own short-lived Session, so the store is safe to call
from concurrent asyncio tasks (each call is one SQLite transaction; WAL mode
lets pollers read while a job writes). Returned rows are detached from their
session and can be read freely; write back through the store.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from apex.db.database import engine as default_engine
from apex.engines.repo_path import normalize_repo_file_path
from apex.models.fixes import FixRecord
from apex.models.scan import Fix, Scan, Violation
from apex.workflows.engine import ScanStateMachine

if TYPE_CHECKING:
    from apex.integrations.escrow import EscrowLock

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _delete_rows(session: Session, model: type[Fix] | type[Violation], scan_id: str) -> int:
    rows = session.exec(select(model).where(model.scan_id == scan_id)).all()
    for row in rows:
        session.delete(row)
    return len(rows)


class ScanStore:
    """Persistence for scan jobs. One instance per engine."""

    def __init__(self, bind: Engine | None = None, machine: ScanStateMachine | None = None) -> None:
        self._engine = bind or default_engine
        self._machine = machine or ScanStateMachine()

    # === Scans ===

    def create_scan(self, scan: Scan) -> Scan:
        with Session(self._engine) as session:
            session.add(scan)
            session.commit()
            session.refresh(scan)
            session.expunge(scan)
            return scan

    def get_scan(self, scan_id: str) -> Scan | None:
        with Session(self._engine) as session:
            scan = session.get(Scan, scan_id)
            if scan is not None:
                session.expunge(scan)
            return scan

    def list_scans(self, user_id: str | None = None, limit: int = 50) -> list[Scan]:
        with Session(self._engine) as session:
            stmt = select(Scan).order_by(col(Scan.created_at).desc()).limit(limit)
            if user_id:
                stmt = stmt.where(Scan.user_id == user_id)
            scans = list(session.exec(stmt).all())
            for scan in scans:
                session.expunge(scan)
            return scans

    def update_scan(self, scan_id: str, **fields: Any) -> Scan:
        """Set arbitrary columns on a scan (no status validation).

        Raises:
            KeyError: If the scan does not exist.
        """
        with Session(self._engine) as session:
            scan = session.get(Scan, scan_id)
            if scan is None:
                raise KeyError(scan_id)
            for name, value in fields.items():
                setattr(scan, name, value)
            scan.updated_at = _now()
            session.add(scan)
            session.commit()
            session.refresh(scan)
            session.expunge(scan)
            return scan

    def transition(self, scan_id: str, to_state: str, message: str | None = None, **fields: Any) -> Scan:
        """Validated status change, plus any extra columns in the same commit.

        message becomes error_message for complete/failed.

        Raises:
            KeyError: If the scan does not exist.
            IllegalTransitionError: If the transition is not legal.
        """
        with Session(self._engine) as session:
            scan = session.get(Scan, scan_id)
            if scan is None:
                raise KeyError(scan_id)
            if to_state == "cloning":
                self._machine.start_clone(scan)
            elif to_state == "scanning":
                self._machine.start_scan(scan)
            elif to_state == "fixing":
                self._machine.start_fixing(scan)
            elif to_state == "complete":
                self._machine.complete(scan, message)
            elif to_state == "failed":
                self._machine.fail(scan, message or "Unknown error")
            else:
                self._machine.transition(scan, to_state)
            for name, value in fields.items():
                setattr(scan, name, value)
            session.add(scan)
            session.commit()
            session.refresh(scan)
            session.expunge(scan)
            logger.info("Scan %s → %s", scan_id, to_state)
            return scan

    def set_progress(self, scan_id: str, message: str) -> None:
        """Overwrite the progress ticker (error_message) without touching status."""
        self.update_scan(scan_id, error_message=message)

    def record_escrow_lock(self, scan_id: str, lock: EscrowLock) -> Scan:
        """Owner, sequence and tx hash are always written together."""
        return self.update_scan(
            scan_id,
            escrow_owner=lock.owner,
            escrow_sequence=lock.sequence,
            escrow_tx_hash=lock.tx_hash,
            escrow_release_after=lock.release_after,
            escrow_cancel_after=lock.cancel_after,
        )

    def mark_refunded(self, scan_id: str, when: datetime | None = None) -> Scan:
        return self.update_scan(scan_id, escrow_refunded_at=when or _now())

    # === Violations ===

    def replace_violations(self, scan_id: str, violations: list[Violation]) -> int:
        """Drop the scan's previous violations (and their fixes) and bulk-insert new ones."""
        with Session(self._engine) as session:
            _delete_rows(session, Fix, scan_id)
            _delete_rows(session, Violation, scan_id)
            session.flush()
            for violation in violations:
                violation.scan_id = scan_id
            session.add_all(violations)
            session.commit()
        logger.info("Stored %d violation(s) for scan %s", len(violations), scan_id)
        return len(violations)

    def list_violations(self, scan_id: str) -> list[Violation]:
        with Session(self._engine) as session:
            stmt = select(Violation).where(Violation.scan_id == scan_id).order_by(col(Violation.created_at), col(Violation.id))
            rows = list(session.exec(stmt).all())
            for row in rows:
                session.expunge(row)
            return rows

    # === Fixes ===

    def clear_fixes(self, scan_id: str) -> int:
        with Session(self._engine) as session:
            removed = _delete_rows(session, Fix, scan_id)
            session.commit()
            return removed

    def upsert_fix(self, scan_id: str, record: FixRecord, applied: bool = False) -> Fix | None:
        """Insert or replace the single Fix for record.violation_id.

        Returns None (and stores nothing) if the violation does not belong to
        scan_id or the file path is unusable.
        """
        file_path = normalize_repo_file_path(record.file_path)
        if not file_path:
            logger.warning("Dropping fix for %s: unusable file path %r", record.violation_id, record.file_path)
            return None

        with Session(self._engine) as session:
            violation = session.get(Violation, record.violation_id)
            if violation is None or violation.scan_id != scan_id:
                logger.warning("Dropping fix for unknown violation %s (scan %s)", record.violation_id, scan_id)
                return None

            fix = session.exec(select(Fix).where(Fix.violation_id == record.violation_id)).first()
            if fix is None:
                fix = Fix(scan_id=scan_id, violation_id=record.violation_id, file_path=file_path)
            fix.file_path = file_path
            fix.original_code = record.original_code
            fix.fixed_code = record.fixed_code
            fix.explanation = record.explanation or None
            fix.applied = applied
            fix.status = "pending"
            session.add(fix)
            session.commit()
            session.refresh(fix)
            session.expunge(fix)
            return fix

    def list_fixes(self, scan_id: str) -> list[Fix]:
        with Session(self._engine) as session:
            stmt = select(Fix).where(Fix.scan_id == scan_id).order_by(col(Fix.created_at), col(Fix.id))
            rows = list(session.exec(stmt).all())
            for row in rows:
                session.expunge(row)
            return rows

    def update_fix_status(self, scan_id: str, fix_id: str, status: str) -> Fix | None:
        """Set a fix's review status; None if the fix is not part of scan_id."""
        with Session(self._engine) as session:
            fix = session.get(Fix, fix_id)
            if fix is None or fix.scan_id != scan_id:
                return None
            fix.status = status
            session.add(fix)
            session.commit()
            session.refresh(fix)
            session.expunge(fix)
            return fix


_default_store: ScanStore | None = None


def get_store() -> ScanStore:
    """Return the shared ScanStore bound to the application engine."""
    global _default_store
    if _default_store is None:
        _default_store = ScanStore()
    return _default_store
