"""Tests for ScanStore — scan lifecycle, violation replace, fix upsert."""

import pytest
from conftest import make_scan, make_violation

from apex.integrations.escrow import EscrowLock
from apex.models.fixes import FixRecord
from apex.workflows.engine import IllegalTransitionError


def _fix(violation_id: str, **overrides) -> FixRecord:
    fields = {
        "file_path": "/workspace/src/App.tsx",
        "original_code": '<img src="logo.png">',
        "fixed_code": '<img src="logo.png" alt="Acme logo">',
        "explanation": "Added alt text",
        "violation_id": violation_id,
    }
    fields.update(overrides)
    return FixRecord(**fields)


class TestScans:
    def test_create_and_get(self, store):
        scan = make_scan(store)
        loaded = store.get_scan(scan.id)
        assert loaded is not None
        assert loaded.status == "pending"
        assert loaded.branch == "main"

    def test_get_missing_returns_none(self, store):
        assert store.get_scan("nope") is None

    def test_update_missing_raises(self, store):
        with pytest.raises(KeyError):
            store.update_scan("nope", score=10)

    def test_transition_persists_fields(self, store):
        scan = make_scan(store)
        store.transition(scan.id, "cloning")
        updated = store.transition(scan.id, "scanning", container_id="abc123")
        assert updated.status == "scanning"
        assert store.get_scan(scan.id).container_id == "abc123"

    def test_illegal_transition_leaves_row_untouched(self, store):
        scan = make_scan(store)
        with pytest.raises(IllegalTransitionError):
            store.transition(scan.id, "complete")
        assert store.get_scan(scan.id).status == "pending"

    def test_failed_message(self, store):
        scan = make_scan(store, status="cloning")
        failed = store.transition(scan.id, "failed", "Repository clone failed: boom")
        assert failed.error_message == "Repository clone failed: boom"

    def test_list_filters_by_user(self, store):
        make_scan(store, user_id="u1")
        make_scan(store, user_id="u2")
        make_scan(store, user_id="u1")
        assert len(store.list_scans(user_id="u1")) == 2
        assert len(store.list_scans()) == 3

    def test_escrow_fields_written_together(self, store):
        scan = make_scan(store)
        lock = EscrowLock(owner="rPayer", sequence=42, tx_hash="ABC")
        updated = store.record_escrow_lock(scan.id, lock)
        assert (updated.escrow_owner, updated.escrow_sequence, updated.escrow_tx_hash) == ("rPayer", 42, "ABC")
        assert store.mark_refunded(scan.id).escrow_refunded_at is not None


class TestViolations:
    def test_replace_is_full_replace(self, store):
        scan = make_scan(store)
        store.replace_violations(scan.id, [make_violation("image-alt"), make_violation("label")])
        store.replace_violations(scan.id, [make_violation("color-contrast", "serious")])
        rows = store.list_violations(scan.id)
        assert [v.rule_id for v in rows] == ["color-contrast"]

    def test_replace_drops_fixes_of_old_violations(self, store):
        scan = make_scan(store)
        store.replace_violations(scan.id, [make_violation()])
        old = store.list_violations(scan.id)[0]
        assert store.upsert_fix(scan.id, _fix(old.id)) is not None
        store.replace_violations(scan.id, [make_violation()])
        assert store.list_fixes(scan.id) == []

    def test_scans_are_isolated(self, store):
        a = make_scan(store)
        b = make_scan(store)
        store.replace_violations(a.id, [make_violation()])
        store.replace_violations(b.id, [make_violation(), make_violation("label")])
        assert len(store.list_violations(a.id)) == 1
        assert len(store.list_violations(b.id)) == 2


class TestFixes:
    @pytest.fixture()
    def scan_with_violation(self, store):
        scan = make_scan(store, status="complete")
        store.replace_violations(scan.id, [make_violation()])
        return scan, store.list_violations(scan.id)[0]

    def test_upsert_normalizes_path(self, store, scan_with_violation):
        scan, violation = scan_with_violation
        fix = store.upsert_fix(scan.id, _fix(violation.id), applied=True)
        assert fix.file_path == "src/App.tsx"
        assert fix.applied is True
        assert fix.status == "pending"

    def test_upsert_is_idempotent(self, store, scan_with_violation):
        scan, violation = scan_with_violation
        first = store.upsert_fix(scan.id, _fix(violation.id))
        second = store.upsert_fix(scan.id, _fix(violation.id, fixed_code="<img alt=''>"), applied=True)
        fixes = store.list_fixes(scan.id)
        assert len(fixes) == 1
        assert first.id == second.id
        assert fixes[0].fixed_code == "<img alt=''>"
        assert fixes[0].applied is True

    def test_upsert_rejects_foreign_violation(self, store, scan_with_violation):
        _, violation = scan_with_violation
        other = make_scan(store)
        assert store.upsert_fix(other.id, _fix(violation.id)) is None
        assert store.upsert_fix("x", _fix("missing-violation")) is None

    def test_upsert_rejects_escaping_path(self, store, scan_with_violation):
        scan, violation = scan_with_violation
        assert store.upsert_fix(scan.id, _fix(violation.id, file_path="../../etc/passwd")) is None

    def test_clear_fixes(self, store, scan_with_violation):
        scan, violation = scan_with_violation
        store.upsert_fix(scan.id, _fix(violation.id))
        assert store.clear_fixes(scan.id) == 1
        assert store.list_fixes(scan.id) == []

    def test_update_status(self, store, scan_with_violation):
        scan, violation = scan_with_violation
        fix = store.upsert_fix(scan.id, _fix(violation.id))
        assert store.update_fix_status(scan.id, fix.id, "accepted").status == "accepted"
        assert store.update_fix_status("other-scan", fix.id, "rejected") is None
