"""Tests for Scan API endpoints — create, inspect, fix, review, refund."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from conftest import make_scan, make_violation
from fastapi.testclient import TestClient

from apex.api.v1.scans import set_dependencies
from apex.errors import EscrowLockError
from apex.integrations.escrow import EscrowLock
from apex.main import app
from apex.models.fixes import FixRecord


class FakeEscrow:
    enabled = True

    def __init__(self):
        self.refunded = []
        self.locked = []
        self.refuse_lock = False

    async def lock(self, action, payer):
        if self.refuse_lock:
            raise EscrowLockError(f"{payer} has insufficient funds")
        self.locked.append((action, payer))
        return EscrowLock(owner=payer, sequence=41, tx_hash="SERVERLOCK")

    async def release(self, lock):
        return "RELEASETX"

    async def refund(self, lock):
        self.refunded.append(lock)
        return "REFUNDTX"


@pytest.fixture()
def escrow():
    return FakeEscrow()


@pytest.fixture()
def dispatch():
    with patch("apex.api.v1.scans._dispatch") as mock_dispatch:
        yield mock_dispatch


@pytest.fixture()
def client(store, escrow, dispatch):
    set_dependencies(store=store, escrow=escrow)
    yield TestClient(app)
    set_dependencies()


def _with_fix(store, scan):
    violation = make_violation(html_snippet="<img src='a.png'>")
    store.replace_violations(scan.id, [violation])
    return store.upsert_fix(
        scan.id,
        FixRecord(file_path="index.html", original_code="<img src='a.png'>", fixed_code="<img src='a.png' alt=''>", violation_id=violation.id),
        applied=True,
    )


class TestCreateScan:
    def test_creates_and_dispatches(self, client, dispatch):
        resp = client.post(
            "/api/v1/scans",
            json={"repo_owner": "acme", "repo_name": "storefront", "branch": "dev", "github_token": "ghp_x"},
        )
        assert resp.status_code == 202
        data = resp.json()
        assert data["status"] == "pending"
        assert data["repo_url"] == "https://github.com/acme/storefront"
        assert data["branch"] == "dev"
        assert "github_token" not in data
        dispatch.assert_called_once_with("scan", data["id"], "ghp_x")

    def test_rejects_path_characters(self, client, dispatch):
        resp = client.post("/api/v1/scans", json={"repo_owner": "acme/../x", "repo_name": "storefront"})
        assert resp.status_code == 422
        dispatch.assert_not_called()

    def test_records_escrow(self, client, store):
        resp = client.post(
            "/api/v1/scans",
            json={
                "repo_owner": "acme",
                "repo_name": "storefront",
                "escrow": {"owner": "rPayer", "sequence": 12, "tx_hash": "LOCKTX"},
            },
        )
        scan = store.get_scan(resp.json()["id"])
        assert (scan.escrow_owner, scan.escrow_sequence, scan.escrow_tx_hash) == ("rPayer", 12, "LOCKTX")

    def test_locks_scan_fee_for_payer(self, client, store, escrow, dispatch):
        resp = client.post("/api/v1/scans", json={"repo_owner": "acme", "repo_name": "storefront", "payer": "rPayer"})
        assert resp.status_code == 202
        assert escrow.locked == [("scan", "rPayer")]
        scan = store.get_scan(resp.json()["id"])
        assert (scan.escrow_owner, scan.escrow_sequence, scan.escrow_tx_hash) == ("rPayer", 41, "SERVERLOCK")
        dispatch.assert_called_once()

    def test_refused_lock_creates_nothing(self, client, store, escrow, dispatch):
        escrow.refuse_lock = True
        resp = client.post("/api/v1/scans", json={"repo_owner": "acme", "repo_name": "storefront", "payer": "rBroke"})
        assert resp.status_code == 402
        assert "insufficient funds" in resp.json()["detail"]
        assert store.list_scans() == []
        dispatch.assert_not_called()

    def test_prior_lock_is_not_locked_again(self, client, escrow):
        client.post(
            "/api/v1/scans",
            json={
                "repo_owner": "acme",
                "repo_name": "storefront",
                "payer": "rPayer",
                "escrow": {"owner": "rPayer", "sequence": 12, "tx_hash": "LOCKTX"},
            },
        )
        assert escrow.locked == []


class TestReadScans:
    def test_list_and_filter(self, client, store):
        make_scan(store, user_id="u1")
        make_scan(store, user_id="u2")
        assert len(client.get("/api/v1/scans").json()) == 2
        only = client.get("/api/v1/scans", params={"user_id": "u1"}).json()
        assert [s["user_id"] for s in only] == ["u1"]

    def test_detail_includes_violations_and_fixes(self, client, store):
        scan = make_scan(store, status="complete", score=0)
        _with_fix(store, scan)
        data = client.get(f"/api/v1/scans/{scan.id}").json()
        assert data["status"] == "complete"
        assert len(data["violations"]) == 1
        assert data["fixes"][0]["applied"] is True
        assert data["fixes"][0]["status"] == "pending"

    def test_unknown_scan_404(self, client):
        assert client.get("/api/v1/scans/nope").status_code == 404

    def test_report(self, client, store):
        scan = make_scan(store, status="complete")
        store.replace_violations(
            scan.id,
            [
                make_violation(wcag_criteria=["1.1.1"], aoda_relevant=True),
                make_violation("color-contrast", "serious", wcag_criteria=["1.4.3"], aoda_relevant=True),
            ],
        )
        data = client.get(f"/api/v1/scans/{scan.id}/report").json()
        assert data["summary"]["total_violations"] == 2
        assert data["summary"]["by_severity"]["serious"] == 1
        assert [a["criterion"] for a in data["aoda"]] == ["1.1.1", "1.4.3"]


class TestRetry:
    def test_failed_scan_is_redispatched(self, client, store, dispatch):
        scan = make_scan(store, status="failed", error_message="Repository clone failed: timeout")
        resp = client.post(f"/api/v1/scans/{scan.id}/retry", json={"github_token": "ghp_retry"})
        assert resp.status_code == 202
        dispatch.assert_called_once_with("scan", scan.id, "ghp_retry")

    def test_only_failed_scans(self, client, store):
        scan = make_scan(store, status="complete")
        assert client.post(f"/api/v1/scans/{scan.id}/retry").status_code == 400


class TestFix:
    def test_claims_scan_and_dispatches(self, client, store, dispatch):
        scan = make_scan(store, status="complete")
        resp = client.post(f"/api/v1/scans/{scan.id}/fix", json={"github_token": "ghp_fix"})
        assert resp.status_code == 202
        assert resp.json()["status"] == "fixing"
        assert store.get_scan(scan.id).status == "fixing"
        dispatch.assert_called_once_with("fix", scan.id, "ghp_fix")

    def test_second_request_conflicts(self, client, store, dispatch):
        scan = make_scan(store, status="complete")
        client.post(f"/api/v1/scans/{scan.id}/fix")
        resp = client.post(f"/api/v1/scans/{scan.id}/fix")
        assert resp.status_code == 409
        assert dispatch.call_count == 1

    def test_requires_complete_scan(self, client, store, dispatch):
        scan = make_scan(store, status="scanning")
        resp = client.post(f"/api/v1/scans/{scan.id}/fix")
        assert resp.status_code == 400
        dispatch.assert_not_called()


class TestFixReview:
    def test_accept_fix(self, client, store):
        scan = make_scan(store, status="complete")
        fix = _with_fix(store, scan)
        resp = client.patch(f"/api/v1/scans/{scan.id}/fixes/{fix.id}", json={"status": "accepted"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "accepted"
        assert store.list_fixes(scan.id)[0].status == "accepted"

    def test_invalid_status(self, client, store):
        scan = make_scan(store, status="complete")
        fix = _with_fix(store, scan)
        resp = client.patch(f"/api/v1/scans/{scan.id}/fixes/{fix.id}", json={"status": "merged"})
        assert resp.status_code == 422

    def test_unknown_fix(self, client, store):
        scan = make_scan(store, status="complete")
        resp = client.patch(f"/api/v1/scans/{scan.id}/fixes/nope", json={"status": "rejected"})
        assert resp.status_code == 404


class TestRefund:
    def _locked(self, store, status="failed", cancel_after=None):
        scan = make_scan(store, status=status)
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        return store.record_escrow_lock(
            scan.id,
            EscrowLock(owner="rPayer", sequence=3, tx_hash="LOCKTX", release_after=past, cancel_after=cancel_after or past),
        )

    def test_refund_failed_scan(self, client, store, escrow):
        scan = self._locked(store)
        resp = client.post(f"/api/v1/scans/{scan.id}/refund-escrow")
        assert resp.status_code == 200
        assert resp.json() == {"scan_id": scan.id, "tx_hash": "REFUNDTX"}
        assert store.get_scan(scan.id).escrow_refunded_at is not None
        assert [lock.sequence for lock in escrow.refunded] == [3]

    def test_refund_only_once(self, client, store):
        scan = self._locked(store)
        client.post(f"/api/v1/scans/{scan.id}/refund-escrow")
        resp = client.post(f"/api/v1/scans/{scan.id}/refund-escrow")
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Already refunded"

    def test_refund_before_cancel_window(self, client, store):
        scan = self._locked(store, cancel_after=datetime.now(timezone.utc) + timedelta(hours=1))
        resp = client.post(f"/api/v1/scans/{scan.id}/refund-escrow")
        assert resp.status_code == 400
        assert resp.json()["detail"].startswith("Refund available after")

    def test_refund_requires_failed_scan(self, client, store):
        scan = self._locked(store, status="complete")
        resp = client.post(f"/api/v1/scans/{scan.id}/refund-escrow")
        assert resp.status_code == 400


class TestAuth:
    def test_missing_auth_header_returns_401(self, client):
        with patch("apex.middleware.auth.settings") as mock_settings:
            mock_settings.apex_api_key = "test-secret-key"
            resp = client.get("/api/v1/scans")
        assert resp.status_code == 401
        assert "Authorization" in resp.json()["detail"]

    def test_invalid_token_returns_403(self, client):
        with patch("apex.middleware.auth.settings") as mock_settings:
            mock_settings.apex_api_key = "correct-key"
            resp = client.get("/api/v1/scans", headers={"Authorization": "Bearer wrong-key"})
        assert resp.status_code == 403

    def test_valid_token_passes(self, client):
        with patch("apex.middleware.auth.settings") as mock_settings:
            mock_settings.apex_api_key = "my-secret"
            resp = client.get("/api/v1/scans", headers={"Authorization": "Bearer my-secret"})
        assert resp.status_code == 200

    def test_root_exempt_from_auth(self, client):
        with patch("apex.middleware.auth.settings") as mock_settings:
            mock_settings.apex_api_key = "secret-key"
            resp = client.get("/")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Apex"


class TestHealth:
    def test_reports_sandbox_unavailable(self, client):
        with patch("apex.execution.sandbox.DockerSandbox.is_available", return_value=False):
            data = client.get("/health").json()
        assert data["status"] == "unhealthy"
        assert data["checks"]["sandbox"]["status"] == "error"
        assert data["checks"]["database"]["status"] == "ok"

    def test_degraded_without_broker(self, client):
        with (
            patch("apex.execution.sandbox.DockerSandbox.is_available", return_value=True),
            patch("apex.celery_app.is_celery_enabled", return_value=False),
        ):
            data = client.get("/health").json()
        assert data["status"] == "degraded"
        assert data["checks"]["celery"]["status"] == "warning"
