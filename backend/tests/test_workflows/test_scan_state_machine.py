"""Tests for the scan status state machine."""

import pytest

from apex.models.scan import Scan
from apex.workflows.engine import LEGAL_TRANSITIONS, IllegalTransitionError, ScanStateMachine


def _scan(status: str = "pending") -> Scan:
    return Scan(repo_owner="acme", repo_name="site", repo_url="https://github.com/acme/site", status=status)


class TestTransitions:
    def test_happy_path(self):
        machine = ScanStateMachine()
        scan = _scan()
        machine.start_clone(scan)
        machine.start_scan(scan)
        machine.complete(scan)
        assert scan.status == "complete"
        assert scan.error_message is None

    def test_fixing_is_reentrant(self):
        machine = ScanStateMachine()
        scan = _scan("complete")
        scan.score_after = 80
        machine.start_fixing(scan)
        assert scan.score_after is None
        machine.complete(scan, "1 fix(es) could not be applied automatically")
        machine.start_fixing(scan)
        assert scan.status == "fixing"
        assert scan.error_message is None

    def test_fail_sets_message(self):
        machine = ScanStateMachine()
        scan = _scan("cloning")
        machine.fail(scan, "Repository clone failed: not found")
        assert scan.status == "failed"
        assert scan.error_message == "Repository clone failed: not found"

    def test_retry_from_failed_clears_message(self):
        machine = ScanStateMachine()
        scan = _scan("failed")
        scan.error_message = "boom"
        machine.start_clone(scan)
        assert scan.status == "cloning"
        assert scan.error_message is None

    @pytest.mark.parametrize(
        "from_state,to_state",
        [("pending", "complete"), ("complete", "scanning"), ("fixing", "fixing"), ("scanning", "fixing")],
    )
    def test_illegal(self, from_state, to_state):
        machine = ScanStateMachine()
        scan = _scan(from_state)
        with pytest.raises(IllegalTransitionError):
            machine.transition(scan, to_state)
        assert scan.status == from_state

    def test_terminal_states_only_leave_via_user_actions(self):
        outgoing = {to for (frm, to) in LEGAL_TRANSITIONS if frm in ("complete", "failed")}
        assert outgoing == {"fixing", "cloning"}
