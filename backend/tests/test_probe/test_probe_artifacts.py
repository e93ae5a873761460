"""Tests for the host side of the probe: command line and artifact reading."""

import base64

import pytest

from apex.errors import NoRunnableAppError, ScanFailedError
from apex.models.execution import ExecResult
from apex.models.probe import NodeViolation, ProbeFailure, ScanReport
from apex.pipeline.probe_runner import probe_command, read_probe_artifacts, run_probe
from apex.probe.cli import write_failure


class TestProbeCommand:
    def test_scan(self):
        assert probe_command("before") == "python -m apex.probe.cli scan --label before"

    def test_verify_with_rules(self):
        cmd = probe_command("verify-w0-b1-after", rules=["color-contrast", "image-alt"], verify=True)
        assert cmd == "python -m apex.probe.cli verify --label verify-w0-b1-after --rules color-contrast,image-alt"

    def test_deadline_enforced_inside_container(self):
        assert probe_command("after", timeout=300) == "timeout -k 10s 300s python -m apex.probe.cli scan --label after"


class TestReadArtifacts:
    def test_results_and_screenshot(self, tmp_path):
        report = ScanReport(url="http://localhost:5173", violations=[NodeViolation(rule_id="image-alt", impact="critical")])
        (tmp_path / "before-scan-results.json").write_text(report.model_dump_json())
        (tmp_path / "before.png").write_bytes(b"png")
        run = read_probe_artifacts(str(tmp_path), "before", ExecResult())
        assert run.ok
        assert run.report.node_count == 1
        assert run.screenshot_b64 == base64.b64encode(b"png").decode()

    def test_no_app_failure(self, tmp_path):
        write_failure(tmp_path, "before", "No running dev server found", "no_app")
        run = read_probe_artifacts(str(tmp_path), "before", ExecResult(exit_code=2))
        assert not run.ok
        assert run.kind == "no_app"
        assert isinstance(run.as_error(), NoRunnableAppError)
        assert str(run.as_error()) == "No running dev server found"

    def test_scan_failure(self, tmp_path):
        (tmp_path / "after-scan-error.json").write_text(ProbeFailure(error="axe crashed", kind="scan").model_dump_json())
        run = read_probe_artifacts(str(tmp_path), "after", ExecResult(exit_code=3))
        assert isinstance(run.as_error(), ScanFailedError)

    def test_timeout_without_artifacts(self, tmp_path):
        run = read_probe_artifacts(str(tmp_path), "before", ExecResult(exit_code=-1, timed_out=True, runtime_seconds=300))
        assert run.error == "Scan timed out after 300s"

    def test_in_container_timeout_exit_code(self, tmp_path):
        run = read_probe_artifacts(str(tmp_path), "after", ExecResult(exit_code=124, runtime_seconds=300))
        assert run.error == "Scan timed out after 300s"
        assert run.kind == "scan"

    def test_crash_without_artifacts(self, tmp_path):
        run = read_probe_artifacts(str(tmp_path), "before", ExecResult(stdout="ModuleNotFoundError: playwright", exit_code=1))
        assert "exit code 1" in run.error
        assert "ModuleNotFoundError" in run.error
        assert run.kind == "unexpected"

    def test_corrupt_results(self, tmp_path):
        (tmp_path / "before-scan-results.json").write_text("{")
        run = read_probe_artifacts(str(tmp_path), "before", ExecResult())
        assert not run.ok
        assert run.error.startswith("Unreadable scan results")


class TestRunProbe:
    @pytest.mark.asyncio
    async def test_runs_command_in_sandbox(self, tmp_path):
        from conftest import FakeSandbox

        async def on_exec(handle, command, timeout):
            (tmp_path / "before-scan-results.json").write_text(ScanReport(url="http://localhost:3000").model_dump_json())
            return ExecResult()

        sandbox = FakeSandbox(on_exec=on_exec)
        handle = await sandbox.create(str(tmp_path / "repo"), str(tmp_path))
        run = await run_probe(sandbox, handle, "before", timeout=120)
        assert run.ok
        assert sandbox.commands == [("ctr-0", "timeout -k 10s 120s python -m apex.probe.cli scan --label before")]

    @pytest.mark.asyncio
    async def test_exec_timeout_outlasts_in_container_deadline(self, tmp_path):
        from conftest import FakeSandbox

        seen = []

        async def on_exec(handle, command, timeout):
            seen.append(timeout)
            return ExecResult(exit_code=124, runtime_seconds=60)

        sandbox = FakeSandbox(on_exec=on_exec)
        handle = await sandbox.create(str(tmp_path / "repo"), str(tmp_path))
        run = await run_probe(sandbox, handle, "after", timeout=60)
        assert seen[0] > 60
        assert run.error == "Scan timed out after 60s"
