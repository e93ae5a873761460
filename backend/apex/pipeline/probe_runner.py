"""Host side of the in-sandbox probe: run it, read its artifacts back."""

from __future__ import annotations

import base64
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from apex.config import settings
from apex.engines.sanitize import sanitize_diagnostic
from apex.errors import ApexError, NoRunnableAppError, ScanFailedError
from apex.execution.sandbox import TIMEOUT_EXIT_CODE, DockerSandbox
from apex.models.execution import ExecResult, SandboxHandle
from apex.models.probe import (
    ProbeFailure,
    ScanReport,
    error_filename,
    results_filename,
    screenshot_filename,
)

logger = logging.getLogger(__name__)

PROBE_MODULE = "apex.probe.cli"
_EXEC_GRACE_SECONDS = 15
_KILL_AFTER_SECONDS = 10


@dataclass
class ProbeRun:
    """Outcome of one probe invocation; exactly one of report / error is set."""

    label: str
    exec_result: ExecResult
    report: ScanReport | None = None
    screenshot_b64: str | None = None
    error: str | None = None
    kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.report is not None

    def as_error(self) -> ApexError:
        if self.kind == "no_app":
            return NoRunnableAppError(self.error)
        return ScanFailedError(self.error or "Scan failed")


def probe_command(
    label: str,
    rules: list[str] | None = None,
    verify: bool = False,
    timeout: float | None = None,
) -> str:
    """Probe command line; with timeout, the probe is killed inside the container."""
    parts = ["python", "-m", PROBE_MODULE, "verify" if verify else "scan", "--label", label]
    if rules:
        parts += ["--rules", ",".join(rules)]
    if timeout:
        parts = ["timeout", "-k", f"{_KILL_AFTER_SECONDS}s", f"{int(timeout)}s"] + parts
    return " ".join(shlex.quote(p) for p in parts)


def read_probe_artifacts(output_dir: str, label: str, exec_result: ExecResult) -> ProbeRun:
    """Interpret the files the probe left in output_dir."""
    out = Path(output_dir)
    run = ProbeRun(label=label, exec_result=exec_result)

    results_path = out / results_filename(label)
    if results_path.is_file():
        try:
            run.report = ScanReport.model_validate_json(results_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            run.error = f"Unreadable scan results: {sanitize_diagnostic(str(e))}"
            run.kind = "unexpected"
            return run
        shot = out / screenshot_filename(label)
        if shot.is_file():
            run.screenshot_b64 = base64.b64encode(shot.read_bytes()).decode("ascii")
        return run

    error_path = out / error_filename(label)
    if error_path.is_file():
        try:
            failure = ProbeFailure.model_validate_json(error_path.read_text(encoding="utf-8"))
            run.error, run.kind = failure.error, failure.kind
            return run
        except (OSError, ValidationError) as e:
            logger.debug("Unreadable probe error file %s: %s", error_path, e)

    if exec_result.timed_out or exec_result.exit_code == TIMEOUT_EXIT_CODE:
        run.error = f"Scan timed out after {exec_result.runtime_seconds:.0f}s"
        run.kind = "scan"
    else:
        tail = sanitize_diagnostic(exec_result.stdout[-2000:], max_chars=400)
        run.error = f"Scan produced no results (exit code {exec_result.exit_code}). {tail}".strip()
        run.kind = "unexpected"
    return run


async def run_probe(
    sandbox: DockerSandbox,
    handle: SandboxHandle,
    label: str,
    rules: list[str] | None = None,
    verify: bool = False,
    timeout: float | None = None,
) -> ProbeRun:
    """Run the probe inside handle's sandbox and collect its artifacts.

    The in-container deadline fires first; the exec timeout only covers a
    wedged docker client.
    """
    limit = timeout or settings.sandbox_scan_timeout_seconds
    result = await sandbox.exec(
        handle,
        probe_command(label, rules, verify, timeout=limit),
        timeout=limit + _KILL_AFTER_SECONDS + _EXEC_GRACE_SECONDS,
    )
    run = read_probe_artifacts(handle.output_dir, label, result)
    if run.ok:
        logger.info("Probe %s found %d node violation(s)", label, run.report.node_count)
    else:
        logger.info("Probe %s failed (%s): %s", label, run.kind, run.error)
    return run
