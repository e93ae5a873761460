"""In-sandbox probe: boot the repository's app and scan it.

Usage (inside the sandbox image):
    python -m apex.probe.cli scan --label before
    python -m apex.probe.cli verify --label verify-2-after --rules color-contrast,image-alt

Writes <label>-scan-results.json and <label>.png to --output on success,
or <label>-scan-error.json on failure. Exit codes: 0 ok, 2 no runnable app,
3 scan failed, 1 anything else.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import AsyncExitStack
from pathlib import Path

from playwright.async_api import async_playwright

from apex.errors import NoRunnableAppError, ScanFailedError
from apex.models.probe import (
    ProbeFailure,
    ScanReport,
    error_filename,
    results_filename,
    screenshot_filename,
)
from apex.probe.bootstrap import AppBootstrapper
from apex.probe.scanner import AccessibilityScanner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_NO_APP = 2
EXIT_SCAN_FAILED = 3

_CHROMIUM_ARGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"]


def write_failure(output_dir: Path, label: str, message: str, kind: str) -> None:
    failure = ProbeFailure(error=message, kind=kind)
    (output_dir / error_filename(label)).write_text(failure.model_dump_json(), encoding="utf-8")


async def run_probe(
    workspace: str,
    output_dir: str,
    label: str,
    rules: list[str] | None = None,
    screenshot: bool = True,
) -> int:
    """Boot, scan, and write artifacts. Returns the process exit code."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    for stale in (results_filename(label), error_filename(label), screenshot_filename(label)):
        (out / stale).unlink(missing_ok=True)

    async with async_playwright() as pw:
        browser = await pw.chromium.launch(headless=True, args=_CHROMIUM_ARGS)
        try:
            context = await browser.new_context(viewport={"width": 1280, "height": 800})
            async with AsyncExitStack() as stack:
                app = await AppBootstrapper(context, workspace).resolve(stack)
                outcome = await AccessibilityScanner().scan(app.url, app.page, rules=rules, screenshot=screenshot)

            report = ScanReport(url=app.url, strategy=app.strategy, rules=rules, violations=outcome.violations)
            (out / results_filename(label)).write_text(report.model_dump_json(), encoding="utf-8")
            if outcome.screenshot:
                (out / screenshot_filename(label)).write_bytes(outcome.screenshot)
            logger.info("Probe %s: %d node violation(s) at %s", label, report.node_count, app.url)
            return EXIT_OK
        except NoRunnableAppError as e:
            logger.warning("Probe %s: %s", label, e)
            write_failure(out, label, str(e), "no_app")
            return EXIT_NO_APP
        except ScanFailedError as e:
            logger.warning("Probe %s: %s", label, e)
            write_failure(out, label, str(e), "scan")
            return EXIT_SCAN_FAILED
        finally:
            await browser.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Apex in-sandbox accessibility probe")
    sub = parser.add_subparsers(dest="command", required=True)

    scan_p = sub.add_parser("scan", help="Full scan with screenshot")
    verify_p = sub.add_parser("verify", help="Scoped scan for fix verification (no screenshot)")
    for p in (scan_p, verify_p):
        p.add_argument("--workspace", default="/workspace", help="Repository root")
        p.add_argument("--output", "-o", default="/output", help="Artifact directory")
        p.add_argument("--label", "-l", default="before", help="Artifact file prefix")
        p.add_argument("--rules", "-r", default="", help="Comma-separated axe rule ids to run")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    rules = [r.strip() for r in args.rules.split(",") if r.strip()] or None

    try:
        code = asyncio.run(
            run_probe(args.workspace, args.output, args.label, rules=rules, screenshot=args.command == "scan")
        )
    except Exception as e:
        logger.exception("Probe %s crashed", args.label)
        write_failure(Path(args.output), args.label, f"{type(e).__name__}: {e}", "unexpected")
        code = EXIT_UNEXPECTED
    raise SystemExit(code)


if __name__ == "__main__":
    main()
