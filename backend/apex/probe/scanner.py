"""Accessibility scanner — axe-core driven through a Playwright page.

Runs inside the sandbox image, where Chromium and axe.min.js are installed.
One scan = navigate, full-page screenshot, inject axe, run, flatten.
Flattening yields one NodeViolation per offending DOM node; a rule with no
nodes still yields a single row so it counts toward the score.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from apex.config import settings
from apex.errors import ScanFailedError
from apex.models.probe import NodeViolation

logger = logging.getLogger(__name__)

_AXE_RUN_JS = """
async (rules) => {
  if (!window.axe || !window.axe.run) {
    return { error: "axe-core did not load" };
  }
  const options = { resultTypes: ["violations"] };
  if (rules && rules.length) {
    options.runOnly = { type: "rule", values: rules };
  }
  try {
    const res = await window.axe.run(document, options);
    return { violations: res.violations };
  } catch (e) {
    return { error: String(e && e.message ? e.message : e) };
  }
}
"""


@dataclass
class ScanOutcome:
    violations: list[NodeViolation]
    screenshot: bytes | None = None


def _target_selector(target: Any) -> str | None:
    """axe targets are lists of selectors (nested for iframes/shadow DOM)."""
    if target is None:
        return None
    if isinstance(target, str):
        return target
    parts = []
    for part in target:
        if isinstance(part, list):
            parts.append(" ".join(str(p) for p in part))
        else:
            parts.append(str(part))
    return " > ".join(parts) if parts else None


def flatten_violations(
    axe_violations: Iterable[dict[str, Any]],
    snippet_max_chars: int | None = None,
) -> list[NodeViolation]:
    """One row per (rule, node). HTML snippets are truncated."""
    limit = snippet_max_chars or settings.html_snippet_max_chars
    rows: list[NodeViolation] = []
    for violation in axe_violations:
        common = {
            "rule_id": violation.get("id") or "unknown",
            "impact": violation.get("impact"),
            "description": violation.get("description") or violation.get("help") or "",
            "help_url": violation.get("helpUrl"),
            "tags": list(violation.get("tags") or []),
        }
        nodes = violation.get("nodes") or []
        if not nodes:
            rows.append(NodeViolation(**common))
            continue
        for node in nodes:
            html = node.get("html")
            rows.append(
                NodeViolation(
                    **common,
                    target_element=_target_selector(node.get("target")),
                    html_snippet=html[:limit] if isinstance(html, str) else None,
                )
            )
    return rows


class AccessibilityScanner:
    """Run axe-core against an already-open Playwright page."""

    def __init__(
        self,
        axe_script_path: str | None = None,
        navigation_timeout_ms: int | None = None,
        snippet_max_chars: int | None = None,
    ) -> None:
        self._axe_script_path = axe_script_path or settings.axe_script_path
        self._navigation_timeout_ms = navigation_timeout_ms or settings.probe_navigation_timeout_ms
        self._snippet_max_chars = snippet_max_chars or settings.html_snippet_max_chars

    async def scan(
        self,
        url: str,
        page: Page,
        rules: list[str] | None = None,
        screenshot: bool = True,
    ) -> ScanOutcome:
        """Navigate to url and collect violations.

        Raises:
            ScanFailedError: navigation timeout, page crash, or engine failure.
        """
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=self._navigation_timeout_ms)
            image = await page.screenshot(full_page=True) if screenshot else None
            await page.add_script_tag(path=self._axe_script_path)
            result = await page.evaluate(_AXE_RUN_JS, rules or [])
        except PlaywrightTimeoutError as e:
            raise ScanFailedError(f"Timed out loading {url}: {e}") from e
        except PlaywrightError as e:
            raise ScanFailedError(f"Browser error while scanning {url}: {e}") from e
        except OSError as e:
            raise ScanFailedError(f"Could not load axe-core from {self._axe_script_path}: {e}") from e

        if not isinstance(result, dict):
            raise ScanFailedError("Unexpected rule engine result")
        if result.get("error"):
            raise ScanFailedError(f"Rule engine failed: {result['error']}")

        violations = flatten_violations(result.get("violations") or [], self._snippet_max_chars)
        logger.info(
            "Scanned %s: %d rule(s), %d node violation(s)",
            url,
            len(result.get("violations") or []),
            len(violations),
        )
        return ScanOutcome(violations=violations, screenshot=image)
