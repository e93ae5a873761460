"""Prompt templates for the coding agent."""

from __future__ import annotations

from apex.models.fixes import ViolationSummary

ARTIFACT_FILENAME = ".apex-fixes.json"
ARTIFACT_PATH = f"/workspace/{ARTIFACT_FILENAME}"

_FIXES_SHAPE = (
    '{"fixes": [{"filePath": "...", "originalCode": "...", "fixedCode": "...", '
    '"explanation": "...", "violationId": "..."}]}'
)


def _format_violation(position: int, v: ViolationSummary) -> str:
    html = (v.html_snippet or "")[:200] or "N/A"
    wcag = ", ".join(v.wcag_criteria) or "N/A"
    return (
        f"{position}. [{(v.impact or 'unknown').upper()}] {v.rule_id}: {v.description}\n"
        f"   Element: {v.target_element or 'unknown'}\n"
        f"   HTML: {html}\n"
        f"   WCAG: {wcag}\n"
        f"   Violation ID: {v.id}"
    )


def build_fix_prompt(violations: list[ViolationSummary]) -> str:
    violation_list = "\n\n".join(_format_violation(i + 1, v) for i, v in enumerate(violations))
    return f"""You are an accessibility remediation agent. Fix the following WCAG accessibility violations in this codebase.

IMPORTANT: Follow the existing code style and patterns. Do not introduce new dependencies.

For Ontario AODA/IASR compliance, these must conform to WCAG 2.0 Level AA.

Violations to fix:

{violation_list}

For each fix:
1. Find the relevant source file
2. Apply the minimum change needed to resolve the violation
3. Preserve existing styling and code patterns

After making fixes for this batch:
1. Write a JSON summary to {ARTIFACT_PATH} with this structure:
{_FIXES_SHAPE}
2. Also print the same JSON object as your final response, with no markdown and no extra text.
3. Do not output planning text, todos, or prose."""


def build_extraction_prompt(violation_ids: list[str]) -> str:
    ids = ", ".join(violation_ids)
    return f"""Do not edit any source files.

Summarize the changes currently present in this repository's working tree (see `git diff`) as JSON.
Attribute each change to one of these violation ids: {ids}

Write the JSON to {ARTIFACT_PATH} and print the same JSON as your only output:
{_FIXES_SHAPE}
Use exact file contents for originalCode and fixedCode. No markdown, no prose."""
