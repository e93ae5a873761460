"""Turn diffs into fix records.

Two sources:
  - unified-diff text the agent printed (svn-style "Index:" or git-style
    "diff --git"/"+++ b/" headers), one record per hunk
  - before/after file contents observed on disk, one record per file
    spanning the first through last changed line
"""

from __future__ import annotations

import difflib
import re

from apex.engines.repo_path import normalize_repo_file_path
from apex.engines.sanitize import strip_ansi
from apex.models.fixes import FixRecord

PATCH_EXPLANATION = "Captured from model-emitted patch output."
WORKSPACE_EXPLANATION = "Synthesized from observed working-tree changes."

_GIT_HEADER_RE = re.compile(r"^diff --git a/(?P<a>\S+) b/(?P<b>\S+)")


def _header_path(line: str) -> str | None:
    if line.startswith("Index: "):
        return line[len("Index: "):].strip()
    match = _GIT_HEADER_RE.match(line)
    if match:
        return match.group("b")
    if line.startswith("+++ "):
        path = line[4:].split("\t", 1)[0].strip()
        if path == "/dev/null":
            return None
        return path[2:] if path.startswith("b/") else path
    return None


def parse_unified_diff(text: str, violation_id: str = "") -> list[FixRecord]:
    """Hunks of a unified diff as (originalCode, fixedCode) pairs.

    Context lines go to both sides so each side is a contiguous snippet.
    """
    if not text:
        return []
    fixes: list[FixRecord] = []
    current_path = ""
    in_hunk = False
    old_lines: list[str] = []
    new_lines: list[str] = []

    def flush() -> None:
        nonlocal old_lines, new_lines
        original = "\n".join(old_lines).strip("\n")
        fixed = "\n".join(new_lines).strip("\n")
        if current_path and (original.strip() or fixed.strip()) and original != fixed:
            fixes.append(
                FixRecord(
                    file_path=current_path,
                    original_code=original,
                    fixed_code=fixed,
                    explanation=PATCH_EXPLANATION,
                    violation_id=violation_id,
                )
            )
        old_lines, new_lines = [], []

    lines = strip_ansi(text).splitlines()
    for i, line in enumerate(lines):
        if line.startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ "):
            # file header of a plain `diff -u`; the +++ line carries the path
            flush()
            in_hunk = False
            continue
        if line.startswith(("Index: ", "diff --git ")):
            flush()
            in_hunk = False
            current_path = normalize_repo_file_path(_header_path(line))
            continue
        if line.startswith("+++ ") and not in_hunk:
            path = _header_path(line)
            if path:
                current_path = normalize_repo_file_path(path)
            continue
        if line.startswith("--- ") and not in_hunk:
            continue
        if line.startswith("@@"):
            flush()
            in_hunk = True
            continue
        if not in_hunk:
            continue
        if line.startswith("\\ No newline at end of file"):
            continue
        if line.startswith("+"):
            new_lines.append(line[1:])
        elif line.startswith("-"):
            old_lines.append(line[1:])
        elif line.startswith(" ") or line == "":
            content = line[1:] if line else ""
            old_lines.append(content)
            new_lines.append(content)
        else:
            # prose after the diff ends the hunk
            flush()
            in_hunk = False
    flush()
    return fixes


def synthesize_file_change(
    file_path: str,
    before: str,
    after: str,
    violation_id: str = "",
    context_lines: int = 1,
) -> FixRecord | None:
    """One record covering every changed region of a file, with a little context."""
    if before == after:
        return None
    old = before.splitlines()
    new = after.splitlines()
    opcodes = [op for op in difflib.SequenceMatcher(a=old, b=new, autojunk=False).get_opcodes() if op[0] != "equal"]
    if not opcodes:
        return None

    first, last = opcodes[0], opcodes[-1]
    old_start = max(0, first[1] - context_lines)
    new_start = max(0, first[3] - context_lines)
    old_end = min(len(old), last[2] + context_lines)
    new_end = min(len(new), last[4] + context_lines)

    return FixRecord(
        file_path=file_path,
        original_code="\n".join(old[old_start:old_end]),
        fixed_code="\n".join(new[new_start:new_end]),
        explanation=WORKSPACE_EXPLANATION,
        violation_id=violation_id,
    )
