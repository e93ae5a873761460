"""Apply extracted fixes to a working tree.

Matching strategies, tried in order:
  1. exact substring
  2. newline-normalized (CRLF → LF on both sides)
  3. trimmed (outer whitespace stripped from both snippets)
  4. line-by-line: equal line counts and every changed line appears exactly
     once in the file; indentation of the file's line is kept

A fix whose fixedCode is already present (and whose originalCode is not, or
only inside fixedCode) is reported as already applied. This is the normal
case for fixes the agent made in the tree being patched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from apex.engines.repo_path import resolve_in_repo
from apex.models.fixes import FixRecord

logger = logging.getLogger(__name__)

APPLIED_STRATEGIES = {"exact", "normalized", "trimmed", "line_by_line", "already_applied", "created"}


@dataclass
class PatchResult:
    fix: FixRecord
    strategy: str  # an APPLIED_STRATEGIES member, or unmatched / missing_file / invalid_path / write_failed

    @property
    def applied(self) -> bool:
        return self.strategy in APPLIED_STRATEGIES


def _already_applied(content: str, original: str, fixed: str) -> bool:
    f, o = fixed.strip(), original.strip()
    if not f or f not in content:
        return False
    if not o or o not in content:
        return True
    # every occurrence of the original sits inside an occurrence of the fix
    return o in f and content.count(o) <= content.count(f) * f.count(o)


def _replace_unfixed(content: str, original: str, fixed: str) -> str | None:
    """Replace the first occurrence of original that is not inside an occurrence of fixed."""
    covered = []
    if fixed and original in fixed:
        start = content.find(fixed)
        while start != -1:
            covered.append((start, start + len(fixed)))
            start = content.find(fixed, start + 1)

    start = content.find(original)
    while start != -1:
        end = start + len(original)
        if not any(lo <= start and end <= hi for lo, hi in covered):
            return content[:start] + fixed + content[end:]
        start = content.find(original, start + 1)
    return None


def _replace_line_by_line(content: str, original: str, fixed: str) -> str | None:
    old_lines = original.strip().splitlines()
    new_lines = fixed.strip().splitlines()
    if not old_lines or len(old_lines) != len(new_lines):
        return None

    file_lines = content.split("\n")
    stripped = [line.strip() for line in file_lines]
    replacements: dict[int, str] = {}
    for old, new in zip(old_lines, new_lines):
        if old.strip() == new.strip():
            continue
        matches = [i for i, line in enumerate(stripped) if line == old.strip()]
        if len(matches) != 1:
            return None
        idx = matches[0]
        if idx in replacements:
            return None
        line = file_lines[idx]
        indent = line[: len(line) - len(line.lstrip())]
        replacements[idx] = indent + new.strip()

    if not replacements:
        return None
    for idx, value in replacements.items():
        file_lines[idx] = value
    return "\n".join(file_lines)


def apply_to_text(content: str, original: str, fixed: str) -> tuple[str | None, str]:
    """Return (new_content, strategy); new_content is None when nothing matched."""
    if _already_applied(content, original, fixed):
        return content, "already_applied"

    if original and original in content:
        updated = _replace_unfixed(content, original, fixed)
        if updated is None:
            return content, "already_applied"
        return updated, "exact"

    if original:
        has_crlf = "\r\n" in content
        norm_content = content.replace("\r\n", "\n")
        norm_original = original.replace("\r\n", "\n")
        norm_fixed = fixed.replace("\r\n", "\n")
        if norm_original in norm_content:
            updated = _replace_unfixed(norm_content, norm_original, norm_fixed)
            if updated is None:
                return content, "already_applied"
            return (updated.replace("\n", "\r\n") if has_crlf else updated), "normalized"

    trimmed = original.strip()
    if trimmed and trimmed in content:
        updated = _replace_unfixed(content, trimmed, fixed.strip())
        if updated is None:
            return content, "already_applied"
        return updated, "trimmed"

    if trimmed:
        has_crlf = "\r\n" in content
        updated = _replace_line_by_line(content.replace("\r\n", "\n"), original.replace("\r\n", "\n"), fixed.replace("\r\n", "\n"))
        if updated is not None:
            return (updated.replace("\n", "\r\n") if has_crlf else updated), "line_by_line"

    return None, "unmatched"


def apply_fix(repo_dir: str | Path, fix: FixRecord) -> PatchResult:
    """Patch one file in repo_dir in place."""
    target = resolve_in_repo(repo_dir, fix.file_path)
    if target is None:
        return PatchResult(fix, "invalid_path")

    if not target.is_file():
        if not fix.original_code.strip() and fix.fixed_code:
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(fix.fixed_code, encoding="utf-8")
            except OSError as e:
                logger.warning("Cannot create %s: %s", fix.file_path, e)
                return PatchResult(fix, "write_failed")
            return PatchResult(fix, "created")
        return PatchResult(fix, "missing_file")

    try:
        content = target.read_bytes().decode("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.info("Cannot read %s for patching: %s", fix.file_path, e)
        return PatchResult(fix, "missing_file")

    updated, strategy = apply_to_text(content, fix.original_code, fix.fixed_code)
    if updated is not None and updated != content:
        try:
            with open(target, "w", encoding="utf-8", newline="") as f:
                f.write(updated)
        except OSError as e:
            # e.g. a root-owned file the agent rewrote inside the container
            logger.warning("Cannot write %s: %s", fix.file_path, e)
            return PatchResult(fix, "write_failed")
    return PatchResult(fix, strategy)


def apply_fixes(repo_dir: str | Path, fixes: list[FixRecord]) -> list[PatchResult]:
    results = [apply_fix(repo_dir, fix) for fix in fixes]
    applied = sum(1 for r in results if r.applied)
    logger.info("Applied %d/%d fix(es) to %s", applied, len(results), repo_dir)
    return results
