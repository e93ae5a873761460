"""Working-tree snapshots for the workspace-diff extraction fallback."""

from __future__ import annotations

import logging
from pathlib import Path

from apex.execution.repository import RepositoryMaterializer
from apex.fixer.diff_parser import synthesize_file_change
from apex.models.fixes import FixRecord

logger = logging.getLogger(__name__)

MAX_TRACKED_FILES = 50
MAX_FILE_BYTES = 256 * 1024

_IGNORED_NAMES = {"package-lock.json", "yarn.lock", "pnpm-lock.yaml", "npm-shrinkwrap.json"}


def is_ignored(rel_path: str) -> bool:
    parts = rel_path.split("/")
    if "node_modules" in parts or ".git" in parts:
        return True
    name = parts[-1]
    return name.startswith(".apex-") or name in _IGNORED_NAMES


def read_repo_file(repo_dir: str, rel_path: str) -> str | None:
    path = Path(repo_dir) / rel_path
    try:
        if not path.is_file() or path.stat().st_size > MAX_FILE_BYTES:
            return None
        return path.read_bytes().decode("utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def changed_paths(repo_dir: str) -> list[str]:
    paths = [p for p in RepositoryMaterializer.changed_files(repo_dir) if not is_ignored(p)]
    if len(paths) > MAX_TRACKED_FILES:
        logger.info("Working tree has %d changed files; tracking the first %d", len(paths), MAX_TRACKED_FILES)
        paths = paths[:MAX_TRACKED_FILES]
    return paths


def snapshot(repo_dir: str) -> dict[str, str | None]:
    """Contents of every already-modified file, taken before a batch runs."""
    return {path: read_repo_file(repo_dir, path) for path in changed_paths(repo_dir)}


def diff_since(repo_dir: str, before: dict[str, str | None], violation_id: str = "") -> list[FixRecord]:
    """One synthesized FixRecord per file whose content changed since `before`.

    Files absent from the snapshot were clean, so their baseline is HEAD
    (or empty for new untracked files).
    """
    fixes: list[FixRecord] = []
    for path in sorted(set(changed_paths(repo_dir)) | set(before)):
        if path in before:
            prior = before[path] or ""
        else:
            prior = RepositoryMaterializer.read_head_file(repo_dir, path) or ""
        current = read_repo_file(repo_dir, path) or ""
        record = synthesize_file_change(path, prior, current, violation_id)
        if record is not None:
            fixes.append(record)
    return fixes
