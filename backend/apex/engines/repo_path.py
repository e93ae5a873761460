"""Repository-relative path normalization for agent-reported file paths."""

from __future__ import annotations

import posixpath
import re
from pathlib import Path

_WORKSPACE_PREFIX_RE = re.compile(r"^workspace/+")
_FILE_SCHEME_RE = re.compile(r"^file://", re.IGNORECASE)


def normalize_repo_file_path(file_path: str | None) -> str:
    """Turn '/workspace/src/App.tsx', './src/App.tsx', 'file:///workspace/...' into 'src/App.tsx'.

    Returns "" for empty paths and for paths that escape the repository root.
    """
    normalized = (file_path or "").strip().replace("\\", "/")
    if not normalized:
        return ""

    normalized = _FILE_SCHEME_RE.sub("", normalized)
    normalized = normalized.lstrip("/")
    normalized = _WORKSPACE_PREFIX_RE.sub("", normalized)
    while normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = re.sub(r"/{2,}", "/", normalized)
    if not normalized:
        return ""

    collapsed = posixpath.normpath(normalized)
    if collapsed in (".", "") or collapsed == ".." or collapsed.startswith("../"):
        return ""
    return collapsed


def resolve_in_repo(repo_dir: str | Path, repo_file_path: str) -> Path | None:
    """Resolve a normalized repo path to an absolute path inside repo_dir, or None."""
    rel = normalize_repo_file_path(repo_file_path)
    if not rel:
        return None
    root = Path(repo_dir).resolve()
    candidate = (root / rel).resolve()
    if candidate != root and root not in candidate.parents:
        return None
    return candidate
