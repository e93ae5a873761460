"""Heuristic discovery of a runnable web frontend in an unknown repository.

Pure filesystem inspection, no processes. The bootstrapper consumes:
  - collect_candidate_dirs()   where to look
  - read_start_script()        which npm script boots a dev server
  - static_entry_candidates()  where a prebuilt index.html might live
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

COMMON_APP_DIRS = ("frontend", "client", "web", "app", "apps", "packages", "site", "www", "ui")
START_SCRIPT_PRIORITY = ("dev", "start", "serve")
STATIC_SUBDIRS = ("", "public", "dist", "build", "out")
MAX_SEARCH_DEPTH = 2

_SKIP_DIRS = {"node_modules"}


def _is_searchable(path: Path) -> bool:
    return path.is_dir() and not path.name.startswith(".") and path.name not in _SKIP_DIRS


def collect_candidate_dirs(root: str | Path, max_depth: int = MAX_SEARCH_DEPTH) -> list[Path]:
    """Ordered, de-duplicated candidate project directories.

    Order: the root, then well-known app directory names directly under the
    root, then a breadth-first walk (depth ≤ max_depth) adding any directory
    that holds a package.json or index.html.
    """
    root = Path(root)
    discovered: list[Path] = [root]

    for name in COMMON_APP_DIRS:
        path = root / name
        if _is_searchable(path):
            discovered.append(path)

    queue: deque[tuple[Path, int]] = deque([(root, 0)])
    while queue:
        current, depth = queue.popleft()
        if depth >= max_depth:
            continue
        try:
            entries = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError:
            continue
        for entry in entries:
            if not _is_searchable(entry):
                continue
            if (entry / "package.json").is_file() or (entry / "index.html").is_file():
                discovered.append(entry)
            queue.append((entry, depth + 1))

    seen: set[Path] = set()
    ordered: list[Path] = []
    for path in discovered:
        if path not in seen:
            seen.add(path)
            ordered.append(path)
    return ordered


def pick_start_script(package_json: dict) -> str | None:
    """'dev' > 'start' > 'serve'; None if the package defines none of them."""
    scripts = package_json.get("scripts") or {}
    if not isinstance(scripts, dict):
        return None
    for name in START_SCRIPT_PRIORITY:
        if isinstance(scripts.get(name), str) and scripts[name].strip():
            return name
    return None


def read_start_script(directory: str | Path) -> str | None:
    """Start script of directory/package.json, or None if absent/unparseable."""
    pkg_path = Path(directory) / "package.json"
    if not pkg_path.is_file():
        return None
    try:
        package_json = json.loads(pkg_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.info("Unreadable package.json at %s: %s", pkg_path, e)
        return None
    if not isinstance(package_json, dict):
        return None
    return pick_start_script(package_json)


def has_installed_dependencies(directory: str | Path) -> bool:
    return (Path(directory) / "node_modules").is_dir()


@dataclass(frozen=True)
class StaticEntry:
    """An index.html found on disk; served with its directory as web root."""

    root: Path
    file: Path


def static_entry_candidates(candidate_dirs: list[Path]) -> list[StaticEntry]:
    """Existing index.html files under each candidate dir or its build-output subdirs."""
    entries: list[StaticEntry] = []
    seen: set[Path] = set()
    for base in candidate_dirs:
        for sub in STATIC_SUBDIRS:
            file = base / sub / "index.html" if sub else base / "index.html"
            if file.is_file() and file not in seen:
                seen.add(file)
                entries.append(StaticEntry(root=file.parent, file=file))
    return entries
