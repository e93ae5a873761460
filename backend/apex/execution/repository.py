"""Repository materializer — shallow clones and cheap per-worker copies.

Authentication is a short-lived token embedded in the clone URL. The
authenticated URL only lives in memory for the duration of the clone; the
remote of the resulting checkout is reset to the plain URL so the token is
never written to .git/config, and every error message is redacted.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

from git import GitCommandError, InvalidGitRepositoryError, Repo

from apex.config import settings
from apex.engines.sanitize import redact_secrets, sanitize_diagnostic
from apex.errors import CloneError

logger = logging.getLogger(__name__)

# git gives up on stalled transfers and never waits on a credential prompt
_GIT_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_HTTP_LOW_SPEED_LIMIT": "1000",
    "GIT_HTTP_LOW_SPEED_TIME": "30",
}


def build_repo_url(owner: str, name: str) -> str:
    """https://github.com/<owner>/<name>"""
    host = settings.clone_host.rstrip("/")
    return f"{host}/{owner}/{name}"


def authenticated_url(remote_url: str, token: str) -> str:
    """Embed token as x-access-token basic auth in an https URL."""
    if not token:
        return remote_url
    if not remote_url.startswith("https://"):
        raise CloneError("only https remotes are supported")
    return remote_url.replace("https://", f"https://x-access-token:{token}@", 1)


class RepositoryMaterializer:
    """Clone repositories and duplicate working trees for parallel workers.

    GitPython calls block, so they run in a worker thread.
    """

    def __init__(self, timeout: int | None = None) -> None:
        self._timeout = timeout or settings.clone_timeout_seconds

    async def clone(
        self,
        remote_url: str,
        token: str,
        target_dir: str,
        branch: str | None = None,
    ) -> None:
        """Shallow-clone remote_url into target_dir.

        A clone that overruns the timeout is reported as failed only once its
        thread has exited, so callers can remove target_dir safely.

        Raises:
            CloneError: bad credentials, missing repo, network failure, timeout.
        """
        clone = asyncio.ensure_future(
            asyncio.to_thread(self._clone_sync, remote_url, token, target_dir, branch)
        )
        try:
            await asyncio.wait_for(asyncio.shield(clone), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Clone of %s exceeded %ss; waiting for git to exit", remote_url, self._timeout)
            try:
                await clone
            except CloneError as e:
                logger.info("Overdue clone of %s ended: %s", remote_url, e)
            raise CloneError(f"timed out after {self._timeout}s") from None

    async def duplicate(
        self,
        source_dir: str,
        target_dir: str,
        remote_url: str,
        token: str,
        branch: str | None = None,
    ) -> str:
        """Copy an existing checkout; fall back to a fresh clone if copying fails.

        Returns "copy" or "clone" to indicate which path was taken.
        """
        try:
            await asyncio.to_thread(
                shutil.copytree, source_dir, target_dir, symlinks=True, dirs_exist_ok=False
            )
            return "copy"
        except (OSError, shutil.Error) as e:
            logger.warning("Repo copy %s → %s failed, re-cloning: %s", source_dir, target_dir, e)
            shutil.rmtree(target_dir, ignore_errors=True)

        await self.clone(remote_url, token, target_dir, branch)
        return "clone"

    # ------------------------------------------------------------------
    # Version-control status (used by the workspace-diff extraction fallback)
    # ------------------------------------------------------------------

    @staticmethod
    def changed_files(repo_dir: str) -> list[str]:
        """Repo-relative paths of modified or untracked files (git status)."""
        try:
            repo = Repo(repo_dir)
        except (InvalidGitRepositoryError, OSError):
            return []
        paths: set[str] = set()
        try:
            for item in repo.index.diff(None):
                paths.add(item.a_path or item.b_path)
            paths.update(repo.untracked_files)
        except GitCommandError as e:
            logger.debug("git status failed in %s: %s", repo_dir, e)
        return sorted(p for p in paths if p)

    @staticmethod
    def read_head_file(repo_dir: str, rel_path: str) -> str | None:
        """Content of rel_path at HEAD, or None if it is not tracked."""
        try:
            repo = Repo(repo_dir)
            blob = repo.head.commit.tree / rel_path
            return blob.data_stream.read().decode("utf-8", errors="replace")
        except (InvalidGitRepositoryError, KeyError, ValueError, GitCommandError, OSError):
            return None

    @staticmethod
    def diff_text(repo_dir: str) -> str:
        """Combined `git diff` of the working tree against HEAD."""
        try:
            return Repo(repo_dir).git.diff("--no-color")
        except (InvalidGitRepositoryError, GitCommandError, OSError) as e:
            logger.debug("git diff failed in %s: %s", repo_dir, e)
            return ""

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _clone_sync(remote_url: str, token: str, target_dir: str, branch: str | None) -> None:
        url = authenticated_url(remote_url, token)
        kwargs: dict = {"depth": 1, "single_branch": True, "env": _GIT_ENV}
        if branch:
            kwargs["branch"] = branch
        Path(target_dir).parent.mkdir(parents=True, exist_ok=True)
        try:
            repo = Repo.clone_from(url, target_dir, **kwargs)
        except GitCommandError as e:
            detail = sanitize_diagnostic(
                redact_secrets(str(e.stderr or e), extra_secrets=[token]), max_chars=300
            )
            raise CloneError(detail or "git clone exited with an error") from None
        repo.remote("origin").set_url(remote_url)
        logger.info("Cloned %s (branch=%s) into %s", remote_url, branch or "default", target_dir)
