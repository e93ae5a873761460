"""Docker sandbox for running unknown repositories and the coding agent.

A sandbox is a long-lived container (``sleep`` as PID 1) into which commands
are exec'd. Unlike a one-shot run, the app under test needs network access
(package installs) and a writable workspace.

Mounts applied to every container:
  <repo_dir>   → /workspace:rw   repository working tree (cwd)
  <output_dir> → /output:rw      artifacts read back by the host (JSON, PNG)
  <cache vol>  → /root/.npm      shared npm cache, persists across sandboxes

Resource caps: --memory / --cpus from settings (default 2g / 2.0).

exec() never raises on timeout: it returns ExecResult(exit_code=-1,
timed_out=True) so callers drive retries and budgets with explicit checks.
destroy() is best-effort and idempotent.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from apex.config import forwarded_env_names, settings
from apex.engines.sanitize import sanitize_diagnostic
from apex.errors import SandboxError
from apex.models.execution import ExecResult, SandboxHandle

logger = logging.getLogger(__name__)

WORKSPACE_MOUNT = "/workspace"
OUTPUT_MOUNT = "/output"
CACHE_MOUNT = "/root/.npm"

_OUTPUT_MAX_BYTES = 1024 * 1024  # 1 MB buffered output cap
_CHUNK_SIZE = 4096
_CREATE_TIMEOUT_SECONDS = 60
_DESTROY_TIMEOUT_SECONDS = 30
TIMEOUT_EXIT_CODE = 124  # coreutils `timeout`, used to bound commands inside the container

OutputCallback = Callable[[str], None]


@dataclass
class WorkDirs:
    """Host-side temp directories for one job (or one worker)."""

    base: str
    repo_dir: str
    output_dir: str


def create_workdirs(prefix: str = "apex-") -> WorkDirs:
    """Create <tmp>/apex-XXXX/{repo,output}."""
    base = tempfile.mkdtemp(prefix=prefix)
    repo_dir = os.path.join(base, "repo")
    output_dir = os.path.join(base, "output")
    os.makedirs(output_dir, exist_ok=True)
    # repo_dir is created by clone/copy
    return WorkDirs(base=base, repo_dir=repo_dir, output_dir=output_dir)


def cleanup_workdirs(dirs: WorkDirs | None) -> None:
    """Best-effort removal of a job's temp tree."""
    if dirs is None:
        return
    shutil.rmtree(dirs.base, ignore_errors=True)


class DockerSandbox:
    """Create, exec into, and destroy sandbox containers via the docker CLI.

    Usage:
        sandbox = DockerSandbox()
        handle = await sandbox.create(repo_dir, output_dir)
        try:
            result = await sandbox.exec(handle, "npm test", timeout=60)
        finally:
            await sandbox.destroy(handle)
    """

    def __init__(
        self,
        image: str | None = None,
        memory: str | None = None,
        cpus: str | None = None,
        cache_volume: str | None = None,
        default_timeout: int | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self._image = image or settings.sandbox_image
        self._memory = memory or settings.sandbox_memory_limit
        self._cpus = cpus or settings.sandbox_cpu_limit
        self._cache_volume = settings.sandbox_cache_volume if cache_volume is None else cache_volume
        self._default_timeout = default_timeout or settings.sandbox_exec_timeout_seconds
        self._env = dict(env) if env is not None else self._forwarded_env()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        """Return True if the Docker CLI is on PATH and the daemon responds."""
        if not shutil.which("docker"):
            return False
        try:
            result = subprocess.run(
                ["docker", "info", "--format", "{{.ServerVersion}}"],
                capture_output=True,
                timeout=5,
            )
            return result.returncode == 0
        except (OSError, subprocess.SubprocessError):
            return False

    async def create(self, repo_dir: str, output_dir: str) -> SandboxHandle:
        """Start a sandbox container with repo_dir and output_dir bind-mounted.

        Raises:
            SandboxError: If the container could not be started.
        """
        Path(output_dir).mkdir(parents=True, exist_ok=True)
        cmd = self._build_run_cmd(repo_dir, output_dir)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.subprocess_env(),
            )
            stdout_raw, stderr_raw = await asyncio.wait_for(
                proc.communicate(), timeout=_CREATE_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError as e:
            raise SandboxError("Timed out starting sandbox container") from e
        except OSError as e:
            raise SandboxError(f"Docker CLI unavailable: {e}") from e

        if proc.returncode != 0:
            detail = sanitize_diagnostic(stderr_raw.decode("utf-8", errors="replace"))
            raise SandboxError(f"Failed to start sandbox container: {detail}")

        lines = stdout_raw.decode("utf-8", errors="replace").strip().splitlines()
        if not lines:
            raise SandboxError("Failed to start sandbox container: docker returned no container id")
        container_id = lines[-1].strip()
        logger.info("Sandbox %s started (image=%s)", container_id[:12], self._image)
        return SandboxHandle(container_id=container_id, repo_dir=repo_dir, output_dir=output_dir)

    async def exec(
        self,
        handle: SandboxHandle,
        command: str | list[str],
        timeout: float | None = None,
        on_output: OutputCallback | None = None,
        workdir: str = WORKSPACE_MOUNT,
    ) -> ExecResult:
        """Run command inside the sandbox, streaming output chunks to on_output.

        A string command is run through ``bash -lc``. Never raises for command
        failures or timeouts; returns exit_code=-1 on timeout or exec error.
        """
        timeout = float(timeout or self._default_timeout)
        argv = ["bash", "-lc", command] if isinstance(command, str) else list(command)
        docker_cmd = ["docker", "exec", "-w", workdir, handle.container_id, *argv]

        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *docker_cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.warning("Sandbox exec could not start: %s", e)
            return ExecResult(stdout=f"exec error: {e}", exit_code=-1)

        chunks: list[bytes] = []
        total = 0

        async def _pump() -> None:
            nonlocal total
            assert proc.stdout is not None
            while True:
                chunk = await proc.stdout.read(_CHUNK_SIZE)
                if not chunk:
                    break
                if total < _OUTPUT_MAX_BYTES:
                    chunks.append(chunk[: _OUTPUT_MAX_BYTES - total])
                total += len(chunk)
                if on_output is not None:
                    try:
                        on_output(chunk.decode("utf-8", errors="replace"))
                    except Exception as e:  # callback errors must not kill the exec
                        logger.debug("on_output callback failed: %s", e)
            await proc.wait()

        timed_out = False
        try:
            await asyncio.wait_for(_pump(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            proc.kill()
            await proc.wait()

        stdout = b"".join(chunks).decode("utf-8", errors="replace")
        if total > _OUTPUT_MAX_BYTES:
            stdout += "\n[...output truncated at 1 MB...]"
        elapsed = round(time.monotonic() - start, 3)

        if timed_out:
            logger.info("Sandbox exec timed out after %.0fs in %s", timeout, handle.container_id[:12])
            return ExecResult(stdout=stdout, exit_code=-1, runtime_seconds=elapsed, timed_out=True)

        return ExecResult(
            stdout=stdout,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            runtime_seconds=elapsed,
        )

    async def destroy(self, handle: SandboxHandle | None) -> None:
        """Force-remove the container. Safe to call twice or after external removal."""
        if handle is None:
            return
        try:
            proc = await asyncio.create_subprocess_exec(
                "docker", "rm", "-f", handle.container_id,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr_raw = await asyncio.wait_for(proc.communicate(), timeout=_DESTROY_TIMEOUT_SECONDS)
            if proc.returncode != 0:
                logger.debug(
                    "Sandbox %s already gone: %s",
                    handle.container_id[:12],
                    sanitize_diagnostic((stderr_raw or b"").decode("utf-8", errors="replace")),
                )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("Sandbox destroy failed for %s (ignored): %s", handle.container_id[:12], e)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _forwarded_env() -> dict[str, str]:
        return {name: os.environ[name] for name in forwarded_env_names() if os.environ.get(name)}

    def _build_run_cmd(self, repo_dir: str, output_dir: str) -> list[str]:
        """Build the docker run command list."""
        cmd = [
            "docker", "run",
            "-d",
            "--rm",
            "--memory", self._memory,
            "--cpus", self._cpus,
            "--security-opt", "no-new-privileges",
            "-v", f"{repo_dir}:{WORKSPACE_MOUNT}:rw",
            "-v", f"{output_dir}:{OUTPUT_MOUNT}:rw",
            "-w", WORKSPACE_MOUNT,
        ]
        if self._cache_volume:
            cmd += ["-v", f"{self._cache_volume}:{CACHE_MOUNT}"]
        for key in sorted(self._env):
            # Value comes from the host environment of docker CLI, never argv
            cmd += ["-e", key]
        cmd += [self._image, "sleep", str(settings.sandbox_keepalive_seconds)]
        return cmd

    def subprocess_env(self) -> dict[str, str]:
        """Environment for docker CLI calls (forwarded secrets resolved by name)."""
        env = dict(os.environ)
        env.update(self._env)
        return env


# ---------------------------------------------------------------------------
# Shared instance
# ---------------------------------------------------------------------------

_default_sandbox: DockerSandbox | None = None


def get_sandbox() -> DockerSandbox:
    """Return the shared DockerSandbox instance (lazy init)."""
    global _default_sandbox
    if _default_sandbox is None:
        _default_sandbox = DockerSandbox()
    return _default_sandbox
