"""ManagedProcess — a subprocess whose whole process group dies with its scope.

Dev servers (`npm run dev`) fork children (vite, webpack, node) that outlive
a plain kill of the direct child. Every process is started in its own
session so the group can be SIGKILLed on every exit path:

    async with ManagedProcess(["npm", "run", "dev"], cwd=app_dir) as proc:
        ...
    # group is dead here, success or failure

To keep a process alive beyond the scope that started it, transfer it to an
outer AsyncExitStack (see AppBootstrapper).
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Sequence

logger = logging.getLogger(__name__)


class ManagedProcess:
    """A detached subprocess killed as a process group on scope exit."""

    def __init__(
        self,
        argv: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        log_path: str | None = None,
    ) -> None:
        self.argv = list(argv)
        self.cwd = cwd
        self.env = env
        self.log_path = log_path
        self._proc: asyncio.subprocess.Process | None = None
        self._log_file = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> ManagedProcess:
        if self._proc is not None:
            return self
        if self.log_path:
            self._log_file = open(self.log_path, "ab")
        out = self._log_file if self._log_file is not None else asyncio.subprocess.DEVNULL
        self._proc = await asyncio.create_subprocess_exec(
            *self.argv,
            cwd=self.cwd,
            env=self.env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=out,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        logger.info("Started %s (pid=%s, cwd=%s)", " ".join(self.argv), self._proc.pid, self.cwd)
        return self

    async def wait(self, timeout: float) -> int | None:
        """Wait for exit; return the exit code, or None if still running after timeout."""
        if self._proc is None:
            return None
        try:
            return await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def kill(self) -> None:
        """SIGKILL the whole process group; falls back to the direct child. Idempotent."""
        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
            except (ProcessLookupError, PermissionError, OSError):
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=5)
            except asyncio.TimeoutError:
                logger.warning("pid %s did not exit after SIGKILL", proc.pid)
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

    async def __aenter__(self) -> ManagedProcess:
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.kill()
