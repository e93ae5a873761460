"""Sandbox execution models."""

from __future__ import annotations

from pydantic import BaseModel


class SandboxHandle(BaseModel):
    """A running sandbox container with its host-side mount points."""

    container_id: str
    repo_dir: str
    output_dir: str


class ExecResult(BaseModel):
    """Result of a command run inside a sandbox.

    A hard timeout is reported as exit_code=-1 with timed_out=True,
    never as an exception.
    """

    stdout: str = ""
    exit_code: int = 0
    runtime_seconds: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out
