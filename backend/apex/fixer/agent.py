"""Coding agent runner — invokes the opencode CLI inside a sandbox.

The prompt is written to the host side of the /output mount and passed to
the CLI with "$(cat ...)", which avoids shell-escaping a multi-kilobyte
prompt. stdout/stderr go to files under /output so they survive an exec
timeout. The JSON artifact the agent is asked to write lives in the
workspace; the runner reads and removes it so it never leaks into diffs.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

from apex.config import settings
from apex.errors import AgentConfigurationError
from apex.execution.sandbox import OUTPUT_MOUNT, TIMEOUT_EXIT_CODE, DockerSandbox
from apex.fixer.prompts import ARTIFACT_FILENAME, ARTIFACT_PATH
from apex.models.execution import SandboxHandle

logger = logging.getLogger(__name__)

_EXEC_GRACE_SECONDS = 30


@dataclass
class AgentRun:
    """Everything one agent invocation left behind."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    timed_out: bool = False
    elapsed_seconds: float = 0.0
    artifact_text: str | None = None


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        # files written by the container may be root-owned
        logger.debug("Could not remove %s: %s", path, e)


class CodingAgentRunner:
    """Run the coding agent against one sandbox's workspace."""

    def __init__(
        self,
        sandbox: DockerSandbox,
        model: str | None = None,
        thinking_variant: str | None = None,
    ) -> None:
        self._sandbox = sandbox
        self.model = model or settings.agent_model
        self._thinking_variant = settings.agent_thinking_variant if thinking_variant is None else thinking_variant

    async def check_credentials(self, handle: SandboxHandle) -> None:
        """Fail fast when a hosted-provider model has no credentials in the sandbox.

        Raises:
            AgentConfigurationError: If the agent reports zero credentials.
        """
        if not self.model.startswith("opencode/"):
            return
        result = await self._sandbox.exec(handle, "opencode auth list 2>&1 || true", timeout=30)
        if "0 credentials" in result.stdout:
            raise AgentConfigurationError(
                "OpenCode credentials are missing in the sandbox. Run 'opencode auth login' "
                f"for provider access before using model {self.model}."
            )

    def build_command(self, prompt_file: str, out_file: str, err_file: str, timeout: int, use_thinking: bool) -> str:
        parts = ["opencode", "run", "-m", shlex.quote(self.model)]
        if use_thinking:
            parts.append("--thinking")
            if self._thinking_variant:
                parts += ["--variant", shlex.quote(self._thinking_variant)]
        agent_cmd = " ".join(parts)
        return (
            f"rm -f {shlex.quote(ARTIFACT_PATH)}; "
            f"timeout {int(timeout)}s {agent_cmd} \"$(cat {shlex.quote(prompt_file)})\" "
            f"> {shlex.quote(out_file)} 2> {shlex.quote(err_file)}"
        )

    async def run(
        self,
        handle: SandboxHandle,
        prompt: str,
        timeout: int,
        use_thinking: bool = False,
        tag: str = "0",
    ) -> AgentRun:
        """Invoke the agent once. Never raises for agent failures."""
        out_dir = Path(handle.output_dir)
        artifact = Path(handle.repo_dir) / ARTIFACT_FILENAME
        names = {k: f".apex-{k}-{tag}.txt" for k in ("prompt", "out", "err")}
        _discard(artifact)
        for name in names.values():
            _discard(out_dir / name)
        (out_dir / names["prompt"]).write_text(prompt, encoding="utf-8")

        command = self.build_command(
            f"{OUTPUT_MOUNT}/{names['prompt']}",
            f"{OUTPUT_MOUNT}/{names['out']}",
            f"{OUTPUT_MOUNT}/{names['err']}",
            timeout,
            use_thinking,
        )
        result = await self._sandbox.exec(handle, command, timeout=timeout + _EXEC_GRACE_SECONDS)

        run = AgentRun(
            stdout=_read_text(out_dir / names["out"]),
            stderr=_read_text(out_dir / names["err"]) or result.stdout,
            exit_code=result.exit_code,
            timed_out=result.timed_out or result.exit_code == TIMEOUT_EXIT_CODE,
            elapsed_seconds=result.runtime_seconds,
        )
        if artifact.is_file():
            run.artifact_text = _read_text(artifact)
            _discard(artifact)

        logger.info(
            "Agent run %s: exit=%s timed_out=%s %.1fs stdout=%dB artifact=%s",
            tag,
            run.exit_code,
            run.timed_out,
            run.elapsed_seconds,
            len(run.stdout),
            run.artifact_text is not None,
        )
        return run
