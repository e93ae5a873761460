"""Exception taxonomy for the scan/fix pipeline.

Fatal to the whole job (scan → failed):
  CloneError          repository could not be materialized
  NoRunnableAppError  App Bootstrapper exhausted every strategy
  ScanFailedError     rule engine could not load or analyze the page

Recoverable conditions (empty batches, a single worker failing, a failed
post-fix re-scan) are never raised; they are recorded as diagnostics.
Sandbox timeouts are sentinel ExecResults, not exceptions.
"""

from __future__ import annotations


class ApexError(Exception):
    """Base class for all pipeline errors."""


class CloneError(ApexError):
    """Raised when a repository clone or copy fails."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Repository clone failed: {detail}")


class SandboxError(ApexError):
    """Raised when the sandbox container cannot be created."""


class NoRunnableAppError(ApexError):
    """Raised when no dev server or static entry point could be started."""

    DEFAULT_MESSAGE = (
        "No running dev server found and no static entry point (index.html) in the repository. "
        "Make sure the repo has a web frontend with an index.html or a dev server script."
    )

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.DEFAULT_MESSAGE)


class ScanFailedError(ApexError):
    """Raised when the accessibility scan itself fails (navigation, crash, engine)."""


class AgentConfigurationError(ApexError):
    """Raised when the coding agent is unusable (e.g. missing credentials)."""


class RefundNotAllowedError(ApexError):
    """Raised when an escrow refund is requested outside its allowed window."""


class EscrowLockError(ApexError):
    """Raised when funds for a paid action cannot be locked (or payments are off)."""
