"""Shared test fixtures for Apex backend tests."""

import json
import os
import re
import sys

import pytest

# Ensure backend is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")

from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from apex.db.database import create_db_and_tables
from apex.db.records import ScanStore
from apex.models.execution import ExecResult, SandboxHandle
from apex.models.scan import Scan, Violation


@pytest.fixture()
def db_engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(db_engine) -> ScanStore:
    return ScanStore(bind=db_engine)


def make_scan(store: ScanStore, status: str = "pending", **fields) -> Scan:
    """Insert a scan and force it into status (no transition checks)."""
    scan = store.create_scan(
        Scan(
            repo_owner="acme",
            repo_name="storefront",
            repo_url="https://github.com/acme/storefront",
            **fields,
        )
    )
    if status != "pending":
        scan = store.update_scan(scan.id, status=status)
    return scan


def make_violation(rule_id: str = "image-alt", impact: str = "critical", **fields) -> Violation:
    return Violation(
        scan_id="",
        rule_id=rule_id,
        impact=impact,
        description=fields.pop("description", f"{rule_id} violation"),
        **fields,
    )


class FakeSandbox:
    """In-memory stand-in for DockerSandbox.

    exec() answers from a queue of results (or a callable), and records every
    command it was given.
    """

    def __init__(self, results=None, on_exec=None):
        self.results = list(results or [])
        self.on_exec = on_exec
        self.commands: list[tuple[str, str]] = []
        self.created: list[SandboxHandle] = []
        self.destroyed: list[SandboxHandle] = []

    async def create(self, repo_dir: str, output_dir: str) -> SandboxHandle:
        handle = SandboxHandle(
            container_id=f"ctr-{len(self.created)}",
            repo_dir=repo_dir,
            output_dir=output_dir,
        )
        self.created.append(handle)
        return handle

    async def exec(self, handle, command, timeout=None, on_output=None, workdir="/workspace"):
        self.commands.append((handle.container_id, command if isinstance(command, str) else " ".join(command)))
        if self.on_exec is not None:
            return await self.on_exec(handle, command, timeout)
        if self.results:
            return self.results.pop(0)
        return ExecResult(stdout="", exit_code=0)

    async def destroy(self, handle) -> None:
        self.destroyed.append(handle)


class FakeAgent:
    """Coding agent stand-in that answers every prompt with an alt-text fix.

    The fix is derived from the prompt's HTML and Violation ID lines, so any
    batch gets fixes for exactly its own violations. `fail_on` names
    container ids whose runs raise; `runs` overrides the answer entirely.
    """

    model = "opencode/test-model"

    def __init__(self, runs=None, fail_on=(), elapsed: float = 12.0):
        self.runs = list(runs) if runs is not None else None
        self.fail_on = set(fail_on)
        self.elapsed = elapsed
        self.calls: list[tuple[str, str, int]] = []

    async def check_credentials(self, handle) -> None:
        return None

    async def run(self, handle, prompt, timeout, use_thinking, tag=""):
        from apex.fixer.agent import AgentRun

        self.calls.append((handle.container_id, tag, timeout))
        if handle.container_id in self.fail_on:
            raise RuntimeError(f"sandbox {handle.container_id} lost")
        if self.runs is not None:
            return self.runs.pop(0) if self.runs else AgentRun(elapsed_seconds=self.elapsed)

        snippets = re.findall(r"^\s*HTML: (.+)$", prompt, flags=re.MULTILINE)
        ids = re.findall(r"^\s*Violation ID: (\S+)$", prompt, flags=re.MULTILINE)
        fixes = [
            {
                "filePath": "index.html",
                "originalCode": html,
                "fixedCode": html.replace("<img ", '<img alt="" '),
                "explanation": "Decorative image gets an empty alt.",
                "violationId": violation_id,
            }
            for html, violation_id in zip(snippets, ids)
        ]
        return AgentRun(artifact_text=json.dumps({"fixes": fixes}), elapsed_seconds=self.elapsed)
