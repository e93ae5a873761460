"""Fix extraction — coerce agent output into FixRecords.

The agent's output format is not a reliable contract, so extraction is an
ordered chain of strategies. Each returns ExtractionHit or ExtractionMiss;
"found nothing" is an expected outcome, never an exception.

    artifact_file     the JSON file the prompt asks for
    raw_json          stdout parsed as a whole
    embedded_json     brace-matched {...} objects with a "fixes" key
    event_stream      JSON-lines events: text parts + writes to the artifact
    patch_text        unified diffs printed by the agent
    workspace_diff    files that actually changed during the batch
    extraction_retry  a short follow-up prompt asking only for the JSON
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from apex.engines.repo_path import normalize_repo_file_path
from apex.engines.sanitize import sanitize_diagnostic
from apex.fixer.agent import AgentRun
from apex.fixer.diff_parser import parse_unified_diff
from apex.fixer.prompts import ARTIFACT_FILENAME
from apex.models.fixes import (
    ExtractionHit,
    ExtractionMiss,
    ExtractionResult,
    FixBatch,
    FixRecord,
)

logger = logging.getLogger(__name__)

EVENT_STREAM_DIAGNOSTIC = "Received agent event stream instead of final fixes JSON."


@dataclass
class ExtractionContext:
    """Inputs for one batch's extraction chain."""

    batch: FixBatch
    run: AgentRun
    workspace_changes: Callable[[], list[FixRecord]] = lambda: []
    retry: Callable[[], Awaitable[AgentRun | None]] | None = None
    attempts: list[ExtractionMiss] = field(default_factory=list)


Strategy = Callable[[ExtractionContext], Awaitable[ExtractionResult]]


# === Parsing helpers ===


def fixes_from_payload(payload: Any) -> list[FixRecord]:
    """Accept {"fixes": [...]} or a bare list of fix objects."""
    if isinstance(payload, dict):
        payload = payload.get("fixes")
    if not isinstance(payload, list):
        return []
    fixes: list[FixRecord] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        try:
            fix = FixRecord.model_validate(item)
        except ValidationError:
            continue
        if fix.file_path and (fix.original_code or fix.fixed_code):
            fixes.append(fix)
    return fixes


def parse_json_fixes(text: str | None) -> list[FixRecord]:
    if not text or not text.strip():
        return []
    try:
        return fixes_from_payload(json.loads(text.strip()))
    except ValueError:
        return []


def iter_json_objects(text: str) -> Iterator[str]:
    """Yield every balanced top-level {...} substring, respecting JSON strings."""
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start : i + 1]


def embedded_json_fixes(text: str | None) -> list[FixRecord]:
    """Fixes from the last embedded object that has a usable "fixes" list."""
    if not text or '"fixes"' not in text:
        return []
    found: list[FixRecord] = []
    for candidate in iter_json_objects(text):
        if '"fixes"' not in candidate:
            continue
        fixes = parse_json_fixes(candidate)
        if fixes:
            found = fixes
    return found


def _walk(node: Any) -> Iterator[dict]:
    if isinstance(node, dict):
        yield node
        for value in node.values():
            yield from _walk(value)
    elif isinstance(node, list):
        for value in node:
            yield from _walk(value)


def _event_lines(text: str) -> Iterator[dict]:
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if isinstance(event, dict):
            yield event


def looks_like_event_stream(text: str | None) -> bool:
    return bool(text) and ('"type":"step_start"' in text or '"type":"tool_use"' in text or '"type": "tool_use"' in text)


def event_stream_payloads(text: str | None) -> list[str]:
    """Texts worth parsing from a JSON-lines event stream.

    Assistant text parts, plus the content of any file-write tool call whose
    target path ends with the artifact filename.
    """
    if not text:
        return []
    payloads: list[str] = []
    for event in _event_lines(text):
        for node in _walk(event):
            if node.get("type") == "text" and isinstance(node.get("text"), str):
                payloads.append(node["text"])
            target = node.get("filePath") or node.get("file_path") or node.get("path")
            content = node.get("content")
            if isinstance(target, str) and target.endswith(ARTIFACT_FILENAME) and isinstance(content, str):
                payloads.append(content)
    return payloads


def assign_violation_ids(fixes: Sequence[FixRecord], batch_ids: Sequence[str]) -> list[FixRecord]:
    """Fill missing violationIds from the batch and drop fixes outside it.

    Single-violation batches give every fix that id; multi-violation batches
    assign by position. File paths are normalized; unusable ones are dropped.
    """
    allowed = set(batch_ids)
    result: list[FixRecord] = []
    for position, fix in enumerate(fixes):
        violation_id = fix.violation_id
        if not violation_id:
            if len(batch_ids) == 1:
                violation_id = batch_ids[0]
            elif position < len(batch_ids):
                violation_id = batch_ids[position]
        if violation_id not in allowed:
            continue
        file_path = normalize_repo_file_path(fix.file_path)
        if not file_path:
            continue
        result.append(fix.model_copy(update={"violation_id": violation_id, "file_path": file_path}))
    return result


def _hit_or_miss(source: str, fixes: list[FixRecord], reason: str) -> ExtractionResult:
    if fixes:
        return ExtractionHit(source=source, fixes=fixes)
    return ExtractionMiss(source=source, reason=reason)


def _from_text_outputs(run: AgentRun) -> list[FixRecord]:
    """Artifact, raw JSON, embedded JSON and event stream over one run's output."""
    for candidate in (run.artifact_text, run.stdout):
        fixes = parse_json_fixes(candidate)
        if fixes:
            return fixes
    for candidate in (run.stdout, run.stderr):
        fixes = embedded_json_fixes(candidate)
        if fixes:
            return fixes
    for payload in event_stream_payloads(run.stdout):
        fixes = parse_json_fixes(payload) or embedded_json_fixes(payload)
        if fixes:
            return fixes
    return []


# === Strategies ===


async def from_artifact_file(ctx: ExtractionContext) -> ExtractionResult:
    if ctx.run.artifact_text is None:
        return ExtractionMiss("artifact_file", "artifact not written")
    return _hit_or_miss("artifact_file", parse_json_fixes(ctx.run.artifact_text), "artifact had no fixes")


async def from_raw_json(ctx: ExtractionContext) -> ExtractionResult:
    return _hit_or_miss("raw_json", parse_json_fixes(ctx.run.stdout), "stdout is not a fixes document")


async def from_embedded_json(ctx: ExtractionContext) -> ExtractionResult:
    fixes = embedded_json_fixes(ctx.run.stdout) or embedded_json_fixes(ctx.run.stderr)
    return _hit_or_miss("embedded_json", fixes, "no embedded fixes object")


async def from_event_stream(ctx: ExtractionContext) -> ExtractionResult:
    for payload in event_stream_payloads(ctx.run.stdout):
        fixes = parse_json_fixes(payload) or embedded_json_fixes(payload)
        if fixes:
            return ExtractionHit("event_stream", fixes)
    return ExtractionMiss("event_stream", "no fixes in event stream")


async def from_patch_text(ctx: ExtractionContext) -> ExtractionResult:
    single = ctx.batch.violation_ids[0] if len(ctx.batch.violation_ids) == 1 else ""
    fixes = parse_unified_diff(ctx.run.stdout, single) or parse_unified_diff(ctx.run.stderr, single)
    return _hit_or_miss("patch_text", fixes, "no unified diff in output")


async def from_workspace_diff(ctx: ExtractionContext) -> ExtractionResult:
    return _hit_or_miss("workspace_diff", ctx.workspace_changes(), "working tree unchanged")


async def from_extraction_retry(ctx: ExtractionContext) -> ExtractionResult:
    if ctx.retry is None:
        return ExtractionMiss("extraction_retry", "retry disabled")
    run = await ctx.retry()
    if run is None:
        return ExtractionMiss("extraction_retry", "no budget for retry")
    return _hit_or_miss("extraction_retry", _from_text_outputs(run), "retry produced no fixes")


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    from_artifact_file,
    from_raw_json,
    from_embedded_json,
    from_event_stream,
    from_patch_text,
    from_workspace_diff,
    from_extraction_retry,
)


async def run_extraction_chain(
    ctx: ExtractionContext,
    strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
) -> ExtractionResult:
    """First strategy yielding at least one batch-attributable fix wins.

    Misses are recorded on ctx.attempts in order.
    """
    for strategy in strategies:
        result = await strategy(ctx)
        if isinstance(result, ExtractionHit):
            fixes = assign_violation_ids(result.fixes, ctx.batch.violation_ids)
            if fixes:
                logger.info("Batch %d: %d fix(es) via %s", ctx.batch.index, len(fixes), result.source)
                return ExtractionHit(result.source, fixes)
            result = ExtractionMiss(result.source, "fixes did not match this batch's violations")
        ctx.attempts.append(result)
    return ctx.attempts[-1] if ctx.attempts else ExtractionMiss("artifact_file", "no strategies")


def compact_diagnostic(run: AgentRun) -> str:
    """One-line, sanitized description of what the agent printed."""
    if run.timed_out:
        return f"agent timed out after {run.elapsed_seconds:.0f}s"
    err = sanitize_diagnostic(run.stderr)
    if err:
        return err
    if looks_like_event_stream(run.stdout):
        return EVENT_STREAM_DIAGNOSTIC
    return sanitize_diagnostic(run.stdout)
