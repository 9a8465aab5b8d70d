from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable

from ..contracts import REPORT_SCHEMA, validate
from ..core.config import MaskPattern
from ..errors import ExtractionError
from ..exit_codes import ERR_EXTRACTION, ERR_VERIFY, OK
from ..extract.models import BlockKind, BlockRef, DocBlock, FileExtraction
from ..resolve.models import SessionPlan, UnresolvedDependency
from ..sandbox.models import NO_RUNNER_PREFIX, ExecutionResult, ExecutionStatus
from .diff import DiffVerdict, compare

TOOL = "book-verify"


@dataclass(frozen=True)
class BlockReport:
    block: DocBlock
    result: ExecutionResult
    verdict: DiffVerdict | None = None
    context: tuple[DocBlock, ...] = ()

    @property
    def mismatched(self) -> bool:
        return self.verdict is not None and not self.verdict.match

    @property
    def passed(self) -> bool:
        return not self.result.failed and not self.mismatched

    @property
    def outcome(self) -> str:
        return "mismatch" if self.mismatched else self.result.status.value


@dataclass(frozen=True)
class Summary:
    files: int
    sessions: int
    blocks: int
    illustrative: int
    ok: int
    runtime_failure: int
    timeout: int
    skipped: int
    mismatched: int
    unchecked: int
    extraction_errors: int

    @property
    def executed(self) -> int:
        return self.ok + self.runtime_failure + self.timeout


@dataclass(frozen=True)
class VerificationReport:
    files: tuple[str, ...]
    plan: SessionPlan
    rows: tuple[BlockReport, ...]
    extraction_errors: tuple[ExtractionError, ...]
    dependencies: tuple[UnresolvedDependency, ...]
    warnings: tuple[str, ...]
    summary: Summary
    exit_code: int

    @property
    def failures(self) -> tuple[BlockReport, ...]:
        return tuple(row for row in self.rows if not row.passed)


def _context_blocks(extractions: Iterable[FileExtraction]) -> dict[BlockRef, tuple[DocBlock, ...]]:
    """Illustrative blocks between each runnable block and the previous one in its file."""
    out: dict[BlockRef, tuple[DocBlock, ...]] = {}
    for ex in extractions:
        pending: list[DocBlock] = []
        for block in ex.blocks:
            if block.runnable:
                out[block.ref] = tuple(pending)
                pending = []
            elif block.kind is BlockKind.ILLUSTRATIVE:
                pending.append(block)
    return out


def exit_code_for(summary: Summary) -> int:
    if summary.extraction_errors and summary.executed == 0:
        return ERR_EXTRACTION
    if summary.runtime_failure or summary.timeout or summary.mismatched:
        return ERR_VERIFY
    return OK


def _runner_warnings(rows: list[BlockReport]) -> list[str]:
    missing = Counter(
        row.result.reason[len(NO_RUNNER_PREFIX) :]
        for row in rows
        if row.result.status is ExecutionStatus.SKIPPED and row.result.reason.startswith(NO_RUNNER_PREFIX)
    )
    return [
        f"{count} block{'' if count == 1 else 's'} skipped: {NO_RUNNER_PREFIX}{language}"
        for language, count in sorted(missing.items())
    ]


def build_report(
    extractions: list[FileExtraction],
    plan: SessionPlan,
    results: Iterable[ExecutionResult],
    masks: Iterable[MaskPattern] = (),
    ellipsis: bool = True,
) -> VerificationReport:
    masks = tuple(masks)
    context = _context_blocks(extractions)
    rows: list[BlockReport] = []
    for result in results:
        block = plan.block(result.block)
        verdict = compare(block, result, masks, ellipsis)
        row = BlockReport(block=block, result=result, verdict=verdict)
        if not row.passed:
            row = BlockReport(block=block, result=result, verdict=verdict, context=context.get(block.ref, ()))
        rows.append(row)

    counts = Counter(row.result.status.value for row in rows)
    errors = tuple(ex.error for ex in extractions if ex.error is not None)
    warnings = [warning for ex in extractions for warning in ex.warnings]
    warnings.extend(plan.warnings)
    warnings.extend(_runner_warnings(rows))
    summary = Summary(
        files=len(extractions),
        sessions=len(plan.sessions),
        blocks=len(rows),
        illustrative=sum(1 for ex in extractions for b in ex.blocks if b.kind is BlockKind.ILLUSTRATIVE),
        ok=counts["ok"],
        runtime_failure=counts["runtime_failure"],
        timeout=counts["timeout"],
        skipped=counts["skipped"],
        mismatched=sum(1 for row in rows if row.mismatched),
        unchecked=sum(
            1 for row in rows if row.result.status is ExecutionStatus.OK and row.verdict is None
        ),
        extraction_errors=len(errors),
    )
    return VerificationReport(
        files=tuple(ex.path.as_posix() for ex in extractions),
        plan=plan,
        rows=tuple(rows),
        extraction_errors=errors,
        dependencies=plan.dependencies,
        warnings=tuple(warnings),
        summary=summary,
        exit_code=exit_code_for(summary),
    )


def _row_payload(row: BlockReport, timings: bool) -> dict[str, Any]:
    block = row.block
    payload: dict[str, Any] = {
        "block": str(block.ref),
        "file": block.source_file.as_posix(),
        "line": block.start_line,
        "language": block.language,
        "kind": block.kind.value,
        "expectation": block.expectation.value,
        "status": row.result.status.value,
        "outcome": row.outcome,
        "reason": row.result.reason,
        "error": row.result.error,
        "actual_output": row.result.actual_output,
        "expected_output": block.expected_output,
        "expected_line": block.expected_line,
        "diff": list(row.verdict.diff_hunks) if row.verdict else [],
        "context": [str(ctx_block.ref) for ctx_block in row.context],
    }
    if timings:
        payload["duration_ms"] = row.result.duration_ms
    return payload


def to_payload(report: VerificationReport, timings: bool = False) -> dict[str, Any]:
    rows_by_session: dict[str, list[dict[str, Any]]] = {}
    for row in report.rows:
        rows_by_session.setdefault(row.block.session_id, []).append(_row_payload(row, timings))
    summary = report.summary
    status = "ok" if report.exit_code == OK else ("error" if report.exit_code == ERR_EXTRACTION else "failed")
    payload: dict[str, Any] = {
        "schema_name": REPORT_SCHEMA,
        "schema_version": 1,
        "tool": TOOL,
        "status": status,
        "exit_code": report.exit_code,
        "summary": {
            "files": summary.files,
            "sessions": summary.sessions,
            "blocks": summary.blocks,
            "illustrative": summary.illustrative,
            "ok": summary.ok,
            "runtime_failure": summary.runtime_failure,
            "timeout": summary.timeout,
            "skipped": summary.skipped,
            "mismatched": summary.mismatched,
            "unchecked": summary.unchecked,
            "extraction_errors": summary.extraction_errors,
        },
        "files": list(report.files),
        "sessions": [
            {
                "session_id": session.session_id,
                "chapter_file": session.chapter_file,
                "files": list(session.files),
                "blocks": rows_by_session.get(session.session_id, []),
            }
            for session in report.plan.sessions
        ],
        "extraction_errors": [
            {"file": err.path.as_posix(), "line": err.line, "message": err.reason} for err in report.extraction_errors
        ],
        "unresolved_dependencies": [
            {"block": str(dep.block), "names": list(dep.names), "message": dep.message} for dep in report.dependencies
        ],
        "warnings": list(report.warnings),
    }
    validate(REPORT_SCHEMA, payload)
    return payload


def _indent(text: str, prefix: str = "    ") -> str:
    return "\n".join(prefix + line for line in text.split("\n"))


def render_text(report: VerificationReport, timings: bool = False) -> str:
    lines: list[str] = []
    for err in report.extraction_errors:
        lines.append(f"EXTRACTION ERROR {err.message}")
    for row in report.rows:
        label = row.outcome.upper()
        suffix = f" ({row.result.duration_ms}ms)" if timings else ""
        head = f"{label:<16} {row.block.ref} [{row.block.language or '-'}]{suffix}"
        if row.result.reason and row.result.status is not ExecutionStatus.OK:
            head += f" {row.result.reason}"
        lines.append(head)
        if row.passed:
            continue
        if row.result.error:
            lines.append(_indent(row.result.error))
        if row.verdict is not None:
            where = f" (expected output at line {row.verdict.expected_line})" if row.verdict.expected_line else ""
            lines.append(f"    diff{where}:")
            for hunk in row.verdict.diff_hunks:
                lines.append(_indent(hunk, "      "))
        for ctx_block in row.context:
            lines.append(f"    context {ctx_block.ref}:")
            lines.append(_indent(ctx_block.raw_text.rstrip("\n"), "      | "))
    for dep in report.dependencies:
        lines.append(f"UNRESOLVED       {dep.block} {dep.message}")
    for warning in report.warnings:
        lines.append(f"WARNING          {warning}")
    s = report.summary
    lines.append(
        f"summary: files={s.files} sessions={s.sessions} blocks={s.blocks} ok={s.ok} "
        f"mismatched={s.mismatched} runtime_failure={s.runtime_failure} timeout={s.timeout} "
        f"skipped={s.skipped} unchecked={s.unchecked} extraction_errors={s.extraction_errors}"
    )
    lines.append(f"result: {'PASS' if report.exit_code == OK else 'FAIL'} (exit {report.exit_code})")
    return "\n".join(lines)


def render_plan(plan: SessionPlan) -> str:
    lines: list[str] = []
    for session in plan.sessions:
        lines.append(f"session {session.ordinal} {session.session_id} files={','.join(session.files)}")
        for block in session.executable:
            preds = len(session.predecessors.get(block.ref, ()))
            lines.append(f"  {block.ref} {block.language or '-'} {block.kind.value} {block.expectation.value} predecessors={preds}")
    for dep in plan.dependencies:
        lines.append(f"unresolved {dep.block}: {dep.message}")
    for warning in plan.warnings:
        lines.append(f"warning: {warning}")
    return "\n".join(lines)


def plan_payload(plan: SessionPlan) -> dict[str, Any]:
    return {
        "schema_version": 1,
        "tool": TOOL,
        "sessions": [
            {
                "session_id": session.session_id,
                "ordinal": session.ordinal,
                "files": list(session.files),
                "blocks": [
                    {
                        "block": str(block.ref),
                        "language": block.language,
                        "kind": block.kind.value,
                        "expectation": block.expectation.value,
                        "predecessors": [str(ref) for ref in session.predecessors.get(block.ref, ())],
                    }
                    for block in session.executable
                ],
            }
            for session in plan.sessions
        ],
        "unresolved_dependencies": [
            {"block": str(dep.block), "names": list(dep.names), "message": dep.message} for dep in plan.dependencies
        ],
        "warnings": list(plan.warnings),
    }
