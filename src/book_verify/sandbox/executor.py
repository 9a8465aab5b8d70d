from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from typing import TYPE_CHECKING

from ..core.logging import log_event
from ..errors import SandboxError
from ..extract.models import DocBlock, Expectation
from ..resolve.models import Session, SessionPlan
from .models import (
    NO_RUNNER_PREFIX,
    ExecutionResult,
    ExecutionStatus,
    Invocation,
    RunOutcome,
    SandboxOptions,
    skipped,
)
from .resources import ephemeral_database
from .runners import SessionRunners

if TYPE_CHECKING:
    from ..core.context import RunContext

FAIL_FAST_REASON = "fail-fast: run stopped after an earlier failure"
DEADLINE_REASON = "run deadline exceeded"


def judge(block: DocBlock, outcome: RunOutcome) -> ExecutionResult:
    """Map a raw runner outcome to a block status, inverting expected failures."""
    common = {"block": block.ref, "actual_output": outcome.output, "duration_ms": outcome.duration_ms}
    if outcome.timed_out:
        return ExecutionResult(status=ExecutionStatus.TIMEOUT, error=outcome.error, reason="timeout", **common)
    if outcome.crashed:
        return ExecutionResult(
            status=ExecutionStatus.RUNTIME_FAILURE, error=outcome.error, reason="runner crashed", **common
        )
    if block.expectation is Expectation.FAILURE:
        if outcome.raised:
            return ExecutionResult(status=ExecutionStatus.OK, error=outcome.error, **common)
        return ExecutionResult(
            status=ExecutionStatus.RUNTIME_FAILURE,
            reason="expected failure but block completed",
            **common,
        )
    if outcome.raised:
        return ExecutionResult(
            status=ExecutionStatus.RUNTIME_FAILURE, error=outcome.error, reason="block raised", **common
        )
    return ExecutionResult(status=ExecutionStatus.OK, **common)


def _cascade_reason(block: DocBlock, result: ExecutionResult, outcome: RunOutcome | None) -> str | None:
    if result.status is ExecutionStatus.TIMEOUT:
        return f"cascade: {block.ref} timed out"
    if result.status is ExecutionStatus.SKIPPED:
        return f"cascade: {block.ref} skipped"
    if outcome is not None and outcome.crashed:
        return f"cascade: {block.ref} crashed"
    return None


def run_session(
    session: Session,
    options: SandboxOptions,
    ctx: RunContext | None = None,
    stop: threading.Event | None = None,
    deadline: float | None = None,
) -> list[ExecutionResult]:
    """Execute the runnable blocks of one session strictly in order."""
    stop = stop or threading.Event()
    runnable = session.executable
    if stop.is_set():
        return [skipped(block, FAIL_FAST_REASON) for block in runnable]
    if deadline is not None and time.monotonic() > deadline:
        log_event(ctx, "warn", "sandbox", "session-deadline", session=session.session_id)
        return [skipped(block, DEADLINE_REASON) for block in runnable]
    if not runnable:
        return []

    results: list[ExecutionResult] = []
    abort_reason: str | None = None
    log_event(ctx, "info", "sandbox", "session-start", session=session.session_id, blocks=len(runnable))
    with ExitStack() as stack:
        try:
            resource = stack.enter_context(
                ephemeral_database(session.session_id, options.scratch_root, options.keep_scratch, ctx)
            )
        except OSError as exc:
            raise SandboxError(f"session {session.session_id}: cannot provision scratch resource: {exc}") from exc
        runners = stack.enter_context(SessionRunners(resource, options, ctx))
        for block in runnable:
            if abort_reason is None and stop.is_set():
                abort_reason = FAIL_FAST_REASON
            if abort_reason is not None:
                results.append(skipped(block, abort_reason))
                continue
            runner = runners.get(block)
            outcome: RunOutcome | None = None
            if runner is None:
                result = skipped(block, NO_RUNNER_PREFIX + (block.language or "<none>"))
            else:
                outcome = runner.run(Invocation(block, options.timeout_seconds, resource))
                result = judge(block, outcome)
            results.append(result)
            log_event(
                ctx,
                "debug",
                "sandbox",
                "block",
                block=str(block.ref),
                status=result.status.value,
                duration_ms=result.duration_ms,
            )
            abort_reason = _cascade_reason(block, result, outcome)
            if result.failed and options.fail_fast:
                stop.set()
                abort_reason = abort_reason or FAIL_FAST_REASON
    log_event(ctx, "info", "sandbox", "session-end", session=session.session_id)
    return results


def run_plan(plan: SessionPlan, options: SandboxOptions, ctx: RunContext | None = None) -> tuple[ExecutionResult, ...]:
    """Run every session, concurrently across sessions, and return results in plan order."""
    stop = threading.Event()
    deadline = time.monotonic() + options.run_timeout_seconds if options.run_timeout_seconds else None
    if options.workers > 1 and len(plan.sessions) > 1:
        with ThreadPoolExecutor(max_workers=options.workers) as ex:
            futures = [ex.submit(run_session, session, options, ctx, stop, deadline) for session in plan.sessions]
            produced = [future.result() for future in futures]
    else:
        produced = [run_session(session, options, ctx, stop, deadline) for session in plan.sessions]
    return tuple(result for rows in produced for result in rows)
