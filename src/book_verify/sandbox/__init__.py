"""Isolated, session-ordered execution of runnable blocks."""

from __future__ import annotations

from .executor import judge, run_plan, run_session
from .models import (
    BackingResource,
    ExecutionResult,
    ExecutionStatus,
    Invocation,
    RunOutcome,
    SandboxOptions,
)
from .resources import ephemeral_database
from .runners import SessionRunners, runner_key

__all__ = [
    "BackingResource",
    "ExecutionResult",
    "ExecutionStatus",
    "Invocation",
    "RunOutcome",
    "SandboxOptions",
    "SessionRunners",
    "ephemeral_database",
    "judge",
    "run_plan",
    "run_session",
    "runner_key",
]
