from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping

from ..core.config import CommandRunnerSpec, VerifyConfig
from ..extract.models import BlockRef, DocBlock


class ExecutionStatus(str, Enum):
    OK = "ok"
    RUNTIME_FAILURE = "runtime_failure"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


NO_RUNNER_PREFIX = "no runner for language "


@dataclass(frozen=True)
class ExecutionResult:
    block: BlockRef
    status: ExecutionStatus
    actual_output: str = ""
    duration_ms: int = 0
    error: str = ""
    reason: str = ""

    @property
    def failed(self) -> bool:
        return self.status in {ExecutionStatus.RUNTIME_FAILURE, ExecutionStatus.TIMEOUT}


@dataclass(frozen=True)
class BackingResource:
    session_id: str
    scratch_dir: Path
    database_path: Path


@dataclass(frozen=True)
class Invocation:
    """Everything one block execution needs, passed explicitly."""

    block: DocBlock
    timeout_seconds: float
    resource: BackingResource


@dataclass(frozen=True)
class RunOutcome:
    output: str
    raised: bool = False
    error: str = ""
    timed_out: bool = False
    crashed: bool = False
    duration_ms: int = 0


def skipped(block: DocBlock, reason: str) -> ExecutionResult:
    return ExecutionResult(block=block.ref, status=ExecutionStatus.SKIPPED, reason=reason)


@dataclass(frozen=True)
class SandboxOptions:
    timeout_seconds: float = 5.0
    run_timeout_seconds: float | None = None
    workers: int = 4
    fail_fast: bool = False
    keep_scratch: bool = False
    scratch_root: Path | None = None
    python: str = sys.executable
    runners: Mapping[str, CommandRunnerSpec] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: VerifyConfig) -> "SandboxOptions":
        return cls(
            timeout_seconds=config.timeout_seconds,
            run_timeout_seconds=config.run_timeout_seconds,
            workers=config.workers,
            fail_fast=config.fail_fast,
            keep_scratch=config.keep_scratch,
            scratch_root=config.scratch_root,
            python=config.python,
            runners=config.runners,
        )
