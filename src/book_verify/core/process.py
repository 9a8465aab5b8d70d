from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .logging import log_event

if TYPE_CHECKING:
    from .context import RunContext

TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True)
class CommandResult:
    code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def combined_output(self) -> str:
        return (self.stdout + self.stderr).strip()


def kill_process_group(proc: subprocess.Popen) -> None:
    """Kill a child started with ``start_new_session`` and everything it spawned."""
    if proc.poll() is not None:
        return
    if os.name != "nt":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()


def run_command(
    cmd: list[str],
    cwd: Path,
    timeout_seconds: float = 0,
    env: dict[str, str] | None = None,
    ctx: RunContext | None = None,
) -> CommandResult:
    started = time.monotonic()
    proc = subprocess.Popen(
        cmd,
        cwd=cwd,
        env=env,
        text=True,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=(os.name != "nt"),
    )
    try:
        stdout, stderr = proc.communicate(timeout=(timeout_seconds if timeout_seconds > 0 else None))
        result = CommandResult(
            code=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
    except subprocess.TimeoutExpired:
        kill_process_group(proc)
        stdout, stderr = proc.communicate()
        result = CommandResult(
            code=TIMEOUT_EXIT_CODE,
            stdout=stdout or "",
            stderr=((stderr or "") + f"\ncommand timed out after {timeout_seconds}s").strip(),
            duration_ms=int((time.monotonic() - started) * 1000),
            timed_out=True,
        )
    log_event(
        ctx,
        "debug",
        "process",
        "run-command",
        command=" ".join(cmd),
        cwd=str(cwd),
        code=result.code,
        duration_ms=result.duration_ms,
    )
    return result
