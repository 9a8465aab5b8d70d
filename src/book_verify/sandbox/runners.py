from __future__ import annotations

import json
import os
import queue
import sqlite3
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, TYPE_CHECKING, Protocol

from ..core.config import CommandRunnerSpec
from ..core.logging import log_event
from ..core.process import kill_process_group, run_command
from ..extract.models import BlockKind, DocBlock
from .models import BackingResource, Invocation, RunOutcome, SandboxOptions

if TYPE_CHECKING:
    from ..core.context import RunContext

PACKAGE_PARENT = Path(__file__).resolve().parents[2]
WORKER_MODULE = "book_verify.sandbox.worker"
DEFAULT_COMMAND_RUNNERS = {
    "bash": CommandRunnerSpec(command=("bash", "{file}"), extension=".sh"),
}
SHUTDOWN_GRACE_SECONDS = 2.0


class Runner(Protocol):
    def run(self, invocation: Invocation) -> RunOutcome: ...

    def close(self) -> None: ...


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _session_env(resource: BackingResource) -> dict[str, str]:
    env = dict(os.environ)
    env["BOOK_VERIFY_DATABASE"] = str(resource.database_path)
    env["BOOK_VERIFY_SCRATCH"] = str(resource.scratch_dir)
    return env


def _launch_failed(what: str, exc: OSError, started: float, output: str = "") -> RunOutcome:
    error = f"{what}: {exc}"
    return RunOutcome(
        output="\n".join(part for part in (output, error) if part),
        raised=True,
        error=error,
        crashed=True,
        duration_ms=_elapsed_ms(started),
    )


class PythonRunner:
    """One long-lived interpreter per session so definitions carry across blocks."""

    def __init__(self, resource: BackingResource, python: str, ctx: RunContext | None = None) -> None:
        self.resource = resource
        self.python = python
        self.ctx = ctx
        self.proc: subprocess.Popen[str] | None = None
        self.responses: queue.Queue[str | None] = queue.Queue()
        self.stderr_path = resource.scratch_dir / "worker.stderr"
        self._stderr: IO[str] | None = None
        self._reader: threading.Thread | None = None
        self._seq = 0

    def _start(self) -> subprocess.Popen[str]:
        env = _session_env(self.resource)
        existing = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = str(PACKAGE_PARENT) + (os.pathsep + existing if existing else "")
        env["PYTHONUNBUFFERED"] = "1"
        self._stderr = self.stderr_path.open("w", encoding="utf-8")
        cmd = [
            self.python,
            "-m",
            WORKER_MODULE,
            "--database",
            str(self.resource.database_path),
            "--scratch",
            str(self.resource.scratch_dir),
        ]
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=self.resource.scratch_dir,
                env=env,
                text=True,
                bufsize=1,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=self._stderr,
                start_new_session=(os.name != "nt"),
            )
        except OSError:
            self._stderr.close()
            self._stderr = None
            raise
        self._reader = threading.Thread(target=self._pump, args=(proc,), daemon=True)
        self._reader.start()
        log_event(self.ctx, "debug", "sandbox", "worker-start", session=self.resource.session_id, pid=proc.pid)
        return proc

    def _pump(self, proc: subprocess.Popen[str]) -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            self.responses.put(line)
        self.responses.put(None)

    def _stderr_tail(self) -> str:
        if self._stderr is not None:
            self._stderr.flush()
        try:
            lines = self.stderr_path.read_text(encoding="utf-8", errors="replace").strip().splitlines()
        except OSError:
            return ""
        return "\n".join(lines[-5:])

    def run(self, invocation: Invocation) -> RunOutcome:
        started = time.monotonic()
        if self.proc is None:
            try:
                self.proc = self._start()
            except OSError as exc:
                return _launch_failed(f"cannot start python worker {self.python}", exc, started)
        self._seq += 1
        request = json.dumps({"id": self._seq, "code": invocation.block.code})
        try:
            assert self.proc.stdin is not None
            self.proc.stdin.write(request + "\n")
            self.proc.stdin.flush()
        except OSError as exc:
            return RunOutcome(output="", raised=True, error=f"python worker unavailable: {exc}", crashed=True)
        try:
            line = self.responses.get(timeout=invocation.timeout_seconds)
        except queue.Empty:
            kill_process_group(self.proc)
            return RunOutcome(
                output="",
                timed_out=True,
                error=f"block exceeded {invocation.timeout_seconds}s",
                duration_ms=_elapsed_ms(started),
            )
        if line is None:
            tail = self._stderr_tail()
            message = "python worker exited unexpectedly" + (f": {tail}" if tail else "")
            return RunOutcome(output="", raised=True, error=message, crashed=True, duration_ms=_elapsed_ms(started))
        response = json.loads(line)
        return RunOutcome(
            output=str(response.get("output", "")),
            raised=bool(response.get("raised", False)),
            error=str(response.get("error", "")),
            duration_ms=_elapsed_ms(started),
        )

    def close(self) -> None:
        proc = self.proc
        if proc is None:
            return
        if proc.poll() is None:
            try:
                assert proc.stdin is not None
                proc.stdin.write(json.dumps({"op": "shutdown"}) + "\n")
                proc.stdin.close()
                proc.wait(timeout=SHUTDOWN_GRACE_SECONDS)
            except (OSError, subprocess.TimeoutExpired):
                kill_process_group(proc)
                proc.wait()
        if self._reader is not None:
            self._reader.join(timeout=SHUTDOWN_GRACE_SECONDS)
        if proc.stdout is not None and not (self._reader and self._reader.is_alive()):
            proc.stdout.close()
        if self._stderr is not None:
            self._stderr.close()
        log_event(self.ctx, "debug", "sandbox", "worker-stop", session=self.resource.session_id, code=proc.returncode)


def split_sql(script: str) -> list[str]:
    statements: list[str] = []
    buffer = ""
    for line in script.splitlines(keepends=True):
        buffer += line
        if sqlite3.complete_statement(buffer):
            if buffer.strip().rstrip(";").strip():
                statements.append(buffer.strip())
            buffer = ""
    if buffer.strip():
        statements.append(buffer.strip())
    return statements


def render_rows(columns: list[str], rows: list[tuple[object, ...]]) -> str:
    def cell(value: object) -> str:
        return "NULL" if value is None else str(value)

    lines = [" | ".join(columns)]
    lines.extend(" | ".join(cell(value) for value in row) for row in rows)
    return "\n".join(lines)


class SqlRunner:
    """Runs SQL blocks in process against the session database."""

    def __init__(self, resource: BackingResource) -> None:
        self.conn = sqlite3.connect(resource.database_path, isolation_level=None)

    def run(self, invocation: Invocation) -> RunOutcome:
        started = time.monotonic()
        deadline = started + invocation.timeout_seconds
        self.conn.set_progress_handler(lambda: int(time.monotonic() > deadline), 1000)
        rendered: list[str] = []
        try:
            for statement in split_sql(invocation.block.code):
                cursor = self.conn.execute(statement)
                if cursor.description:
                    columns = [col[0] for col in cursor.description]
                    rendered.append(render_rows(columns, cursor.fetchall()))
        except sqlite3.Error as exc:
            if time.monotonic() > deadline:
                return RunOutcome(
                    output="\n".join(rendered),
                    timed_out=True,
                    error=f"block exceeded {invocation.timeout_seconds}s",
                    duration_ms=_elapsed_ms(started),
                )
            error = f"{type(exc).__name__}: {exc}"
            return RunOutcome(
                output="\n".join([*rendered, error]),
                raised=True,
                error=error,
                duration_ms=_elapsed_ms(started),
            )
        finally:
            self.conn.set_progress_handler(None, 0)
        return RunOutcome(output="\n".join(rendered), duration_ms=_elapsed_ms(started))

    def close(self) -> None:
        self.conn.close()


def transcript_commands(text: str) -> list[str]:
    return [line.lstrip()[2:] for line in text.splitlines() if line.lstrip().startswith("$ ")]


class ShellTranscriptRunner:
    """Replays ``$ command`` lines and rebuilds the transcript from real output."""

    def __init__(self, resource: BackingResource, ctx: RunContext | None = None) -> None:
        self.resource = resource
        self.ctx = ctx

    def run(self, invocation: Invocation) -> RunOutcome:
        started = time.monotonic()
        deadline = started + invocation.timeout_seconds
        env = _session_env(self.resource)
        transcript: list[str] = []
        for command in transcript_commands(invocation.block.code):
            transcript.append(f"$ {command}")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return RunOutcome(
                    output="\n".join(transcript),
                    timed_out=True,
                    error=f"block exceeded {invocation.timeout_seconds}s",
                    duration_ms=_elapsed_ms(started),
                )
            try:
                result = run_command(
                    ["bash", "-c", command],
                    cwd=self.resource.scratch_dir,
                    timeout_seconds=remaining,
                    env=env,
                    ctx=self.ctx,
                )
            except OSError as exc:
                return _launch_failed(f"cannot run `{command}`", exc, started, "\n".join(transcript))
            body = result.combined_output
            if body:
                transcript.append(body)
            if result.timed_out:
                return RunOutcome(
                    output="\n".join(transcript),
                    timed_out=True,
                    error=f"block exceeded {invocation.timeout_seconds}s",
                    duration_ms=_elapsed_ms(started),
                )
            if result.code != 0:
                return RunOutcome(
                    output="\n".join(transcript),
                    raised=True,
                    error=f"`{command}` exited with {result.code}",
                    duration_ms=_elapsed_ms(started),
                )
        return RunOutcome(output="\n".join(transcript), duration_ms=_elapsed_ms(started))

    def close(self) -> None:
        return None


class CommandRunner:
    """Writes the block to the scratch dir and runs a configured command on it."""

    def __init__(self, spec: CommandRunnerSpec, resource: BackingResource, ctx: RunContext | None = None) -> None:
        self.spec = spec
        self.resource = resource
        self.ctx = ctx

    def argv(self, source: Path) -> list[str]:
        values = {
            "file": str(source),
            "scratch": str(self.resource.scratch_dir),
            "database": str(self.resource.database_path),
        }
        argv: list[str] = []
        for part in self.spec.command:
            for name, value in values.items():
                part = part.replace("{" + name + "}", value)
            argv.append(part)
        return argv

    def run(self, invocation: Invocation) -> RunOutcome:
        block = invocation.block
        started = time.monotonic()
        source = self.resource.scratch_dir / f"block-{block.start_line}{self.spec.extension}"
        argv = self.argv(source)
        try:
            source.write_text(block.code, encoding="utf-8")
            result = run_command(
                argv,
                cwd=self.resource.scratch_dir,
                timeout_seconds=invocation.timeout_seconds,
                env=_session_env(self.resource),
                ctx=self.ctx,
            )
        except OSError as exc:
            return _launch_failed(f"cannot run {argv[0]}", exc, started)
        if result.timed_out:
            return RunOutcome(
                output=result.stdout,
                timed_out=True,
                error=f"block exceeded {invocation.timeout_seconds}s",
                duration_ms=result.duration_ms,
            )
        if result.code != 0:
            error = result.stderr.strip() or f"exit status {result.code}"
            return RunOutcome(
                output="\n".join(part for part in (result.stdout.rstrip("\n"), error) if part),
                raised=True,
                error=error,
                duration_ms=result.duration_ms,
            )
        return RunOutcome(output=result.stdout, duration_ms=result.duration_ms)

    def close(self) -> None:
        return None


def runner_key(block: DocBlock, options: SandboxOptions) -> str | None:
    if block.kind is BlockKind.SHELL_TRANSCRIPT:
        return "transcript"
    if block.language in options.runners:
        return f"command:{block.language}"
    if block.language in {"python", "sql"}:
        return block.language
    if block.language in DEFAULT_COMMAND_RUNNERS:
        return f"command:{block.language}"
    return None


class SessionRunners:
    """Lazily built runners for one session, all closed together."""

    def __init__(self, resource: BackingResource, options: SandboxOptions, ctx: RunContext | None = None) -> None:
        self.resource = resource
        self.options = options
        self.ctx = ctx
        self._runners: dict[str, Runner] = {}

    def __enter__(self) -> "SessionRunners":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _build(self, key: str) -> Runner:
        if key == "python":
            return PythonRunner(self.resource, self.options.python, self.ctx)
        if key == "sql":
            return SqlRunner(self.resource)
        if key == "transcript":
            return ShellTranscriptRunner(self.resource, self.ctx)
        language = key.split(":", 1)[1]
        spec = self.options.runners.get(language) or DEFAULT_COMMAND_RUNNERS[language]
        return CommandRunner(spec, self.resource, self.ctx)

    def get(self, block: DocBlock) -> Runner | None:
        key = runner_key(block, self.options)
        if key is None:
            return None
        if key not in self._runners:
            self._runners[key] = self._build(key)
        return self._runners[key]

    def close(self) -> None:
        for key, runner in self._runners.items():
            try:
                runner.close()
            except OSError as exc:
                log_event(self.ctx, "warn", "sandbox", "runner-close-failed", runner=key, error=str(exc))
        self._runners.clear()
