from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import pytest

from book_verify.core.config import CommandRunnerSpec
from book_verify.extract import extract_text
from book_verify.resolve import resolve_sessions
from book_verify.sandbox import ExecutionStatus, SandboxOptions, ephemeral_database, judge, run_plan, run_session
from book_verify.sandbox.executor import DEADLINE_REASON, FAIL_FAST_REASON
from book_verify.sandbox.models import BackingResource, RunOutcome
from book_verify.sandbox.runners import CommandRunner, split_sql

pytestmark = pytest.mark.integration


def _py(code: str, mods: str = "") -> str:
    return f"```python verify{mods}\n{code}\n```\n\n"


def _session(*parts: str, name: str = "ch.md"):
    plan = resolve_sessions([extract_text("".join(parts), Path(name))])
    return plan.sessions[0]


@pytest.fixture
def options(tmp_path: Path) -> SandboxOptions:
    return SandboxOptions(timeout_seconds=10.0, scratch_root=tmp_path / "scratch")


def test_python_state_persists_across_blocks(options: SandboxOptions) -> None:
    session = _session(_py("x = 1 + 1"), _py("x * 10"), _py('print("hi")\ny = x'))
    results = run_session(session, options)
    assert [r.status for r in results] == [ExecutionStatus.OK] * 3
    assert results[0].actual_output == "x: int = 2"
    assert results[1].actual_output == "res0: int = 20"
    assert results[2].actual_output == "hi\ny: int = 2"


def test_uncaught_exception_is_a_runtime_failure_and_later_blocks_still_run(options: SandboxOptions) -> None:
    session = _session(_py("1 / 0"), _py("z = 5"))
    first, second = run_session(session, options)
    assert first.status is ExecutionStatus.RUNTIME_FAILURE
    assert "ZeroDivisionError" in first.error
    assert second.status is ExecutionStatus.OK


def test_expected_failure_inverts_status(options: SandboxOptions) -> None:
    session = _session(_py("raise ValueError('nope')", ":fail"), _py("y = 1", ":fail"))
    raised, completed = run_session(session, options)
    assert raised.status is ExecutionStatus.OK
    assert "ValueError: nope" in raised.actual_output
    assert completed.status is ExecutionStatus.RUNTIME_FAILURE
    assert completed.reason == "expected failure but block completed"


@pytest.mark.slow
def test_timeout_cascades_to_the_rest_of_the_session(tmp_path: Path) -> None:
    options = SandboxOptions(timeout_seconds=2.0, scratch_root=tmp_path / "scratch")
    session = _session(_py("a = 1"), _py("import time\ntime.sleep(30)"), _py("b = 2"))
    first, second, third = run_session(session, options)
    assert first.status is ExecutionStatus.OK
    assert second.status is ExecutionStatus.TIMEOUT
    assert third.status is ExecutionStatus.SKIPPED
    assert third.reason == "cascade: ch.md:5 timed out"


def test_worker_crash_abandons_the_session(options: SandboxOptions) -> None:
    session = _session(_py("import os\nos._exit(3)"), _py("after = 1"))
    crashed, after = run_session(session, options)
    assert crashed.status is ExecutionStatus.RUNTIME_FAILURE
    assert crashed.reason == "runner crashed"
    assert after.status is ExecutionStatus.SKIPPED
    assert after.reason.startswith("cascade: ch.md:1")


def test_missing_runner_skips_and_cascades(options: SandboxOptions) -> None:
    session = _session("```ruby verify\nputs 1\n```\n\n", _py("x = 1"))
    first, second = run_session(session, options)
    assert first.status is ExecutionStatus.SKIPPED
    assert first.reason == "no runner for language ruby"
    assert second.status is ExecutionStatus.SKIPPED
    assert second.reason == "cascade: ch.md:1 skipped"


def test_fail_fast_stops_the_session_and_the_run(options: SandboxOptions) -> None:
    fast = SandboxOptions(timeout_seconds=10.0, fail_fast=True, scratch_root=options.scratch_root)
    stop = threading.Event()
    session = _session(_py("1 / 0"), _py("x = 1"))
    first, second = run_session(session, fast, stop=stop)
    assert first.status is ExecutionStatus.RUNTIME_FAILURE
    assert second.status is ExecutionStatus.SKIPPED
    assert second.reason == FAIL_FAST_REASON
    assert stop.is_set()
    other = _session(_py("y = 1"), name="other.md")
    (skipped,) = run_session(other, fast, stop=stop)
    assert skipped.reason == FAIL_FAST_REASON


def test_run_deadline_skips_unstarted_sessions(options: SandboxOptions) -> None:
    session = _session(_py("x = 1"), _py("y = 2"))
    results = run_session(session, options, deadline=time.monotonic() - 1)
    assert [r.reason for r in results] == [DEADLINE_REASON, DEADLINE_REASON]


def test_sql_blocks_share_the_session_database_with_python(options: SandboxOptions) -> None:
    sql = (
        "```sql verify\n"
        "CREATE TABLE t (id INTEGER, name TEXT);\n"
        "INSERT INTO t VALUES (1, 'a'), (2, NULL);\n"
        "SELECT id, name FROM t ORDER BY id;\n"
        "```\n\n"
    )
    session = _session(sql, _py('db.execute("select count(*) from t").fetchone()[0]'))
    table, count = run_session(session, options)
    assert table.status is ExecutionStatus.OK
    assert table.actual_output == "id | name\n1 | a\n2 | NULL"
    assert count.actual_output == "res0: int = 2"


def test_sql_error_is_a_runtime_failure(options: SandboxOptions) -> None:
    session = _session("```sql verify\nSELECT * FROM missing;\n```\n")
    (result,) = run_session(session, options)
    assert result.status is ExecutionStatus.RUNTIME_FAILURE
    assert "no such table: missing" in result.error


def test_shell_transcript_is_rebuilt_from_real_output(options: SandboxOptions) -> None:
    session = _session("```bash verify\n$ echo hello\nhello\n$ printf 'a\\nb\\n'\na\nb\n```\n\n")
    (result,) = run_session(session, options)
    assert result.status is ExecutionStatus.OK
    assert result.actual_output == "$ echo hello\nhello\n$ printf 'a\\nb\\n'\na\nb"


def test_failing_transcript_command_is_a_runtime_failure(options: SandboxOptions) -> None:
    session = _session("```console verify\n$ false\n```\n")
    (result,) = run_session(session, options)
    assert result.status is ExecutionStatus.RUNTIME_FAILURE
    assert "exited with 1" in result.error


def test_bash_blocks_use_the_default_command_runner(options: SandboxOptions) -> None:
    session = _session("```bash verify\necho from-bash\n```\n")
    (result,) = run_session(session, options)
    assert result.status is ExecutionStatus.OK
    assert result.actual_output == "from-bash\n"


def test_configured_command_runner_sees_session_environment(tmp_path: Path) -> None:
    options = SandboxOptions(
        timeout_seconds=10.0,
        scratch_root=tmp_path / "scratch",
        runners={"pyscript": CommandRunnerSpec(command=(sys.executable, "{file}"), extension=".py")},
    )
    code = "import os\nprint(os.environ['BOOK_VERIFY_DATABASE'].endswith('session.db'))"
    session = _session(f"```pyscript verify\n{code}\n```\n")
    (result,) = run_session(session, options)
    assert result.status is ExecutionStatus.OK
    assert result.actual_output.strip() == "True"


def test_scratch_directories_are_removed_after_each_session(options: SandboxOptions) -> None:
    run_session(_session(_py("open('note.txt', 'w').write('x')")), options)
    assert options.scratch_root is not None
    assert list(options.scratch_root.iterdir()) == []


def test_keep_scratch_leaves_the_directory(tmp_path: Path) -> None:
    root = tmp_path / "scratch"
    with ephemeral_database("a.md#1", root, keep=True) as resource:
        assert resource.database_path.is_file()
    assert resource.scratch_dir.is_dir()


def test_results_do_not_depend_on_worker_count(tmp_path: Path) -> None:
    extractions = [
        extract_text(_py("a = 1") + _py("a + 1"), Path("one.md")),
        extract_text(_py("b = 'x' * 3") + _py("b.upper()"), Path("two.md")),
    ]
    plan = resolve_sessions(extractions)

    def outcome(workers: int) -> list[tuple[str, str, str]]:
        opts = SandboxOptions(timeout_seconds=10.0, workers=workers, scratch_root=tmp_path / f"w{workers}")
        return [(str(r.block), r.status.value, r.actual_output) for r in run_plan(plan, opts)]

    assert outcome(1) == outcome(4)


def test_missing_runner_binary_fails_its_block_and_other_sessions_still_run(tmp_path: Path) -> None:
    options = SandboxOptions(
        timeout_seconds=10.0,
        scratch_root=tmp_path / "scratch",
        runners={"scala": CommandRunnerSpec(command=("no-such-scala-binary", "{file}"), extension=".scala")},
    )
    extractions = [
        extract_text("```scala verify\nval x = 1\n```\n\n" + _py("y = 2"), Path("a.md")),
        extract_text(_py("z = 3"), Path("b.md")),
    ]
    missing, after, other = run_plan(resolve_sessions(extractions), options)
    assert missing.status is ExecutionStatus.RUNTIME_FAILURE
    assert missing.reason == "runner crashed"
    assert "no-such-scala-binary" in missing.error
    assert after.status is ExecutionStatus.SKIPPED
    assert after.reason == "cascade: a.md:1 crashed"
    assert other.status is ExecutionStatus.OK
    assert other.actual_output == "z: int = 3"


def test_unusable_python_interpreter_fails_the_block_not_the_run(tmp_path: Path) -> None:
    options = SandboxOptions(
        timeout_seconds=10.0, scratch_root=tmp_path / "scratch", python=str(tmp_path / "no-python")
    )
    first, second = run_session(_session(_py("x = 1"), _py("y = 2")), options)
    assert first.status is ExecutionStatus.RUNTIME_FAILURE
    assert "cannot start python worker" in first.error
    assert second.reason == "cascade: ch.md:1 crashed"
    assert list((tmp_path / "scratch").iterdir()) == []


def test_expected_failure_does_not_hide_a_missing_runner_binary(tmp_path: Path) -> None:
    options = SandboxOptions(
        timeout_seconds=10.0,
        scratch_root=tmp_path / "scratch",
        runners={"scala": CommandRunnerSpec(command=("no-such-scala-binary", "{file}"), extension=".scala")},
    )
    (result,) = run_session(_session("```scala verify:fail\nval x: Int = \"oops\"\n```\n"), options)
    assert result.status is ExecutionStatus.RUNTIME_FAILURE


def test_command_runner_keeps_shell_braces_in_its_command(tmp_path: Path) -> None:
    options = SandboxOptions(
        timeout_seconds=10.0,
        scratch_root=tmp_path / "scratch",
        runners={"shfn": CommandRunnerSpec(command=("bash", "-c", 'f() { cat "$1"; }; f {file}'), extension=".txt")},
    )
    (result,) = run_session(_session("```shfn verify\nhello braces\n```\n"), options)
    assert result.status is ExecutionStatus.OK
    assert result.actual_output.strip() == "hello braces"


def test_command_runner_argv_substitutes_only_known_placeholders(tmp_path: Path) -> None:
    resource = BackingResource(session_id="a.md#1", scratch_dir=tmp_path, database_path=tmp_path / "session.db")
    spec = CommandRunnerSpec(command=("run", "{file}", "--db={database}", "{other}", "{ x; }"), extension=".x")
    assert CommandRunner(spec, resource).argv(tmp_path / "b.x") == [
        "run",
        str(tmp_path / "b.x"),
        f"--db={tmp_path / 'session.db'}",
        "{other}",
        "{ x; }",
    ]


def test_judge_maps_outcomes_without_running_anything() -> None:
    block = extract_text(_py("x = 1", ":crash"), Path("ch.md")).blocks[0]
    assert judge(block, RunOutcome(output="", raised=True, error="E")).status is ExecutionStatus.OK
    assert judge(block, RunOutcome(output="")).status is ExecutionStatus.RUNTIME_FAILURE
    assert judge(block, RunOutcome(output="", timed_out=True)).status is ExecutionStatus.TIMEOUT
    crashed = judge(block, RunOutcome(output="", raised=True, error="E", crashed=True))
    assert crashed.status is ExecutionStatus.RUNTIME_FAILURE
    assert crashed.reason == "runner crashed"


def test_split_sql_keeps_statements_whole() -> None:
    script = "CREATE TABLE t (v TEXT);\nINSERT INTO t VALUES ('a;b');\nSELECT v\nFROM t;\n"
    assert split_sql(script) == [
        "CREATE TABLE t (v TEXT);",
        "INSERT INTO t VALUES ('a;b');",
        "SELECT v\nFROM t;",
    ]
