from __future__ import annotations

import string
import textwrap
from pathlib import Path

from hypothesis import given
from hypothesis import strategies as st

from book_verify.extract import BlockKind, Expectation, extract_file, extract_text
from book_verify.extract.models import MarkerKind

CHAPTER = Path("ch1.md")


def _extract(text: str):
    return extract_text(textwrap.dedent(text).lstrip("\n"), CHAPTER)


def test_mdoc_block_with_inline_result_is_executable() -> None:
    ex = _extract(
        """
        # Chapter

        ```scala mdoc
        val x = 1 + 1
        // x: Int = 2
        ```
        """
    )
    assert ex.ok
    (block,) = ex.blocks
    assert block.kind is BlockKind.EXECUTABLE
    assert (block.start_line, block.end_line) == (3, 6)
    assert block.code == "val x = 1 + 1\n"
    assert block.expected_output == "x: Int = 2"
    assert block.expected_line == 5
    assert block.language == "scala"
    assert block.info.tool == "mdoc"


def test_res_tag_is_stripped_from_expected_output() -> None:
    ex = _extract(
        """
        ```scala mdoc
        xs.map(_ + 1)
        // res: res0: List[Int] = List(2, 3)
        ```
        """
    )
    assert ex.blocks[0].expected_output == "res0: List[Int] = List(2, 3)"


def test_unannotated_block_without_results_is_illustrative() -> None:
    ex = _extract(
        """
        ```scala
        trait Shape
        ```
        """
    )
    assert ex.blocks[0].kind is BlockKind.ILLUSTRATIVE
    assert not ex.blocks[0].runnable


def test_bare_tut_fence_defaults_to_scala() -> None:
    ex = _extract(
        """
        ```tut:book
        val y = 3
        ```
        """
    )
    block = ex.blocks[0]
    assert block.language == "scala"
    assert block.info.tool == "tut"
    assert block.info.modifiers == ("book",)
    assert block.kind is BlockKind.EXECUTABLE


def test_modifiers_map_to_expectations() -> None:
    ex = _extract(
        """
        ```scala mdoc:invisible
        val hidden = 1
        // hidden: Int = 1
        ```

        ```scala mdoc:fail
        val broken: String = 1
        ```

        ```scala mdoc:crash
        ???
        ```
        """
    )
    silent, fail, crash = ex.blocks
    assert silent.expectation is Expectation.SILENT
    assert silent.expected_output is None
    assert not silent.checks_output
    assert fail.expectation is Expectation.FAILURE
    assert crash.expectation is Expectation.FAILURE


def test_compile_only_block_is_illustrative() -> None:
    ex = _extract(
        """
        ```scala mdoc:compile-only
        def run(): Unit = ???
        ```
        """
    )
    assert ex.blocks[0].kind is BlockKind.ILLUSTRATIVE


def test_shell_transcript_needs_annotation_to_run() -> None:
    ex = _extract(
        """
        ```console
        $ echo hi
        hi
        ```

        ```bash verify
        $ echo hello
        hello
        ```
        """
    )
    plain, annotated = ex.blocks
    assert plain.kind is BlockKind.SHELL_TRANSCRIPT
    assert not plain.runnable
    assert annotated.kind is BlockKind.SHELL_TRANSCRIPT
    assert annotated.runnable
    assert annotated.expected_output == "$ echo hello\nhello"


def test_following_comment_block_is_paired_as_expected_output() -> None:
    ex = _extract(
        """
        ```python verify
        x = 41 + 1
        ```

        ```python
        # x: int = 42
        ```
        """
    )
    code, expected = ex.blocks
    assert code.kind is BlockKind.EXECUTABLE
    assert code.expected_output == "x: int = 42"
    assert code.expected_line == 6
    assert expected.kind is BlockKind.EXPECTED_OUTPUT


def test_placeholder_expected_output_warns_and_disables_comparison() -> None:
    ex = _extract(
        """
        ```scala mdoc
        val z = 9
        ```

        ```scala
        // TODO
        ```
        """
    )
    block = ex.blocks[0]
    assert block.placeholder
    assert block.expected_output is None
    assert not block.checks_output
    assert any("placeholder" in warning for warning in ex.warnings)


def test_skip_marker_demotes_next_block() -> None:
    ex = _extract(
        """
        <!-- verify:skip -->
        ```python verify
        import network_only_module
        ```
        """
    )
    assert ex.markers[0].kind is MarkerKind.SKIP
    assert ex.blocks[0].kind is BlockKind.ILLUSTRATIVE


def test_tilde_fences_and_longer_backtick_runs() -> None:
    ex = _extract(
        """
        ~~~python verify
        a = 1
        ~~~

        ````markdown
        ```scala
        nested
        ```
        ````
        """
    )
    assert [b.language for b in ex.blocks] == ["python", "markdown"]
    assert "```scala" in ex.blocks[1].raw_text


def test_unterminated_fence_is_reported_with_its_line(tmp_path: Path) -> None:
    (tmp_path / "broken.md").write_text("intro\n\n```scala mdoc\nval x = 1\n", encoding="utf-8")
    ex = extract_file(tmp_path, Path("broken.md"))
    assert not ex.ok
    assert ex.error is not None
    assert ex.error.line == 3
    assert "unterminated" in ex.error.reason
    assert ex.blocks == ()


def test_unknown_marker_is_an_extraction_error(tmp_path: Path) -> None:
    (tmp_path / "ch.md").write_text("<!-- verify:explode -->\n", encoding="utf-8")
    ex = extract_file(tmp_path, Path("ch.md"))
    assert not ex.ok
    assert "unknown verify marker" in str(ex.error)


def test_undecodable_file_is_an_extraction_error(tmp_path: Path) -> None:
    (tmp_path / "bin.md").write_bytes(b"\xff\xfe\x00bad")
    ex = extract_file(tmp_path, Path("bin.md"))
    assert not ex.ok
    assert ex.error is not None and ex.error.path == Path("bin.md")


_LINE = st.text(alphabet=string.ascii_letters + string.digits + " =+()#:.,", max_size=30)


@given(st.lists(_LINE, max_size=8), st.integers(min_value=0, max_value=3))
def test_block_text_round_trips_through_extraction(lines: list[str], prose_lines: int) -> None:
    body = "".join(f"{line}\n" for line in lines)
    prose = "".join(f"prose {i}\n" for i in range(prose_lines))
    ex = extract_text(f"{prose}```text\n{body}```\n", CHAPTER)
    (block,) = ex.blocks
    assert block.raw_text == body
    assert block.start_line == prose_lines + 1
    assert block.end_line == prose_lines + len(lines) + 2
