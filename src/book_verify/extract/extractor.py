from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

from ..core.logging import log_event
from ..errors import ExtractionError
from .classify import classify_block, comment_only_text, is_placeholder
from .fences import RawFence, scan_fences
from .models import BlockKind, DocBlock, Expectation, FileExtraction, MarkerKind, SessionMarker

if TYPE_CHECKING:
    from ..core.context import RunContext


def _only_blank_between(lines: list[str], after_line: int, before_line: int) -> bool:
    # lines is 0-based; fence line numbers are 1-based
    return all(not lines[idx].strip() for idx in range(after_line, before_line - 1))


def _pair_expected_blocks(blocks: list[DocBlock], lines: list[str]) -> tuple[list[DocBlock], list[str]]:
    out: list[DocBlock] = []
    warnings: list[str] = []
    idx = 0
    while idx < len(blocks):
        block = blocks[idx]
        nxt = blocks[idx + 1] if idx + 1 < len(blocks) else None
        wants_pair = (
            block.runnable
            and block.kind is BlockKind.EXECUTABLE
            and block.expectation is not Expectation.SILENT
            and block.expected_output is None
            and not block.placeholder
            and nxt is not None
            and nxt.kind is BlockKind.ILLUSTRATIVE
            and nxt.language in {"", block.language}
            and _only_blank_between(lines, block.end_line, nxt.start_line)
        )
        expected = comment_only_text(nxt.raw_text, block.language) if wants_pair and nxt is not None else None
        if nxt is None or expected is None:
            out.append(block)
            idx += 1
            continue
        if is_placeholder(expected):
            block = replace(block, placeholder=True)
        else:
            block = replace(block, expected_output=expected, expected_line=nxt.start_line + 1)
        out.append(block)
        out.append(replace(nxt, kind=BlockKind.EXPECTED_OUTPUT))
        idx += 2
    for block in out:
        if block.placeholder:
            warnings.append(f"{block.ref}: expected output is a placeholder; output is not compared")
    return out, warnings


def _demoted_lines(markers: list[SessionMarker], fences: list[RawFence]) -> set[int]:
    demoted: set[int] = set()
    for marker in markers:
        if marker.kind is not MarkerKind.SKIP:
            continue
        following = [f.start_line for f in fences if f.start_line > marker.line]
        if following:
            demoted.add(min(following))
    return demoted


def extract_text(text: str, rel_path: Path) -> FileExtraction:
    fences, markers = scan_fences(text, rel_path)
    demoted = _demoted_lines(markers, fences)
    blocks = [
        classify_block(fence, rel_path, ordinal, demoted=(fence.start_line in demoted))
        for ordinal, fence in enumerate(fences)
    ]
    paired, warnings = _pair_expected_blocks(blocks, text.splitlines())
    return FileExtraction(path=rel_path, blocks=tuple(paired), markers=tuple(markers), warnings=tuple(warnings))


def extract_file(source_root: Path, rel_path: Path, ctx: RunContext | None = None) -> FileExtraction:
    try:
        text = (source_root / rel_path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        err = ExtractionError(rel_path, 1, f"cannot read source: {exc}")
        log_event(ctx, "warn", "extract", "read-failed", file=rel_path.as_posix(), error=str(exc))
        return FileExtraction(path=rel_path, error=err)
    try:
        extraction = extract_text(text, rel_path)
    except ExtractionError as exc:
        log_event(ctx, "warn", "extract", "malformed", file=rel_path.as_posix(), line=exc.line, error=exc.reason)
        return FileExtraction(path=rel_path, error=exc)
    log_event(
        ctx,
        "debug",
        "extract",
        "file",
        file=rel_path.as_posix(),
        blocks=len(extraction.blocks),
        runnable=sum(1 for b in extraction.blocks if b.runnable),
    )
    return extraction


def extract_sources(source_root: Path, rel_paths: list[Path], ctx: RunContext | None = None) -> list[FileExtraction]:
    return [extract_file(source_root, rel, ctx) for rel in rel_paths]
