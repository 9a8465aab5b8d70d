from __future__ import annotations

import difflib
from dataclasses import dataclass
from typing import Iterable

from ..core.config import MaskPattern
from ..extract.models import BlockRef, DocBlock
from ..sandbox.models import ExecutionResult, ExecutionStatus
from .normalize import align_placeholders, normalize


@dataclass(frozen=True)
class DiffVerdict:
    block: BlockRef
    expected_normalized: str
    actual_normalized: str
    match: bool
    diff_hunks: tuple[str, ...] = ()
    expected_line: int | None = None


def diff_hunks(expected: str, actual: str, label: str = "") -> tuple[str, ...]:
    lines = difflib.unified_diff(
        expected.split("\n") if expected else [],
        actual.split("\n") if actual else [],
        fromfile=f"expected {label}".strip(),
        tofile=f"actual {label}".strip(),
        lineterm="",
    )
    hunks: list[list[str]] = []
    for line in lines:
        if line.startswith("@@"):
            hunks.append([line])
        elif hunks:
            hunks[-1].append(line)
    return tuple("\n".join(hunk) for hunk in hunks)


def compare(
    block: DocBlock,
    result: ExecutionResult,
    masks: Iterable[MaskPattern] = (),
    ellipsis: bool = True,
) -> DiffVerdict | None:
    """Compare expected and actual output of an executed block.

    Returns ``None`` when the block has nothing to compare: it did not run
    cleanly, it is silent, or its expected output is absent or a placeholder.
    """
    if result.status is not ExecutionStatus.OK or not block.checks_output:
        return None
    masks = tuple(masks)
    expected = normalize(block.expected_output or "", masks)
    actual = normalize(result.actual_output, masks)
    if ellipsis:
        actual = align_placeholders(expected, actual)
    match = expected == actual
    return DiffVerdict(
        block=block.ref,
        expected_normalized=expected,
        actual_normalized=actual,
        match=match,
        diff_hunks=(() if match else diff_hunks(expected, actual, str(block.ref))),
        expected_line=block.expected_line,
    )
