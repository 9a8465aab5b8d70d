"""Output normalization applied to both sides before comparison."""

from __future__ import annotations

import re
from typing import Iterable

from ..core.config import MaskPattern

DEFAULT_MASKS: tuple[MaskPattern, ...] = (
    MaskPattern.compile(r"\b\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?", "<timestamp>"),
    MaskPattern.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b", "<uuid>"),
    MaskPattern.compile(r"@[0-9a-f]{4,}\b", "@<hash>"),
    MaskPattern.compile(r"\b0x[0-9a-fA-F]+\b", "0x<addr>"),
    MaskPattern.compile(r"\bres\d+\b", "res"),
)

_BLANKS_RE = re.compile(r"[ \t]+")
PLACEHOLDER_TOKENS = ("...", "…")
_PLACEHOLDER_SPLIT_RE = re.compile(r"\.\.\.|…")


def _collapse(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_BLANKS_RE.sub(" ", line).rstrip() for line in text.split("\n")]
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def apply_masks(text: str, masks: Iterable[MaskPattern]) -> str:
    for mask in masks:
        text = mask.pattern.sub(mask.replacement, text)
    return text


def normalize(text: str, masks: Iterable[MaskPattern] = ()) -> str:
    """Canonicalize ``text``; default masks always apply, ``masks`` are extra."""
    collapsed = _collapse(text)
    return _collapse(apply_masks(collapsed, (*DEFAULT_MASKS, *masks)))


def _is_wildcard_line(line: str) -> bool:
    return line.strip() in PLACEHOLDER_TOKENS


def _line_matches(expected: str, actual: str) -> bool:
    if not any(token in expected for token in PLACEHOLDER_TOKENS):
        return expected == actual
    parts = _PLACEHOLDER_SPLIT_RE.split(expected)
    pattern = ".*".join(re.escape(part) for part in parts)
    return re.fullmatch(pattern, actual) is not None


def align_placeholders(expected: str, actual: str) -> str:
    """Rewrite the spans of ``actual`` covered by ``...`` in ``expected``.

    A line consisting only of ``...`` absorbs any number of actual lines; a
    ``...`` inside a line absorbs any run of characters on that line. When
    no alignment exists ``actual`` is returned unchanged.
    """
    if not any(token in expected for token in PLACEHOLDER_TOKENS):
        return actual
    exp = expected.split("\n")
    act = actual.split("\n") if actual else []
    n, m = len(exp), len(act)
    ok = [[False] * (m + 1) for _ in range(n + 1)]
    ok[n][m] = True
    for i in range(n - 1, -1, -1):
        for j in range(m, -1, -1):
            if _is_wildcard_line(exp[i]):
                ok[i][j] = ok[i + 1][j] or (j < m and ok[i][j + 1])
            else:
                ok[i][j] = j < m and ok[i + 1][j + 1] and _line_matches(exp[i], act[j])
    if not ok[0][0]:
        return actual
    out: list[str] = []
    i = j = 0
    while i < n:
        if _is_wildcard_line(exp[i]):
            while not ok[i + 1][j]:
                j += 1
        else:
            j += 1
        out.append(exp[i])
        i += 1
    return "\n".join(out)
