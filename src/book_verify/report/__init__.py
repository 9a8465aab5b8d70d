"""Normalization, diffing and report rendering."""

from __future__ import annotations

from .diff import DiffVerdict, compare, diff_hunks
from .normalize import DEFAULT_MASKS, align_placeholders, normalize
from .reporter import (
    BlockReport,
    Summary,
    VerificationReport,
    build_report,
    exit_code_for,
    plan_payload,
    render_plan,
    render_text,
    to_payload,
)

__all__ = [
    "DEFAULT_MASKS",
    "BlockReport",
    "DiffVerdict",
    "Summary",
    "VerificationReport",
    "align_placeholders",
    "build_report",
    "compare",
    "diff_hunks",
    "exit_code_for",
    "normalize",
    "plan_payload",
    "render_plan",
    "render_text",
    "to_payload",
]
