from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from ..errors import ExtractionError
from .models import MarkerKind, SessionMarker

OPEN_FENCE_RE = re.compile(r"^(?P<indent> {0,3})(?P<fence>`{3,}|~{3,})(?P<info>.*)$")
MARKER_RE = re.compile(r"^\s*<!--\s*verify:(?P<kind>[a-z-]+)(?:\s+(?P<arg>.*?))?\s*-->\s*$")


@dataclass(frozen=True)
class RawFence:
    start_line: int
    end_line: int
    info: str
    raw_text: str


def _closes(line: str, fence: str) -> bool:
    stripped = line.rstrip("\r\n")
    body = stripped.lstrip(" ")
    if len(stripped) - len(body) > 3:
        return False
    run = len(body) - len(body.lstrip(fence[0]))
    return run >= len(fence) and not body[run:].strip()


def parse_marker(line: str, lineno: int, path: Path) -> SessionMarker | None:
    match = MARKER_RE.match(line)
    if not match:
        return None
    try:
        kind = MarkerKind(match.group("kind"))
    except ValueError as exc:
        raise ExtractionError(path, lineno, f"unknown verify marker `{match.group('kind')}`") from exc
    argument = (match.group("arg") or "").strip()
    if kind in {MarkerKind.CONTINUES_FROM, MarkerKind.SESSION} and not argument:
        raise ExtractionError(path, lineno, f"verify:{kind.value} requires an argument")
    return SessionMarker(kind=kind, line=lineno, argument=argument)


def scan_fences(text: str, path: Path) -> tuple[list[RawFence], list[SessionMarker]]:
    """Split Markdown into fenced regions and prose session markers.

    Line numbers are 1-based and point at the fence lines themselves, so a
    block's content spans ``start_line + 1 .. end_line - 1``.
    """
    lines = text.splitlines(keepends=True)
    fences: list[RawFence] = []
    markers: list[SessionMarker] = []
    open_fence: str | None = None
    open_line = 0
    open_info = ""
    body: list[str] = []
    for lineno, line in enumerate(lines, start=1):
        if open_fence is None:
            match = OPEN_FENCE_RE.match(line.rstrip("\r\n"))
            if match:
                fence = match.group("fence")
                info = match.group("info").strip()
                if fence[0] == "`" and "`" in info:
                    continue
                open_fence, open_line, open_info, body = fence, lineno, info, []
                continue
            marker = parse_marker(line, lineno, path)
            if marker is not None:
                markers.append(marker)
            continue
        if _closes(line, open_fence):
            fences.append(RawFence(start_line=open_line, end_line=lineno, info=open_info, raw_text="".join(body)))
            open_fence = None
            continue
        body.append(line)
    if open_fence is not None:
        raise ExtractionError(path, open_line, f"unterminated code fence `{open_fence}` opened here")
    return fences, markers
