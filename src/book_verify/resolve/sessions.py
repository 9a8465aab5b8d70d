from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

from ..core.logging import log_event
from ..extract.models import BlockRef, DocBlock, FileExtraction, MarkerKind, SessionMarker
from .dependencies import find_unresolved
from .models import Session, SessionPlan

if TYPE_CHECKING:
    from ..core.context import RunContext


class _Groups:
    """Union-find over segment keys; the root is the earliest segment."""

    def __init__(self, order: dict[str, tuple[int, int]]) -> None:
        self.order = order
        self.parent: dict[str, str] = {key: key for key in order}

    def find(self, key: str) -> str:
        while self.parent[key] != key:
            self.parent[key] = self.parent[self.parent[key]]
            key = self.parent[key]
        return key

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        first, second = sorted((ra, rb), key=lambda k: self.order[k])
        self.parent[second] = first


def _segment_file(
    path: Path, markers: tuple[SessionMarker, ...], blocks: tuple[DocBlock, ...]
) -> tuple[dict[BlockRef, str], list[str], list[tuple[str, str]], list[str]]:
    """Assign every block of one file to a segment key.

    Returns ``(assignments, segments, links, warnings)`` where ``links`` are
    pending ``continues-from`` requests ``(segment, target file)``.
    """
    name = path.as_posix()
    counter = 1
    current = f"{name}#1"
    history = [current]
    assignments: dict[BlockRef, str] = {}
    links: list[tuple[str, str]] = []
    warnings: list[str] = []
    events: list[tuple[int, int, SessionMarker | DocBlock]] = [(m.line, 0, m) for m in markers]
    events.extend((b.start_line, 1, b) for b in blocks)
    for _line, _order, item in sorted(events, key=lambda row: (row[0], row[1])):
        if isinstance(item, SessionMarker):
            if item.kind is MarkerKind.SESSION_BREAK:
                counter += 1
                current = f"{name}#{counter}"
                history.append(current)
            elif item.kind is MarkerKind.CONTINUE:
                pos = history.index(current)
                if pos == 0:
                    warnings.append(f"{name}:{item.line}: verify:continue has no earlier session to join")
                else:
                    current = history[pos - 1]
            elif item.kind is MarkerKind.CONTINUES_FROM:
                links.append((current, item.argument))
            elif item.kind is MarkerKind.SESSION:
                current = f"named:{item.argument}"
                if current not in history:
                    history.append(current)
            continue
        block = item
        if block.runnable and block.info.has("reset") and any(v == current for v in assignments.values()):
            counter += 1
            current = f"{name}#{counter}"
            history.append(current)
        assignments[block.ref] = current
    return assignments, history, links, warnings


def _match_file(target: str, names: list[str]) -> str | None:
    target = target.strip().removeprefix("./")
    if target in names:
        return target
    by_basename = [n for n in names if Path(n).name == target]
    return by_basename[0] if len(by_basename) == 1 else None


def resolve_sessions(extractions: list[FileExtraction], ctx: RunContext | None = None) -> SessionPlan:
    """Group extracted blocks into sessions and compute predecessor lists."""
    usable = [ex for ex in extractions if ex.ok]
    file_rank = {ex.path.as_posix(): idx for idx, ex in enumerate(usable)}
    assignments: dict[BlockRef, str] = {}
    segment_order: dict[str, tuple[int, int]] = {}
    last_segment: dict[str, str] = {}
    pending_links: list[tuple[str, str]] = []
    warnings: list[str] = []
    blocks_by_ref: dict[BlockRef, DocBlock] = {}

    for ex in usable:
        name = ex.path.as_posix()
        assigned, history, links, notes = _segment_file(ex.path, ex.markers, ex.blocks)
        warnings.extend(notes)
        pending_links.extend(links)
        assignments.update(assigned)
        for block in ex.blocks:
            blocks_by_ref[block.ref] = block
            key = assigned[block.ref]
            rank = (file_rank[name], block.start_line)
            if key not in segment_order or rank < segment_order[key]:
                segment_order[key] = rank
        if ex.blocks:
            last_segment[name] = assigned[ex.blocks[-1].ref]

    groups = _Groups(segment_order)
    names = list(file_rank)
    for segment, target in pending_links:
        matched = _match_file(target, names)
        if matched is None or matched not in last_segment:
            warnings.append(f"verify:continues-from names unknown or empty file `{target}`")
            continue
        if segment not in segment_order:
            continue
        groups.union(last_segment[matched], segment)

    members: dict[str, list[DocBlock]] = {}
    for ref, key in assignments.items():
        root = groups.find(key)
        members.setdefault(root, []).append(blocks_by_ref[ref])

    sessions: list[Session] = []
    dependencies = []
    ordered_roots = sorted(members, key=lambda k: segment_order[k])
    for ordinal, root in enumerate(ordered_roots):
        ordered = sorted(members[root], key=lambda b: (file_rank[b.source_file.as_posix()], b.start_line))
        session_id = root
        annotated = tuple(replace(block, session_id=session_id) for block in ordered)
        runnable = [block for block in annotated if block.runnable]
        predecessors = {block.ref: tuple(prev.ref for prev in runnable[:idx]) for idx, block in enumerate(runnable)}
        sessions.append(
            Session(
                session_id=session_id,
                chapter_file=annotated[0].source_file.as_posix(),
                ordinal=ordinal,
                blocks=annotated,
                predecessors=predecessors,
            )
        )
        dependencies.extend(find_unresolved(runnable))

    for dep in dependencies:
        log_event(ctx, "warn", "resolve", "unresolved-dependency", block=str(dep.block), names=",".join(dep.names))
    log_event(ctx, "info", "resolve", "plan", sessions=len(sessions), runnable=sum(len(s.executable) for s in sessions))
    return SessionPlan(sessions=tuple(sessions), dependencies=tuple(dependencies), warnings=tuple(warnings))
