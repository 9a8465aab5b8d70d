from __future__ import annotations

from fnmatch import fnmatch
from pathlib import Path


def _matches(rel: str, patterns: tuple[str, ...]) -> bool:
    return any(fnmatch(rel, pattern) or fnmatch(Path(rel).name, pattern) for pattern in patterns)


def discover_sources(
    source_root: Path,
    include: tuple[str, ...] = ("**/*.md",),
    exclude: tuple[str, ...] = (),
) -> list[Path]:
    """Return source-relative Markdown paths in a stable (posix-sorted) order."""
    found: set[Path] = set()
    for pattern in include:
        for path in source_root.glob(pattern):
            if path.is_file():
                found.add(path.relative_to(source_root))
    rows = [p for p in found if not _matches(p.as_posix(), exclude)]
    return sorted(rows, key=lambda p: p.as_posix())
