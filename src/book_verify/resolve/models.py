from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from ..extract.models import BlockRef, DocBlock


@dataclass(frozen=True)
class UnresolvedDependency:
    block: BlockRef
    names: tuple[str, ...]
    message: str


@dataclass(frozen=True)
class Session:
    session_id: str
    chapter_file: str
    ordinal: int
    blocks: tuple[DocBlock, ...]
    predecessors: Mapping[BlockRef, tuple[BlockRef, ...]] = field(default_factory=dict)

    @property
    def executable(self) -> tuple[DocBlock, ...]:
        return tuple(block for block in self.blocks if block.runnable)

    @property
    def files(self) -> tuple[str, ...]:
        seen: list[str] = []
        for block in self.blocks:
            name = block.source_file.as_posix()
            if name not in seen:
                seen.append(name)
        return tuple(seen)


@dataclass(frozen=True)
class SessionPlan:
    sessions: tuple[Session, ...]
    dependencies: tuple[UnresolvedDependency, ...] = ()
    warnings: tuple[str, ...] = ()

    def block(self, ref: BlockRef) -> DocBlock:
        for session in self.sessions:
            for block in session.blocks:
                if block.ref == ref:
                    return block
        raise KeyError(str(ref))
