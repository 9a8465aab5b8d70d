from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..errors import ExtractionError


class BlockKind(str, Enum):
    EXECUTABLE = "executable"
    EXPECTED_OUTPUT = "expected_output"
    SHELL_TRANSCRIPT = "shell_transcript"
    ILLUSTRATIVE = "illustrative"


class Expectation(str, Enum):
    OUTPUT = "output"
    SILENT = "silent"
    FAILURE = "failure"


@dataclass(frozen=True, order=True)
class BlockRef:
    source_file: str
    start_line: int

    def __str__(self) -> str:
        return f"{self.source_file}:{self.start_line}"


@dataclass(frozen=True)
class FenceInfo:
    raw: str
    language: str
    tool: str = ""
    modifiers: tuple[str, ...] = ()

    @property
    def annotated(self) -> bool:
        return bool(self.tool)

    def has(self, modifier: str) -> bool:
        return modifier in self.modifiers


@dataclass(frozen=True)
class DocBlock:
    source_file: Path
    start_line: int
    end_line: int
    kind: BlockKind
    raw_text: str
    info: FenceInfo
    code: str = ""
    expectation: Expectation = Expectation.OUTPUT
    expected_output: str | None = None
    expected_line: int | None = None
    placeholder: bool = False
    session_id: str = ""
    ordinal: int = 0

    def __post_init__(self) -> None:
        if self.end_line <= self.start_line:
            raise ValueError(f"{self.source_file}:{self.start_line}: end_line must follow start_line")

    @property
    def language(self) -> str:
        return self.info.language

    @property
    def ref(self) -> BlockRef:
        return BlockRef(self.source_file.as_posix(), self.start_line)

    @property
    def runnable(self) -> bool:
        if self.kind is BlockKind.EXECUTABLE:
            return True
        return self.kind is BlockKind.SHELL_TRANSCRIPT and self.info.annotated

    @property
    def checks_output(self) -> bool:
        return self.runnable and self.expectation is not Expectation.SILENT and self.expected_output is not None


class MarkerKind(str, Enum):
    SESSION_BREAK = "session-break"
    CONTINUE = "continue"
    CONTINUES_FROM = "continues-from"
    SESSION = "session"
    SKIP = "skip"


@dataclass(frozen=True)
class SessionMarker:
    kind: MarkerKind
    line: int
    argument: str = ""


@dataclass(frozen=True)
class FileExtraction:
    path: Path
    blocks: tuple[DocBlock, ...] = ()
    markers: tuple[SessionMarker, ...] = ()
    error: ExtractionError | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.error is None
