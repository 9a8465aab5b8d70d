"""Block extraction: Markdown chapters in, classified fenced blocks out."""

from __future__ import annotations

from .classify import parse_fence_info
from .extractor import extract_file, extract_sources, extract_text
from .models import BlockKind, BlockRef, DocBlock, Expectation, FenceInfo, FileExtraction, MarkerKind, SessionMarker

__all__ = [
    "BlockKind",
    "BlockRef",
    "DocBlock",
    "Expectation",
    "FenceInfo",
    "FileExtraction",
    "MarkerKind",
    "SessionMarker",
    "extract_file",
    "extract_sources",
    "extract_text",
    "parse_fence_info",
]
