from __future__ import annotations

import re
from typing import Iterable

from ..extract.models import DocBlock
from .models import UnresolvedDependency

CREATE_RE = re.compile(
    r"\bcreate\s+(?:temp(?:orary)?\s+)?(?:table|view)\s+(?:if\s+not\s+exists\s+)?[\"`\[]?([A-Za-z_]\w*)",
    re.IGNORECASE,
)
REFERENCE_RE = re.compile(
    r"\b(?:from|join|into|update|table)\s+(?:if\s+(?:not\s+)?exists\s+)?[\"`\[]?([A-Za-z_]\w*)",
    re.IGNORECASE,
)
STRING_LITERAL_RE = re.compile(
    r'"""(.*?)"""|\'\'\'(.*?)\'\'\'|"((?:[^"\\\n]|\\.)*)"|\'((?:[^\'\\\n]|\\.)*)\'',
    re.DOTALL,
)
SQL_HINT_RE = re.compile(r"\b(select|insert|update|delete|create|drop|alter)\b", re.IGNORECASE)
IGNORED_NAMES = frozenset({"sqlite_master", "sqlite_schema", "sqlite_sequence", "dual", "select", "values", "set"})


def sql_fragments(block: DocBlock) -> list[str]:
    if block.language == "sql":
        return [block.code]
    fragments: list[str] = []
    for match in STRING_LITERAL_RE.finditer(block.code):
        text = next((group for group in match.groups() if group is not None), "")
        if SQL_HINT_RE.search(text):
            fragments.append(text)
    return fragments


def created_tables(block: DocBlock) -> set[str]:
    return {name.lower() for text in sql_fragments(block) for name in CREATE_RE.findall(text)}


def referenced_tables(block: DocBlock) -> set[str]:
    names = {name.lower() for text in sql_fragments(block) for name in REFERENCE_RE.findall(text)}
    return names - IGNORED_NAMES


def find_unresolved(ordered: Iterable[DocBlock]) -> list[UnresolvedDependency]:
    """Flag blocks that use tables no earlier block in the session creates."""
    known: set[str] = set()
    out: list[UnresolvedDependency] = []
    for block in ordered:
        created = created_tables(block)
        missing = sorted(referenced_tables(block) - known - created)
        if missing:
            out.append(
                UnresolvedDependency(
                    block=block.ref,
                    names=tuple(missing),
                    message=f"{block.ref}: references {', '.join(missing)} not created earlier in session {block.session_id}",
                )
            )
        known |= created
    return out
