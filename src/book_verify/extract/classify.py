from __future__ import annotations

import re
from pathlib import Path

from .fences import RawFence
from .models import BlockKind, DocBlock, Expectation, FenceInfo

TOOLS = frozenset({"mdoc", "tut", "verify"})

LANGUAGE_ALIASES = {
    "py": "python",
    "python3": "python",
    "sh": "bash",
    "shell": "bash",
    "zsh": "bash",
    "shell-session": "console",
    "shellsession": "console",
    "postgres": "sql",
    "postgresql": "sql",
    "sqlite": "sql",
    "mysql": "sql",
}

COMMENT_PREFIXES = {
    "scala": "//",
    "java": "//",
    "kotlin": "//",
    "javascript": "//",
    "js": "//",
    "typescript": "//",
    "ts": "//",
    "c": "//",
    "cpp": "//",
    "rust": "//",
    "go": "//",
    "python": "#",
    "ruby": "#",
    "r": "#",
    "sql": "--",
    "haskell": "--",
    "lua": "--",
}

SILENT_MODIFIERS = frozenset({"invisible", "silent", "passthrough"})
FAILURE_MODIFIERS = frozenset({"fail", "crash"})

RESULT_LINE_RE = re.compile(
    r"^(?:res\d*\s*:"
    r"|[A-Za-z_$][\w$]*\s*:\s*[^=]+=\s*\S"
    r"|(?:[\w$]+\.)*[\w$]*(?:Error|Exception)\b"
    r"|error:)"
)
RES_TAG_RE = re.compile(r"^res:\s+(?=[A-Za-z_$][\w$]*\s*:)")
PLACEHOLDER_RE = re.compile(r"^\s*(?:TODO\b.*)?\s*$", re.IGNORECASE | re.DOTALL)


def normalize_language(token: str) -> str:
    lang = token.strip().lstrip(".").lower()
    return LANGUAGE_ALIASES.get(lang, lang)


def _split_tool(token: str) -> tuple[str, tuple[str, ...]] | None:
    head, _, tail = token.partition(":")
    if head not in TOOLS:
        return None
    return head, tuple(part for part in tail.split(":") if part)


def parse_fence_info(raw: str) -> FenceInfo:
    tokens = [tok.lstrip(".") for tok in raw.replace("{", " ").replace("}", " ").split()]
    tokens = [tok for tok in tokens if tok]
    if not tokens:
        return FenceInfo(raw=raw, language="")
    first = _split_tool(tokens[0])
    if first is not None:
        # bare ```tut:book / ```mdoc fences are Scala by convention
        tool, modifiers = first
        return FenceInfo(raw=raw, language="scala", tool=tool, modifiers=modifiers)
    language = normalize_language(tokens[0])
    tool = ""
    modifiers: list[str] = []
    for token in tokens[1:]:
        parsed = _split_tool(token)
        if parsed is None:
            continue
        tool = tool or parsed[0]
        modifiers.extend(parsed[1])
    return FenceInfo(raw=raw, language=language, tool=tool, modifiers=tuple(modifiers))


def expectation_for(info: FenceInfo) -> Expectation:
    mods = set(info.modifiers)
    if mods & FAILURE_MODIFIERS:
        return Expectation.FAILURE
    if mods & SILENT_MODIFIERS:
        return Expectation.SILENT
    return Expectation.OUTPUT


def comment_prefix(language: str) -> str | None:
    return COMMENT_PREFIXES.get(language)


def strip_comment(line: str, prefix: str) -> str:
    body = line.strip()[len(prefix):]
    return body[1:] if body.startswith(" ") else body


def clean_expected(lines: list[str]) -> str:
    return "\n".join(RES_TAG_RE.sub("", line) for line in lines)


def split_inline_expected(raw_text: str, language: str) -> tuple[str, str | None, int | None]:
    """Split trailing REPL-result comments off a block.

    Returns ``(code, expected, offset)`` where ``offset`` is the 0-based line
    index of the first expected line inside the block, or ``None`` when the
    block carries no result comments.
    """
    prefix = comment_prefix(language)
    lines = raw_text.splitlines()
    if prefix is None:
        return raw_text, None, None
    end = len(lines)
    while end > 0 and not lines[end - 1].strip():
        end -= 1
    start = end
    while start > 0 and lines[start - 1].strip().startswith(prefix):
        start -= 1
    if start == end:
        return raw_text, None, None
    run = [strip_comment(line, prefix) for line in lines[start:end]]
    if not RESULT_LINE_RE.match(run[0]):
        return raw_text, None, None
    code_lines = lines[:start]
    while code_lines and not code_lines[-1].strip():
        code_lines.pop()
    code = "\n".join(code_lines) + ("\n" if code_lines else "")
    return code, clean_expected(run), start


def comment_only_text(raw_text: str, language: str) -> str | None:
    prefix = comment_prefix(language)
    if prefix is None:
        return None
    lines = [line for line in raw_text.splitlines() if line.strip()]
    if not lines or not all(line.strip().startswith(prefix) for line in lines):
        return None
    return clean_expected([strip_comment(line, prefix) for line in lines])


def is_placeholder(expected: str) -> bool:
    return bool(PLACEHOLDER_RE.match(expected))


def _is_transcript(info: FenceInfo, raw_text: str) -> bool:
    if info.language == "console":
        return True
    if info.language != "bash":
        return False
    for line in raw_text.splitlines():
        if line.strip():
            return line.lstrip().startswith("$ ")
    return False


def classify_block(fence: RawFence, path: Path, ordinal: int, demoted: bool = False) -> DocBlock:
    info = parse_fence_info(fence.info)
    base = {
        "source_file": path,
        "start_line": fence.start_line,
        "end_line": fence.end_line,
        "raw_text": fence.raw_text,
        "info": info,
        "code": fence.raw_text,
        "ordinal": ordinal,
    }
    if demoted or info.has("compile-only"):
        return DocBlock(kind=BlockKind.ILLUSTRATIVE, **base)
    if _is_transcript(info, fence.raw_text):
        expected = fence.raw_text.rstrip("\n")
        return DocBlock(
            kind=BlockKind.SHELL_TRANSCRIPT,
            expected_output=(expected if info.annotated else None),
            expected_line=(fence.start_line + 1 if info.annotated else None),
            **base,
        )
    expectation = expectation_for(info)
    code, expected, offset = (fence.raw_text, None, None)
    if expectation is not Expectation.SILENT:
        code, expected, offset = split_inline_expected(fence.raw_text, info.language)
    if not info.annotated and (expected is None or not code.strip()):
        return DocBlock(kind=BlockKind.ILLUSTRATIVE, **base)
    placeholder = expected is not None and is_placeholder(expected)
    base["code"] = code
    return DocBlock(
        kind=BlockKind.EXECUTABLE,
        expectation=expectation,
        expected_output=(None if placeholder else expected),
        expected_line=(fence.start_line + 1 + offset if offset is not None and not placeholder else None),
        placeholder=placeholder,
        **base,
    )
