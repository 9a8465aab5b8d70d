"""CLI payload output helpers."""

from __future__ import annotations

from pathlib import Path

from ..contracts import ERROR_SCHEMA, validate
from ..core.serialize import dumps_json

TOOL = "book-verify"


def emit(text: str, report_file: str | None = None) -> None:
    if report_file:
        out_path = Path(report_file)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(text + "\n", encoding="utf-8")
    print(text)


def render_error(as_json: bool, message: str, code: int, kind: str = "generic_error") -> str:
    if as_json:
        payload = {
            "schema_name": ERROR_SCHEMA,
            "schema_version": 1,
            "tool": TOOL,
            "status": "error",
            "errors": [{"code": code, "kind": kind, "message": message}],
        }
        validate(ERROR_SCHEMA, payload)
        return dumps_json(payload, pretty=False)
    return f"{TOOL}: {message}"
