"""Session-scoped Python interpreter driven over JSON lines.

The parent process sends one request per line on stdin::

    {"id": 1, "code": "x = 1 + 1"}

and receives one response per line on the protocol channel::

    {"id": 1, "output": "x: int = 2", "raised": false, "error": ""}

Names defined by one block stay visible to later blocks of the same session.
The code sees ``db`` (a sqlite3 connection to the session database) and
``scratch`` (the session scratch directory).
"""

from __future__ import annotations

import argparse
import ast
import io
import json
import os
import sqlite3
import sys
import traceback
from contextlib import redirect_stdout
from pathlib import Path
from typing import Any


class Interpreter:
    def __init__(self, database: Path, scratch: Path) -> None:
        self.db = sqlite3.connect(database, isolation_level=None)
        self.namespace: dict[str, Any] = {
            "__name__": "__book__",
            "__builtins__": __builtins__,
            "db": self.db,
            "scratch": scratch,
        }
        self.counter = 0

    def _render(self, name: str, value: Any) -> str:
        return f"{name}: {type(value).__name__} = {value!r}"

    def _bound_names(self, node: ast.stmt) -> list[str]:
        targets: list[ast.expr] = []
        if isinstance(node, ast.Assign):
            targets = list(node.targets)
        elif isinstance(node, (ast.AnnAssign, ast.AugAssign)) and getattr(node, "value", None) is not None:
            targets = [node.target]
        names: list[str] = []
        for target in targets:
            elements = target.elts if isinstance(target, (ast.Tuple, ast.List)) else [target]
            names.extend(el.id for el in elements if isinstance(el, ast.Name))
        return names

    def run(self, code: str) -> list[str]:
        tree = ast.parse(code, filename="<block>", mode="exec")
        results: list[str] = []
        if not tree.body:
            return results
        last = tree.body[-1]
        if isinstance(last, ast.Expr):
            head = ast.Module(body=tree.body[:-1], type_ignores=[])
            exec(compile(head, "<block>", "exec"), self.namespace)
            value = eval(compile(ast.Expression(last.value), "<block>", "eval"), self.namespace)
            if value is not None:
                results.append(self._render(f"res{self.counter}", value))
                self.counter += 1
            return results
        exec(compile(tree, "<block>", "exec"), self.namespace)
        for name in self._bound_names(last):
            if name in self.namespace:
                results.append(self._render(name, self.namespace[name]))
        return results

    def handle(self, request: dict[str, Any]) -> dict[str, Any]:
        captured = io.StringIO()
        raised = False
        error = ""
        results: list[str] = []
        try:
            with redirect_stdout(captured):
                results = self.run(str(request.get("code", "")))
        except SyntaxError as exc:
            raised = True
            error = f"SyntaxError: {exc.msg} (line {exc.lineno})"
        except Exception as exc:  # noqa: BLE001 - block failures are data, not worker failures
            raised = True
            error = "".join(traceback.format_exception_only(type(exc), exc)).strip()
        parts = [captured.getvalue().rstrip("\n"), *results]
        if raised:
            parts.append(error)
        output = "\n".join(part for part in parts if part)
        return {"id": request.get("id"), "output": output, "raised": raised, "error": error}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="book-verify-worker")
    parser.add_argument("--database", required=True)
    parser.add_argument("--scratch", required=True)
    ns = parser.parse_args(argv)

    # keep a private handle on the real stdout and send stray fd-1 writes to stderr
    protocol = os.fdopen(os.dup(1), "w", encoding="utf-8", buffering=1)
    os.dup2(2, 1)
    sys.stdout = sys.stderr

    interpreter = Interpreter(Path(ns.database), Path(ns.scratch))
    os.chdir(ns.scratch)
    try:
        for line in sys.stdin:
            if not line.strip():
                continue
            request = json.loads(line)
            if request.get("op") == "shutdown":
                break
            protocol.write(json.dumps(interpreter.handle(request)) + "\n")
            protocol.flush()
    finally:
        interpreter.db.close()
        protocol.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
