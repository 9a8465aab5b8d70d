"""Structured run logging on stderr; stdout is reserved for the report."""

from __future__ import annotations

import json
import sys
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .context import RunContext

_WRITE_LOCK = threading.Lock()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_event(ctx: RunContext | None, level: str, component: str, action: str, **fields: object) -> None:
    if ctx is None:
        return
    if level == "debug" and not ctx.verbose:
        return
    if level in {"debug", "info"} and ctx.quiet:
        return
    payload = {
        "ts": utc_now_iso(),
        "level": level,
        "run_id": ctx.run_id,
        "component": component,
        "action": action,
        **fields,
    }
    if ctx.log_json:
        line = json.dumps(payload, sort_keys=True, default=str)
    else:
        core = f"ts={payload['ts']} level={level} run_id={ctx.run_id} component={component} action={action}"
        extras = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        line = core if not extras else f"{core} {extras}"
    with _WRITE_LOCK:
        sys.stderr.write(line + "\n")
