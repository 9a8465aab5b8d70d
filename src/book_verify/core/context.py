from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

OutputFormat = Literal["text", "json"]


def make_run_id(prefix: str = "verify") -> str:
    return f"{prefix}-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}"


@dataclass(frozen=True)
class RunContext:
    run_id: str
    source_root: Path
    output_format: OutputFormat
    verbose: bool
    quiet: bool
    log_json: bool

    @classmethod
    def from_args(
        cls,
        source_root: str | Path,
        run_id: str | None = None,
        output_format: OutputFormat = "text",
        verbose: bool = False,
        quiet: bool = False,
        log_json: bool = False,
    ) -> "RunContext":
        resolved_run_id = run_id or os.environ.get("RUN_ID") or make_run_id()
        return cls(
            run_id=resolved_run_id,
            source_root=Path(source_root).resolve(),
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            log_json=log_json,
        )
