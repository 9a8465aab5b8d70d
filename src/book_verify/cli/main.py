from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path

from .. import __version__
from ..core.config import load_config
from ..core.context import RunContext
from ..core.logging import log_event
from ..core.serialize import dumps_json
from ..errors import VerifyError
from ..exit_codes import ERR_INTERNAL, OK
from ..pipeline import plan_sources, run_verification
from ..report import plan_payload, render_plan, render_text, to_payload
from .output import emit, render_error


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="verify-book",
        description="Execute the code examples of a Markdown book and report drift from their documented output.",
    )
    p.add_argument("--version", action="version", version=f"verify-book {__version__}")
    p.add_argument("source_dir", help="directory holding the Markdown chapters")
    p.add_argument("--config", help="YAML config file (default: <source-dir>/book-verify.yaml)")
    p.add_argument("--timeout-seconds", type=float, help="per-block execution budget")
    p.add_argument("--run-timeout-seconds", type=float, help="budget for the whole run; later sessions are skipped")
    p.add_argument("--workers", type=int, help="sessions executed concurrently")
    p.add_argument(
        "--mask-pattern",
        action="append",
        default=[],
        metavar="REGEX",
        help="extra volatile pattern masked before comparison (repeatable)",
    )
    p.add_argument("--report-format", choices=["text", "json"], default=None, help="report format")
    p.add_argument("--report-file", help="also write the report to this path")
    p.add_argument("--fail-fast", action="store_true", help="stop after the first failing block")
    p.add_argument("--timings", action="store_true", help="include block durations in the report")
    p.add_argument("--keep-scratch", action="store_true", help="keep session scratch directories")
    p.add_argument("--list", action="store_true", help="print the session plan without executing anything")
    p.add_argument("--run-id", help="run identifier for log events")
    p.add_argument("--log-json", action="store_true", help="emit log events as JSON lines")
    vg = p.add_mutually_exclusive_group()
    vg.add_argument("--verbose", action="store_true", help="enable debug log events")
    vg.add_argument("--quiet", action="store_true", help="only emit warnings and errors")
    return p


def _overrides(ns: argparse.Namespace) -> dict[str, object]:
    return {
        "timeout_seconds": ns.timeout_seconds,
        "run_timeout_seconds": ns.run_timeout_seconds,
        "workers": ns.workers,
        "report_format": ns.report_format,
        "fail_fast": True if ns.fail_fast else None,
        "keep_scratch": True if ns.keep_scratch else None,
    }


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    ns = p.parse_args(argv)
    ctx = RunContext.from_args(
        ns.source_dir,
        run_id=ns.run_id,
        output_format=ns.report_format or "text",
        verbose=ns.verbose,
        quiet=ns.quiet,
        log_json=ns.log_json,
    )
    try:
        config = load_config(
            ctx.source_root,
            config_path=(Path(ns.config) if ns.config else None),
            overrides=_overrides(ns),
            extra_masks=tuple(ns.mask_pattern),
        )
        if config.report_format != ctx.output_format:
            ctx = replace(ctx, output_format=config.report_format)
        as_json = ctx.output_format == "json"
        log_event(
            ctx,
            "info",
            "cli",
            "start",
            source=str(ctx.source_root),
            config=(str(config.config_path) if config.config_path else "-"),
            workers=config.workers,
            fmt=ctx.output_format,
        )
        if ns.list:
            _, plan = plan_sources(ctx, config)
            emit(dumps_json(plan_payload(plan), pretty=True) if as_json else render_plan(plan), ns.report_file)
            return OK
        report = run_verification(ctx, config)
        text = dumps_json(to_payload(report, ns.timings), pretty=True) if as_json else render_text(report, ns.timings)
        emit(text, ns.report_file)
        return report.exit_code
    except VerifyError as exc:
        print(
            render_error(as_json=(ctx.output_format == "json"), message=str(exc), code=exc.code, kind=exc.kind),
            file=sys.stderr,
        )
        return exc.code
    except Exception as exc:  # pragma: no cover
        print(
            render_error(as_json=(ctx.output_format == "json"), message=f"internal error: {exc}", code=ERR_INTERNAL),
            file=sys.stderr,
        )
        return ERR_INTERNAL


if __name__ == "__main__":
    raise SystemExit(main())
