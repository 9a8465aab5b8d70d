"""Extractor -> Resolver -> Sandbox -> Diff Reporter, wired together."""

from __future__ import annotations

from .core.config import VerifyConfig
from .core.context import RunContext
from .core.fs import discover_sources
from .core.logging import log_event
from .errors import VerifyError
from .exit_codes import ERR_USAGE
from .extract import FileExtraction, extract_sources
from .report import VerificationReport, build_report
from .resolve import SessionPlan, resolve_sessions
from .sandbox import SandboxOptions, run_plan


def plan_sources(ctx: RunContext, config: VerifyConfig) -> tuple[list[FileExtraction], SessionPlan]:
    if not ctx.source_root.is_dir():
        raise VerifyError(f"source directory not found: {ctx.source_root}", ERR_USAGE, "usage_error")
    sources = discover_sources(ctx.source_root, config.include, config.exclude)
    log_event(ctx, "info", "extract", "discover", files=len(sources))
    extractions = extract_sources(ctx.source_root, sources, ctx)
    return extractions, resolve_sessions(extractions, ctx)


def run_verification(ctx: RunContext, config: VerifyConfig) -> VerificationReport:
    extractions, plan = plan_sources(ctx, config)
    results = run_plan(plan, SandboxOptions.from_config(config), ctx)
    report = build_report(extractions, plan, results, config.mask_patterns, config.ellipsis)
    log_event(
        ctx,
        "info",
        "report",
        "summary",
        blocks=report.summary.blocks,
        failures=len(report.failures),
        exit_code=report.exit_code,
    )
    return report
