from __future__ import annotations

from .validate import load_catalog, validate

REPORT_SCHEMA = "book_verify.report.v1"
CONFIG_SCHEMA = "book_verify.config.v1"
ERROR_SCHEMA = "book_verify.error.v1"

__all__ = ["CONFIG_SCHEMA", "ERROR_SCHEMA", "REPORT_SCHEMA", "load_catalog", "validate"]
