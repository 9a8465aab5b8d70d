"""Session grouping and predecessor resolution over extracted blocks."""

from __future__ import annotations

from .dependencies import created_tables, find_unresolved, referenced_tables
from .models import Session, SessionPlan, UnresolvedDependency
from .sessions import resolve_sessions

__all__ = [
    "Session",
    "SessionPlan",
    "UnresolvedDependency",
    "created_tables",
    "find_unresolved",
    "referenced_tables",
    "resolve_sessions",
]
