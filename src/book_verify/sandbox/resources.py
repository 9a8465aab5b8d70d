from __future__ import annotations

import re
import shutil
import sqlite3
import tempfile
from contextlib import closing, contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

from ..core.logging import log_event
from .models import BackingResource

if TYPE_CHECKING:
    from ..core.context import RunContext

DATABASE_FILE = "session.db"
_SLUG_RE = re.compile(r"[^A-Za-z0-9_-]+")


def _slug(session_id: str) -> str:
    return _SLUG_RE.sub("-", session_id).strip("-")[:48] or "session"


@contextmanager
def ephemeral_database(
    session_id: str,
    scratch_root: Path | None = None,
    keep: bool = False,
    ctx: RunContext | None = None,
) -> Iterator[BackingResource]:
    """Provision an empty SQLite database in a private scratch directory.

    The directory is removed on every exit path unless ``keep`` is set.
    """
    if scratch_root is not None:
        scratch_root.mkdir(parents=True, exist_ok=True)
    scratch = Path(tempfile.mkdtemp(prefix=f"book-verify-{_slug(session_id)}-", dir=scratch_root))
    database = scratch / DATABASE_FILE
    try:
        with closing(sqlite3.connect(database)) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
        log_event(ctx, "debug", "sandbox", "provision", session=session_id, scratch=str(scratch))
        yield BackingResource(session_id=session_id, scratch_dir=scratch, database_path=database)
    finally:
        if keep:
            log_event(ctx, "info", "sandbox", "keep-scratch", session=session_id, scratch=str(scratch))
        else:
            shutil.rmtree(scratch, ignore_errors=True)
            if scratch.exists():
                log_event(ctx, "warn", "sandbox", "teardown-incomplete", session=session_id, scratch=str(scratch))
            else:
                log_event(ctx, "debug", "sandbox", "teardown", session=session_id)
