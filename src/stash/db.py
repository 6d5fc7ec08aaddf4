"""SQLite connections for the relational cache."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

from stash.errors import StorageIntegrityError

if TYPE_CHECKING:
    from pathlib import Path


def get_conn(db_path: Path) -> sqlite3.Connection:
    """Open the cache read-write with WAL mode.

    A 0-byte or unreadable file is reported as a storage integrity problem;
    the cache is derived, so the fix is always `stash sync --rebuild`.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    if db_path.exists() and db_path.stat().st_size == 0:
        msg = f"cache database is empty (0 bytes): {db_path}; fix: rm {db_path}* && stash sync --rebuild"
        raise StorageIntegrityError(msg, code="CACHE_CORRUPT", details={"path": str(db_path)})
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute("PRAGMA journal_mode=WAL")
    except sqlite3.DatabaseError as exc:
        conn.close()
        msg = f"failed to open cache {db_path}, it may be corrupt: {exc}"
        raise StorageIntegrityError(msg, code="CACHE_CORRUPT", details={"path": str(db_path)}) from exc
    return conn


def get_conn_readonly(db_path: Path) -> sqlite3.Connection:
    """Open the cache read-only; nothing run on it can mutate the file."""
    return sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
