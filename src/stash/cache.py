"""SQLite cache of current record state.

The cache is a pure derived index: delete cache.db and rebuild it from the
logs at any time. One table per stash, named after the stash with `-` turned
into `_`:

    id TEXT PRIMARY KEY, hash, parent_id, created_at, created_by,
    updated_at, updated_by, branch, deleted_at, deleted_by,
    "<column>" TEXT ...          # one per schema column

Every value is stored and returned as text: strings verbatim, numbers and
booleans in their JSON spelling, objects and arrays as compact sorted JSON
(models.value_text). compute_hash uses the same form, so hashes survive the
trip through the cache.

_stash_meta keeps each stash's definition and the log fingerprint
(size, mtime_ns) the table was last verified against.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from stash.db import get_conn, get_conn_readonly
from stash.errors import QueryError, ValidationError
from stash.models import CACHE_SYSTEM_COLUMNS, Record, Stash, utc_now, value_text
from stash.query import (
    ListOptions,
    build_count,
    build_select,
    is_select_query,
    projected_columns,
    quote_ident,
)

if TYPE_CHECKING:
    from pathlib import Path

    from stash.models import Column

logger = logging.getLogger("stash.cache")

_SYSTEM_DDL = """
    id TEXT PRIMARY KEY,
    hash TEXT NOT NULL,
    parent_id TEXT,
    created_at TEXT NOT NULL,
    created_by TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    updated_by TEXT NOT NULL,
    branch TEXT,
    deleted_at TEXT,
    deleted_by TEXT"""

_INDEXED = ("parent_id", "deleted_at", "hash", "branch", "updated_at")


@dataclass
class SyncPoint:
    """Last moment the cache table was known to match its log."""

    last_sync: str
    log_size: int
    log_mtime_ns: int

    @property
    def fingerprint(self) -> tuple[int, int]:
        return (self.log_size, self.log_mtime_ns)


class Cache:
    """Relational cache over a single cache.db."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = get_conn(self.db_path)
            self._ensure_meta(self._conn)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> Cache:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _ensure_meta(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS _stash_meta (
                stash_name TEXT PRIMARY KEY,
                prefix TEXT NOT NULL,
                config_json TEXT NOT NULL,
                last_sync TEXT,
                log_size INTEGER DEFAULT 0,
                log_mtime_ns INTEGER DEFAULT 0
            );
        """)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def table_exists(self, table: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (table,),
        ).fetchone()
        return row is not None

    def table_columns(self, table: str) -> list[str]:
        return [r[1] for r in self.conn.execute(f"PRAGMA table_info({quote_ident(table)})")]

    def create_table(self, stash: Stash) -> None:
        """Create the stash table (if missing) and register the stash definition."""
        user_ddl = "".join(f",\n    {quote_ident(c.name)} TEXT" for c in stash.columns)
        table = quote_ident(stash.table)
        with self.conn:
            self.conn.execute(f"CREATE TABLE IF NOT EXISTS {table} ({_SYSTEM_DDL}{user_ddl}\n)")
            for col in _INDEXED:
                idx = quote_ident(f"idx_{stash.table}_{col}")
                self.conn.execute(f"CREATE INDEX IF NOT EXISTS {idx} ON {table}({col})")
            # Columns added to the definition since the table was created.
            existing = {c.lower() for c in self.table_columns(stash.table)}
            for col in stash.columns:
                if col.name.lower() not in existing:
                    self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {quote_ident(col.name)} TEXT")
            self._put_meta(stash)

    def _put_meta(self, stash: Stash) -> None:
        self.conn.execute(
            """INSERT INTO _stash_meta (stash_name, prefix, config_json)
               VALUES (?, ?, ?)
               ON CONFLICT(stash_name) DO UPDATE SET
                   prefix=excluded.prefix, config_json=excluded.config_json""",
            (stash.name, stash.prefix, json.dumps(stash.to_dict())),
        )

    def update_stash(self, stash: Stash) -> None:
        with self.conn:
            self._put_meta(stash)

    def add_column(self, stash: Stash, column: Column) -> None:
        with self.conn:
            existing = {c.lower() for c in self.table_columns(stash.table)}
            if column.name.lower() not in existing:
                self.conn.execute(
                    f"ALTER TABLE {quote_ident(stash.table)} ADD COLUMN {quote_ident(column.name)} TEXT"
                )
            self._put_meta(stash)

    def drop_table(self, stash_name: str, table: str) -> None:
        with self.conn:
            self.conn.execute(f"DROP TABLE IF EXISTS {quote_ident(table)}")
            self.conn.execute("DELETE FROM _stash_meta WHERE stash_name=?", (stash_name,))

    def clear_table(self, table: str) -> None:
        with self.conn:
            self.conn.execute(f"DELETE FROM {quote_ident(table)}")

    def stash_names(self) -> list[str]:
        return [r[0] for r in self.conn.execute("SELECT stash_name FROM _stash_meta ORDER BY stash_name")]

    # ------------------------------------------------------------------
    # Sync point
    # ------------------------------------------------------------------

    def mark_synced(self, stash_name: str, fingerprint: tuple[int, int]) -> None:
        with self.conn:
            self.conn.execute(
                "UPDATE _stash_meta SET last_sync=?, log_size=?, log_mtime_ns=? WHERE stash_name=?",
                (utc_now(), fingerprint[0], fingerprint[1], stash_name),
            )

    def sync_point(self, stash_name: str) -> SyncPoint | None:
        row = self.conn.execute(
            "SELECT last_sync, log_size, log_mtime_ns FROM _stash_meta WHERE stash_name=?",
            (stash_name,),
        ).fetchone()
        if row is None or row[0] is None:
            return None
        return SyncPoint(last_sync=row[0], log_size=int(row[1] or 0), log_mtime_ns=int(row[2] or 0))

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    def _row_values(self, stash: Stash, record: Record) -> tuple[list[str], list[Any]]:
        cols = list(CACHE_SYSTEM_COLUMNS)
        values: list[Any] = [
            record.id, record.hash, record.parent_id or None,
            record.created_at, record.created_by, record.updated_at, record.updated_by,
            record.branch or None, record.deleted_at or None, record.deleted_by or None,
        ]
        for col in stash.columns:
            cols.append(col.name)
            values.append(value_text(record.get_field(col.name)))
        return cols, values

    def upsert(self, stash: Stash, record: Record) -> None:
        self.upsert_many(stash, [record])

    def upsert_many(self, stash: Stash, records: list[Record]) -> None:
        if not records:
            return
        with self.conn:
            for record in records:
                cols, values = self._row_values(stash, record)
                col_sql = ", ".join(quote_ident(c) for c in cols)
                marks = ", ".join("?" for _ in cols)
                self.conn.execute(
                    f"INSERT OR REPLACE INTO {quote_ident(stash.table)} ({col_sql}) VALUES ({marks})",
                    values,
                )

    def delete(self, stash: Stash, record_id: str) -> None:
        with self.conn:
            self.conn.execute(f"DELETE FROM {quote_ident(stash.table)} WHERE id=?", (record_id,))

    def _to_record(self, row: sqlite3.Row | tuple[Any, ...], names: list[str]) -> Record:
        data = dict(zip(names, row, strict=True))
        return Record(
            id=data["id"],
            hash=data["hash"] or "",
            parent_id=data["parent_id"] or "",
            created_at=data["created_at"] or "",
            created_by=data["created_by"] or "",
            updated_at=data["updated_at"] or "",
            updated_by=data["updated_by"] or "",
            branch=data["branch"] or "",
            deleted_at=data["deleted_at"] or "",
            deleted_by=data["deleted_by"] or "",
            fields={
                k: v for k, v in data.items()
                if k not in CACHE_SYSTEM_COLUMNS and v is not None
            },
        )

    def get(self, stash: Stash, record_id: str) -> Record | None:
        """Point lookup, soft-deleted rows included."""
        names = [*CACHE_SYSTEM_COLUMNS, *stash.column_names()]
        row = self.conn.execute(
            f"SELECT {', '.join(quote_ident(c) for c in names)} FROM {quote_ident(stash.table)} WHERE id=?",
            (record_id,),
        ).fetchone()
        if row is None:
            return None
        return self._to_record(row, names)

    def all_records(self, stash: Stash) -> list[Record]:
        """Every row, deleted or not, ordered by id."""
        return self.list(stash, ListOptions(parent_id="*", include_deleted=True, order_by="id"))

    def ids(self, stash: Stash) -> set[str]:
        return {r[0] for r in self.conn.execute(f"SELECT id FROM {quote_ident(stash.table)}")}

    def child_ids(self, stash: Stash, parent_id: str, include_deleted: bool = True) -> list[str]:
        sql = f"SELECT id FROM {quote_ident(stash.table)} WHERE parent_id=?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        return [r[0] for r in self.conn.execute(sql + " ORDER BY id", (parent_id,))]

    def list(self, stash: Stash, opts: ListOptions) -> list[Record]:
        sql, params = build_select(stash, opts)
        names = [*CACHE_SYSTEM_COLUMNS, *projected_columns(stash, opts)]
        logger.debug("list %s: %s %s", stash.name, sql, params)
        return [self._to_record(row, names) for row in self.conn.execute(sql, params)]

    def count(self, stash: Stash, opts: ListOptions) -> int:
        sql, params = build_count(stash, opts)
        row = self.conn.execute(sql, params).fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Raw queries
    # ------------------------------------------------------------------

    def raw_query(self, sql: str) -> tuple[list[str], list[tuple[Any, ...]]]:
        """Run a read-only SELECT. Returns (column names, rows)."""
        if not is_select_query(sql):
            msg = "only SELECT queries are allowed"
            raise ValidationError(msg, code="INVALID_SQL", details={"sql": sql})
        # Make sure the file exists before a read-only open.
        _ = self.conn
        ro = get_conn_readonly(self.db_path)
        try:
            cur = ro.execute(sql)
            columns = [d[0] for d in cur.description or ()]
            rows = cur.fetchall()
        except sqlite3.Error as exc:
            msg = f"query failed: {exc}"
            raise QueryError(msg, details={"sql": sql}) from exc
        finally:
            ro.close()
        return columns, rows
