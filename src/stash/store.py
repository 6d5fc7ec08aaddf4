"""Store: the log + cache + stash definitions behind every operation.

    store = Store(load_config())
    store.create_stash(ctx, "inventory", "inv-", ["Name"])
    rec = store.add(ctx, "inventory", "Laptop")
    store.update_record(ctx, "inventory", rec.id, {"Price": "999"})

Every mutation is written to records.jsonl first and then mirrored into
cache.db; the cache then records the log fingerprint it now matches. A
cache whose fingerprint no longer matches its log is stale: operations
raise CACHE_STALE until `stash sync --rebuild` (or [cache] auto_rebuild).

Per-stash definitions live in <stash>/config.json, written tmp+rename.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import sqlite3
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stash.cache import Cache
from stash.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ParentReferenceError,
    RecordDeletedError,
    StorageIntegrityError,
    StorageIOError,
    ValidationError,
)
from stash.ids import generate_child_id, generate_root_id, rebase_id, validate_id
from stash.jsonl import RecordLog
from stash.models import (
    FILES_PREFIX,
    OP_CREATE,
    OP_DELETE,
    OP_PURGE,
    OP_RESTORE,
    OP_UPDATE,
    Attachment,
    Column,
    Record,
    Stash,
    parse_time,
    table_name,
    utc_now,
    validate_column_name,
    validate_prefix,
    validate_stash_name,
)
from stash.query import ListOptions, WhereCondition, build_count, build_select, parse_where
from stash.validate import validate_fields

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime

    from stash.config import StashConfig
    from stash.context import Context
    from stash.validate import ValidationResult

    Validator = Callable[..., ValidationResult]

logger = logging.getLogger("stash.store")

CONFIG_FILENAME = "config.json"
FILES_DIRNAME = "files"


@dataclass
class ImportResult:
    """Outcome of Store.import_records."""

    total: int
    new_columns: list[str] = field(default_factory=list)
    imported: list[str] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Store:
    """Append log, relational cache and stash definitions for one .stash root."""

    def __init__(self, config: StashConfig, validator: Validator | None = None) -> None:
        self.config = config
        self.stash_dir = config.stash_dir
        self.log = RecordLog(self.stash_dir)
        self.cache = Cache(config.db_path)
        self.validator: Validator = validator or validate_fields

    def close(self) -> None:
        self.cache.close()

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def stash_path(self, name: str) -> Path:
        return self.stash_dir / name

    def _config_path(self, name: str) -> Path:
        return self.stash_path(name) / CONFIG_FILENAME

    def files_root(self, name: str) -> Path:
        return self.stash_path(name) / FILES_DIRNAME

    def files_dir(self, name: str, record_id: str) -> Path:
        return self.files_root(name) / record_id

    # ------------------------------------------------------------------
    # Stash definitions
    # ------------------------------------------------------------------

    def _write_stash_config(self, stash: Stash) -> None:
        path = self._config_path(stash.name)
        tmp = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(stash.to_dict(), indent=2) + "\n")
            tmp.replace(path)
        except OSError as exc:
            msg = f"failed to write {path}: {exc}"
            raise StorageIOError(msg, details={"stash": stash.name}) from exc

    def stash_exists(self, name: str) -> bool:
        return self._config_path(name).exists()

    def get_stash(self, name: str) -> Stash:
        path = self._config_path(name)
        if not path.exists():
            msg = f"stash '{name}' not found"
            raise NotFoundError(msg, code="STASH_NOT_FOUND", details={"stash": name})
        try:
            return Stash.from_dict(json.loads(path.read_text()))
        except (json.JSONDecodeError, KeyError) as exc:
            msg = f"corrupt stash config {path}: {exc}"
            raise StorageIntegrityError(msg, code="CORRUPT_CONFIG", details={"stash": name}) from exc

    def list_stashes(self) -> list[Stash]:
        if not self.stash_dir.is_dir():
            return []
        return [
            self.get_stash(d.name)
            for d in sorted(self.stash_dir.iterdir())
            if d.is_dir() and not d.name.startswith(".") and (d / CONFIG_FILENAME).exists()
        ]

    def create_stash(
        self,
        ctx: Context,
        name: str,
        prefix: str,
        columns: Iterable[str | Column] = (),
    ) -> Stash:
        validate_stash_name(name)
        validate_prefix(prefix)
        if self.stash_exists(name):
            msg = f"stash '{name}' already exists"
            raise AlreadyExistsError(msg, code="STASH_EXISTS", details={"stash": name})
        for other in self.list_stashes():
            if other.table == table_name(name):
                msg = f"stash '{name}' collides with existing stash '{other.name}'"
                raise AlreadyExistsError(msg, code="STASH_EXISTS", details={"stash": name})

        now = utc_now()
        stash = Stash(name=name, prefix=prefix, created=now, created_by=ctx.actor)
        for col in columns:
            c = Column(name=col) if isinstance(col, str) else col
            c.added = c.added or now
            c.added_by = c.added_by or ctx.actor
            stash.add_column(c)

        self._write_stash_config(stash)
        self.log.touch(name)
        self.cache.create_table(stash)
        self.cache.mark_synced(name, self.log.fingerprint(name))
        logger.info("created stash %s (prefix %s)", name, prefix)
        return stash

    def drop_stash(self, name: str) -> Stash:
        stash = self.get_stash(name)
        self.cache.drop_table(stash.name, stash.table)
        try:
            shutil.rmtree(self.stash_path(name))
        except OSError as exc:
            msg = f"failed to remove {self.stash_path(name)}: {exc}"
            raise StorageIOError(msg, details={"stash": name}) from exc
        logger.info("dropped stash %s", name)
        return stash

    def add_column(self, ctx: Context, stash_name: str, column: Column) -> Column:
        stash = self._open(stash_name)
        column.added = column.added or utc_now()
        column.added_by = column.added_by or ctx.actor
        stash.add_column(column)
        self._write_stash_config(stash)
        self.cache.add_column(stash, column)
        return column

    def describe_column(self, stash_name: str, name: str, desc: str) -> Column:
        stash = self.get_stash(stash_name)
        col = stash.get_column(name)
        col.desc = desc
        self._write_stash_config(stash)
        if self.cache.table_exists(stash.table):
            self.cache.update_stash(stash)
        return col

    # ------------------------------------------------------------------
    # Cache freshness
    # ------------------------------------------------------------------

    def is_stale(self, stash: Stash) -> bool:
        if not self.cache.table_exists(stash.table):
            return True
        point = self.cache.sync_point(stash.name)
        return point is None or point.fingerprint != self.log.fingerprint(stash.name)

    def rebuild_cache(self, stash_name: str) -> int:
        """Drop and rebuild one stash table from a full log replay. Returns row count."""
        stash = self.get_stash(stash_name)
        state = self.log.replay(stash.name)
        self.cache.drop_table(stash.name, stash.table)
        self.cache.create_table(stash)
        self.cache.upsert_many(stash, list(state.records.values()))
        self.cache.mark_synced(stash.name, self.log.fingerprint(stash.name))
        return len(state.records)

    def _open(self, name: str) -> Stash:
        """Load a stash definition and make sure its cache table can be trusted."""
        stash = self.get_stash(name)
        if not self.cache.table_exists(stash.table) or self.cache.sync_point(name) is None:
            logger.info("cache table for %s missing, building from log", name)
            self.rebuild_cache(name)
            return stash
        point = self.cache.sync_point(name)
        fingerprint = self.log.fingerprint(name)
        if point is not None and point.fingerprint != fingerprint:
            if not self.config.cache.auto_rebuild:
                msg = (
                    f"cache for stash '{name}' is stale (log changed since {point.last_sync}); "
                    "run `stash sync --rebuild`"
                )
                raise StorageIntegrityError(
                    msg, code="CACHE_STALE",
                    details={"stash": name, "last_sync": point.last_sync},
                )
            logger.warning("cache for %s is stale, rebuilding from log", name)
            self.rebuild_cache(name)
            return stash
        self.cache.create_table(stash)
        return stash

    def _write(self, stash: Stash, entries: list[Record]) -> None:
        """Log first, then cache, then record the new sync point."""
        self.log.append_many(stash.name, entries)
        try:
            self.cache.upsert_many(stash, [e for e in entries if e.op != OP_PURGE])
            for e in entries:
                if e.op == OP_PURGE:
                    self.cache.delete(stash, e.id)
        except sqlite3.Error as exc:
            msg = f"log written but cache update failed for '{stash.name}': {exc}; run `stash sync --rebuild`"
            raise StorageIOError(msg, code="CACHE_WRITE_FAILED", details={"stash": stash.name}) from exc
        self.cache.mark_synced(stash.name, self.log.fingerprint(stash.name))

    # ------------------------------------------------------------------
    # Field preparation
    # ------------------------------------------------------------------

    def _prepare_fields(
        self,
        stash: Stash,
        fields: dict[str, Any],
        *,
        auto_create: bool,
        creating: bool,
    ) -> tuple[dict[str, Any], list[Column]]:
        """Resolve keys to schema columns and run value rules. Nothing is written."""
        resolved: dict[str, Any] = {}
        new_columns: list[Column] = []
        for key, value in fields.items():
            col = stash.find_column(key)
            if col is None:
                for pending in new_columns:
                    if pending.name.lower() == key.lower():
                        col = pending
                        break
            if col is None:
                validate_column_name(key)
                if not auto_create:
                    msg = f"column '{key}' not found in stash '{stash.name}'"
                    raise NotFoundError(
                        msg, code="COLUMN_NOT_FOUND",
                        details={"column": key, "stash": stash.name, "columns": stash.column_names()},
                    )
                col = Column(name=key)
                new_columns.append(col)
            resolved[col.name] = value

        check = Stash(name=stash.name, prefix=stash.prefix, columns=[*stash.columns, *new_columns])
        result = self.validator(check, resolved, check_missing=creating)
        if not result.valid:
            first = result.errors[0]
            raise ValidationError(
                first.message,
                code="VALIDATION_FAILED",
                details={"errors": [e.to_dict() for e in result.errors]},
            )
        return resolved, new_columns

    def _apply_new_columns(self, ctx: Context, stash: Stash, columns: list[Column]) -> None:
        now = utc_now()
        for col in columns:
            col.added = now
            col.added_by = ctx.actor
            stash.add_column(col)
            self.cache.add_column(stash, col)
            logger.info("auto-created column %s in %s", col.name, stash.name)
        if columns:
            self._write_stash_config(stash)

    @staticmethod
    def _merge(record: Record, fields: dict[str, Any]) -> None:
        for key, value in fields.items():
            if value is None:
                record.fields.pop(key, None)
            else:
                record.set_field(key, value)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _lookup(self, stash: Stash, record_id: str) -> Record:
        record = self.cache.get(stash, record_id)
        if record is None:
            msg = f"record '{record_id}' not found"
            raise NotFoundError(msg, code="RECORD_NOT_FOUND", details={"id": record_id, "stash": stash.name})
        return record

    def _live(self, stash: Stash, record_id: str) -> Record:
        record = self._lookup(stash, record_id)
        if record.is_deleted:
            msg = f"record '{record_id}' is deleted"
            raise RecordDeletedError(msg, details={"id": record_id, "deleted_at": record.deleted_at})
        return record

    def get_record(self, stash_name: str, record_id: str, include_deleted: bool = False) -> Record:
        stash = self._open(stash_name)
        if include_deleted:
            return self._lookup(stash, record_id)
        return self._live(stash, record_id)

    def list_records(self, stash_name: str, opts: ListOptions | None = None) -> list[Record]:
        stash = self.get_stash(stash_name)
        opts = opts or ListOptions()
        # Validate clauses and field names before touching the cache.
        build_select(stash, opts)
        stash = self._open(stash_name)
        return self.cache.list(stash, opts)

    def count_records(self, stash_name: str, opts: ListOptions | None = None) -> int:
        stash = self.get_stash(stash_name)
        opts = opts or ListOptions()
        build_count(stash, opts)
        stash = self._open(stash_name)
        return self.cache.count(stash, opts)

    def children(self, stash_name: str, record_id: str, include_deleted: bool = False) -> list[Record]:
        stash = self._open(stash_name)
        self._lookup(stash, record_id)
        opts = ListOptions(parent_id=record_id, include_deleted=include_deleted, order_by="id")
        return self.cache.list(stash, opts)

    def descendants(self, stash: Stash, record_id: str, include_deleted: bool = True) -> list[Record]:
        """All records below record_id, parents before children."""
        out: list[Record] = []
        queue = [record_id]
        while queue:
            current = queue.pop(0)
            for child_id in self.cache.child_ids(stash, current, include_deleted=include_deleted):
                child = self.cache.get(stash, child_id)
                if child is not None:
                    out.append(child)
                    queue.append(child_id)
        return out

    def history(self, stash_name: str, record_id: str) -> list[Record]:
        self.get_stash(stash_name)
        entries = self.log.history(stash_name, record_id)
        if not entries:
            msg = f"record '{record_id}' not found"
            raise NotFoundError(msg, code="RECORD_NOT_FOUND", details={"id": record_id, "stash": stash_name})
        return entries

    def raw_query(self, sql: str) -> tuple[list[str], list[tuple[Any, ...]]]:
        for stash in self.list_stashes():
            self._open(stash.name)
        return self.cache.raw_query(sql)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _check_parent(self, stash: Stash, parent_id: str) -> Record:
        parent = self.cache.get(stash, parent_id)
        if parent is None:
            msg = f"parent record '{parent_id}' not found"
            raise ParentReferenceError(msg, code="PARENT_NOT_FOUND", details={"parent_id": parent_id})
        if parent.is_deleted:
            msg = f"parent record '{parent_id}' is deleted"
            raise ParentReferenceError(msg, code="PARENT_DELETED", details={"parent_id": parent_id})
        return parent

    def _allocate_id(self, stash: Stash, parent_id: str = "") -> str:
        taken = self.log.replay(stash.name).known_ids | self.cache.ids(stash)
        if parent_id:
            return generate_child_id(parent_id, taken)
        return generate_root_id(
            stash.prefix, taken,
            length=self.config.ids.length,
            max_retries=self.config.ids.max_retries,
        )

    def create_record(
        self,
        ctx: Context,
        stash_name: str,
        fields: dict[str, Any],
        parent_id: str | None = None,
        auto_create: bool = False,
    ) -> Record:
        stash = self._open(stash_name)
        resolved, new_columns = self._prepare_fields(stash, fields, auto_create=auto_create, creating=True)
        if parent_id:
            validate_id(parent_id)
            self._check_parent(stash, parent_id)

        record_id = self._allocate_id(stash, parent_id or "")
        self._apply_new_columns(ctx, stash, new_columns)

        now = utc_now()
        record = Record(
            id=record_id,
            parent_id=parent_id or "",
            created_at=now,
            created_by=ctx.actor,
            updated_at=now,
            updated_by=ctx.actor,
            branch=ctx.branch,
            op=OP_CREATE,
        )
        self._merge(record, resolved)
        record.rehash()
        self._write(stash, [record])
        logger.debug("created %s in %s", record.id, stash.name)
        return record

    def add(
        self,
        ctx: Context,
        stash_name: str,
        primary_value: Any,
        fields: dict[str, Any] | None = None,
        parent_id: str | None = None,
        auto_create: bool = False,
    ) -> Record:
        """Create a record whose primary (first) column gets primary_value."""
        stash = self.get_stash(stash_name)
        primary = stash.primary_column
        if primary is None:
            msg = f"stash '{stash_name}' has no columns; add one with `stash column add`"
            raise ValidationError(msg, code="NO_COLUMNS", details={"stash": stash_name})
        merged = {primary.name: primary_value, **(fields or {})}
        return self.create_record(ctx, stash_name, merged, parent_id=parent_id, auto_create=auto_create)

    def update_record(
        self,
        ctx: Context,
        stash_name: str,
        record_id: str,
        fields: dict[str, Any],
        auto_create: bool = False,
    ) -> Record:
        stash = self._open(stash_name)
        record = self._live(stash, record_id)
        resolved, new_columns = self._prepare_fields(stash, fields, auto_create=auto_create, creating=False)
        self._apply_new_columns(ctx, stash, new_columns)

        self._merge(record, resolved)
        record.op = OP_UPDATE
        record.updated_at = utc_now()
        record.updated_by = ctx.actor
        if ctx.branch:
            record.branch = ctx.branch
        record.rehash()
        self._write(stash, [record])
        return record

    def bulk_update(
        self,
        ctx: Context,
        stash_name: str,
        where: list[str] | list[WhereCondition],
        fields: dict[str, Any],
    ) -> list[Record]:
        """Apply the same field changes to every live record matching all clauses."""
        conditions = [c if isinstance(c, WhereCondition) else parse_where(c) for c in where]
        opts = ListOptions(parent_id="*", where=conditions, order_by="id")
        matches = self.list_records(stash_name, opts)
        stash = self._open(stash_name)
        resolved, new_columns = self._prepare_fields(stash, fields, auto_create=False, creating=False)
        self._apply_new_columns(ctx, stash, new_columns)

        now = utc_now()
        updated = []
        for record in matches:
            self._merge(record, resolved)
            record.op = OP_UPDATE
            record.updated_at = now
            record.updated_by = ctx.actor
            if ctx.branch:
                record.branch = ctx.branch
            record.rehash()
            updated.append(record)
        if updated:
            self._write(stash, updated)
        logger.info("bulk-updated %d record(s) in %s", len(updated), stash.name)
        return updated

    def import_records(
        self,
        ctx: Context,
        stash_name: str,
        rows: list[dict[str, Any]],
        dry_run: bool = False,
    ) -> ImportResult:
        """Create one root record per row, adding columns the schema lacks.

        Column names are checked for every row before anything is written. A
        row whose values fail validation is reported in `failed` and skipped;
        the remaining rows still import.
        """
        stash = self._open(stash_name)
        new_columns: list[str] = []
        seen: set[str] = set()
        for row in rows:
            for key in row:
                if stash.find_column(key) is None and key.lower() not in seen:
                    validate_column_name(key)
                    seen.add(key.lower())
                    new_columns.append(key)
        result = ImportResult(total=len(rows), new_columns=new_columns)
        if dry_run:
            return result

        for line, row in enumerate(rows, start=1):
            try:
                record = self.create_record(ctx, stash_name, row, auto_create=True)
            except ValidationError as exc:
                logger.warning("import into %s: row %d skipped: %s", stash_name, line, exc.message)
                result.failed.append({"row": line, "code": exc.code, "message": exc.message})
                continue
            result.imported.append(record.id)
        logger.info("imported %d of %d row(s) into %s", len(result.imported), len(rows), stash_name)
        return result

    def delete_record(self, ctx: Context, stash_name: str, record_id: str, cascade: bool = False) -> list[Record]:
        """Soft-delete a record (and with cascade, its live descendants)."""
        stash = self._open(stash_name)
        record = self._live(stash, record_id)
        below = self.descendants(stash, record_id, include_deleted=False)
        if below and not cascade:
            msg = f"record '{record_id}' has {len(below)} live descendant(s); use --cascade"
            raise ConflictError(
                msg, code="HAS_CHILDREN",
                details={"id": record_id, "children": [r.id for r in below]},
            )
        now = utc_now()
        targets = [record, *below]
        for r in targets:
            r.op = OP_DELETE
            r.deleted_at = now
            r.deleted_by = ctx.actor
            r.updated_at = now
            r.updated_by = ctx.actor
        self._write(stash, targets)
        return targets

    def restore_record(self, ctx: Context, stash_name: str, record_id: str, cascade: bool = False) -> list[Record]:
        stash = self._open(stash_name)
        record = self._lookup(stash, record_id)
        if not record.is_deleted:
            msg = f"record '{record_id}' is not deleted"
            raise ValidationError(msg, code="RECORD_NOT_DELETED", details={"id": record_id})
        if record.parent_id:
            self._check_parent(stash, record.parent_id)
        targets = [record]
        if cascade:
            targets += [r for r in self.descendants(stash, record_id) if r.is_deleted]
        now = utc_now()
        for r in targets:
            r.op = OP_RESTORE
            r.deleted_at = ""
            r.deleted_by = ""
            r.updated_at = now
            r.updated_by = ctx.actor
        self._write(stash, targets)
        return targets

    def _purge_entries(self, ctx: Context, ids: list[str], moved: dict[str, str] | None = None) -> list[Record]:
        now = utc_now()
        return [
            Record(
                id=rid, op=OP_PURGE, updated_at=now, updated_by=ctx.actor,
                moved_to=(moved or {}).get(rid, ""),
            )
            for rid in ids
        ]

    def _remove_files(self, stash: Stash, ids: list[str]) -> None:
        for rid in ids:
            path = self.files_dir(stash.name, rid)
            if path.exists():
                try:
                    shutil.rmtree(path)
                except OSError as exc:
                    msg = f"failed to remove attachments of '{rid}': {exc}"
                    raise StorageIOError(msg, details={"id": rid}) from exc

    def purge_record(self, ctx: Context, stash_name: str, record_id: str, cascade: bool = False) -> list[str]:
        """Permanently remove a soft-deleted record. Returns purged ids."""
        stash = self._open(stash_name)
        record = self._lookup(stash, record_id)
        if not record.is_deleted:
            msg = f"record '{record_id}' is not deleted; only soft-deleted records can be purged"
            raise ValidationError(msg, code="RECORD_NOT_DELETED", details={"id": record_id})
        below = self.descendants(stash, record_id)
        if below and not cascade:
            msg = f"record '{record_id}' has {len(below)} descendant(s); use --cascade"
            raise ConflictError(msg, code="HAS_CHILDREN", details={"id": record_id, "children": [r.id for r in below]})
        live = [r.id for r in below if not r.is_deleted]
        if live:
            msg = f"record '{record_id}' has live descendants; delete them first"
            raise ConflictError(msg, code="HAS_CHILDREN", details={"id": record_id, "children": live})

        # Deepest first so a crash never leaves a child whose parent is gone.
        ids = [r.id for r in reversed(below)] + [record_id]
        self._write(stash, self._purge_entries(ctx, ids))
        self._remove_files(stash, ids)
        logger.info("purged %s from %s", ", ".join(ids), stash.name)
        return ids

    def purge_deleted(self, ctx: Context, stash_name: str, before: datetime | None = None) -> list[str]:
        """Purge every soft-deleted record (deleted before `before`, if given)."""
        stash = self._open(stash_name)
        deleted = self.cache.list(stash, ListOptions(parent_id="*", deleted_only=True, order_by="id"))
        chosen = {r.id for r in deleted if before is None or parse_time(r.deleted_at) < before}
        # Descendants of a purged record go with it.
        for rid in list(chosen):
            chosen.update(r.id for r in self.descendants(stash, rid))
        if not chosen:
            return []
        ids = sorted(chosen, key=lambda i: (-i.count("."), i))
        self._write(stash, self._purge_entries(ctx, ids))
        self._remove_files(stash, ids)
        logger.info("purged %d deleted record(s) from %s", len(ids), stash.name)
        return ids

    def move_record(self, ctx: Context, stash_name: str, record_id: str, new_parent_id: str | None) -> Record:
        """Re-home a record (and its subtree) under new_parent_id, or make it a root.

        Ids encode their ancestry, so every moved record gets a new id and the
        old ids are retired with purge entries pointing at their replacement.
        """
        stash = self._open(stash_name)
        record = self._live(stash, record_id)
        new_parent_id = new_parent_id or ""

        if new_parent_id:
            if new_parent_id == record_id:
                msg = "cannot move a record under itself"
                raise ConflictError(msg, code="CYCLIC_MOVE", details={"id": record_id, "parent_id": new_parent_id})
            self._check_parent(stash, new_parent_id)
            # Walk the new parent's ancestor chain up to the root.
            cursor = new_parent_id
            seen: set[str] = set()
            while cursor:
                if cursor == record_id:
                    msg = f"cannot move '{record_id}' under its own descendant '{new_parent_id}'"
                    raise ConflictError(
                        msg, code="CYCLIC_MOVE", details={"id": record_id, "parent_id": new_parent_id},
                    )
                if cursor in seen:
                    msg = f"parent chain of '{new_parent_id}' loops at '{cursor}'"
                    raise StorageIntegrityError(msg, code="PARENT_CYCLE", details={"id": cursor})
                seen.add(cursor)
                current = self.cache.get(stash, cursor)
                cursor = current.parent_id if current is not None else ""

        if record.parent_id == new_parent_id and new_parent_id:
            msg = f"record '{record_id}' is already a child of '{new_parent_id}'"
            raise ValidationError(msg, code="SAME_PARENT", details={"id": record_id})

        new_id = self._allocate_id(stash, new_parent_id)
        subtree = [record, *self.descendants(stash, record_id)]
        mapping = {r.id: rebase_id(r.id, record_id, new_id) for r in subtree}

        now = utc_now()
        created: list[Record] = []
        for old in subtree:
            moved = old.copy()
            moved.id = mapping[old.id]
            moved.parent_id = new_parent_id if old.id == record_id else mapping[old.parent_id]
            moved.op = OP_CREATE
            moved.updated_at = now
            moved.updated_by = ctx.actor
            if ctx.branch:
                moved.branch = ctx.branch
            for key, value in list(moved.fields.items()):
                prefix = f"{FILES_PREFIX}{old.id}/"
                if isinstance(value, str) and value.startswith(prefix):
                    moved.fields[key] = f"{FILES_PREFIX}{moved.id}/" + value[len(prefix):]
            moved.rehash()
            created.append(moved)

        retired = self._purge_entries(ctx, [r.id for r in reversed(subtree)], moved=mapping)
        self._write(stash, created + retired)

        for old_id, moved_id in mapping.items():
            src = self.files_dir(stash.name, old_id)
            if src.exists():
                dest = self.files_dir(stash.name, moved_id)
                try:
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    src.rename(dest)
                except OSError as exc:
                    msg = f"failed to move attachments of '{old_id}' to '{moved_id}': {exc}"
                    raise StorageIOError(msg, details={"id": old_id, "new_id": moved_id}) from exc

        logger.info("moved %s -> %s (%d record(s))", record_id, new_id, len(subtree))
        return created[0]

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    @staticmethod
    def _file_sha256(path: Path) -> str:
        h = hashlib.sha256()
        with path.open("rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                h.update(chunk)
        return h.hexdigest()

    def _attachment(self, stash_name: str, record_id: str, path: Path) -> Attachment:
        return Attachment(
            name=path.name,
            path=f"{FILES_PREFIX}{record_id}/{path.name}",
            size=path.stat().st_size,
            sha256=self._file_sha256(path),
        )

    def attach_file(
        self,
        ctx: Context,
        stash_name: str,
        record_id: str,
        src: Path | str,
        column: str,
        move: bool = False,
    ) -> Attachment:
        """Copy (or move) src into files/<id>/ and reference it from column."""
        stash = self._open(stash_name)
        self._live(stash, record_id)
        src_path = Path(src)
        if not src_path.is_file():
            msg = f"file '{src_path}' not found"
            raise NotFoundError(msg, code="FILE_NOT_FOUND", details={"path": str(src_path)})
        ref = f"{FILES_PREFIX}{record_id}/{src_path.name}"
        self._prepare_fields(stash, {column: ref}, auto_create=False, creating=False)

        dest = self.files_dir(stash.name, record_id) / src_path.name
        if dest.exists():
            msg = f"attachment '{src_path.name}' already exists on '{record_id}'"
            raise AlreadyExistsError(msg, code="ATTACHMENT_EXISTS", details={"id": record_id, "name": src_path.name})
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            if move:
                shutil.move(str(src_path), dest)
            else:
                shutil.copy2(src_path, dest)
        except OSError as exc:
            msg = f"failed to store attachment '{src_path.name}': {exc}"
            raise StorageIOError(msg, details={"id": record_id, "path": str(src_path)}) from exc

        self.update_record(ctx, stash_name, record_id, {column: ref})
        return self._attachment(stash_name, record_id, dest)

    def detach_file(self, ctx: Context, stash_name: str, record_id: str, name: str) -> Attachment:
        """Remove an attachment and clear any field that referenced it."""
        stash = self._open(stash_name)
        record = self._live(stash, record_id)
        path = self.files_dir(stash.name, record_id) / name
        if not path.is_file():
            msg = f"attachment '{name}' not found on '{record_id}'"
            raise NotFoundError(msg, code="ATTACHMENT_NOT_FOUND", details={"id": record_id, "name": name})
        attachment = self._attachment(stash_name, record_id, path)

        refs = {k: None for k, v in record.fields.items() if v == attachment.path}
        if refs:
            self.update_record(ctx, stash_name, record_id, refs)
        try:
            path.unlink()
            if not any(path.parent.iterdir()):
                path.parent.rmdir()
        except OSError as exc:
            msg = f"failed to remove attachment '{name}': {exc}"
            raise StorageIOError(msg, details={"id": record_id, "name": name}) from exc
        return attachment

    def list_files(self, stash_name: str, record_id: str) -> list[Attachment]:
        stash = self._open(stash_name)
        self._lookup(stash, record_id)
        directory = self.files_dir(stash.name, record_id)
        if not directory.is_dir():
            return []
        return [
            self._attachment(stash_name, record_id, p)
            for p in sorted(directory.iterdir())
            if p.is_file()
        ]
