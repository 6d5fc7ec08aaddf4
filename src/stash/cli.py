"""stash CLI: structured records in .stash/, one JSONL log per stash plus a SQLite cache.

Commands:
    stash init [NAME] --prefix P    create .stash/ (and optionally a first stash)
    stash create NAME --prefix P    create a stash
    stash add VALUE [--set F=V]     add a record (VALUE goes to the first column)
    stash set ID F=V ...            update fields
    stash list / count / query      read from the cache
    stash export / import FILE      move records in and out as CSV, JSON or JSONL
    stash lock / unlock / locks     advisory locks for multi-agent work
    stash sync / repair / doctor    keep log and cache consistent

Every command takes --json for machine-readable output. Errors exit with:
    1 not found   2 validation   3 deleted record / query failed
    4 bad parent  5 conflict     6 storage integrity   7 I/O
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from stash import sync as stash_sync
from stash.config import init_config, load_config
from stash.context import Context, find_main_worktree, resolve_context
from stash.errors import NotFoundError, StashError, ValidationError
from stash.locks import LockManager
from stash.models import CACHE_SYSTEM_COLUMNS, Column, is_reserved_column, parse_time
from stash.query import ListOptions, parse_where_clauses
from stash.store import Store

if TYPE_CHECKING:
    from stash.config import StashConfig
    from stash.models import Record, Stash

logger = logging.getLogger("stash.cli")

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@dataclass
class _App:
    """Global options plus lazily opened config/store."""

    stash: str | None = None
    actor: str | None = None
    as_json: bool = False
    verbose: bool = False
    _config: StashConfig | None = None
    _store: Store | None = None
    _closers: list[Store] = field(default_factory=list)

    @property
    def config(self) -> StashConfig:
        if self._config is None:
            self._config = load_config()
        return self._config

    def context(self, require_stash: bool = True) -> Context:
        cfg = self.config
        if not cfg.initialized:
            msg = "no .stash directory found; run `stash init` first"
            raise NotFoundError(msg, code="NO_STASH_DIR")
        ctx = resolve_context(actor=self.actor, stash=self.stash, cwd=cfg.root, stash_dir=cfg.stash_dir)
        if require_stash and not ctx.stash:
            msg = "no stash specified and it cannot be inferred (use --stash or $STASH_DEFAULT)"
            raise ValidationError(msg, code="NO_STASH")
        return ctx

    @property
    def store(self) -> Store:
        if self._store is None:
            self.context(require_stash=False)
            self._store = Store(self.config)
        return self._store

    def locks(self) -> LockManager:
        return LockManager(self.config.stash_dir, default_timeout=self.config.locks.timeout)

    def close(self) -> None:
        if self._store is not None:
            self._store.close()
            self._store = None


class _StashGroup(click.Group):
    """Group that reports StashError (text or JSON) and exits with its code."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except StashError as exc:
            app = ctx.obj if isinstance(ctx.obj, _App) else _App()
            if app.as_json:
                click.echo(json.dumps(exc.to_dict(), indent=2))
            else:
                click.echo(f"Error: {exc.message}", err=True)
            raise SystemExit(exc.exit_code) from exc
        finally:
            if isinstance(ctx.obj, _App):
                ctx.obj.close()


def _emit(app: _App, data: Any, text: str | None = None) -> None:
    if app.as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    elif text is not None:
        click.echo(text)


def _parse_assignments(pairs: tuple[str, ...] | list[str]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            msg = f"invalid assignment '{pair}': expected Field=Value"
            raise ValidationError(msg, code="INVALID_ASSIGNMENT", details={"assignment": pair})
        fields[name.strip()] = value
    return fields


def _parse_duration(value: str) -> timedelta:
    m = _DURATION_RE.match(value.strip())
    if not m:
        msg = f"invalid duration '{value}': expected e.g. 30d, 24h, 15m"
        raise ValidationError(msg, code="INVALID_DURATION", details={"duration": value})
    return timedelta(**{_DURATION_UNITS[m.group(2)]: int(m.group(1))})


def _check_lock(app: _App, ctx: Context, record_id: str) -> None:
    app.locks().check(ctx.stash, record_id, ctx.actor)


def _primary_value(stash: Stash, record: Record) -> str:
    col = stash.primary_column
    if col is None:
        return ""
    value = record.get_field(col.name)
    return "" if value is None else str(value)


def _table(headers: list[str], rows: list[list[str]]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = min(max(widths[i], len(cell)), 40)
    lines = ["  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)).rstrip()]
    for row in rows:
        cells = [(c if len(c) <= 40 else c[:37] + "...").ljust(widths[i]) for i, c in enumerate(row)]
        lines.append("  ".join(cells).rstrip())
    return "\n".join(lines)


def _records_text(stash: Stash, records: list[Record], columns: list[str] | None = None) -> str:
    if not records:
        return "No records."
    cols = columns or stash.column_names()
    rows = []
    for r in records:
        cells = [r.id]
        for c in cols:
            v = r.get_field(c)
            cells.append("" if v is None else str(v))
        if r.is_deleted:
            cells[0] += " (deleted)"
        rows.append(cells)
    return _table(["ID", *cols], rows)


def _record_text(stash: Stash, record: Record) -> str:
    lines = [f"{record.id}"]
    for col in stash.columns:
        v = record.get_field(col.name)
        if v is not None:
            lines.append(f"  {col.name}: {v}")
    extra = {k: v for k, v in record.fields.items() if stash.find_column(k) is None}
    for k, v in extra.items():
        lines.append(f"  {k}: {v}")
    lines.append(f"  _hash: {record.hash}")
    if record.parent_id:
        lines.append(f"  _parent: {record.parent_id}")
    lines.append(f"  _created: {record.created_at} by {record.created_by}")
    lines.append(f"  _updated: {record.updated_at} by {record.updated_by}")
    if record.branch:
        lines.append(f"  _branch: {record.branch}")
    if record.is_deleted:
        lines.append(f"  _deleted: {record.deleted_at} by {record.deleted_by}")
    return "\n".join(lines)


def _list_options(
    *,
    all_records: bool = False,
    parent: str | None = None,
    deleted: bool = False,
    deleted_only: bool = False,
    where: tuple[str, ...] = (),
    search: str = "",
    columns: str = "",
    order_by: str = "",
    desc: bool | None = None,
    limit: int = 0,
    offset: int = 0,
) -> ListOptions:
    return ListOptions(
        parent_id="*" if all_records else (parent or ""),
        include_deleted=deleted,
        deleted_only=deleted_only,
        where=parse_where_clauses(where),
        search=search,
        columns=[c.strip() for c in columns.split(",") if c.strip()] if columns else [],
        order_by=order_by,
        descending=desc,
        limit=limit,
        offset=offset,
    )


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group(cls=_StashGroup)
@click.version_option(package_name="stash")
@click.option("--stash", "stash_name", default=None, envvar=None, help="Target stash (default: $STASH_DEFAULT or the only stash)")
@click.option("--actor", default=None, help="Actor for the audit trail (default: $STASH_ACTOR or $USER)")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable JSON output")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, stash_name: str | None, actor: str | None, as_json: bool, verbose: bool) -> None:
    """stash: structured records for humans and agents, kept in git-friendly JSONL."""
    app = _App(stash=stash_name, actor=actor, as_json=as_json, verbose=verbose)
    ctx.obj = app
    level = logging.DEBUG if verbose else getattr(logging, app.config.log.level)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


# ---------------------------------------------------------------------------
# stash init / create / drop / stashes
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("name", required=False)
@click.option("--prefix", default=None, help="Record id prefix for NAME, e.g. inv-")
@click.option("--column", "-c", "columns", multiple=True, help="Column for NAME (repeatable; first is primary)")
@click.option("--config", "write_config", is_flag=True, help="Also write a default stash.toml")
@click.pass_obj
def init(app: _App, name: str | None, prefix: str | None, columns: tuple[str, ...], write_config: bool) -> None:
    """Create .stash/ in the current project, optionally with a first stash."""
    cfg = app.config
    if write_config:
        try:
            path = init_config(cfg.root)
            if not app.as_json:
                click.echo(f"Created {path}")
        except FileExistsError:
            if not app.as_json:
                click.echo("stash.toml already exists, skipping")
    cfg.ensure_dirs()
    result: dict[str, Any] = {"stash_dir": str(cfg.stash_dir)}
    if name:
        if not prefix:
            msg = "--prefix is required when creating a stash (e.g. --prefix inv-)"
            raise ValidationError(msg, code="MISSING_PREFIX")
        stash = app.store.create_stash(app.context(require_stash=False), name, prefix, columns)
        result["stash"] = stash.to_dict()
    _emit(app, result, f"Initialized {cfg.stash_dir}" + (f" with stash '{name}' ({prefix})" if name else ""))


@cli.command()
@click.argument("name")
@click.option("--prefix", required=True, help="Record id prefix, e.g. inv-")
@click.option("--column", "-c", "columns", multiple=True, help="Column (repeatable; first is primary)")
@click.pass_obj
def create(app: _App, name: str, prefix: str, columns: tuple[str, ...]) -> None:
    """Create a new stash."""
    stash = app.store.create_stash(app.context(require_stash=False), name, prefix, columns)
    _emit(app, stash.to_dict(), f"Created stash '{stash.name}' (prefix {stash.prefix})")


@cli.command()
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_obj
def drop(app: _App, name: str, yes: bool) -> None:
    """Delete a stash, its log, its attachments and its cache table."""
    app.store.get_stash(name)
    if not yes:
        click.confirm(f"Drop stash '{name}' and all its records?", abort=True)
    app.store.drop_stash(name)
    _emit(app, {"dropped": name}, f"Dropped stash '{name}'")


@cli.command()
@click.pass_obj
def stashes(app: _App) -> None:
    """List stashes."""
    rows = stash_sync.sync_status(app.store)
    if app.as_json:
        _emit(app, rows)
        return
    if not rows:
        click.echo("No stashes.")
        return
    click.echo(_table(
        ["NAME", "PREFIX", "RECORDS", "CACHE"],
        [[r["name"], r["prefix"], str(r["records"]), "stale" if r["stale"] else "ok"] for r in rows],
    ))


# ---------------------------------------------------------------------------
# stash column
# ---------------------------------------------------------------------------


@cli.group()
def column() -> None:
    """Manage stash columns (append-only)."""


@column.command("add")
@click.argument("names", nargs=-1, required=True)
@click.option("--desc", default="", help="Column description")
@click.option("--validate", "rule", type=click.Choice(["email", "url", "number", "date"]), default=None)
@click.option("--enum", "enum_values", default="", help="Comma-separated allowed values")
@click.option("--required", is_flag=True, help="Value must be non-empty")
@click.pass_obj
def column_add(app: _App, names: tuple[str, ...], desc: str, rule: str | None, enum_values: str, required: bool) -> None:
    """Add one or more columns to the stash."""
    ctx = app.context()
    enum = [v.strip() for v in enum_values.split(",") if v.strip()]
    added = []
    for name in names:
        col = Column(name=name, desc=desc, validate=rule or "", enum=list(enum), required=required)
        added.append(app.store.add_column(ctx, ctx.stash, col))
    _emit(app, [c.to_dict() for c in added], "\n".join(f"Added column {c.name}" for c in added))


@column.command("list")
@click.pass_obj
def column_list(app: _App) -> None:
    """List columns of the stash."""
    stash = app.store.get_stash(app.context().stash)
    if app.as_json:
        _emit(app, [c.to_dict() for c in stash.columns])
        return
    if not stash.columns:
        click.echo("No columns.")
        return
    rows = []
    for i, c in enumerate(stash.columns):
        rules = []
        if i == 0:
            rules.append("primary")
        if c.required:
            rules.append("required")
        if c.validate:
            rules.append(c.validate)
        if c.enum:
            rules.append("enum:" + "|".join(c.enum))
        rows.append([c.name, ",".join(rules), c.desc])
    click.echo(_table(["NAME", "RULES", "DESCRIPTION"], rows))


@column.command("describe")
@click.argument("name")
@click.argument("description")
@click.pass_obj
def column_describe(app: _App, name: str, description: str) -> None:
    """Set a column's description."""
    col = app.store.describe_column(app.context().stash, name, description)
    _emit(app, col.to_dict(), f"Described column {col.name}")


# ---------------------------------------------------------------------------
# stash add / set / bulk-set
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("value")
@click.option("--set", "assignments", multiple=True, help="Field=Value (repeatable)")
@click.option("--parent", default=None, help="Parent record id (creates a child record)")
@click.option("--auto-create", is_flag=True, help="Create missing columns")
@click.pass_obj
def add(app: _App, value: str, assignments: tuple[str, ...], parent: str | None, auto_create: bool) -> None:
    """Add a record; VALUE goes into the primary (first) column."""
    ctx = app.context()
    fields = _parse_assignments(assignments)
    record = app.store.add(ctx, ctx.stash, value, fields, parent_id=parent, auto_create=auto_create)
    _emit(app, record.to_dict(), record.id)


@cli.command("set")
@click.argument("record_id")
@click.argument("assignments", nargs=-1)
@click.option("--col", "cols", type=(str, str), multiple=True, help="--col Field Value (repeatable)")
@click.option("--auto-create", is_flag=True, help="Create missing columns")
@click.pass_obj
def set_cmd(
    app: _App,
    record_id: str,
    assignments: tuple[str, ...],
    cols: tuple[tuple[str, str], ...],
    auto_create: bool,
) -> None:
    """Update fields of a record: stash set ID Field=Value ..."""
    ctx = app.context()
    fields = _parse_assignments(assignments)
    fields.update(dict(cols))
    if not fields:
        msg = "nothing to set: pass Field=Value or --col Field Value"
        raise ValidationError(msg, code="NO_FIELDS")
    _check_lock(app, ctx, record_id)
    record = app.store.update_record(ctx, ctx.stash, record_id, fields, auto_create=auto_create)
    _emit(app, record.to_dict(), f"Updated {record.id}")


@cli.command("bulk-set")
@click.option("--where", "where", multiple=True, required=True, help="Filter clause (repeatable, ANDed)")
@click.option("--set", "assignments", multiple=True, required=True, help="Field=Value (repeatable)")
@click.pass_obj
def bulk_set(app: _App, where: tuple[str, ...], assignments: tuple[str, ...]) -> None:
    """Set fields on every live record matching all --where clauses."""
    ctx = app.context()
    conditions = parse_where_clauses(where)
    fields = _parse_assignments(assignments)
    locks = app.locks()
    matching = app.store.list_records(ctx.stash, ListOptions(parent_id="*", where=conditions))
    for r in matching:
        locks.check(ctx.stash, r.id, ctx.actor)
    updated = app.store.bulk_update(ctx, ctx.stash, conditions, fields)
    _emit(app, {"updated": len(updated), "ids": [r.id for r in updated]}, f"Updated {len(updated)} record(s)")


# ---------------------------------------------------------------------------
# stash rm / restore / purge / move
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("record_id")
@click.option("--cascade", is_flag=True, help="Also delete all descendants")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation for --cascade")
@click.pass_obj
def rm(app: _App, record_id: str, cascade: bool, yes: bool) -> None:
    """Soft-delete a record (restore with `stash restore`)."""
    ctx = app.context()
    _check_lock(app, ctx, record_id)
    if cascade and not yes and not app.as_json:
        click.confirm(f"Delete {record_id} and all its descendants?", abort=True)
    deleted = app.store.delete_record(ctx, ctx.stash, record_id, cascade=cascade)
    _emit(app, {"deleted": [r.id for r in deleted]}, f"Deleted {len(deleted)} record(s)")


@cli.command()
@click.argument("record_id")
@click.option("--cascade", is_flag=True, help="Also restore deleted descendants")
@click.pass_obj
def restore(app: _App, record_id: str, cascade: bool) -> None:
    """Restore a soft-deleted record."""
    ctx = app.context()
    _check_lock(app, ctx, record_id)
    restored = app.store.restore_record(ctx, ctx.stash, record_id, cascade=cascade)
    _emit(app, {"restored": [r.id for r in restored]}, f"Restored {len(restored)} record(s)")


@cli.command()
@click.option("--id", "record_id", default=None, help="Purge one soft-deleted record")
@click.option("--before", default=None, help="Purge records deleted longer ago than this (30d, 24h, ...)")
@click.option("--all", "purge_all", is_flag=True, help="Purge every soft-deleted record")
@click.option("--cascade", is_flag=True, help="With --id, also purge its (deleted) descendants")
@click.option("--dry-run", is_flag=True, help="Show what would be purged")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_obj
def purge(
    app: _App,
    record_id: str | None,
    before: str | None,
    purge_all: bool,
    cascade: bool,
    dry_run: bool,
    yes: bool,
) -> None:
    """Permanently remove soft-deleted records and their attachments."""
    ctx = app.context()
    if sum(bool(x) for x in (record_id, before, purge_all)) != 1:
        msg = "specify exactly one of --id, --before or --all"
        raise ValidationError(msg, code="INVALID_PURGE_TARGET")
    store = app.store

    if record_id:
        record = store.get_record(ctx.stash, record_id, include_deleted=True)
        candidates = [record.id, *(r.id for r in store.descendants(store.get_stash(ctx.stash), record_id))]
    else:
        cutoff = datetime.now(UTC) - _parse_duration(before) if before else None
        deleted = store.list_records(ctx.stash, ListOptions(parent_id="*", deleted_only=True, order_by="id"))
        candidates = [
            r.id for r in deleted
            if cutoff is None or parse_time(r.deleted_at) < cutoff
        ]

    if dry_run:
        _emit(app, {"dry_run": True, "would_purge": candidates},
              "Would purge:\n" + "\n".join(f"  {c}" for c in candidates) if candidates else "Nothing to purge.")
        return
    if not candidates:
        _emit(app, {"purged": []}, "Nothing to purge.")
        return
    if not yes:
        click.confirm(f"Permanently purge {len(candidates)} record(s)?", abort=True)

    if record_id:
        _check_lock(app, ctx, record_id)
        purged = store.purge_record(ctx, ctx.stash, record_id, cascade=cascade)
    else:
        purged = store.purge_deleted(ctx, ctx.stash, before=cutoff)
    _emit(app, {"purged": purged}, f"Purged {len(purged)} record(s)")


@cli.command()
@click.argument("record_id")
@click.option("--parent", default=None, help="New parent id")
@click.option("--root", "to_root", is_flag=True, help="Make the record a root record")
@click.pass_obj
def move(app: _App, record_id: str, parent: str | None, to_root: bool) -> None:
    """Move a record (and its subtree) under a new parent; ids are reassigned."""
    ctx = app.context()
    if bool(parent) == to_root:
        msg = "specify exactly one of --parent or --root"
        raise ValidationError(msg, code="INVALID_MOVE_TARGET")
    _check_lock(app, ctx, record_id)
    moved = app.store.move_record(ctx, ctx.stash, record_id, parent)
    _emit(app, {"old_id": record_id, "new_id": moved.id, "parent_id": moved.parent_id or None},
          f"{record_id} -> {moved.id}")


# ---------------------------------------------------------------------------
# stash show / history / list / children / count / query / export
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("record_id")
@click.option("--deleted", is_flag=True, help="Show the record even if soft-deleted")
@click.option("--history", "with_history", is_flag=True, help="Include change history")
@click.pass_obj
def show(app: _App, record_id: str, deleted: bool, with_history: bool) -> None:
    """Show one record."""
    ctx = app.context()
    store = app.store
    record = store.get_record(ctx.stash, record_id, include_deleted=deleted)
    stash = store.get_stash(ctx.stash)
    data = record.to_dict()
    text = _record_text(stash, record)
    if with_history:
        entries = store.history(ctx.stash, record_id)
        data["history"] = [e.to_entry() for e in entries]
        text += "\n\nHistory:\n" + "\n".join(f"  {e.updated_at}  {e.op:<8} {e.updated_by}" for e in entries)
    _emit(app, data, text)


@cli.command()
@click.argument("record_id")
@click.option("--by", "actor", default=None, help="Only entries by this actor")
@click.option("--limit", "-l", default=0, help="Most recent N entries (0 = all)")
@click.pass_obj
def history(app: _App, record_id: str, actor: str | None, limit: int) -> None:
    """Show every logged change of a record, oldest first."""
    ctx = app.context()
    entries = app.store.history(ctx.stash, record_id)
    if actor:
        entries = [e for e in entries if e.updated_by == actor]
    if limit > 0:
        entries = entries[-limit:]
    _emit(
        app,
        [e.to_entry() for e in entries],
        "\n".join(f"{e.updated_at}  {e.op:<8} {e.updated_by:<12} {e.hash}" for e in entries) or "No history.",
    )


@cli.command("list")
@click.option("--all", "all_records", is_flag=True, help="Include child records")
@click.option("--parent", default=None, help="Only direct children of this id")
@click.option("--deleted", is_flag=True, help="Include soft-deleted records")
@click.option("--only-deleted", is_flag=True, help="Only soft-deleted records")
@click.option("--where", multiple=True, help="Filter clause (repeatable, ANDed)")
@click.option("--search", default="", help="Substring search across all fields")
@click.option("--columns", default="", help="Comma-separated columns to show")
@click.option("--order-by", default="", help="Sort field (default: updated_at, newest first)")
@click.option("--desc/--asc", default=None, help="Sort direction")
@click.option("--limit", "-l", default=0, help="Max records (0 = no limit)")
@click.option("--offset", default=0, help="Skip first N records")
@click.pass_obj
def list_cmd(
    app: _App,
    all_records: bool,
    parent: str | None,
    deleted: bool,
    only_deleted: bool,
    where: tuple[str, ...],
    search: str,
    columns: str,
    order_by: str,
    desc: bool | None,
    limit: int,
    offset: int,
) -> None:
    """List records (root records only unless --all or --parent)."""
    ctx = app.context()
    opts = _list_options(
        all_records=all_records, parent=parent, deleted=deleted, deleted_only=only_deleted,
        where=where, search=search, columns=columns, order_by=order_by, desc=desc,
        limit=limit, offset=offset,
    )
    records = app.store.list_records(ctx.stash, opts)
    stash = app.store.get_stash(ctx.stash)
    shown = [c for c in (opts.columns or stash.column_names()) if c.lower() not in CACHE_SYSTEM_COLUMNS]
    if app.as_json:
        _emit(app, [r.to_dict(opts.columns or None) for r in records])
        return
    click.echo(_records_text(stash, records, shown))


@cli.command()
@click.argument("record_id")
@click.option("--deleted", is_flag=True, help="Include soft-deleted children")
@click.pass_obj
def children(app: _App, record_id: str, deleted: bool) -> None:
    """List direct children of a record."""
    ctx = app.context()
    records = app.store.children(ctx.stash, record_id, include_deleted=deleted)
    stash = app.store.get_stash(ctx.stash)
    _emit(app, [r.to_dict() for r in records], _records_text(stash, records))


@cli.command()
@click.option("--all", "all_records", is_flag=True, help="Count child records too")
@click.option("--parent", default=None, help="Count direct children of this id")
@click.option("--deleted", is_flag=True, help="Include soft-deleted records")
@click.option("--where", multiple=True, help="Filter clause (repeatable, ANDed)")
@click.pass_obj
def count(app: _App, all_records: bool, parent: str | None, deleted: bool, where: tuple[str, ...]) -> None:
    """Count records (root records unless --all or --parent)."""
    ctx = app.context()
    opts = _list_options(all_records=all_records, parent=parent, deleted=deleted, where=where)
    n = app.store.count_records(ctx.stash, opts)
    _emit(app, {"count": n}, str(n))


@cli.command()
@click.argument("sql")
@click.option("--csv", "as_csv", is_flag=True, help="CSV output")
@click.option("--no-headers", is_flag=True, help="Omit the CSV header row")
@click.pass_obj
def query(app: _App, sql: str, as_csv: bool, no_headers: bool) -> None:
    """Run a read-only SELECT against the cache (tables are named after stashes)."""
    columns, rows = app.store.raw_query(sql)
    if app.as_json:
        _emit(app, [dict(zip(columns, row, strict=True)) for row in rows])
        return
    if as_csv:
        buf = io.StringIO()
        writer = csv.writer(buf)
        if not no_headers:
            writer.writerow(columns)
        writer.writerows(rows)
        click.echo(buf.getvalue(), nl=False)
        return
    click.echo(_table(columns, [["" if v is None else str(v) for v in row] for row in rows]))


@cli.command()
@click.argument("output", required=False, type=click.Path(dir_okay=False))
@click.option("--format", "fmt", type=click.Choice(["csv", "json", "jsonl"]), default="csv", show_default=True)
@click.option("--where", multiple=True, help="Filter clause (repeatable, ANDed)")
@click.option("--include-deleted", is_flag=True, help="Include soft-deleted records")
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing file")
@click.pass_obj
def export(app: _App, output: str | None, fmt: str, where: tuple[str, ...], include_deleted: bool, force: bool) -> None:
    """Export all records (roots and children) to stdout or OUTPUT."""
    ctx = app.context()
    stash = app.store.get_stash(ctx.stash)
    opts = _list_options(all_records=True, deleted=include_deleted, where=where, order_by="id", desc=False)
    records = app.store.list_records(ctx.stash, opts)

    if fmt == "json":
        text = json.dumps([r.to_dict() for r in records], indent=2, default=str) + "\n"
    elif fmt == "jsonl":
        text = "".join(json.dumps(r.to_entry(), default=str) + "\n" for r in records)
    else:
        buf = io.StringIO()
        writer = csv.writer(buf)
        system = ["id", "parent_id", "created_at", "created_by", "updated_at", "updated_by", "deleted_at"]
        writer.writerow([*system, *stash.column_names()])
        for r in records:
            row = [r.id, r.parent_id, r.created_at, r.created_by, r.updated_at, r.updated_by, r.deleted_at]
            for c in stash.column_names():
                v = r.get_field(c)
                row.append("" if v is None else v)
            writer.writerow(row)
        text = buf.getvalue()

    if output is None:
        click.echo(text, nl=False)
        return
    path = Path(output)
    if path.exists() and not force:
        msg = f"{path} already exists (use --force to overwrite)"
        raise ValidationError(msg, code="FILE_EXISTS", details={"path": str(path)})
    path.write_text(text)
    if not app.as_json:
        click.echo(f"Exported {len(records)} record(s) to {path}", err=True)


_IMPORT_FORMATS = {".csv": "csv", ".json": "json", ".jsonl": "jsonl"}


def _import_row(obj: Any, where: str) -> dict[str, Any]:
    if not isinstance(obj, dict):
        msg = f"{where}: expected an object, got {type(obj).__name__}"
        raise ValidationError(msg, code="INVALID_IMPORT_FILE")
    # `stash export --format json` nests user columns under "fields".
    if isinstance(obj.get("fields"), dict):
        obj = obj["fields"]
    return {
        k: v for k, v in obj.items()
        if isinstance(k, str) and not k.startswith("_") and not is_reserved_column(k)
        and v is not None and v != ""
    }


def _read_import(path: Path, fmt: str) -> tuple[list[str], list[dict[str, Any]]]:
    """Rows of an import file and the user columns they name, in first-seen order."""
    text = path.read_text()
    rows: list[dict[str, Any]] = []
    try:
        if fmt == "csv":
            reader = csv.DictReader(io.StringIO(text))
            rows = [_import_row(r, f"{path}:{reader.line_num}") for r in reader]
            names = [h for h in reader.fieldnames or [] if not h.startswith("_") and not is_reserved_column(h)]
            return names, rows
        if fmt == "json":
            data = json.loads(text)
            if not isinstance(data, list):
                msg = f"{path}: expected a JSON array of objects"
                raise ValidationError(msg, code="INVALID_IMPORT_FILE", details={"path": str(path)})
            rows = [_import_row(obj, f"{path}[{i}]") for i, obj in enumerate(data)]
        else:
            for n, line in enumerate(text.splitlines(), start=1):
                if line.strip():
                    rows.append(_import_row(json.loads(line), f"{path}:{n}"))
    except json.JSONDecodeError as exc:
        msg = f"{path}: invalid JSON: {exc}"
        raise ValidationError(msg, code="INVALID_IMPORT_FILE", details={"path": str(path)}) from exc
    headers: list[str] = []
    for row in rows:
        headers.extend(k for k in row if k not in headers)
    return headers, rows


@cli.command("import")
@click.argument("input_file", metavar="FILE", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--format", "fmt", type=click.Choice(["csv", "json", "jsonl"]), default=None,
              help="File format (default: from the extension, else csv)")
@click.option("--column", "primary", default=None, help="Primary column (default: the first one in the file)")
@click.option("--dry-run", is_flag=True, help="Show what would be imported")
@click.option("--yes", "--confirm", "-y", "yes", is_flag=True, help="Skip confirmation")
@click.pass_obj
def import_(app: _App, input_file: Path, fmt: str | None, primary: str | None, dry_run: bool, yes: bool) -> None:
    """Import records from a CSV, JSON or JSONL file, creating missing columns."""
    ctx = app.context()
    stash = app.store.get_stash(ctx.stash)
    fmt = fmt or _IMPORT_FORMATS.get(input_file.suffix.lower(), "csv")
    columns, rows = _read_import(input_file, fmt)
    if primary is None:
        primary = columns[0] if columns else ""
    elif primary not in columns:
        msg = f"column '{primary}' does not appear in {input_file}"
        raise ValidationError(msg, code="UNKNOWN_IMPORT_COLUMN", details={"column": primary, "columns": columns})

    plan = app.store.import_records(ctx, ctx.stash, rows, dry_run=True)
    if not app.as_json:
        click.echo(f"File: {input_file} ({fmt})")
        click.echo(f"Records: {len(rows)}")
        click.echo(f"Columns: {', '.join(columns)}")
        click.echo(f"Primary column: {primary}")
        if plan.new_columns:
            click.echo(f"New columns: {', '.join(plan.new_columns)}")
        for i, row in enumerate(rows[:3], start=1):
            click.echo(f"  {i}. " + ", ".join(f"{k}={v}" for k, v in row.items()))
        if len(rows) > 3:
            click.echo(f"  ... and {len(rows) - 3} more")
    if dry_run:
        _emit(app, {"dry_run": True, "stash": stash.name, "primary_column": primary, **plan.to_dict()},
              "Dry run: nothing imported.")
        return
    if not rows:
        _emit(app, plan.to_dict(), "No records to import.")
        return
    if not yes and not app.as_json:
        click.confirm(f"Import {len(rows)} record(s) into '{stash.name}'?", abort=True)

    result = app.store.import_records(ctx, ctx.stash, rows)
    for failure in result.failed:
        label = rows[failure["row"] - 1].get(primary, "")
        click.echo(f"row {failure['row']} ({label}): {failure['message']}", err=True)
    _emit(app, result.to_dict(), f"Imported {len(result.imported)} of {result.total} record(s)")


# ---------------------------------------------------------------------------
# stash lock / unlock / locks
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("record_id")
@click.option("--agent", default=None, help="Lock owner (default: the actor)")
@click.option("--timeout", type=int, default=None, help="Seconds until expiry (default: [locks] timeout)")
@click.pass_obj
def lock(app: _App, record_id: str, agent: str | None, timeout: int | None) -> None:
    """Lock a record for exclusive (advisory) use."""
    ctx = app.context()
    app.store.get_record(ctx.stash, record_id)
    held = app.locks().acquire(ctx.stash, record_id, agent or ctx.actor, timeout)
    _emit(app, held.to_dict(), f"Locked {record_id} by {held.agent} until {held.expires_at}")


@cli.command()
@click.argument("record_id")
@click.pass_obj
def unlock(app: _App, record_id: str) -> None:
    """Release a lock (any agent may release)."""
    ctx = app.context()
    released = app.locks().release(ctx.stash, record_id)
    _emit(app, released.to_dict(), f"Unlocked {record_id}")


@cli.command()
@click.pass_obj
def locks(app: _App) -> None:
    """List active locks in the stash."""
    ctx = app.context()
    active = app.locks().list(ctx.stash)
    if app.as_json:
        _emit(app, [lk.to_dict() for lk in active])
        return
    if not active:
        click.echo("No active locks.")
        return
    click.echo(_table(["RECORD", "AGENT", "EXPIRES"], [[lk.record_id, lk.agent, lk.expires_at] for lk in active]))


# ---------------------------------------------------------------------------
# stash attach / detach / files
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("record_id")
@click.argument("file", type=click.Path(dir_okay=False))
@click.option("--column", "-c", "column_name", required=True, help="Column that stores the files/... reference")
@click.option("--move", "move_file", is_flag=True, help="Move the file instead of copying it")
@click.pass_obj
def attach(app: _App, record_id: str, file: str, column_name: str, move_file: bool) -> None:
    """Attach a file to a record."""
    ctx = app.context()
    _check_lock(app, ctx, record_id)
    attachment = app.store.attach_file(ctx, ctx.stash, record_id, file, column_name, move=move_file)
    _emit(app, attachment.to_dict(), f"Attached {attachment.path}")


@cli.command()
@click.argument("record_id")
@click.argument("name")
@click.pass_obj
def detach(app: _App, record_id: str, name: str) -> None:
    """Remove an attached file and clear fields that referenced it."""
    ctx = app.context()
    _check_lock(app, ctx, record_id)
    attachment = app.store.detach_file(ctx, ctx.stash, record_id, name)
    _emit(app, attachment.to_dict(), f"Detached {attachment.path}")


@cli.command()
@click.argument("record_id")
@click.pass_obj
def files(app: _App, record_id: str) -> None:
    """List files attached to a record."""
    ctx = app.context()
    attachments = app.store.list_files(ctx.stash, record_id)
    if app.as_json:
        _emit(app, [a.to_dict() for a in attachments])
        return
    if not attachments:
        click.echo("No files.")
        return
    click.echo(_table(["NAME", "SIZE", "PATH"], [[a.name, str(a.size), a.path] for a in attachments]))


# ---------------------------------------------------------------------------
# stash sync / repair / doctor
# ---------------------------------------------------------------------------


def _target_stashes(app: _App) -> list[str]:
    if app.stash:
        app.store.get_stash(app.stash)
        return [app.stash]
    return [s.name for s in app.store.list_stashes()]


@cli.command()
@click.option("--status", "show_status", is_flag=True, help="Show sync status (default)")
@click.option("--rebuild", is_flag=True, help="Rebuild the cache from records.jsonl")
@click.option("--flush", is_flag=True, help="Append cache-only changes to records.jsonl")
@click.option("--from-main", is_flag=True, help="Adopt the logs of the main git worktree")
@click.option("--main-dir", default=None, type=click.Path(file_okay=False), help="Other .stash/ to adopt from")
@click.pass_obj
def sync(app: _App, show_status: bool, rebuild: bool, flush: bool, from_main: bool, main_dir: str | None) -> None:
    """Reconcile records.jsonl and the cache."""
    store = app.store
    ctx = app.context(require_stash=False)
    names = _target_stashes(app)

    if from_main or main_dir:
        if main_dir:
            other = Path(main_dir)
        else:
            worktree = find_main_worktree(app.config.root)
            if worktree is None:
                msg = "could not locate the main git worktree"
                raise NotFoundError(msg, code="NO_MAIN_WORKTREE")
            other = worktree / app.config.stash_dir.name
        if not app.stash and other.is_dir():
            names = sorted({*names, *(d.name for d in other.iterdir() if (d / "config.json").exists())})
        done = {name: stash_sync.sync_from(store, name, other) for name in names if (other / name).is_dir()}
        _emit(app, {"adopted": done}, "\n".join(f"Pulled {n}: {c} record(s)" for n, c in done.items()) or "Nothing to pull.")
        return
    if rebuild:
        done = {name: stash_sync.rebuild_cache(store, name) for name in names}
        _emit(app, {"rebuilt": done}, "\n".join(f"Rebuilt {n}: {c} record(s)" for n, c in done.items()) or "No stashes.")
        return
    if flush:
        done = {name: stash_sync.flush_to_log(store, ctx, name) for name in names}
        _emit(app, {"flushed": done}, "\n".join(f"Flushed {n}: {c} entr(ies)" for n, c in done.items()) or "No stashes.")
        return

    rows = [r for r in stash_sync.sync_status(store) if r["name"] in names]
    if app.as_json:
        _emit(app, {"stashes": rows})
        return
    if not rows:
        click.echo("No stashes.")
        return
    for r in rows:
        state = "STALE (run `stash sync --rebuild`)" if r["stale"] else "synced"
        click.echo(f"{r['name']} ({r['prefix']})  {state}, {r['records']} record(s), last sync {r['last_sync'] or 'never'}")


@cli.command()
@click.option("--rebuild", is_flag=True, help="Rebuild cache from records.jsonl")
@click.option("--flush", is_flag=True, help="Append cache-only changes to records.jsonl")
@click.option("--clean-orphans", is_flag=True, help="Remove files no record references")
@click.option("--rehash", "do_rehash", is_flag=True, help="Fix stored hashes that no longer match")
@click.option("--dry-run", is_flag=True, help="Only show planned repairs")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_obj
def repair(
    app: _App,
    rebuild: bool,
    flush: bool,
    clean_orphans: bool,
    do_rehash: bool,
    dry_run: bool,
    yes: bool,
) -> None:
    """Plan and run repairs; each action succeeds or fails on its own."""
    ctx = app.context(require_stash=False)
    store = app.store
    actions = stash_sync.plan_repairs(
        store, _target_stashes(app),
        rebuild=rebuild, flush=flush, clean_orphans=clean_orphans, rehash=do_rehash,
    )
    if not actions:
        _emit(app, {"dry_run": dry_run, "actions": [], "summary": stash_sync.summarize([])},
              "No repairs needed. Use --rebuild, --flush, --clean-orphans or --rehash.")
        return
    if dry_run:
        _emit(
            app,
            {"dry_run": True, "actions": [a.to_dict() for a in actions], "summary": stash_sync.summarize(actions)},
            "Planned repairs:\n" + "\n".join(f"  - {a.action}: {a.target}  {a.details}" for a in actions),
        )
        return
    if not yes:
        click.echo("Planned repairs:")
        for a in actions:
            click.echo(f"  - {a.action}: {a.target}  {a.details}")
        click.confirm("Proceed with repairs?", abort=True)

    stash_sync.execute_repairs(store, ctx, actions)
    summary = stash_sync.summarize(actions)
    _emit(
        app,
        {"dry_run": False, "actions": [a.to_dict() for a in actions], "summary": summary},
        "\n".join(
            f"  [{a.status}] {a.action}: {a.target}" + (f"  ({a.error})" if a.error else "") for a in actions
        ) + f"\n{summary['succeeded']} succeeded, {summary['failed']} failed, {summary['skipped']} skipped",
    )
    if summary["failed"]:
        raise SystemExit(1)


@cli.command()
@click.pass_obj
def doctor(app: _App) -> None:
    """Check log, cache, hashes, parents, files and values. Exits 1 on problems."""
    checks = stash_sync.run_checks(app.store)
    problems = [c for c in checks if not c.ok]
    if app.as_json:
        _emit(app, {"ok": not problems, "checks": [c.to_dict() for c in checks]})
    else:
        for c in checks:
            click.echo(f"[{'ok' if c.ok else '!!'}] {c.target}/{c.name}: {c.message}")
            for d in c.details[:10]:
                click.echo(f"      {d}")
        click.echo("All checks passed." if not problems else f"{len(problems)} problem(s) found.")
    if problems:
        raise SystemExit(1)
