"""Keep records.jsonl and cache.db consistent, and repair drift.

The log is authoritative. Repairs are planned first (plan_repairs), can be
shown without side effects (dry run), and run one by one (execute_repairs);
a failing action is reported and the remaining actions still run.

Entry points:
    rebuild_cache(store, stash)        # replay the log into a fresh table
    flush_to_log(store, ctx, stash)    # append cache-only state to the log
    rehash(store, ctx, stash)          # fix stored hashes that drifted
    clean_orphaned_files(store, stash) # drop files no record references
    sync_from(store, stash, other_dir) # adopt a collaborator's log
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stash.errors import NotFoundError, StashError, StorageIOError
from stash.jsonl import LOG_FILENAME
from stash.models import FILES_PREFIX, OP_CREATE, OP_DELETE, OP_RESTORE, OP_UPDATE, compute_hash
from stash.validate import validate_record

if TYPE_CHECKING:
    from stash.context import Context
    from stash.models import Record, Stash
    from stash.store import Store

logger = logging.getLogger("stash.sync")

ACTION_REBUILD_CACHE = "rebuild_cache"
ACTION_REBUILD_JSONL = "rebuild_jsonl"
ACTION_CLEAN_ORPHANS = "clean_orphans"
ACTION_REHASH = "rehash"

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Rebuild / flush
# ---------------------------------------------------------------------------


def rebuild_cache(store: Store, stash: str) -> int:
    """Drop the stash table and replay the full log into it."""
    count = store.rebuild_cache(stash)
    logger.info("rebuilt cache for %s: %d record(s)", stash, count)
    return count


def _same_state(a: Record, b: Record) -> bool:
    return (
        a.hash == b.hash
        and compute_hash(a.fields) == compute_hash(b.fields)
        and a.parent_id == b.parent_id
        and bool(a.deleted_at) == bool(b.deleted_at)
    )


def flush_to_log(store: Store, ctx: Context, stash: str) -> int:
    """Append an entry for every cache row the log does not already reflect.

    Prior history is never rewritten. Returns the number of entries written.
    When the cache was stale, the table is rebuilt from the log afterwards so
    records only the log knows about show up again; otherwise the new log
    position is recorded as the sync point.
    """
    definition = store.get_stash(stash)
    stale = store.is_stale(definition)
    if stale:
        logger.warning("flushing %s while its cache is stale; log-only changes may be superseded", stash)
    state = store.log.replay(stash)
    rows = store.cache.all_records(definition) if store.cache.table_exists(definition.table) else []
    pending: list[Record] = []
    for row in rows:
        logged = state.records.get(row.id)
        if logged is None and row.id in state.known_ids:
            # Purged or moved away in the log; ids are never brought back.
            logger.warning("not flushing %s: id was retired in the %s log", row.id, stash)
            continue
        if logged is not None and _same_state(row, logged):
            continue
        if logged is None:
            row.op = OP_CREATE
        elif row.is_deleted and not logged.is_deleted:
            row.op = OP_DELETE
        elif logged.is_deleted and not row.is_deleted:
            row.op = OP_RESTORE
        else:
            row.op = OP_UPDATE
        pending.append(row)
    if pending:
        store.log.append_many(stash, pending)
    if stale:
        store.rebuild_cache(stash)
    else:
        store.cache.mark_synced(stash, store.log.fingerprint(stash))
    logger.info("flushed %d entr%s to %s log", len(pending), "y" if len(pending) == 1 else "ies", stash)
    return len(pending)


# ---------------------------------------------------------------------------
# Hashes
# ---------------------------------------------------------------------------


def find_hash_mismatches(store: Store, stash: str) -> list[str]:
    """Ids of live records whose stored hash is not the digest of their fields.

    Both the replayed log and (when it is fresh) the cache are checked.
    """
    definition = store.get_stash(stash)
    bad = {
        r.id for r in store.log.replay(stash).live()
        if r.hash != compute_hash(r.fields)
    }
    if not store.is_stale(definition):
        for row in store.cache.all_records(definition):
            if not row.is_deleted and row.hash != compute_hash(row.fields):
                bad.add(row.id)
    return sorted(bad)


def rehash(store: Store, ctx: Context, stash: str) -> list[str]:
    """Persist correct hashes for mismatched records, stamped with the repairing actor.

    Only hash and updated_by change. A stale cache is rebuilt first.
    """
    definition = store.get_stash(stash)
    if store.is_stale(definition):
        rebuild_cache(store, stash)
    fixed: list[Record] = []
    for row in store.cache.all_records(definition):
        if row.is_deleted:
            continue
        expected = compute_hash(row.fields)
        if row.hash == expected:
            continue
        logger.info("rehash %s: %s -> %s", row.id, row.hash, expected)
        row.hash = expected
        row.updated_by = ctx.actor
        row.op = OP_UPDATE
        fixed.append(row)
    if fixed:
        store.log.append_many(stash, fixed)
        store.cache.upsert_many(definition, fixed)
        store.cache.mark_synced(stash, store.log.fingerprint(stash))
    return [r.id for r in fixed]


# ---------------------------------------------------------------------------
# Attachments and references
# ---------------------------------------------------------------------------


def _referenced_files(store: Store, definition: Stash) -> set[str]:
    """Every files/... value held by a live or soft-deleted record, in log or cache."""
    records = list(store.log.replay(definition.name).records.values())
    if store.cache.table_exists(definition.table):
        records += store.cache.all_records(definition)
    refs: set[str] = set()
    for record in records:
        for value in record.fields.values():
            if isinstance(value, str) and value.startswith(FILES_PREFIX):
                refs.add(value)
    return refs


def find_orphaned_files(store: Store, stash: str) -> list[str]:
    """Paths (files/<id>/<name>) under the stash's files/ that nothing references."""
    definition = store.get_stash(stash)
    root = store.files_root(stash)
    if not root.is_dir():
        return []
    refs = _referenced_files(store, definition)
    orphans = []
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        rel = FILES_PREFIX + path.relative_to(root).as_posix()
        if rel not in refs:
            orphans.append(rel)
    return orphans


def clean_orphaned_files(store: Store, stash: str) -> list[str]:
    """Remove orphaned files (and directories left empty). Returns removed paths."""
    removed = []
    stash_path = store.stash_path(stash)
    for rel in find_orphaned_files(store, stash):
        path = stash_path / rel
        try:
            path.unlink()
            parent = path.parent
            if parent != store.files_root(stash) and not any(parent.iterdir()):
                parent.rmdir()
        except OSError as exc:
            msg = f"failed to remove {rel}: {exc}"
            raise StorageIOError(msg, details={"stash": stash, "path": rel}) from exc
        logger.info("removed orphaned file %s/%s", stash, rel)
        removed.append(rel)
    return removed


def find_dangling_parents(store: Store, stash: str) -> list[tuple[str, str]]:
    """(record id, missing parent id) pairs in the replayed log."""
    records = store.log.replay(stash).records
    return sorted(
        (r.id, r.parent_id) for r in records.values()
        if r.parent_id and r.parent_id not in records
    )


# ---------------------------------------------------------------------------
# Status / collaboration
# ---------------------------------------------------------------------------


def sync_status(store: Store) -> list[dict[str, Any]]:
    out = []
    for definition in store.list_stashes():
        stale = store.is_stale(definition)
        point = store.cache.sync_point(definition.name) if store.cache.table_exists(definition.table) else None
        records = len(store.log.replay(definition.name).records)
        out.append({
            "name": definition.name,
            "prefix": definition.prefix,
            "records": records,
            "last_sync": point.last_sync if point else None,
            "synced": not stale,
            "stale": stale,
        })
    return out


def sync_from(store: Store, stash: str, other_stash_dir: Path | str) -> int:
    """Replace the local log with the one in another .stash directory and rebuild."""
    other = Path(other_stash_dir)
    src = other / stash / LOG_FILENAME
    if not src.exists():
        msg = f"no {LOG_FILENAME} for stash '{stash}' in {other}"
        raise NotFoundError(msg, code="LOG_NOT_FOUND", details={"stash": stash, "path": str(src)})
    if not store.stash_exists(stash):
        config = other / stash / "config.json"
        if not config.exists():
            msg = f"stash '{stash}' not found in {other}"
            raise NotFoundError(msg, code="STASH_NOT_FOUND", details={"stash": stash})
        store.stash_path(stash).mkdir(parents=True, exist_ok=True)
        (store.stash_path(stash) / "config.json").write_bytes(config.read_bytes())
    store.log.copy_from(src, stash)
    logger.info("adopted %s log from %s", stash, other)
    return rebuild_cache(store, stash)


# ---------------------------------------------------------------------------
# Repair planning
# ---------------------------------------------------------------------------


@dataclass
class RepairAction:
    action: str
    target: str
    details: str = ""
    status: str = STATUS_PENDING
    error: str = ""
    affected: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        if not self.error:
            d.pop("error")
        return d


def plan_repairs(
    store: Store,
    stashes: list[str] | None = None,
    *,
    rebuild: bool = False,
    flush: bool = False,
    clean_orphans: bool = False,
    rehash: bool = False,
) -> list[RepairAction]:
    """Work out what would be done. No side effects."""
    names = stashes or [s.name for s in store.list_stashes()]
    actions: list[RepairAction] = []
    for name in names:
        store.get_stash(name)
        if rebuild:
            actions.append(RepairAction(ACTION_REBUILD_CACHE, name, "Rebuild cache from records.jsonl"))
        if flush:
            actions.append(RepairAction(ACTION_REBUILD_JSONL, name, "Append cache-only changes to records.jsonl"))
        if clean_orphans:
            orphans = find_orphaned_files(store, name)
            if orphans:
                actions.append(RepairAction(
                    ACTION_CLEAN_ORPHANS, name,
                    f"Remove {len(orphans)} orphaned file(s): {', '.join(orphans)}",
                    affected=orphans,
                ))
        if rehash:
            mismatches = find_hash_mismatches(store, name)
            if mismatches:
                actions.append(RepairAction(
                    ACTION_REHASH, name,
                    f"Recalculate hashes for {len(mismatches)} record(s)",
                    affected=mismatches,
                ))
    return actions


def execute_repairs(store: Store, ctx: Context, actions: list[RepairAction]) -> list[RepairAction]:
    """Run each planned action independently and record its outcome."""
    for action in actions:
        if action.status != STATUS_PENDING:
            continue
        try:
            if action.action == ACTION_REBUILD_CACHE:
                rebuild_cache(store, action.target)
            elif action.action == ACTION_REBUILD_JSONL:
                flush_to_log(store, ctx, action.target)
            elif action.action == ACTION_CLEAN_ORPHANS:
                action.affected = clean_orphaned_files(store, action.target)
            elif action.action == ACTION_REHASH:
                action.affected = rehash(store, ctx, action.target)
            else:
                logger.warning("skipping unknown repair action %s", action.action)
                action.status = STATUS_SKIPPED
                action.error = "unknown action"
                continue
        except (StashError, OSError, sqlite3.Error) as exc:
            logger.exception("repair %s on %s failed", action.action, action.target)
            action.status = STATUS_FAILED
            action.error = str(exc)
            continue
        action.status = STATUS_SUCCESS
    return actions


def summarize(actions: list[RepairAction]) -> dict[str, int]:
    return {
        "total": len(actions),
        "succeeded": sum(1 for a in actions if a.status == STATUS_SUCCESS),
        "failed": sum(1 for a in actions if a.status == STATUS_FAILED),
        "skipped": sum(1 for a in actions if a.status == STATUS_SKIPPED),
    }


# ---------------------------------------------------------------------------
# Health checks
# ---------------------------------------------------------------------------


@dataclass
class Check:
    name: str
    target: str
    ok: bool
    message: str
    details: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def run_checks(store: Store) -> list[Check]:
    """Read-only health report used by `stash doctor`."""
    checks: list[Check] = []
    for definition in store.list_stashes():
        name = definition.name
        try:
            store.log.replay(name)
        except StashError as exc:
            checks.append(Check("log", name, False, exc.message))
            continue
        checks.append(Check("log", name, True, "records.jsonl parses"))

        stale = store.is_stale(definition)
        checks.append(Check(
            "cache", name, not stale,
            "cache is stale; run `stash sync --rebuild`" if stale else "cache matches log",
        ))

        mismatches = find_hash_mismatches(store, name)
        checks.append(Check(
            "hashes", name, not mismatches,
            f"{len(mismatches)} hash mismatch(es); run `stash repair --rehash`" if mismatches else "hashes match",
            mismatches,
        ))

        dangling = find_dangling_parents(store, name)
        checks.append(Check(
            "parents", name, not dangling,
            f"{len(dangling)} record(s) point at a missing parent" if dangling else "parent references resolve",
            [f"{rid} -> {pid}" for rid, pid in dangling],
        ))

        orphans = find_orphaned_files(store, name)
        checks.append(Check(
            "files", name, not orphans,
            f"{len(orphans)} orphaned file(s); run `stash repair --clean-orphans`" if orphans else "no orphaned files",
            orphans,
        ))

        invalid = []
        for record in store.log.replay(name).live():
            for err in validate_record(definition, record).errors:
                invalid.append(f"{record.id}: {err.message}")
        checks.append(Check(
            "values", name, not invalid,
            f"{len(invalid)} value rule violation(s)" if invalid else "values satisfy column rules",
            invalid,
        ))
    return checks
