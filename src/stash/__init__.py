"""Structured record stashes: JSONL append logs as source of truth, SQLite as derived cache.

Layout:
    .stash/
        cache.db              # SQLite: one table per stash (fully reconstructable, .gitignored)
        locks.json            # advisory record locks
        metadata.json         # {"last_stash_version":..., "schema_version":1}
        <stash>/
            config.json       # name, prefix, columns
            records.jsonl     # append log (git-tracked)
            files/<id>/...    # attachments

records.jsonl line (one per change, last write wins on replay):
    {"_id":"inv-a1b2", "_hash":"...", "_op":"create", "_created_at":..., "_created_by":...,
     "_updated_at":..., "_updated_by":..., "_parent":..., "_branch":..., "Name":"Laptop"}

Concurrent writes: appends take flock(LOCK_EX) on records.jsonl; readers take LOCK_SH.
"""

__version__ = "0.1.0"

from stash.config import StashConfig, init_config, load_config  # noqa: E402
from stash.context import Context, resolve_context  # noqa: E402
from stash.errors import (  # noqa: E402
    AlreadyExistsError,
    ConflictError,
    LockConflictError,
    NotFoundError,
    ParentReferenceError,
    QueryError,
    RecordDeletedError,
    StashError,
    StorageIntegrityError,
    StorageIOError,
    ValidationError,
)
from stash.models import Column, Record, Stash  # noqa: E402
from stash.store import Store  # noqa: E402

__all__ = [
    "AlreadyExistsError",
    "Column",
    "ConflictError",
    "Context",
    "LockConflictError",
    "NotFoundError",
    "ParentReferenceError",
    "QueryError",
    "Record",
    "RecordDeletedError",
    "Stash",
    "StashConfig",
    "StashError",
    "StorageIOError",
    "StorageIntegrityError",
    "Store",
    "ValidationError",
    "init_config",
    "load_config",
    "resolve_context",
]
