"""Data models for stashes, columns and records."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from stash.errors import AlreadyExistsError, NotFoundError, ValidationError

# Log operations
OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"
OP_RESTORE = "restore"
OP_PURGE = "purge"
OPERATIONS = (OP_CREATE, OP_UPDATE, OP_DELETE, OP_RESTORE, OP_PURGE)

# Attachment references stored in field values start with this literal.
FILES_PREFIX = "files/"

SCHEMA_VERSION = 1

# Keys of a log entry that are not user fields.
SYSTEM_KEYS = frozenset({
    "_id", "_hash", "_parent", "_created_at", "_created_by", "_updated_at",
    "_updated_by", "_branch", "_deleted_at", "_deleted_by", "_op",
})

# Physical system columns of a cache table.
CACHE_SYSTEM_COLUMNS = (
    "id", "hash", "parent_id", "created_at", "created_by",
    "updated_at", "updated_by", "branch", "deleted_at", "deleted_by",
)

_RESERVED = SYSTEM_KEYS | frozenset(CACHE_SYSTEM_COLUMNS)

_COLUMN_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]{0,63}$")
_PREFIX_RE = re.compile(r"^[a-z]{2,4}-$")
_STASH_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]{0,63}$")

VALIDATION_KINDS = ("email", "url", "number", "date")


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string ending in Z."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------


def is_reserved_column(name: str) -> bool:
    return name.lower() in _RESERVED


def validate_column_name(name: str) -> None:
    """Raise ValidationError unless name is usable as a user column."""
    if is_reserved_column(name):
        msg = f"'{name}' is a reserved column name"
        raise ValidationError(msg, code="RESERVED_COLUMN", details={"column": name})
    if not _COLUMN_NAME_RE.match(name):
        msg = (
            f"invalid column name '{name}': must start with a letter and contain only "
            "letters, digits and underscores (max 64 characters)"
        )
        raise ValidationError(msg, code="INVALID_COLUMN", details={"column": name})


def validate_prefix(prefix: str) -> None:
    if not _PREFIX_RE.match(prefix):
        msg = f"invalid prefix '{prefix}': must be 2-4 lowercase letters followed by a dash (e.g. inv-)"
        raise ValidationError(msg, code="INVALID_PREFIX", details={"prefix": prefix})


def validate_stash_name(name: str) -> None:
    if not _STASH_NAME_RE.match(name):
        msg = (
            f"invalid stash name '{name}': must start with a letter and contain only "
            "letters, digits, hyphens and underscores"
        )
        raise ValidationError(msg, code="INVALID_STASH_NAME", details={"stash": name})


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def value_text(value: Any) -> str | None:
    """Text form of a field value, as the cache stores it.

    Strings pass through untouched; 42 becomes "42" and {"b": 1, "a": 2}
    becomes '{"a":2,"b":1}'. Hashing goes through the same form, so a
    record hashes identically before and after a trip through the cache.
    """
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return json.dumps(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_hash(fields: dict[str, Any]) -> str:
    """Deterministic content digest of user fields: first 12 hex chars of SHA-256."""
    buf = []
    for key in sorted(k for k in fields if not k.startswith("_")):
        buf.append(f"{key}:{json.dumps(value_text(fields[key]), ensure_ascii=False)}\n")
    return hashlib.sha256("".join(buf).encode()).hexdigest()[:12]


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


@dataclass
class Column:
    """A user-defined column of a stash schema."""

    name: str
    desc: str = ""
    added: str = ""
    added_by: str = ""
    validate: str = ""                  # email | url | number | date
    enum: list[str] = field(default_factory=list)
    required: bool = False

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Column:
        return cls(
            name=d["name"],
            desc=d.get("desc", ""),
            added=d.get("added", ""),
            added_by=d.get("added_by", ""),
            validate=d.get("validate", ""),
            enum=list(d.get("enum") or []),
            required=bool(d.get("required", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name}
        if self.desc:
            d["desc"] = self.desc
        d["added"] = self.added
        d["added_by"] = self.added_by
        if self.validate:
            d["validate"] = self.validate
        if self.enum:
            d["enum"] = list(self.enum)
        if self.required:
            d["required"] = True
        return d


@dataclass
class Stash:
    """A named collection of records sharing an id prefix and a schema."""

    name: str
    prefix: str
    created: str = ""
    created_by: str = ""
    columns: list[Column] = field(default_factory=list)
    schema_version: int = SCHEMA_VERSION

    @property
    def table(self) -> str:
        return table_name(self.name)

    @property
    def primary_column(self) -> Column | None:
        """First column; receives the positional value on record creation."""
        return self.columns[0] if self.columns else None

    def find_column(self, name: str) -> Column | None:
        lower = name.lower()
        for col in self.columns:
            if col.name.lower() == lower:
                return col
        return None

    def get_column(self, name: str) -> Column:
        col = self.find_column(name)
        if col is None:
            msg = f"column '{name}' not found in stash '{self.name}'"
            raise NotFoundError(msg, code="COLUMN_NOT_FOUND", details={"column": name, "stash": self.name})
        return col

    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def add_column(self, col: Column) -> None:
        existing = self.find_column(col.name)
        if existing is not None:
            msg = f"column '{existing.name}' already exists"
            raise AlreadyExistsError(msg, code="COLUMN_EXISTS", details={"column": existing.name})
        validate_column_name(col.name)
        if col.validate and col.validate not in VALIDATION_KINDS:
            msg = f"unknown validation type '{col.validate}' (expected one of: {', '.join(VALIDATION_KINDS)})"
            raise ValidationError(msg, code="INVALID_VALIDATION_TYPE", details={"validate": col.validate})
        self.columns.append(col)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Stash:
        return cls(
            name=d["name"],
            prefix=d["prefix"],
            created=d.get("created", ""),
            created_by=d.get("created_by", ""),
            columns=[Column.from_dict(c) for c in d.get("columns") or []],
            schema_version=int(d.get("schema_version", SCHEMA_VERSION)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "prefix": self.prefix,
            "created": self.created,
            "created_by": self.created_by,
            "columns": [c.to_dict() for c in self.columns],
            "schema_version": self.schema_version,
        }


def table_name(stash_name: str) -> str:
    """SQLite identifiers can't carry hyphens."""
    return stash_name.replace("-", "_")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class Record:
    """One record: user fields plus system audit and lifecycle fields."""

    id: str
    hash: str = ""
    parent_id: str = ""
    created_at: str = ""
    created_by: str = ""
    updated_at: str = ""
    updated_by: str = ""
    branch: str = ""
    deleted_at: str = ""
    deleted_by: str = ""
    op: str = OP_CREATE
    fields: dict[str, Any] = field(default_factory=dict)

    # Only set on purge entries written by a move.
    moved_to: str = ""

    @property
    def is_deleted(self) -> bool:
        return bool(self.deleted_at)

    def get_field(self, name: str) -> Any:
        if name in self.fields:
            return self.fields[name]
        lower = name.lower()
        for k, v in self.fields.items():
            if k.lower() == lower:
                return v
        return None

    def set_field(self, name: str, value: Any) -> None:
        """Set a field, keeping the existing key's case when it matches case-insensitively."""
        lower = name.lower()
        for k in self.fields:
            if k.lower() == lower:
                self.fields[k] = value
                return
        self.fields[name] = value

    def rehash(self) -> str:
        self.hash = compute_hash(self.fields)
        return self.hash

    def copy(self) -> Record:
        return Record.from_entry(self.to_entry())

    @classmethod
    def from_entry(cls, d: dict[str, Any]) -> Record:
        """Parse one log line (system keys prefixed with `_`, user fields flattened)."""
        return cls(
            id=d.get("_id", ""),
            hash=d.get("_hash", ""),
            parent_id=d.get("_parent") or "",
            created_at=d.get("_created_at", ""),
            created_by=d.get("_created_by", ""),
            updated_at=d.get("_updated_at", ""),
            updated_by=d.get("_updated_by", ""),
            branch=d.get("_branch") or "",
            deleted_at=d.get("_deleted_at") or "",
            deleted_by=d.get("_deleted_by") or "",
            op=d.get("_op", OP_CREATE),
            fields={k: v for k, v in d.items() if not k.startswith("_")},
            moved_to=d.get("_moved_to") or "",
        )

    def to_entry(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "_id": self.id,
            "_hash": self.hash,
            "_op": self.op,
            "_created_at": self.created_at,
            "_created_by": self.created_by,
            "_updated_at": self.updated_at,
            "_updated_by": self.updated_by,
        }
        if self.parent_id:
            d["_parent"] = self.parent_id
        if self.branch:
            d["_branch"] = self.branch
        if self.deleted_at:
            d["_deleted_at"] = self.deleted_at
            d["_deleted_by"] = self.deleted_by
        if self.moved_to:
            d["_moved_to"] = self.moved_to
        d.update(self.fields)
        return d

    def to_dict(self, columns: list[str] | None = None) -> dict[str, Any]:
        """Output shape for JSON consumers (system keys without underscore prefix)."""
        d: dict[str, Any] = {
            "id": self.id,
            "hash": self.hash,
            "parent_id": self.parent_id or None,
            "created_at": self.created_at,
            "created_by": self.created_by,
            "updated_at": self.updated_at,
            "updated_by": self.updated_by,
            "branch": self.branch or None,
        }
        if self.deleted_at:
            d["deleted_at"] = self.deleted_at
            d["deleted_by"] = self.deleted_by
        if columns is None:
            d["fields"] = dict(self.fields)
        else:
            d["fields"] = {c: self.fields.get(c) for c in columns}
        return d


@dataclass
class Attachment:
    """A file stored under <stash>/files/<record-id>/."""

    name: str
    path: str          # reference value: files/<record-id>/<name>
    size: int = 0
    sha256: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "path": self.path, "size": self.size, "sha256": self.sha256}
