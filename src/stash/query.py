"""Translate --where clauses and list options into parameterised SQL.

Clause grammar (one clause per flag, clauses are ANDed):

    field=value            exact match
    field!=value           not equal (also field<>value); NULL counts as not equal
    field>value            numeric, likewise < >= <=
    field LIKE pattern     % is the wildcard
    field IS NULL          also IS NOT NULL
    field IS EMPTY         NULL or ''; also IS NOT EMPTY

Field names resolve case-insensitively against the system columns and the
stash schema. Everything is validated before any SQL runs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from stash.errors import ValidationError
from stash.models import CACHE_SYSTEM_COLUMNS

if TYPE_CHECKING:
    from stash.models import Stash

WHERE_GRAMMAR = (
    "expected one of: field=value, field!=value, field>value, field<value, "
    "field>=value, field<=value, field LIKE pattern, field IS [NOT] NULL, field IS [NOT] EMPTY"
)

NUMERIC_OPS = (">", "<", ">=", "<=")

_FIELD = r"([A-Za-z_][A-Za-z0-9_]*)"
_IS_RE = re.compile(rf"^\s*{_FIELD}\s+IS\s+(NOT\s+)?(NULL|EMPTY)\s*$", re.IGNORECASE)
_LIKE_RE = re.compile(rf"^\s*{_FIELD}\s+LIKE\s+(.+?)\s*$", re.IGNORECASE)
_CMP_RE = re.compile(rf"^\s*{_FIELD}\s*(!=|<>|>=|<=|=|>|<)\s*(.*?)\s*$", re.DOTALL)

_MUTATING_RE = re.compile(
    r"\b(INSERT|UPDATE|DELETE|DROP|ALTER|CREATE|TRUNCATE|REPLACE|ATTACH|DETACH)\b"
)

# Aliases accepted for system columns in clauses and --order-by.
_SYSTEM_ALIASES = {
    "_id": "id",
    "_hash": "hash",
    "_parent": "parent_id",
    "parent": "parent_id",
    "_created_at": "created_at",
    "_created_by": "created_by",
    "_updated_at": "updated_at",
    "_updated_by": "updated_by",
    "_branch": "branch",
    "_deleted_at": "deleted_at",
    "_deleted_by": "deleted_by",
}


@dataclass
class WhereCondition:
    field: str
    op: str          # = != > < >= <= LIKE | IS NULL | IS NOT NULL | IS EMPTY | IS NOT EMPTY
    value: str = ""


@dataclass
class ListOptions:
    parent_id: str = ""              # "" roots only, "*" everything, else direct children
    include_deleted: bool = False
    deleted_only: bool = False
    where: list[WhereCondition] = field(default_factory=list)
    search: str = ""
    columns: list[str] = field(default_factory=list)
    order_by: str = ""
    descending: bool | None = None   # None: descending only for the default order
    limit: int = 0
    offset: int = 0


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _invalid(clause: str, reason: str) -> ValidationError:
    return ValidationError(
        f"invalid where clause '{clause}': {reason}",
        code="INVALID_WHERE",
        details={"clause": clause, "grammar": WHERE_GRAMMAR},
    )


def parse_where(clause: str) -> WhereCondition:
    """Parse a single clause. Raises ValidationError describing the grammar."""
    m = _IS_RE.match(clause)
    if m:
        negate = "NOT " if m.group(2) else ""
        return WhereCondition(m.group(1), f"IS {negate}{m.group(3).upper()}")

    m = _LIKE_RE.match(clause)
    if m:
        return WhereCondition(m.group(1), "LIKE", _strip_quotes(m.group(2)))

    m = _CMP_RE.match(clause)
    if not m:
        raise _invalid(clause, WHERE_GRAMMAR)
    name, op, raw = m.groups()
    op = "!=" if op == "<>" else op
    value = _strip_quotes(raw)
    if op in NUMERIC_OPS:
        try:
            float(value)
        except ValueError:
            raise _invalid(clause, f"'{op}' needs a numeric value, got '{value}'") from None
    return WhereCondition(name, op, value)


def parse_where_clauses(clauses: list[str] | tuple[str, ...]) -> list[WhereCondition]:
    return [parse_where(c) for c in clauses]


def is_select_query(sql: str) -> bool:
    """True for a plain SELECT with no standalone mutating keyword anywhere in it."""
    normalized = sql.strip().upper()
    if not normalized.startswith("SELECT"):
        return False
    return _MUTATING_RE.search(normalized) is None


# ---------------------------------------------------------------------------
# SQL builders
# ---------------------------------------------------------------------------


def escape_like(text: str) -> str:
    """Make text match literally inside a LIKE pattern that uses ESCAPE '\\'."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def resolve_field(name: str, stash: Stash) -> str:
    """Physical cache column for a field name, or ValidationError."""
    lower = name.lower()
    if lower in CACHE_SYSTEM_COLUMNS:
        return lower
    if lower in _SYSTEM_ALIASES:
        return _SYSTEM_ALIASES[lower]
    col = stash.find_column(name)
    if col is None:
        msg = f"unknown field '{name}' in stash '{stash.name}'"
        raise ValidationError(
            msg, code="UNKNOWN_FIELD",
            details={"field": name, "stash": stash.name, "columns": stash.column_names()},
        )
    return col.name


def _condition_sql(cond: WhereCondition, column: str) -> tuple[str, list[Any]]:
    col = quote_ident(column)
    op = cond.op
    if op == "=":
        return f"{col} = ?", [cond.value]
    if op == "!=":
        return f"({col} IS NULL OR {col} != ?)", [cond.value]
    if op in NUMERIC_OPS:
        return (
            f"({col} IS NOT NULL AND {col} != '' AND CAST({col} AS REAL) {op} ?)",
            [float(cond.value)],
        )
    if op == "LIKE":
        return f"{col} LIKE ?", [cond.value]
    if op == "IS NULL":
        return f"{col} IS NULL", []
    if op == "IS NOT NULL":
        return f"{col} IS NOT NULL", []
    if op == "IS EMPTY":
        return f"({col} IS NULL OR {col} = '')", []
    if op == "IS NOT EMPTY":
        return f"({col} IS NOT NULL AND {col} != '')", []
    msg = f"unsupported operator '{op}'"
    raise ValidationError(msg, code="INVALID_WHERE", details={"op": op, "grammar": WHERE_GRAMMAR})


def build_where(stash: Stash, opts: ListOptions) -> tuple[str, list[Any]]:
    """WHERE clause (including the keyword, or empty) and its parameters."""
    parts: list[str] = []
    params: list[Any] = []

    if opts.parent_id == "":
        parts.append("parent_id IS NULL")
    elif opts.parent_id != "*":
        parts.append("parent_id = ?")
        params.append(opts.parent_id)

    if opts.deleted_only:
        parts.append("deleted_at IS NOT NULL")
    elif not opts.include_deleted:
        parts.append("deleted_at IS NULL")

    for cond in opts.where:
        sql, p = _condition_sql(cond, resolve_field(cond.field, stash))
        parts.append(sql)
        params.extend(p)

    if opts.search:
        targets = ["id", *stash.column_names()]
        parts.append("(" + " OR ".join(f"{quote_ident(c)} LIKE ? ESCAPE '\\'" for c in targets) + ")")
        params.extend([f"%{escape_like(opts.search)}%"] * len(targets))

    if not parts:
        return "", params
    return " WHERE " + " AND ".join(parts), params


def build_select(stash: Stash, opts: ListOptions) -> tuple[str, list[Any]]:
    """SELECT over the stash table honouring every list option."""
    if opts.columns:
        user_cols = [resolve_field(c, stash) for c in opts.columns]
        user_cols = [c for c in user_cols if c not in CACHE_SYSTEM_COLUMNS]
    else:
        user_cols = stash.column_names()
    select = ", ".join(quote_ident(c) for c in (*CACHE_SYSTEM_COLUMNS, *user_cols))

    where, params = build_where(stash, opts)

    if opts.order_by:
        order_col = resolve_field(opts.order_by, stash)
        desc = bool(opts.descending)
    else:
        order_col = "updated_at"
        desc = opts.descending is None or opts.descending
    order = f" ORDER BY {quote_ident(order_col)} {'DESC' if desc else 'ASC'}, id ASC"

    limit = ""
    if opts.limit > 0:
        limit = " LIMIT ?"
        params.append(opts.limit)
    if opts.offset > 0:
        if not limit:
            limit = " LIMIT -1"
        limit += " OFFSET ?"
        params.append(opts.offset)

    return f"SELECT {select} FROM {quote_ident(stash.table)}{where}{order}{limit}", params


def build_count(stash: Stash, opts: ListOptions) -> tuple[str, list[Any]]:
    where, params = build_where(stash, opts)
    return f"SELECT COUNT(*) FROM {quote_ident(stash.table)}{where}", params


def projected_columns(stash: Stash, opts: ListOptions) -> list[str]:
    if not opts.columns:
        return stash.column_names()
    return [c for c in (resolve_field(n, stash) for n in opts.columns) if c not in CACHE_SYSTEM_COLUMNS]
