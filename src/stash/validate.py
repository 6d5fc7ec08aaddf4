"""Per-column value rules: required, enum, email, url, number, date.

The store calls these through an injectable validator before writing;
they only report, they never raise.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from stash.models import value_text

if TYPE_CHECKING:
    from stash.models import Column, Record, Stash

_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


@dataclass
class FieldError:
    column: str
    value: str
    rule: str
    message: str
    record_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = {"column": self.column, "value": self.value, "rule": self.rule, "message": self.message}
        if self.record_id:
            d["record_id"] = self.record_id
        return d


@dataclass
class ValidationResult:
    valid: bool = True
    errors: list[FieldError] = field(default_factory=list)

    def add(self, err: FieldError) -> None:
        self.valid = False
        self.errors.append(err)

    def extend(self, other: ValidationResult) -> None:
        for err in other.errors:
            self.add(err)


def _as_text(value: Any) -> str:
    # Rules see the same text the cache stores.
    return value_text(value) or ""


def _check_email(value: str) -> str | None:
    if not _EMAIL_RE.match(value):
        return f"invalid email format: '{value}'"
    return None


def _check_url(value: str) -> str | None:
    try:
        u = urlparse(value)
    except ValueError:
        return f"invalid URL format: '{value}'"
    if not u.scheme or not u.netloc:
        return f"invalid URL format (missing scheme or host): '{value}'"
    return None


def _check_number(value: str) -> str | None:
    try:
        float(value)
    except ValueError:
        return f"invalid number format: '{value}'"
    return None


def _check_date(value: str) -> str | None:
    try:
        if "T" in value:
            datetime.fromisoformat(value.replace("Z", "+00:00"))
        else:
            date.fromisoformat(value)
    except ValueError:
        return f"invalid date format: '{value}' (expected ISO format like 2006-01-02 or 2006-01-02T15:04:05Z)"
    return None


_CHECKS = {
    "email": _check_email,
    "url": _check_url,
    "number": _check_number,
    "date": _check_date,
}


def validate_value(column: Column, value: Any) -> ValidationResult:
    """Check one value against a column's rules."""
    result = ValidationResult()
    text = _as_text(value)

    if column.required and text == "":
        result.add(FieldError(column.name, text, "required", f"column '{column.name}' is required"))
        return result
    if text == "":
        return result

    if column.enum and text not in column.enum:
        result.add(FieldError(
            column.name, text, "enum",
            f"value '{text}' not in allowed values: {', '.join(column.enum)}",
        ))

    check = _CHECKS.get(column.validate)
    if check is not None:
        message = check(text)
        if message:
            result.add(FieldError(column.name, text, column.validate, message))
    return result


def validate_fields(stash: Stash, fields: dict[str, Any], *, check_missing: bool = True) -> ValidationResult:
    """Check the fields being written; with check_missing, absent required columns fail too."""
    result = ValidationResult()
    present = set()
    for name, value in fields.items():
        col = stash.find_column(name)
        if col is None:
            continue
        present.add(col.name)
        result.extend(validate_value(col, value))
    if check_missing:
        for col in stash.columns:
            if col.required and col.name not in present:
                result.add(FieldError(col.name, "", "required", f"column '{col.name}' is required"))
    return result


def validate_record(stash: Stash, record: Record) -> ValidationResult:
    result = ValidationResult()
    for col in stash.columns:
        for err in validate_value(col, record.get_field(col.name)).errors:
            err.record_id = record.id
            result.add(err)
    return result
