"""Record identifiers.

Root ids are a stash prefix plus random base36 characters (``inv-a3x9``).
Children append a dotted sequence number to their parent (``inv-a3x9.1``,
``inv-a3x9.1.2``), so the hierarchy can be read off the id alone.

Numbers are never reused: allocation checks against every id the log has
ever seen, including purged and moved ones.
"""

from __future__ import annotations

import re
import secrets
from typing import TYPE_CHECKING

from stash.errors import StorageIntegrityError, ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_ID_RE = re.compile(r"^[a-z]{2,4}-[0-9a-z]+(\.[1-9][0-9]*)*$")

DEFAULT_LENGTH = 4
DEFAULT_MAX_RETRIES = 10


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_root_id(
    prefix: str,
    taken: Iterable[str] = (),
    length: int = DEFAULT_LENGTH,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> str:
    """Random root id that collides with nothing in taken."""
    taken_set = taken if isinstance(taken, (set, frozenset)) else set(taken)
    for _ in range(max_retries):
        candidate = prefix + _random_suffix(length)
        if candidate not in taken_set:
            return candidate
    msg = f"could not allocate a unique id with prefix '{prefix}' after {max_retries} attempts"
    raise StorageIntegrityError(
        msg, code="ID_SPACE_EXHAUSTED", details={"prefix": prefix, "attempts": max_retries},
    )


def generate_child_id(parent_id: str, taken: Iterable[str] = ()) -> str:
    """Next child id under parent_id: one past the highest sequence ever allocated."""
    highest = 0
    for other in taken:
        if parent_of(other) == parent_id:
            highest = max(highest, child_sequence(other))
    return f"{parent_id}.{highest + 1}"


def validate_id(record_id: str) -> None:
    if not _ID_RE.match(record_id):
        msg = f"invalid record id '{record_id}'"
        raise ValidationError(msg, code="INVALID_ID", details={"id": record_id})


def parent_of(record_id: str) -> str:
    """Parent id implied by the dotted form; empty for a root id."""
    head, sep, _ = record_id.rpartition(".")
    return head if sep else ""


def root_of(record_id: str) -> str:
    return record_id.split(".", 1)[0]


def depth(record_id: str) -> int:
    """0 for a root id, 1 for its children, and so on."""
    return record_id.count(".")


def child_sequence(record_id: str) -> int:
    _, sep, tail = record_id.rpartition(".")
    if not sep or not tail.isdigit():
        return 0
    return int(tail)


def is_descendant_of(record_id: str, ancestor_id: str) -> bool:
    return record_id.startswith(ancestor_id + ".")


def rebase_id(record_id: str, old_base: str, new_base: str) -> str:
    """Swap the old_base part of record_id (itself or an ancestor) for new_base."""
    if record_id == old_base:
        return new_base
    if not is_descendant_of(record_id, old_base):
        msg = f"'{record_id}' is not under '{old_base}'"
        raise ValueError(msg)
    return new_base + record_id[len(old_base):]
