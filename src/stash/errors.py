"""Error types raised by the stash core.

Every error carries a stable machine-readable ``kind`` and ``code`` plus a
human message and structured ``details`` so automated callers can branch on
the outcome without string matching:

    not_found          stash / record / column / lock absent
    already_exists     duplicate stash / column / attachment
    validation         malformed input (names, clauses, field rules)
    conflict           lock held by another agent, cyclic move, children present
    reference          parent id missing or deleted
    storage_integrity  hash mismatch, stale cache, corrupt log
    io                 file system failure
    query              raw SELECT failed at execution
"""

from __future__ import annotations

from typing import Any


class StashError(Exception):
    """Base exception for all stash errors."""

    kind = "internal"
    default_code = "INTERNAL_ERROR"
    exit_code = 1

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "error": True,
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            d["details"] = self.details
        return d


class NotFoundError(StashError):
    kind = "not_found"
    default_code = "NOT_FOUND"
    exit_code = 1


class RecordDeletedError(NotFoundError):
    """The record exists but is soft-deleted."""

    default_code = "RECORD_DELETED"
    exit_code = 3


class AlreadyExistsError(StashError):
    kind = "already_exists"
    default_code = "ALREADY_EXISTS"
    exit_code = 2


class ValidationError(StashError):
    """Malformed input, rejected before anything is written."""

    kind = "validation"
    default_code = "VALIDATION_ERROR"
    exit_code = 2


class ConflictError(StashError):
    kind = "conflict"
    default_code = "CONFLICT"
    exit_code = 5


class LockConflictError(ConflictError):
    """Record is locked by a different, non-expired agent."""

    default_code = "RECORD_LOCKED"

    def __init__(self, record_id: str, agent: str, expires_at: str, locked_at: str = "") -> None:
        super().__init__(
            f"record '{record_id}' is locked by agent '{agent}' (expires {expires_at})",
            details={
                "record_id": record_id,
                "locked_by": agent,
                "locked_at": locked_at,
                "expires_at": expires_at,
            },
        )
        self.record_id = record_id
        self.agent = agent
        self.expires_at = expires_at


class ParentReferenceError(StashError):
    kind = "reference"
    default_code = "REFERENCE_ERROR"
    exit_code = 4


class StorageIntegrityError(StashError):
    """Log and cache disagree, or stored data is corrupt.

    Never auto-corrected: callers must run an explicit repair.
    """

    kind = "storage_integrity"
    default_code = "STORAGE_INTEGRITY"
    exit_code = 6


class StorageIOError(StashError):
    kind = "io"
    default_code = "IO_ERROR"
    exit_code = 7


class QueryError(StashError):
    kind = "query"
    default_code = "QUERY_FAILED"
    exit_code = 3
