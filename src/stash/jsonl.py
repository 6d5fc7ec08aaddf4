"""Read and write records.jsonl append logs.

RecordLog is the durable source of truth for every stash:
    log = RecordLog("/path/to/.stash")
    log.append("inventory", record)
    state = log.replay("inventory")
    state.records["inv-a3x9"].fields

records.jsonl line layout (one entry per successful mutation):
    {"_id":"inv-a3x9", "_hash":"...", "_op":"create", "_created_at":..., "_created_by":...,
     "_updated_at":..., "_updated_by":..., "_parent":..., "_branch":..., "Name":"Laptop"}
    {"_id":"inv-a3x9", "_op":"delete", "_deleted_at":..., "_deleted_by":..., ...}
    {"_id":"inv-a3x9", "_op":"purge", "_moved_to":"inv-k2p0"}        # id retired

Every entry carries the full state of the record, so replay is last-write-wins by id.
Appends take flock(LOCK_EX) and fsync; a line is either fully written or absent.
"""

from __future__ import annotations

import fcntl
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stash.errors import StorageIntegrityError, StorageIOError
from stash.models import OP_DELETE, OP_PURGE, Record

if TYPE_CHECKING:
    from collections.abc import Iterator

LOG_FILENAME = "records.jsonl"


@dataclass
class ReplayResult:
    """Current state reconstructed from a log."""

    records: dict[str, Record] = field(default_factory=dict)   # live + soft-deleted
    known_ids: set[str] = field(default_factory=set)           # every id ever written
    purged_ids: set[str] = field(default_factory=set)
    entries: int = 0

    def live(self) -> list[Record]:
        return [r for r in self.records.values() if not r.is_deleted]

    def deleted(self) -> list[Record]:
        return [r for r in self.records.values() if r.is_deleted]


class RecordLog:
    """Append-only JSONL log, one file per stash."""

    def __init__(self, stash_dir: Path | str) -> None:
        self.stash_dir = Path(stash_dir)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def path(self, stash: str) -> Path:
        return self.stash_dir / stash / LOG_FILENAME

    def exists(self, stash: str) -> bool:
        return self.path(stash).exists()

    def fingerprint(self, stash: str) -> tuple[int, int]:
        """(size, mtime_ns) of the log; (0, 0) when it does not exist."""
        try:
            st = self.path(stash).stat()
        except FileNotFoundError:
            return (0, 0)
        return (st.st_size, st.st_mtime_ns)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def touch(self, stash: str) -> None:
        path = self.path(stash)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)

    def append(self, stash: str, record: Record) -> int:
        """Append one entry. Returns the new log size."""
        return self.append_many(stash, [record])

    def append_many(self, stash: str, records: list[Record]) -> int:
        """Append several entries under a single lock (cascades, moves)."""
        data = "".join(
            json.dumps(r.to_entry(), ensure_ascii=False, separators=(",", ":")) + "\n"
            for r in records
        )
        path = self.path(stash)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                fcntl.flock(f, fcntl.LOCK_EX)
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
                return os.fstat(f.fileno()).st_size
        except OSError as exc:
            msg = f"failed to append to {path}: {exc}"
            raise StorageIOError(msg, details={"stash": stash, "path": str(path)}) from exc

    def copy_from(self, src: Path | str, stash: str) -> None:
        """Replace this stash's log with another one (tmp + rename)."""
        src_path = Path(src)
        dest = self.path(stash)
        tmp = dest.with_suffix(".jsonl.tmp")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with src_path.open("rb") as fin, tmp.open("wb") as fout:
                fcntl.flock(fout, fcntl.LOCK_EX)
                fout.write(fin.read())
                fout.flush()
                os.fsync(fout.fileno())
            tmp.replace(dest)
        except OSError as exc:
            msg = f"failed to copy log from {src_path}: {exc}"
            raise StorageIOError(msg, details={"stash": stash, "path": str(src_path)}) from exc

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def iter_entries(self, stash: str) -> Iterator[Record]:
        """Yield entries in write order. A malformed line is fatal."""
        path = self.path(stash)
        if not path.exists():
            return
        with path.open(encoding="utf-8") as f:
            fcntl.flock(f, fcntl.LOCK_SH)
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    obj: Any = json.loads(line)
                except json.JSONDecodeError as exc:
                    msg = f"corrupt entry in {path} at line {lineno}: {exc.msg}"
                    raise StorageIntegrityError(
                        msg, code="CORRUPT_LOG", details={"stash": stash, "line": lineno},
                    ) from exc
                if not isinstance(obj, dict) or not obj.get("_id"):
                    msg = f"entry without _id in {path} at line {lineno}"
                    raise StorageIntegrityError(
                        msg, code="CORRUPT_LOG", details={"stash": stash, "line": lineno},
                    )
                yield Record.from_entry(obj)

    def read_entries(self, stash: str) -> list[Record]:
        return list(self.iter_entries(stash))

    def history(self, stash: str, record_id: str) -> list[Record]:
        """Every entry written for record_id, oldest first."""
        return [e for e in self.iter_entries(stash) if e.id == record_id]

    def replay(self, stash: str) -> ReplayResult:
        """Reconstruct current state: last write wins per id, purge drops the id."""
        result = ReplayResult()
        for entry in self.iter_entries(stash):
            result.entries += 1
            result.known_ids.add(entry.id)
            if entry.op == OP_PURGE:
                result.records.pop(entry.id, None)
                result.purged_ids.add(entry.id)
                continue
            if entry.op == OP_DELETE and entry.id in result.records:
                prior = result.records[entry.id]
                prior.deleted_at = entry.deleted_at
                prior.deleted_by = entry.deleted_by
                prior.updated_at = entry.updated_at or prior.updated_at
                prior.updated_by = entry.updated_by or prior.updated_by
                prior.op = OP_DELETE
                continue
            result.purged_ids.discard(entry.id)
            result.records[entry.id] = entry
        return result
