"""Advisory per-record locks stored in .stash/locks.json.

locks.json layout (a JSON array, read-modify-write under flock):
    [
      {"record_id": "inv-a3x9", "agent": "worker-1", "stash": "inventory",
       "locked_at": "2026-...Z", "expires_at": "2026-...Z"}
    ]

The file is re-read on every call; nothing is cached in memory. Expired
entries are dropped whenever the file is opened for writing or listed.
Locks are cooperative: the store itself never checks them.
"""

from __future__ import annotations

import fcntl
import json
import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stash.errors import LockConflictError, NotFoundError, StorageIntegrityError, StorageIOError
from stash.models import parse_time

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("stash.locks")

LOCKS_FILENAME = "locks.json"
DEFAULT_TIMEOUT = 300


def _fmt(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds").replace("+00:00", "Z")


@dataclass
class Lock:
    record_id: str
    agent: str
    stash: str
    locked_at: str
    expires_at: str

    def is_expired(self, now: datetime) -> bool:
        return parse_time(self.expires_at) <= now

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Lock:
        return cls(
            record_id=d["record_id"],
            agent=d["agent"],
            stash=d.get("stash", ""),
            locked_at=d.get("locked_at", ""),
            expires_at=d["expires_at"],
        )


class LockManager:
    """Acquire, refresh, release and list locks for one .stash directory."""

    def __init__(
        self,
        stash_dir: Path | str,
        default_timeout: int = DEFAULT_TIMEOUT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(stash_dir) / LOCKS_FILENAME
        self.default_timeout = default_timeout
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def acquire(self, stash: str, record_id: str, agent: str, timeout: int | None = None) -> Lock:
        """Lock record_id for agent. Re-locking by the same agent refreshes expiry."""
        seconds = self.default_timeout if timeout is None else timeout
        now = self._clock()

        def update(locks: list[Lock]) -> Lock:
            for lock in locks:
                if lock.stash == stash and lock.record_id == record_id:
                    if lock.agent != agent:
                        raise LockConflictError(record_id, lock.agent, lock.expires_at, lock.locked_at)
                    lock.locked_at = _fmt(now)
                    lock.expires_at = _fmt(now + timedelta(seconds=seconds))
                    logger.debug("refreshed lock %s/%s for %s", stash, record_id, agent)
                    return lock
            lock = Lock(
                record_id=record_id,
                agent=agent,
                stash=stash,
                locked_at=_fmt(now),
                expires_at=_fmt(now + timedelta(seconds=seconds)),
            )
            locks.append(lock)
            logger.debug("acquired lock %s/%s for %s", stash, record_id, agent)
            return lock

        return self._modify(update, now)

    def release(self, stash: str, record_id: str) -> Lock:
        """Remove the lock on record_id regardless of owner."""
        now = self._clock()

        def update(locks: list[Lock]) -> Lock:
            for i, lock in enumerate(locks):
                if lock.stash == stash and lock.record_id == record_id:
                    return locks.pop(i)
            msg = f"no lock found for record '{record_id}'"
            raise NotFoundError(msg, code="LOCK_NOT_FOUND", details={"record_id": record_id, "stash": stash})

        return self._modify(update, now)

    def list(self, stash: str | None = None) -> list[Lock]:
        """Active locks, optionally for a single stash."""
        now = self._clock()
        locks = self._modify(lambda current: list(current), now)
        if stash is not None:
            locks = [lock for lock in locks if lock.stash == stash]
        return locks

    def get(self, stash: str, record_id: str) -> Lock | None:
        for lock in self.list(stash):
            if lock.record_id == record_id:
                return lock
        return None

    def holder(self, stash: str, record_id: str, agent: str) -> Lock | None:
        """Live lock held by someone other than agent, if any."""
        lock = self.get(stash, record_id)
        if lock is not None and lock.agent != agent:
            return lock
        return None

    def check(self, stash: str, record_id: str, agent: str) -> None:
        """Raise LockConflictError if another agent holds record_id."""
        lock = self.holder(stash, record_id, agent)
        if lock is not None:
            raise LockConflictError(record_id, lock.agent, lock.expires_at, lock.locked_at)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _parse(self, text: str) -> list[Lock]:
        if not text.strip():
            return []
        try:
            raw = json.loads(text)
            return [Lock.from_dict(d) for d in raw]
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            msg = f"corrupt lock file {self.path}: {exc}"
            raise StorageIntegrityError(msg, code="CORRUPT_LOCKS", details={"path": str(self.path)}) from exc

    def _modify(self, update: Callable[[list[Lock]], Any], now: datetime) -> Any:
        """Read locks.json, drop expired entries, apply update, write back. All under LOCK_EX."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a+", encoding="utf-8") as f:
                fcntl.flock(f, fcntl.LOCK_EX)
                f.seek(0)
                text = f.read()
                locks = [lock for lock in self._parse(text) if not lock.is_expired(now)]
                result = update(locks)
                data = json.dumps([lock.to_dict() for lock in locks], indent=2) + "\n"
                if data != text:
                    f.seek(0)
                    f.truncate()
                    f.write(data)
                return result
        except OSError as exc:
            msg = f"failed to update {self.path}: {exc}"
            raise StorageIOError(msg, details={"path": str(self.path)}) from exc
