import json
from datetime import UTC, datetime, timedelta

import pytest

from stash.errors import LockConflictError, NotFoundError, StorageIntegrityError
from stash.locks import LockManager


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def locks(tmp_path, clock):
    return LockManager(tmp_path, default_timeout=60, clock=clock)


def test_acquire_and_list(locks):
    lock = locks.acquire("inventory", "inv-ab12", "worker-1")
    assert lock.agent == "worker-1"
    assert lock.expires_at == "2026-03-01T12:01:00.000000Z"
    assert [lk.record_id for lk in locks.list("inventory")] == ["inv-ab12"]
    assert locks.list("other") == []


def test_reacquire_by_same_agent_refreshes(locks, clock):
    locks.acquire("inventory", "inv-ab12", "worker-1")
    clock.advance(30)
    lock = locks.acquire("inventory", "inv-ab12", "worker-1")
    assert lock.expires_at == "2026-03-01T12:01:30.000000Z"
    assert len(locks.list()) == 1


def test_conflict_names_holder(locks):
    locks.acquire("inventory", "inv-ab12", "worker-1")
    with pytest.raises(LockConflictError) as exc:
        locks.acquire("inventory", "inv-ab12", "worker-2")
    assert exc.value.agent == "worker-1"
    assert exc.value.details["locked_by"] == "worker-1"
    assert exc.value.exit_code == 5


def test_check(locks):
    locks.acquire("inventory", "inv-ab12", "worker-1")
    locks.check("inventory", "inv-ab12", "worker-1")
    locks.check("inventory", "inv-cd34", "worker-2")
    with pytest.raises(LockConflictError):
        locks.check("inventory", "inv-ab12", "worker-2")


def test_expired_lock_is_dropped(locks, clock):
    locks.acquire("inventory", "inv-ab12", "worker-1", timeout=10)
    clock.advance(11)
    assert locks.list() == []
    lock = locks.acquire("inventory", "inv-ab12", "worker-2")
    assert lock.agent == "worker-2"


def test_release_twice(locks):
    locks.acquire("inventory", "inv-ab12", "worker-1")
    released = locks.release("inventory", "inv-ab12")
    assert released.agent == "worker-1"
    with pytest.raises(NotFoundError) as exc:
        locks.release("inventory", "inv-ab12")
    assert exc.value.code == "LOCK_NOT_FOUND"


def test_file_is_a_json_array(locks):
    locks.acquire("inventory", "inv-ab12", "worker-1")
    data = json.loads(locks.path.read_text())
    assert data[0]["record_id"] == "inv-ab12"
    assert data[0]["stash"] == "inventory"


def test_corrupt_file(locks):
    locks.path.write_text("{oops")
    with pytest.raises(StorageIntegrityError):
        locks.list()
