import pytest

from stash.errors import StorageIntegrityError
from stash.jsonl import RecordLog
from stash.models import OP_CREATE, OP_DELETE, OP_PURGE, OP_UPDATE, Record


def _rec(rid, op=OP_CREATE, **fields):
    return Record(
        id=rid, op=op, created_at="2026-01-01T00:00:00Z", created_by="a",
        updated_at="2026-01-01T00:00:00Z", updated_by="a", fields=fields,
    )


@pytest.fixture
def log(tmp_path):
    return RecordLog(tmp_path)


def test_missing_log_replays_empty(log):
    state = log.replay("inventory")
    assert state.records == {}
    assert log.fingerprint("inventory") == (0, 0)


def test_last_write_wins(log):
    log.append("inventory", _rec("inv-aaaa", Name="one"))
    log.append("inventory", _rec("inv-aaaa", OP_UPDATE, Name="two"))
    state = log.replay("inventory")
    assert state.records["inv-aaaa"].fields == {"Name": "two"}
    assert state.entries == 2


def test_delete_keeps_prior_fields(log):
    log.append("inventory", _rec("inv-aaaa", Name="one"))
    tomb = Record(id="inv-aaaa", op=OP_DELETE, deleted_at="2026-01-02T00:00:00Z", deleted_by="b")
    log.append("inventory", tomb)
    state = log.replay("inventory")
    r = state.records["inv-aaaa"]
    assert r.is_deleted
    assert r.fields == {"Name": "one"}
    assert [d.id for d in state.deleted()] == ["inv-aaaa"]
    assert state.live() == []


def test_purge_drops_record_but_keeps_id_known(log):
    log.append_many("inventory", [_rec("inv-aaaa", Name="x"), _rec("inv-aaaa.1", Name="y")])
    log.append("inventory", Record(id="inv-aaaa.1", op=OP_PURGE))
    state = log.replay("inventory")
    assert "inv-aaaa.1" not in state.records
    assert "inv-aaaa.1" in state.known_ids
    assert "inv-aaaa.1" in state.purged_ids


def test_append_changes_fingerprint(log):
    log.touch("inventory")
    before = log.fingerprint("inventory")
    size = log.append("inventory", _rec("inv-aaaa", Name="x"))
    assert log.fingerprint("inventory") != before
    assert size == log.fingerprint("inventory")[0]


def test_corrupt_line_reports_line_number(log):
    log.append("inventory", _rec("inv-aaaa", Name="x"))
    with log.path("inventory").open("a") as f:
        f.write("{not json\n")
    with pytest.raises(StorageIntegrityError) as exc:
        log.replay("inventory")
    assert exc.value.code == "CORRUPT_LOG"
    assert exc.value.details["line"] == 2


def test_history_is_oldest_first(log):
    log.append("inventory", _rec("inv-aaaa", Name="one"))
    log.append("inventory", _rec("inv-bbbb", Name="other"))
    log.append("inventory", _rec("inv-aaaa", OP_UPDATE, Name="two"))
    assert [e.fields["Name"] for e in log.history("inventory", "inv-aaaa")] == ["one", "two"]
