import pytest

from stash.cache import Cache
from stash.errors import QueryError, StorageIntegrityError, ValidationError
from stash.models import Column, Record, Stash, compute_hash, value_text
from stash.query import ListOptions


@pytest.fixture
def stash():
    return Stash("bug-reports", "bug-", columns=[Column("Title"), Column("Score")])


@pytest.fixture
def cache(tmp_path, stash):
    c = Cache(tmp_path / "cache.db")
    c.create_table(stash)
    yield c
    c.close()


def _rec(rid, parent="", deleted="", **fields):
    return Record(
        id=rid, hash="h", parent_id=parent, created_at="2026-01-01T00:00:00Z", created_by="a",
        updated_at="2026-01-01T00:00:00Z", updated_by="a", deleted_at=deleted,
        deleted_by="a" if deleted else "", fields=fields,
    )


def test_value_text():
    assert value_text("42") == "42"
    assert value_text(42) == "42"
    assert value_text(True) == "true"
    assert value_text({"b": 1, "a": 2}) == '{"a":2,"b":1}'
    assert value_text('{"b": 1, "a": 2}') == '{"b": 1, "a": 2}'


def test_json_looking_strings_stay_strings(cache, stash):
    text = '{"b": 1, "a": 2}'
    cache.upsert(stash, _rec("bug-aaaa", Title=text, Score="[1, 2]"))
    fields = cache.get(stash, "bug-aaaa").fields
    assert fields == {"Title": text, "Score": "[1, 2]"}
    assert compute_hash(fields) == compute_hash({"Title": text, "Score": "[1, 2]"})


def test_structured_values_keep_their_hash(cache, stash):
    written = {"Title": {"b": 1, "a": 2}, "Score": 3}
    cache.upsert(stash, _rec("bug-aaaa", **written))
    fields = cache.get(stash, "bug-aaaa").fields
    assert fields == {"Title": '{"a":2,"b":1}', "Score": "3"}
    assert compute_hash(fields) == compute_hash(written)


def test_table_named_without_hyphen(cache):
    assert cache.table_exists("bug_reports")
    assert cache.stash_names() == ["bug-reports"]


def test_upsert_get_and_delete(cache, stash):
    cache.upsert(stash, _rec("bug-aaaa", Title="Crash", Score=3))
    r = cache.get(stash, "bug-aaaa")
    assert r.fields == {"Title": "Crash", "Score": "3"}
    cache.upsert(stash, _rec("bug-aaaa", Title="Crash on save"))
    assert cache.get(stash, "bug-aaaa").fields == {"Title": "Crash on save"}
    cache.delete(stash, "bug-aaaa")
    assert cache.get(stash, "bug-aaaa") is None


def test_list_filters_roots_and_deleted(cache, stash):
    cache.upsert_many(stash, [
        _rec("bug-aaaa", Title="a"),
        _rec("bug-aaaa.1", parent="bug-aaaa", Title="child"),
        _rec("bug-bbbb", deleted="2026-01-02T00:00:00Z", Title="gone"),
    ])
    assert [r.id for r in cache.list(stash, ListOptions())] == ["bug-aaaa"]
    assert cache.count(stash, ListOptions(parent_id="*")) == 2
    assert cache.count(stash, ListOptions(parent_id="*", include_deleted=True)) == 3
    assert cache.child_ids(stash, "bug-aaaa") == ["bug-aaaa.1"]
    assert cache.ids(stash) == {"bug-aaaa", "bug-aaaa.1", "bug-bbbb"}


def test_add_column_alters_table(cache, stash):
    col = Column("Owner")
    stash.add_column(col)
    cache.add_column(stash, col)
    assert "Owner" in cache.table_columns("bug_reports")


def test_sync_point(cache):
    assert cache.sync_point("bug-reports") is None
    cache.mark_synced("bug-reports", (10, 20))
    point = cache.sync_point("bug-reports")
    assert point.fingerprint == (10, 20)
    assert point.last_sync.endswith("Z")


def test_drop_table_forgets_stash(cache):
    cache.drop_table("bug-reports", "bug_reports")
    assert not cache.table_exists("bug_reports")
    assert cache.stash_names() == []


class TestRawQuery:
    def test_select(self, cache, stash):
        cache.upsert(stash, _rec("bug-aaaa", Title="Crash"))
        columns, rows = cache.raw_query("SELECT id, Title FROM bug_reports")
        assert columns == ["id", "Title"]
        assert rows == [("bug-aaaa", "Crash")]

    def test_mutation_rejected(self, cache):
        with pytest.raises(ValidationError) as exc:
            cache.raw_query("DELETE FROM bug_reports")
        assert exc.value.code == "INVALID_SQL"

    def test_bad_select(self, cache):
        with pytest.raises(QueryError):
            cache.raw_query("SELECT nope FROM missing_table")


def test_empty_db_file_is_corrupt(tmp_path):
    db = tmp_path / "cache.db"
    db.touch()
    with pytest.raises(StorageIntegrityError) as exc:
        _ = Cache(db).conn
    assert exc.value.code == "CACHE_CORRUPT"
