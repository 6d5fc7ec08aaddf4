import pytest

from stash.errors import ValidationError
from stash.models import Column, Stash
from stash.query import (
    ListOptions,
    WhereCondition,
    build_count,
    build_select,
    escape_like,
    is_select_query,
    parse_where,
    resolve_field,
)


@pytest.fixture
def stash():
    return Stash("inventory", "inv-", columns=[Column("Name"), Column("Price")])


@pytest.mark.parametrize(
    ("clause", "expected"),
    [
        ("Name=Laptop", WhereCondition("Name", "=", "Laptop")),
        ("Name = 'Big Laptop'", WhereCondition("Name", "=", "Big Laptop")),
        ("Name!=x", WhereCondition("Name", "!=", "x")),
        ("Name<>x", WhereCondition("Name", "!=", "x")),
        ("Price>=10.5", WhereCondition("Price", ">=", "10.5")),
        ("Price<3", WhereCondition("Price", "<", "3")),
        ("Name LIKE %top", WhereCondition("Name", "LIKE", "%top")),
        ("Name is null", WhereCondition("Name", "IS NULL")),
        ("Name IS NOT EMPTY", WhereCondition("Name", "IS NOT EMPTY")),
        ("Name=", WhereCondition("Name", "=", "")),
    ],
)
def test_parse_where(clause, expected):
    assert parse_where(clause) == expected


@pytest.mark.parametrize("clause", ["", "=x", "Name", "Price>cheap", "Name IS MAYBE"])
def test_parse_where_rejects(clause):
    with pytest.raises(ValidationError) as exc:
        parse_where(clause)
    assert exc.value.code == "INVALID_WHERE"
    assert "grammar" in exc.value.details


class TestSelectGuard:
    def test_plain_select(self):
        assert is_select_query("SELECT * FROM inventory")
        assert is_select_query("  select id, updated_at, deleted_at, created_by from inventory")

    @pytest.mark.parametrize(
        "sql",
        [
            "DELETE FROM inventory",
            "SELECT 1; DROP TABLE inventory",
            "select * from inventory where id in (select id from x); update inventory set Name='x'",
            "WITH x AS (SELECT 1) SELECT * FROM x",
        ],
    )
    def test_rejected(self, sql):
        assert not is_select_query(sql)


def test_resolve_field(stash):
    assert resolve_field("price", stash) == "Price"
    assert resolve_field("_parent", stash) == "parent_id"
    assert resolve_field("UPDATED_AT", stash) == "updated_at"
    with pytest.raises(ValidationError) as exc:
        resolve_field("Color", stash)
    assert exc.value.code == "UNKNOWN_FIELD"


def test_default_select_is_roots_live_newest_first(stash):
    sql, params = build_select(stash, ListOptions())
    assert "parent_id IS NULL" in sql
    assert "deleted_at IS NULL" in sql
    assert sql.endswith('ORDER BY "updated_at" DESC, id ASC')
    assert params == []


def test_select_with_everything(stash):
    opts = ListOptions(
        parent_id="inv-ab12",
        deleted_only=True,
        where=[WhereCondition("Price", ">", "5")],
        search="lap",
        order_by="Name",
        limit=10,
        offset=20,
    )
    sql, params = build_select(stash, opts)
    assert "parent_id = ?" in sql
    assert "deleted_at IS NOT NULL" in sql
    assert 'CAST("Price" AS REAL) > ?' in sql
    assert 'ORDER BY "Name" ASC' in sql
    assert params == ["inv-ab12", 5.0, "%lap%", "%lap%", "%lap%", 10, 20]


def test_search_wildcards_are_literal(stash):
    assert escape_like(r"50%_a\b") == r"50\%\_a\\b"
    sql, params = build_select(stash, ListOptions(search="50%"))
    assert "\"Name\" LIKE ? ESCAPE '\\'" in sql
    assert params[0] == r"%50\%%"


def test_offset_without_limit(stash):
    sql, params = build_select(stash, ListOptions(parent_id="*", offset=3))
    assert sql.endswith("LIMIT -1 OFFSET ?")
    assert params == [3]


def test_count(stash):
    sql, params = build_count(stash, ListOptions(parent_id="*", include_deleted=True))
    assert sql == 'SELECT COUNT(*) FROM "inventory"'
    assert params == []
