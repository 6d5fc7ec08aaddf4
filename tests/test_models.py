import pytest

from stash.errors import AlreadyExistsError, NotFoundError, ValidationError
from stash.models import (
    Column,
    Record,
    Stash,
    compute_hash,
    is_reserved_column,
    table_name,
    validate_column_name,
    validate_prefix,
    validate_stash_name,
)


class TestHash:
    def test_key_order_does_not_matter(self):
        assert compute_hash({"a": "1", "b": "2"}) == compute_hash({"b": "2", "a": "1"})

    def test_number_and_string_form_hash_alike(self):
        assert compute_hash({"Price": 42}) == compute_hash({"Price": "42"})
        assert compute_hash({"Flag": True}) == compute_hash({"Flag": "true"})

    def test_values_change_the_hash(self):
        assert compute_hash({"Name": "Laptop"}) != compute_hash({"Name": "Desktop"})

    def test_system_keys_ignored(self):
        assert compute_hash({"Name": "x", "_id": "inv-1"}) == compute_hash({"Name": "x"})

    def test_twelve_hex_chars(self):
        h = compute_hash({})
        assert len(h) == 12
        int(h, 16)


class TestNames:
    @pytest.mark.parametrize("name", ["id", "ID", "_hash", "created_at", "Deleted_By", "parent_id"])
    def test_reserved(self, name):
        assert is_reserved_column(name)
        with pytest.raises(ValidationError) as exc:
            validate_column_name(name)
        assert exc.value.code == "RESERVED_COLUMN"

    @pytest.mark.parametrize("name", ["1abc", "has space", "dash-ed", "", "x" * 65])
    def test_invalid_column(self, name):
        with pytest.raises(ValidationError) as exc:
            validate_column_name(name)
        assert exc.value.code == "INVALID_COLUMN"

    def test_valid_column(self):
        validate_column_name("Serial_No2")

    @pytest.mark.parametrize("prefix", ["inv", "i-", "abcde-", "INV-", "in1-"])
    def test_invalid_prefix(self, prefix):
        with pytest.raises(ValidationError):
            validate_prefix(prefix)

    def test_valid_prefixes(self):
        for prefix in ("ab-", "inv-", "task-"):
            validate_prefix(prefix)

    def test_stash_name(self):
        validate_stash_name("my-stash_2")
        with pytest.raises(ValidationError):
            validate_stash_name("-bad")

    def test_table_name(self):
        assert table_name("bug-reports") == "bug_reports"


class TestStash:
    def test_primary_column_is_first(self):
        s = Stash("inventory", "inv-", columns=[Column("Name"), Column("Price")])
        assert s.primary_column.name == "Name"
        assert s.find_column("price").name == "Price"

    def test_add_duplicate_column_case_insensitive(self):
        s = Stash("inventory", "inv-", columns=[Column("Name")])
        with pytest.raises(AlreadyExistsError):
            s.add_column(Column("name"))

    def test_unknown_validation_kind(self):
        s = Stash("inventory", "inv-")
        with pytest.raises(ValidationError) as exc:
            s.add_column(Column("Email", validate="phone"))
        assert exc.value.code == "INVALID_VALIDATION_TYPE"

    def test_get_column_missing(self):
        with pytest.raises(NotFoundError):
            Stash("inventory", "inv-").get_column("Nope")

    def test_dict_roundtrip_keeps_rules(self):
        s = Stash("inventory", "inv-", columns=[Column("Status", enum=["open", "done"], required=True)])
        again = Stash.from_dict(s.to_dict())
        assert again.columns[0].enum == ["open", "done"]
        assert again.columns[0].required


class TestRecord:
    def test_entry_flattens_fields(self):
        r = Record(id="inv-ab12", parent_id="", fields={"Name": "Laptop"})
        entry = r.to_entry()
        assert entry["_id"] == "inv-ab12"
        assert entry["Name"] == "Laptop"
        assert "_parent" not in entry

    def test_from_entry_splits_system_keys(self):
        r = Record.from_entry({"_id": "inv-ab12.1", "_parent": "inv-ab12", "_op": "update", "Name": "x"})
        assert r.parent_id == "inv-ab12"
        assert r.op == "update"
        assert r.fields == {"Name": "x"}

    def test_set_field_keeps_existing_case(self):
        r = Record(id="inv-ab12", fields={"Name": "a"})
        r.set_field("name", "b")
        assert r.fields == {"Name": "b"}
