import pytest

from stash.models import Column, Record, Stash
from stash.validate import validate_fields, validate_record, validate_value


@pytest.mark.parametrize(
    ("kind", "good", "bad"),
    [
        ("email", "ops@example.com", "not-an-email"),
        ("url", "https://example.com/x", "example.com"),
        ("number", "-3.5e2", "twelve"),
        ("date", "2026-02-28", "2026-02-30"),
        ("date", "2026-02-28T10:00:00Z", "yesterday"),
    ],
)
def test_format_rules(kind, good, bad):
    col = Column("F", validate=kind)
    assert validate_value(col, good).valid
    result = validate_value(col, bad)
    assert not result.valid
    assert result.errors[0].rule == kind


def test_empty_value_skips_format_checks():
    assert validate_value(Column("F", validate="email"), "").valid


def test_required():
    result = validate_value(Column("F", required=True), "")
    assert result.errors[0].rule == "required"


def test_enum():
    col = Column("Status", enum=["open", "done"])
    assert validate_value(col, "open").valid
    assert validate_value(col, "Open").errors[0].rule == "enum"


def test_numbers_checked_as_text():
    assert validate_value(Column("N", validate="number"), 7).valid


def test_missing_required_only_when_creating():
    stash = Stash("s", "ss-", columns=[Column("Name"), Column("Owner", required=True)])
    assert not validate_fields(stash, {"Name": "x"}).valid
    assert validate_fields(stash, {"Name": "x"}, check_missing=False).valid


def test_unknown_fields_are_ignored():
    stash = Stash("s", "ss-", columns=[Column("Name")])
    assert validate_fields(stash, {"Other": "x"}).valid


def test_validate_record_tags_ids():
    stash = Stash("s", "ss-", columns=[Column("Email", validate="email")])
    result = validate_record(stash, Record(id="ss-ab12", fields={"Email": "nope"}))
    assert result.errors[0].record_id == "ss-ab12"
    assert result.errors[0].to_dict()["record_id"] == "ss-ab12"
