import re

import pytest

from stash.errors import StorageIntegrityError, ValidationError
from stash.ids import (
    child_sequence,
    depth,
    generate_child_id,
    generate_root_id,
    is_descendant_of,
    parent_of,
    rebase_id,
    root_of,
    validate_id,
)


def test_root_id_shape():
    assert re.fullmatch(r"inv-[0-9a-z]{4}", generate_root_id("inv-"))


def test_root_id_avoids_taken():
    taken = {f"inv-{i:04d}" for i in range(100)}
    assert generate_root_id("inv-", taken) not in taken


def test_root_id_space_exhausted():
    # length 1 over a fully taken alphabet can never succeed
    taken = {f"inv-{c}" for c in "0123456789abcdefghijklmnopqrstuvwxyz"}
    with pytest.raises(StorageIntegrityError) as exc:
        generate_root_id("inv-", taken, length=1, max_retries=5)
    assert exc.value.code == "ID_SPACE_EXHAUSTED"


def test_first_child():
    assert generate_child_id("inv-ab12", set()) == "inv-ab12.1"


def test_child_never_reuses_highest_sequence():
    # .2 was allocated and later purged; it is still known to the log
    taken = {"inv-ab12", "inv-ab12.1", "inv-ab12.2", "inv-ab12.1.5"}
    assert generate_child_id("inv-ab12", taken) == "inv-ab12.3"
    assert generate_child_id("inv-ab12.1", taken) == "inv-ab12.1.6"


def test_hierarchy_helpers():
    assert parent_of("inv-ab12.3.1") == "inv-ab12.3"
    assert parent_of("inv-ab12") == ""
    assert root_of("inv-ab12.3.1") == "inv-ab12"
    assert depth("inv-ab12.3.1") == 2
    assert child_sequence("inv-ab12.10") == 10
    assert is_descendant_of("inv-ab12.3.1", "inv-ab12")
    assert not is_descendant_of("inv-ab123", "inv-ab12")


def test_rebase():
    assert rebase_id("inv-ab12.1.2", "inv-ab12.1", "inv-zz99.4") == "inv-zz99.4.2"
    assert rebase_id("inv-ab12", "inv-ab12", "inv-cd34.1") == "inv-cd34.1"
    with pytest.raises(ValueError):
        rebase_id("inv-other", "inv-ab12", "inv-cd34")


@pytest.mark.parametrize("bad", ["inv", "inv-", "INV-ab12", "inv-ab12.0", "inv-ab12..1", "inv-ab12.x"])
def test_validate_id_rejects(bad):
    with pytest.raises(ValidationError):
        validate_id(bad)
