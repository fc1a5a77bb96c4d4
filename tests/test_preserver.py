import pytest

from table_replication.TableConfig import KeptDataSpec
from table_replication.errors import MergeError
from table_replication.preserver import KeptDataPreserver


@pytest.fixture
def shadow(store):
    store.add_table(
        "public.users_copy",
        store.tables["public.users"]["columns"],
        [{"id": 1, "name": "new", "notes": ""}, {"id": 2, "name": "b", "notes": ""}],
    )
    return store


@pytest.mark.parametrize("spec", [None, KeptDataSpec(), KeptDataSpec(key="id"), KeptDataSpec(fields=("notes",))])
def test_empty_spec_is_a_no_op(shadow, spec):
    assert KeptDataPreserver(shadow).preserve(spec, "public.users", "public.users_copy") is True
    assert ("fetch", "public.users") not in shadow.calls


def test_kept_values_are_copied_by_key(shadow):
    spec = KeptDataSpec(key="id", fields=("notes",))
    assert KeptDataPreserver(shadow).preserve(spec, "public.users", "public.users_copy")
    rows = {r["id"]: r for r in shadow.rows("public.users_copy")}
    assert rows[1] == {"id": 1, "name": "new", "notes": "x"}
    # id 2 has no production counterpart; id 9 has no shadow row
    assert rows[2]["notes"] == ""
    assert 9 not in rows


def test_lock_flag_is_passed_to_the_read(shadow):
    spec = KeptDataSpec(key="id", fields=("notes",))
    KeptDataPreserver(shadow, lock_rows=True).preserve(spec, "public.users", "public.users_copy")
    assert ("lock", True) in shadow.calls


def test_read_failure_is_a_merge_error(shadow):
    shadow.fail("fetch", "public.users")
    with pytest.raises(MergeError):
        KeptDataPreserver(shadow).preserve(KeptDataSpec("id", ("notes",)), "public.users", "public.users_copy")


def test_update_failure_is_a_merge_error(shadow):
    shadow.fail("update", "public.users_copy")
    with pytest.raises(MergeError):
        KeptDataPreserver(shadow).preserve(KeptDataSpec("id", ("notes",)), "public.users", "public.users_copy")
