import pytest

from table_replication.errors import InvalidMapping
from table_replication.mapper import (
    Computed,
    Direct,
    Excluded,
    build_plan,
    parse_directive,
    parse_mapping,
)

SCHEMA = [("id", "integer"), ("name", "text"), ("created", "timestamp without time zone"), ("born", "date")]


def test_parse_directive_kinds():
    assert parse_directive("created", "SQL:NOW()") == Computed("created", "NOW()")
    assert parse_directive("name", "full_name") == Direct("name", "full_name")
    assert parse_directive("name", "full_name -> upper(%s)") == Direct("name", "full_name", "upper(%s)")
    assert parse_directive("name", "full_name ->") == Direct("name", "full_name")
    assert parse_directive("notes", "") == Excluded("notes")
    assert parse_directive("notes", None) == Excluded("notes")


def test_empty_computed_expression_is_invalid():
    with pytest.raises(InvalidMapping):
        parse_directive("created", "SQL:   ")


def test_arrow_without_source_field_is_invalid():
    with pytest.raises(InvalidMapping):
        parse_directive("name", "-> upper(%s)")


def test_empty_mapping_is_identity_over_common_columns():
    plan = build_plan(["id", "name", "extra"], SCHEMA, {})
    assert plan.names == ["id", "name"]
    assert plan.source_fields == ["id", "name"]
    assert plan.insert_sql("public.users") == 'INSERT INTO "public"."users" ("id", "name") VALUES (%s, %s)'


def test_computed_column_is_spliced_and_binds_nothing():
    plan = build_plan(["id"], SCHEMA, {"id": "id", "created": "SQL:NOW()"})
    assert plan.insert_sql("users") == 'INSERT INTO "users" ("id", "created") VALUES (%s, NOW())'
    assert plan.bind_count == 1
    assert plan.bind({"id": 7}, lambda col, v: v) == (7,)


def test_computed_percent_signs_are_escaped():
    plan = build_plan(["id"], SCHEMA, {"id": "id", "name": "SQL:'100%'"})
    assert "'100%%'" in plan.insert_sql("users")


def test_arrow_expression_binds_once_per_placeholder():
    plan = build_plan(["nm"], SCHEMA, {"name": "nm -> coalesce(%s, %s)"})
    assert plan.insert_sql("users") == 'INSERT INTO "users" ("name") VALUES (coalesce(%s, %s))'
    assert plan.bind({"nm": "a"}, lambda col, v: v) == ("a", "a")


def test_configured_order_is_stable():
    mapping = {"name": "nm", "id": "key", "created": "SQL:NOW()"}
    first = build_plan(["key", "nm"], SCHEMA, mapping)
    second = build_plan(["nm", "key"], SCHEMA, mapping)
    assert first.names == second.names == ["name", "id", "created"]
    assert parse_mapping(mapping) == parse_mapping(dict(mapping))


def test_unknown_and_excluded_columns_are_left_out():
    plan = build_plan(["id", "name"], SCHEMA, {"id": "id", "name": "", "nope": "id"})
    assert plan.names == ["id"]


def test_direct_entry_without_source_field_is_dropped():
    plan = build_plan(["id"], SCHEMA, {"id": "id", "name": "missing"})
    assert plan.names == ["id"]


def test_no_columns_left_is_invalid():
    with pytest.raises(InvalidMapping):
        build_plan(["x", "y"], SCHEMA, {})
    with pytest.raises(InvalidMapping):
        build_plan(["id"], SCHEMA, {"id": ""})
