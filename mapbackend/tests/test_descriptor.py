import pytest

from mapbackend.proxy.descriptor import (
    MAX_ROWS,
    EmbeddedRelation,
    FilterOperator,
    LiteralFilter,
    OperatorFilter,
    OrderSpec,
    PageRange,
    build_descriptor,
    parse_filters,
    parse_on_conflict,
    parse_order,
    parse_select,
    resolve_page,
)
from mapbackend.proxy.errors import (
    InvalidTable,
    MaliciousIdentifier,
    MaliciousInput,
    MalformedRequest,
)
from mapbackend.security.policy import Method


def test_filters_literal_operator_and_null_skipping():
    out = parse_filters(
        {
            "city": "Izmir",
            "name": {"operator": "ilike", "value": "%kafe%"},
            "id": {"operator": "in", "value": [1, 2, None]},
            "deleted_at": None,
            "rank": {"operator": "gte", "value": None},
        }
    )
    assert out == [
        LiteralFilter("city", "Izmir"),
        OperatorFilter("name", FilterOperator.ILIKE, "%kafe%"),
        OperatorFilter("id", FilterOperator.IN, [1, 2]),
    ]


@pytest.mark.parametrize(
    "raw",
    [
        {"name": {"operator": "regex", "value": "x"}},
        {"name": {"value": "x"}},
        {"id": {"operator": "in", "value": 3}},
        {"id": [1, 2]},
        {"meta": {"operator": "eq", "value": {"nested": 1}}},
        ["not", "an", "object"],
    ],
)
def test_malformed_filters(raw):
    with pytest.raises(MalformedRequest):
        parse_filters(raw)


def test_filter_key_and_value_sanitization():
    with pytest.raises(MaliciousIdentifier):
        parse_filters({"id; DROP TABLE users": 1})
    with pytest.raises(MaliciousInput):
        parse_filters({"name": "<script>alert(1)</script>"})
    with pytest.raises(MaliciousInput):
        parse_filters({"name": {"operator": "in", "value": ["ok", "javascript:x"]}})


def test_order_single_and_list():
    assert parse_order({"column": "name"}) == [OrderSpec("name", True)]
    assert parse_order([{"column": "city", "ascending": False}, {"column": "id"}]) == [
        OrderSpec("city", False),
        OrderSpec("id", True),
    ]
    with pytest.raises(MalformedRequest):
        parse_order({"column": "id", "ascending": "no"})
    with pytest.raises(MaliciousIdentifier):
        parse_order({"column": "id desc; --"})


def test_pagination_rules():
    assert resolve_page() == PageRange(0, MAX_ROWS - 1)
    assert resolve_page(limit=37) == PageRange(0, 36)
    assert resolve_page(limit=0) == PageRange(0, 0)
    assert resolve_page(limit=10**9) == PageRange(0, MAX_ROWS - 1)
    # explicit range wins over limit and is capped to the maximum span
    assert resolve_page(limit=5, range_={"from": 100, "to": 199}) == PageRange(100, 199)
    assert resolve_page(range_={"from": 10, "to": 10**9}) == PageRange(10, 10 + MAX_ROWS - 1)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"limit": True},
        {"limit": "10"},
        {"range_": {"from": 5, "to": 1}},
        {"range_": {"from": -1, "to": 3}},
        {"range_": [0, 10]},
    ],
)
def test_bad_pagination(kwargs):
    with pytest.raises(MalformedRequest):
        resolve_page(**kwargs)


def test_select_grammar():
    sel = parse_select("id, name, city_name:city, main_category:main_categories!fk_main(id,name)")
    assert sel.text == "id,name,city_name:city,main_category:main_categories!fk_main(id,name)"
    assert sel.projection == [("id", "id"), ("name", "name"), ("city_name", "city")]
    assert sel.relations == [EmbeddedRelation("main_categories", "main_category", "fk_main")]
    assert not sel.star

    nested = parse_select("*, sub_categories(id, main_categories(name))")
    assert nested.star
    assert [r.relation for r in nested.relations] == ["sub_categories", "main_categories"]

    assert parse_select(None).text == "*"
    assert parse_select("  ").text == "*"


def test_select_rejects_unknown_relations_and_bad_syntax():
    with pytest.raises(InvalidTable):
        parse_select("*, pg_roles(*)")
    with pytest.raises(MalformedRequest):
        parse_select("id,(name")
    with pytest.raises(MalformedRequest):
        parse_select("id,,name")
    with pytest.raises(MalformedRequest):
        parse_select("name::text")
    with pytest.raises(MaliciousIdentifier):
        parse_select("id; delete")


def test_on_conflict():
    assert parse_on_conflict("username") == "username"
    assert parse_on_conflict(["a", "b"]) == "a,b"
    assert parse_on_conflict(None) is None
    with pytest.raises(MaliciousIdentifier):
        parse_on_conflict("id'--")


def test_build_descriptor_single_skips_paging_and_sanitizes_data():
    d = build_descriptor(
        "addresses",
        Method.INSERT,
        {"data": {"name": "  Kafe  "}, "single": True, "count": "Exact"},
    )
    assert d.data == {"name": "Kafe"}
    assert d.page is None and d.single
    assert d.count == "exact"
    assert not d.select_given

    with pytest.raises(MaliciousInput):
        build_descriptor("addresses", Method.INSERT, {"data": [{"name": "<b>x</b>"}]})
    with pytest.raises(MalformedRequest):
        build_descriptor("addresses", Method.SELECT, {"count": "all"})


def test_hidden_columns_cannot_be_selected_by_name_or_alias():
    assert parse_select("id, username", "users").projection == [("id", "id"), ("username", "username")]
    for clause in ("password", "id, pw:password", "id, author:users(id, p:password)"):
        with pytest.raises(MalformedRequest):
            parse_select(clause, "logs" if "author" in clause else "users")
    # embedded users rows are checked against the users policy at any depth
    with pytest.raises(MalformedRequest):
        build_descriptor("logs", Method.SELECT, {"select": "*, users(password)"})
    # no table in scope, no hidden columns
    assert parse_select("password").projection == [("password", "password")]


def test_filter_and_order_keys_accept_relation_columns():
    assert parse_filters({"users.username": "a"}) == [LiteralFilter("users.username", "a")]
    assert parse_order({"column": "author.id"}) == [OrderSpec("author.id", True)]
    with pytest.raises(MalformedRequest):
        parse_filters({"a.b.c": 1})
    with pytest.raises(MalformedRequest):
        parse_order({"column": "name desc"})
