"""
Unit tests for predicate trees.

Tests cover:
- Comparison semantics (null handling, kinds, like)
- Logical combinators and short-circuit
- JSON parsing (explicit nodes and shorthand)
- Zone-map pruning
"""

import pytest

from dbaas.agentdb_server.model.predicate import (
    Comparison,
    Predicate,
    and_,
    eq,
    gt,
    gte,
    in_,
    is_,
    lt,
    neq,
    not_,
    or_,
)
from dbaas.agentdb_server.storage.tier_pointer import build_zone
from tests.helpers import make_record


@pytest.fixture
def record():
    return make_record(7, title="Build auth", status="pending", priority=2, assignee=None, done=False)


class TestComparison:
    """Tests for leaf comparisons."""

    def test_eq_neq(self, record):
        assert eq("status", "pending").evaluate(record)
        assert not eq("status", "complete").evaluate(record)
        assert neq("status", "complete").evaluate(record)

    def test_null_tests(self, record):
        assert eq("assignee", None).evaluate(record)
        assert not neq("assignee", None).evaluate(record)
        assert is_("assignee", None).evaluate(record)
        assert not eq("assignee", "ralph").evaluate(record)
        assert not neq("assignee", "ralph").evaluate(record)

    def test_ordering(self, record):
        assert gt("priority", 1).evaluate(record)
        assert gte("priority", 2).evaluate(record)
        assert not lt("priority", 2).evaluate(record)
        assert not gt("assignee", 1).evaluate(record)

    def test_incomparable_kinds_never_match(self, record):
        assert not gt("priority", "1").evaluate(record)
        assert not eq("priority", "2").evaluate(record)

    def test_bool_is_not_int(self, record):
        assert not eq("done", 0).evaluate(record)
        assert is_("done", False).evaluate(record)

    def test_in(self, record):
        assert in_("status", ["pending", "blocked"]).evaluate(record)
        assert not in_("status", []).evaluate(record)

    def test_like(self, record):
        assert Comparison("like", "title", "Build%").evaluate(record)
        assert Comparison("like", "title", "B_ild auth").evaluate(record)
        assert not Comparison("like", "title", "build%").evaluate(record)

    def test_pseudo_columns(self, record):
        assert eq("id", 7).evaluate(record)
        assert eq("revision", 1).evaluate(record)

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            Comparison("between", "x", 1)

    @pytest.mark.parametrize("column", [["title"], "", 3, None])
    def test_column_must_be_string(self, column):
        with pytest.raises(ValueError):
            Comparison("eq", column, "a")
        with pytest.raises(ValueError):
            Predicate.from_dict({"op": "eq", "column": column, "value": "a"})


class TestLogical:
    """Tests for and / or / not."""

    def test_and_or_not(self, record):
        assert and_(eq("status", "pending"), gt("priority", 1)).evaluate(record)
        assert not and_(eq("status", "pending"), gt("priority", 5)).evaluate(record)
        assert or_(eq("status", "complete"), gt("priority", 1)).evaluate(record)
        assert not_(eq("status", "complete")).evaluate(record)

    def test_operators(self, record):
        predicate = eq("status", "pending") & ~eq("priority", 9)
        assert predicate.evaluate(record)
        assert (eq("status", "x") | eq("status", "pending")).evaluate(record)

    def test_columns(self):
        predicate = and_(eq("status", "pending"), or_(gt("priority", 1), eq("assignee", None)))
        assert predicate.columns() == {"status", "priority", "assignee"}

    def test_map_values(self):
        predicate = and_(eq("priority", "1"), in_("id", ["2", "3"]))
        mapped = predicate.map_values(lambda column, value: value)
        assert mapped == predicate


class TestParsing:
    """Tests for Predicate.from_dict()."""

    def test_explicit_nodes(self):
        data = {
            "op": "and",
            "clauses": [
                {"op": "eq", "column": "status", "value": "pending"},
                {"op": "not", "clause": {"op": "in", "column": "id", "value": [1, 2]}},
            ],
        }
        predicate = Predicate.from_dict(data)
        assert predicate == and_(eq("status", "pending"), not_(in_("id", [1, 2])))
        assert predicate.to_dict() == data

    def test_shorthand(self):
        predicate = Predicate.from_dict({"status": "pending", "assignee": ["a", "b"]})
        assert predicate == and_(eq("status", "pending"), in_("assignee", ["a", "b"]))

    def test_shorthand_single(self):
        assert Predicate.from_dict({"assignee": None}) == eq("assignee", None)

    def test_invalid(self):
        with pytest.raises(ValueError):
            Predicate.from_dict({})
        with pytest.raises(ValueError):
            Predicate.from_dict({"op": "and", "clauses": []})
        with pytest.raises(ValueError):
            Predicate.from_dict({"op": "near", "column": "x", "value": 1})

    def test_coerce(self):
        assert Predicate.coerce(None) is None
        assert Predicate.coerce({}) is None
        assert Predicate.coerce({"status": "x"}) == eq("status", "x")
        with pytest.raises(ValueError):
            Predicate.coerce("status = x")


class TestZonePruning:
    """Tests for might_match() over segment zone maps."""

    @pytest.fixture
    def zone(self):
        rows = [
            make_record(1, status="pending", priority=1),
            make_record(2, status="pending", priority=3),
            make_record(3, status="blocked", priority=5),
        ]
        return build_zone(rows)

    def test_eq_pruning(self, zone):
        assert eq("status", "pending").might_match(zone)
        assert not eq("status", "complete").might_match(zone)

    def test_range_pruning(self, zone):
        assert gt("priority", 4).might_match(zone)
        assert not gt("priority", 5).might_match(zone)
        assert not lt("priority", 1).might_match(zone)

    def test_null_pruning(self, zone):
        assert not eq("status", None).might_match(zone)
        assert eq("assignee", None).might_match(zone)
        assert not eq("assignee", "ralph").might_match(zone)

    def test_key_pruning(self, zone):
        assert in_("id", [3, 9]).might_match(zone)
        assert not in_("id", [8, 9]).might_match(zone)

    def test_logical_pruning(self, zone):
        assert not and_(eq("status", "pending"), gt("priority", 7)).might_match(zone)
        assert or_(eq("status", "complete"), eq("priority", 3)).might_match(zone)
        assert not_(eq("status", "pending")).might_match(zone)
