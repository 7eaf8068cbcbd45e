"""
Unit tests for the intent resolver.

Tests cover:
- Deterministic resolution of structured calls
- Literal coercion and column validation
- Phrase resolution through a classifier
- Time-relative and ordering heuristics
- Ambiguity and unknown-table failures
"""

import pytest

from dbaas.agentdb_server.config import ResolverConfig
from dbaas.agentdb_server.errors import AmbiguousIntent, SchemaViolation, UnknownTable
from dbaas.agentdb_server.intent import (
    Candidate,
    CandidateOperation,
    IntentResolver,
    KeywordClassifier,
    Phrase,
    StructuredCall,
)
from dbaas.agentdb_server.intent.resolver import DAY_MS
from dbaas.agentdb_server.model.operation import Operation, OrderBy
from dbaas.agentdb_server.model.predicate import and_, eq, gte, in_, lt
from dbaas.agentdb_server.model.types import EventKind, OpKind
from tests.helpers import StaticCatalog

NOW = 1_700_000_123_456


@pytest.fixture
def resolver():
    return IntentResolver(StaticCatalog.tasks(), KeywordClassifier(), clock=lambda: NOW)


class TestStructuredCalls:
    """Tests for the structured (no inference) path."""

    def test_query(self, resolver):
        op = resolver.resolve(
            {
                "table": "tasks",
                "op": "query",
                "filters": {"status": "pending", "priority": "2"},
                "order": "created_at desc, title",
                "limit": 5,
                "operation_id": "op-1",
            }
        )
        assert op.kind == OpKind.QUERY
        assert op.predicate == and_(eq("status", "pending"), eq("priority", 2))
        assert op.order == (OrderBy("created_at", True), OrderBy("title"))
        assert op.limit == 5
        assert op.operation_id == "op-1"

    def test_shorthand_list_is_in(self, resolver):
        op = resolver.resolve({"table": "tasks", "filters": {"id": ["1", "2"]}})
        assert op.predicate == in_("id", (1, 2))

    def test_update_keeps_only_patch(self, resolver):
        call = StructuredCall(
            table="tasks",
            op="update",
            filters={"assignee": "ralph"},
            patch={"status": "complete"},
            values={"ignored": True},
            expected_revision=3,
        )
        op = resolver.resolve(call)
        assert op.kind == OpKind.UPDATE
        assert dict(op.patch) == {"status": "complete"}
        assert op.values is None
        assert op.expected_revision == 3
        assert op.order == ()

    def test_watch(self, resolver):
        op = resolver.resolve(
            {"table": "tasks", "op": "watch", "event": "update", "target": "inbox"}
        )
        assert op.event == EventKind.UPDATE
        assert op.target == "inbox"

    def test_operation_passes_through(self, resolver):
        op = Operation.query("tasks")
        assert resolver.resolve(op) is op

    def test_new_table_is_not_validated(self, resolver):
        op = resolver.resolve({"table": "events", "op": "insert", "values": {"kind": "login"}})
        assert op.table == "events"
        assert dict(op.values) == {"kind": "login"}

    def test_missing_table(self, resolver):
        with pytest.raises(UnknownTable) as exc_info:
            resolver.resolve({"op": "query", "operation_id": "op-3"})
        assert exc_info.value.operation_id == "op-3"

    def test_unknown_filter_column(self, resolver):
        with pytest.raises(SchemaViolation) as exc_info:
            resolver.resolve({"table": "tasks", "filters": {"owner": "ralph"}})
        assert exc_info.value.column == "owner"

    def test_unknown_order_column(self, resolver):
        with pytest.raises(SchemaViolation):
            resolver.resolve({"table": "tasks", "order": ["owner"]})

    def test_uncoercible_literal(self, resolver):
        with pytest.raises(SchemaViolation):
            resolver.resolve({"table": "tasks", "filters": {"priority": "high"}})

    def test_malformed_call(self, resolver):
        with pytest.raises(SchemaViolation):
            resolver.resolve({"table": "tasks", "limit": -1})
        with pytest.raises(SchemaViolation):
            resolver.resolve({"table": "tasks", "op": "merge"})
        with pytest.raises(SchemaViolation):
            resolver.resolve({"table": "tasks", "filters": {"op": "and", "clauses": []}})

    def test_default_limit(self):
        resolver = IntentResolver(StaticCatalog.tasks(), config=ResolverConfig(default_limit=50))
        assert resolver.resolve({"table": "tasks"}).limit == 50
        assert resolver.resolve({"table": "tasks", "op": "delete"}).limit is None


class TestPhrases:
    """Tests for phrase resolution."""

    def test_overdue(self, resolver):
        op = resolver.resolve({"text": "show overdue tasks"})
        assert op.kind == OpKind.QUERY
        assert op.table == "tasks"
        assert op.predicate == lt("due_at", NOW)

    def test_today(self, resolver):
        start = NOW - NOW % DAY_MS
        op = resolver.resolve(Phrase(text="what tasks came in today"))
        assert op.predicate == and_(gte("created_at", start), lt("created_at", start + DAY_MS))

    def test_heuristics_combine_with_filters(self, resolver):
        op = resolver.resolve(
            Phrase(text="show overdue tasks", params={"assignee": "ralph"})
        )
        assert op.predicate == and_(eq("assignee", "ralph"), lt("due_at", NOW))

    def test_latest_and_top_n(self, resolver):
        op = resolver.resolve(Phrase(text="show top 3 latest tasks"))
        assert op.order == (OrderBy("created_at", True),)
        assert op.limit == 3

        oldest = resolver.resolve(Phrase(text="show the oldest notes", params={"limit": 1}))
        assert oldest.table == "notes"
        assert oldest.order == (OrderBy("created_at"),)
        assert oldest.limit == 1

    def test_update_phrase(self, resolver):
        op = resolver.resolve(
            Phrase(
                text="mark ralph's tasks complete",
                params={"status": "complete", "filters": {"assignee": "ralph"}},
                operation_id="op-9",
            )
        )
        assert op.kind == OpKind.UPDATE
        assert dict(op.patch) == {"status": "complete"}
        assert op.predicate == eq("assignee", "ralph")
        assert op.operation_id == "op-9"

    def test_same_input_same_operation(self, resolver):
        phrase = Phrase(text="show overdue tasks", operation_id="op-1")
        assert resolver.resolve(phrase) == resolver.resolve(phrase)

    def test_ambiguous(self, resolver):
        with pytest.raises(AmbiguousIntent) as exc_info:
            resolver.resolve(Phrase(text="show and delete tasks", operation_id="op-4"))
        assert set(exc_info.value.candidates) == {"query", "delete"}
        assert exc_info.value.operation_id == "op-4"

    def test_uninterpretable(self, resolver):
        with pytest.raises(AmbiguousIntent):
            resolver.resolve(Phrase(text="tasks please"))

    def test_no_classifier(self):
        resolver = IntentResolver(StaticCatalog.tasks())
        with pytest.raises(AmbiguousIntent):
            resolver.resolve(Phrase(text="show tasks"))

    def test_unknown_table(self, resolver):
        with pytest.raises(UnknownTable) as exc_info:
            resolver.resolve(Phrase(text="show everything"))
        assert exc_info.value.phrase == "show everything"

    def test_overdue_needs_due_column(self, resolver):
        with pytest.raises(SchemaViolation):
            resolver.resolve(Phrase(text="show overdue notes"))

    def test_margin_picks_clear_winner(self):
        class TwoWay:
            def classify(self, phrase, catalog):
                return [
                    Candidate(operation=CandidateOperation(table="tasks", op="delete"), confidence=0.3),
                    Candidate(operation=CandidateOperation(table="tasks", op="query"), confidence=0.7),
                ]

        resolver = IntentResolver(StaticCatalog.tasks(), TwoWay())
        assert resolver.resolve(Phrase(text="anything")).kind == OpKind.QUERY

        strict = IntentResolver(StaticCatalog.tasks(), TwoWay(), ResolverConfig(ambiguity_margin=0.5))
        with pytest.raises(AmbiguousIntent):
            strict.resolve(Phrase(text="anything"))
