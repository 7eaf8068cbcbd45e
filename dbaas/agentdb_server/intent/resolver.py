"""
Intent resolver for AgentDB.

The IntentResolver converts a structured call or a natural-language
phrase into a canonical Operation:
- Structured calls bypass inference and resolve deterministically
- Phrases go through an IntentClassifier, then are validated like a
  structured call, with documented heuristics filling the gaps

Heuristics (clock injected, all UTC):
    "today"                 timestamp column within [start of day, start of next day)
    "overdue"               due column lt now
    "latest"/"newest"/"recent"  order by timestamp column desc (if no order given)
    "oldest"                order by timestamp column asc (if no order given)
    "top N"/"first N"/"last N"  limit N (if no limit given)

Invariants:
    - resolve() has no side effects and never touches storage
    - Filters and order keys must name existing columns of an existing table
    - Comparison literals are coerced to the column's kind
    - Same input, same catalog, same clock: same Operation

How to change safely:
    - New heuristics need a test and a line in the table above
    - Keep the structured path free of inference
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from ..config import ResolverConfig
from ..errors import AmbiguousIntent, SchemaViolation, UnknownTable
from ..execute.executor import system_clock_ms
from ..model.operation import Operation, OrderBy, new_operation_id
from ..model.predicate import Comparison, Conjunction, Negation, Predicate, gte, lt
from ..model.schema import TableSchema
from ..model.types import EventKind, OpKind
from .calls import Phrase, StructuredCall
from .classifier import IntentClassifier, SchemaCatalog, infer_table

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

_LIMIT_RE = re.compile(r"\b(?:top|first|last)\s+(\d+)\b")
_NEWEST_RE = re.compile(r"\b(?:latest|newest|recent|most recent)\b")
_OLDEST_RE = re.compile(r"\boldest\b")
_TODAY_RE = re.compile(r"\btoday\b")
_OVERDUE_RE = re.compile(r"\boverdue\b")


def _coerce_predicate(schema: TableSchema, predicate: Predicate) -> Predicate:
    if isinstance(predicate, Conjunction):
        return Conjunction(predicate.op, tuple(_coerce_predicate(schema, c) for c in predicate.clauses))
    if isinstance(predicate, Negation):
        return Negation(_coerce_predicate(schema, predicate.clause))
    if isinstance(predicate, Comparison):
        if not schema.has_column(predicate.column):
            raise SchemaViolation(
                f"Unknown column '{predicate.column}' in table '{schema.table}'",
                table=schema.table,
                column=predicate.column,
            )
        if predicate.op in ("is", "like"):
            return predicate
        value = schema.coerce_literal(predicate.column, predicate.value)
        if isinstance(value, list):
            value = tuple(value)
        return Comparison(predicate.op, predicate.column, value)
    raise TypeError(f"Unsupported predicate node: {type(predicate).__name__}")


class IntentResolver:
    """Resolves calls and phrases into Operations.

    Example:
        >>> resolver = IntentResolver(executor, KeywordClassifier())
        >>> op = resolver.resolve({"table": "tasks", "op": "query", "filters": {"status": "pending"}})
        >>> op.kind
        <OpKind.QUERY: 'query'>
    """

    def __init__(
        self,
        catalog: SchemaCatalog,
        classifier: IntentClassifier | None = None,
        config: ResolverConfig | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            catalog: Read-only table catalog
            classifier: Phrase classifier (phrases fail as ambiguous without one)
            config: Heuristic settings
            clock: Millisecond clock used by time-relative heuristics
        """
        self.catalog = catalog
        self.classifier = classifier
        self.config = config or ResolverConfig()
        self.clock = clock or system_clock_ms

    def resolve(self, request: StructuredCall | Phrase | Operation | Mapping[str, Any]) -> Operation:
        """Resolve one request.

        Args:
            request: Operation (returned as is), StructuredCall, Phrase or
                a dict of either ("text" key means phrase)

        Raises:
            AmbiguousIntent: If a phrase has no clear interpretation
            UnknownTable: If no table is supplied or inferable
            SchemaViolation: If filters or order do not fit the schema
        """
        if isinstance(request, Operation):
            return request
        if isinstance(request, Mapping):
            request = self._parse(request)
        if isinstance(request, Phrase):
            return self.resolve_phrase(request)
        return self.resolve_call(request)

    @staticmethod
    def _parse(data: Mapping[str, Any]) -> StructuredCall | Phrase:
        try:
            if "text" in data:
                return Phrase.model_validate(dict(data))
            return StructuredCall.model_validate(dict(data))
        except ValidationError as e:
            raise SchemaViolation(f"Malformed call: {e.errors()[0]['msg']}")

    def resolve_call(self, call: StructuredCall) -> Operation:
        """Deterministic path for explicit calls."""
        operation_id = call.operation_id or new_operation_id()
        if not call.table:
            raise UnknownTable("No table supplied", operation_id=operation_id)

        table = call.table
        kind = OpKind(call.op)
        schema = self.catalog.schema(table)

        try:
            predicate = Predicate.coerce(call.filters)
            order = tuple(OrderBy.parse(o) for o in self._order_specs(call.order))
        except ValueError as e:
            raise SchemaViolation(str(e), table=table, operation_id=operation_id)

        if schema is not None:
            if predicate is not None:
                predicate = _coerce_predicate(schema, predicate)
            for spec in order:
                if not schema.has_column(spec.column):
                    raise SchemaViolation(
                        f"Unknown order column '{spec.column}' in table '{table}'",
                        table=table,
                        column=spec.column,
                        operation_id=operation_id,
                    )

        limit = call.limit
        if kind == OpKind.QUERY and limit is None:
            limit = self.config.default_limit

        return Operation(
            kind=kind,
            table=table,
            predicate=predicate,
            values=call.values if kind == OpKind.INSERT else None,
            patch=call.patch if kind == OpKind.UPDATE else None,
            order=order if kind == OpKind.QUERY else (),
            limit=limit if kind == OpKind.QUERY else None,
            expected_revision=call.expected_revision,
            event=EventKind(call.event) if call.event else None,
            target=call.target,
            operation_id=operation_id,
        )

    @staticmethod
    def _order_specs(order: list[str | dict[str, Any]] | str | None) -> list[Any]:
        if order is None:
            return []
        if isinstance(order, str):
            return [part.strip() for part in order.split(",") if part.strip()]
        return list(order)

    def resolve_phrase(self, phrase: Phrase) -> Operation:
        """Classifier path: pick a candidate, complete it, validate it."""
        operation_id = phrase.operation_id or new_operation_id()
        if self.classifier is None:
            raise AmbiguousIntent("No intent classifier configured", operation_id=operation_id)

        try:
            candidates = sorted(
                self.classifier.classify(phrase, self.catalog),
                key=lambda c: c.confidence,
                reverse=True,
            )
        except ValidationError as e:
            raise SchemaViolation(
                f"Malformed phrase parameters: {e.errors()[0]['msg']}", operation_id=operation_id
            )
        if not candidates:
            raise AmbiguousIntent(
                f"Could not interpret phrase: {phrase.text!r}", operation_id=operation_id
            )

        best = candidates[0]
        for other in candidates[1:]:
            if other.operation.op == best.operation.op:
                continue
            if best.confidence - other.confidence < self.config.ambiguity_margin:
                raise AmbiguousIntent(
                    f"Phrase {phrase.text!r} could mean {best.operation.op} or {other.operation.op}",
                    candidates=[best.operation.op, other.operation.op],
                    operation_id=operation_id,
                )
            break

        call = best.operation
        table = call.table or phrase.table or infer_table(phrase.text, self.catalog.tables())
        if table is None:
            raise UnknownTable(
                f"No table named in phrase: {phrase.text!r}",
                phrase=phrase.text,
                operation_id=operation_id,
            )

        update = self._heuristics(call.op, table, phrase.text, call)
        update.update({"table": table, "operation_id": operation_id})
        resolved = call.model_copy(update=update)

        logger.debug(
            "Resolved phrase",
            extra={
                "phrase": phrase.text,
                "op": resolved.op,
                "table": table,
                "confidence": best.confidence,
            },
        )
        return self.resolve_call(resolved)

    def _heuristics(self, op: str, table: str, text: str, call: StructuredCall) -> dict[str, Any]:
        text = text.lower()
        update: dict[str, Any] = {}
        extra: list[Predicate] = []
        now = self.clock()

        if op in ("query", "update", "delete", "watch"):
            if _TODAY_RE.search(text):
                start = now - now % DAY_MS
                column = self.config.timestamp_column
                extra.append(gte(column, start) & lt(column, start + DAY_MS))
            if _OVERDUE_RE.search(text):
                column = self.config.due_column
                schema = self.catalog.schema(table)
                if schema is None or not schema.has_column(column):
                    raise SchemaViolation(
                        f"Table '{table}' has no '{column}' column for 'overdue'",
                        table=table,
                        column=column,
                    )
                extra.append(lt(column, now))

        if extra:
            clauses = [c.to_dict() for c in extra]
            if call.filters:
                try:
                    clauses.insert(0, Predicate.from_dict(call.filters).to_dict())
                except ValueError as e:
                    raise SchemaViolation(str(e), table=table)
            update["filters"] = clauses[0] if len(clauses) == 1 else {"op": "and", "clauses": clauses}

        if op == "query":
            if call.order is None:
                if _NEWEST_RE.search(text):
                    update["order"] = [f"{self.config.timestamp_column} desc"]
                elif _OLDEST_RE.search(text):
                    update["order"] = [f"{self.config.timestamp_column} asc"]
            if call.limit is None:
                match = _LIMIT_RE.search(text)
                if match:
                    update["limit"] = int(match.group(1))
        return update
