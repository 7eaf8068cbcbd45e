"""
Predicate trees for filtering records.

A predicate is a tree of comparisons over column references and literals:
- Comparison: eq, neq, gt, gte, lt, lte, like, in, is
- Conjunction: and / or, evaluated left-to-right with short-circuit
- Negation: not

Comparison semantics:
    - A literal None turns eq/neq into null tests
    - Any other comparison against a None column value is false
    - Values of incomparable kinds never match (no exception is raised)
    - bool and int are distinct: True does not equal 1
    - like uses SQL wildcards (% and _), case-sensitive, whole value

Predicates also evaluate three-valued against segment zone maps
(might_match), so the tier manager can skip segments that cannot match.

Invariants:
    - Predicates are immutable
    - evaluate() never raises for well-formed trees
    - might_match() returns False only when no row can match

How to change safely:
    - Every new operator needs evaluate(), might_match() and to_dict() support
    - Keep the JSON format stable; subscriptions persist predicates
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..storage.tier_pointer import ZoneSummary


COMPARISON_OPS = ("eq", "neq", "gt", "gte", "lt", "lte", "like", "in", "is")
LOGICAL_OPS = ("and", "or", "not")


class Readable(Protocol):
    def get(self, column: str) -> Any: ...


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _equal(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if _is_number(a) and _is_number(b):
        return a == b
    return type(a) is type(b) and a == b


def _comparable(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return True
    return isinstance(a, str) and isinstance(b, str)


@lru_cache(maxsize=256)
def _like_regex(pattern: str) -> re.Pattern[str]:
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.DOTALL)


def like(value: Any, pattern: Any) -> bool:
    if not isinstance(value, str) or not isinstance(pattern, str):
        return False
    return _like_regex(pattern).fullmatch(value) is not None


class Predicate:
    """Base class of predicate tree nodes."""

    def evaluate(self, record: Readable) -> bool:
        raise NotImplementedError

    def might_match(self, zone: Mapping[str, ZoneSummary]) -> bool:
        raise NotImplementedError

    def columns(self) -> set[str]:
        raise NotImplementedError

    def map_values(self, fn: Callable[[str, Any], Any]) -> Predicate:
        """Return a copy with every literal replaced by fn(column, literal)."""
        raise NotImplementedError

    def comparisons(self) -> Iterable[Comparison]:
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        raise NotImplementedError

    def __and__(self, other: Predicate) -> Predicate:
        return Conjunction("and", (self, other))

    def __or__(self, other: Predicate) -> Predicate:
        return Conjunction("or", (self, other))

    def __invert__(self) -> Predicate:
        return Negation(self)

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> Predicate:
        """Parse a predicate from its JSON form.

        Accepts explicit nodes ({"op": "eq", "column": c, "value": v},
        {"op": "and", "clauses": [...]}, {"op": "not", "clause": {...}})
        or a shorthand mapping of column to value, where list values
        become "in" comparisons and several columns are and-ed.

        Raises:
            ValueError: If the structure is not a valid predicate
        """
        op = data.get("op")
        if isinstance(op, str) and op in LOGICAL_OPS:
            if op == "not":
                clause = data.get("clause")
                if not isinstance(clause, Mapping):
                    raise ValueError("'not' requires a 'clause' object")
                return Negation(Predicate.from_dict(clause))
            clauses = data.get("clauses")
            if not isinstance(clauses, list) or not clauses:
                raise ValueError(f"'{op}' requires a non-empty 'clauses' list")
            return Conjunction(op, tuple(Predicate.from_dict(c) for c in clauses))

        if isinstance(op, str) and op in COMPARISON_OPS and "column" in data:
            return Comparison(op, data["column"], _freeze(data.get("value")))

        if op is not None and "column" in data:
            raise ValueError(f"Unknown predicate operator: {op}")

        # Shorthand: {"status": "pending", "assignee": ["a", "b"]}
        leaves: list[Predicate] = []
        for column, value in data.items():
            if isinstance(value, (list, tuple)):
                leaves.append(Comparison("in", column, tuple(value)))
            else:
                leaves.append(Comparison("eq", column, value))
        if not leaves:
            raise ValueError("Empty predicate")
        if len(leaves) == 1:
            return leaves[0]
        return Conjunction("and", tuple(leaves))

    @staticmethod
    def coerce(value: Predicate | Mapping[str, Any] | None) -> Predicate | None:
        """Accept a Predicate, its JSON form, or None."""
        if value is None or isinstance(value, Predicate):
            return value
        if isinstance(value, Mapping):
            if not value:
                return None
            return Predicate.from_dict(value)
        raise ValueError(f"Invalid predicate: {value!r}")


def _freeze(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(value)
    return value


@dataclass(frozen=True)
class Comparison(Predicate):
    """Leaf comparing one column with a literal."""

    op: str
    column: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in COMPARISON_OPS:
            raise ValueError(f"Unknown comparison operator: {self.op}")
        if not isinstance(self.column, str) or not self.column:
            raise ValueError(f"Comparison column must be a non-empty string, got {self.column!r}")

    def evaluate(self, record: Readable) -> bool:
        actual = record.get(self.column)
        op = self.op
        literal = self.value

        if op == "is":
            if literal is None:
                return actual is None
            return isinstance(actual, bool) and actual is literal
        if op == "eq":
            if literal is None:
                return actual is None
            return actual is not None and _equal(actual, literal)
        if op == "neq":
            if literal is None:
                return actual is not None
            return actual is not None and not _equal(actual, literal)
        if actual is None:
            return False
        if op == "in":
            if not isinstance(literal, (tuple, list, set, frozenset)):
                return False
            return any(_equal(actual, v) for v in literal)
        if op == "like":
            return like(actual, literal)
        if not _comparable(actual, literal):
            return False
        if op == "gt":
            return actual > literal
        if op == "gte":
            return actual >= literal
        if op == "lt":
            return actual < literal
        return actual <= literal  # lte

    def might_match(self, zone: Mapping[str, ZoneSummary]) -> bool:
        summary = zone.get(self.column)
        if summary is None:
            # Column absent from every row of the segment: all values are None.
            return (self.op in ("eq", "is") and self.value is None)
        op = self.op
        literal = self.value

        if (op in ("eq", "is") and literal is None):
            return summary.has_null
        if op == "neq" and literal is None:
            return summary.has_values
        if not summary.has_values:
            return False
        if op == "eq":
            return summary.may_contain(literal)
        if op == "neq":
            if summary.values is not None:
                return any(not _equal(v, literal) for v in summary.values)
            return True
        if op == "is":
            return summary.may_contain(literal)
        if op == "in":
            if not isinstance(literal, (tuple, list, set, frozenset)):
                return False
            return any(summary.may_contain(v) for v in literal)
        if op == "like":
            if summary.values is not None:
                return any(like(v, literal) for v in summary.values)
            return True
        lo, hi = summary.min, summary.max
        if lo is None or hi is None or not _comparable(lo, literal) or not _comparable(hi, literal):
            return True
        if op == "gt":
            return hi > literal
        if op == "gte":
            return hi >= literal
        if op == "lt":
            return lo < literal
        return lo <= literal  # lte

    def columns(self) -> set[str]:
        return {self.column}

    def map_values(self, fn: Callable[[str, Any], Any]) -> Predicate:
        return Comparison(self.op, self.column, _freeze(fn(self.column, self.value)))

    def comparisons(self) -> Iterable[Comparison]:
        yield self

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"op": self.op, "column": self.column, "value": value}


@dataclass(frozen=True)
class Conjunction(Predicate):
    """and / or over two or more clauses."""

    op: str
    clauses: tuple[Predicate, ...]

    def __post_init__(self) -> None:
        if self.op not in ("and", "or"):
            raise ValueError(f"Unknown logical operator: {self.op}")

    def evaluate(self, record: Readable) -> bool:
        if self.op == "and":
            for clause in self.clauses:
                if not clause.evaluate(record):
                    return False
            return True
        for clause in self.clauses:
            if clause.evaluate(record):
                return True
        return False

    def might_match(self, zone: Mapping[str, ZoneSummary]) -> bool:
        if self.op == "and":
            return all(c.might_match(zone) for c in self.clauses)
        return any(c.might_match(zone) for c in self.clauses)

    def columns(self) -> set[str]:
        cols: set[str] = set()
        for clause in self.clauses:
            cols |= clause.columns()
        return cols

    def map_values(self, fn: Callable[[str, Any], Any]) -> Predicate:
        return Conjunction(self.op, tuple(c.map_values(fn) for c in self.clauses))

    def comparisons(self) -> Iterable[Comparison]:
        for clause in self.clauses:
            yield from clause.comparisons()

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.op, "clauses": [c.to_dict() for c in self.clauses]}


@dataclass(frozen=True)
class Negation(Predicate):
    """not over one clause."""

    clause: Predicate

    def evaluate(self, record: Readable) -> bool:
        return not self.clause.evaluate(record)

    def might_match(self, zone: Mapping[str, ZoneSummary]) -> bool:
        # Zone maps cannot prove a negation false.
        return True

    def columns(self) -> set[str]:
        return self.clause.columns()

    def map_values(self, fn: Callable[[str, Any], Any]) -> Predicate:
        return Negation(self.clause.map_values(fn))

    def comparisons(self) -> Iterable[Comparison]:
        return self.clause.comparisons()

    def to_dict(self) -> dict[str, Any]:
        return {"op": "not", "clause": self.clause.to_dict()}


def eq(column: str, value: Any) -> Comparison:
    return Comparison("eq", column, value)


def neq(column: str, value: Any) -> Comparison:
    return Comparison("neq", column, value)


def gt(column: str, value: Any) -> Comparison:
    return Comparison("gt", column, value)


def gte(column: str, value: Any) -> Comparison:
    return Comparison("gte", column, value)


def lt(column: str, value: Any) -> Comparison:
    return Comparison("lt", column, value)


def lte(column: str, value: Any) -> Comparison:
    return Comparison("lte", column, value)


def in_(column: str, values: Iterable[Any]) -> Comparison:
    return Comparison("in", column, tuple(values))


def is_(column: str, value: bool | None) -> Comparison:
    return Comparison("is", column, value)


def and_(*clauses: Predicate) -> Predicate:
    return clauses[0] if len(clauses) == 1 else Conjunction("and", tuple(clauses))


def or_(*clauses: Predicate) -> Predicate:
    return clauses[0] if len(clauses) == 1 else Conjunction("or", tuple(clauses))


def not_(clause: Predicate) -> Predicate:
    return Negation(clause)
