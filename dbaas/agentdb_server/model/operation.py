"""
Canonical operations.

An Operation is the resolved, immutable unit of work the Query Executor
accepts. It is produced by the Intent Resolver (or built directly by
trusted callers) and never modified afterwards.

Example:
    {
        "operation_id": "op-3f2a",
        "kind": "update",
        "table": "tasks",
        "predicate": {"op": "and", "clauses": [...]},
        "patch": {"status": "complete"},
        "order": [{"column": "created_at", "direction": "desc"}],
        "limit": null,
        "expected_revision": null
    }
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .predicate import Predicate
from .types import EventKind, OpKind


def new_operation_id() -> str:
    return f"op-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class OrderBy:
    """One sort key.

    Attributes:
        column: Column (or pseudo-column) to sort by
        descending: Sort direction
    """

    column: str
    descending: bool = False

    @classmethod
    def parse(cls, spec: str | Mapping[str, Any] | OrderBy) -> OrderBy:
        """Parse "created_at desc", {"column": ..., "direction": ...} or an OrderBy.

        Raises:
            ValueError: If the spec is malformed
        """
        if isinstance(spec, OrderBy):
            return spec
        if isinstance(spec, str):
            parts = spec.split()
            if not parts or len(parts) > 2:
                raise ValueError(f"Invalid order spec: {spec!r}")
            direction = parts[1].lower() if len(parts) == 2 else "asc"
            if direction not in ("asc", "desc"):
                raise ValueError(f"Invalid order direction: {direction!r}")
            return cls(parts[0], direction == "desc")
        if isinstance(spec, Mapping) and "column" in spec:
            direction = str(spec.get("direction", "asc")).lower()
            if direction not in ("asc", "desc"):
                raise ValueError(f"Invalid order direction: {direction!r}")
            return cls(spec["column"], direction == "desc")
        raise ValueError(f"Invalid order spec: {spec!r}")

    def to_dict(self) -> dict[str, str]:
        return {"column": self.column, "direction": "desc" if self.descending else "asc"}


def _readonly(values: Mapping[str, Any] | None) -> Mapping[str, Any] | None:
    if values is None:
        return None
    return MappingProxyType(dict(values))


@dataclass(frozen=True)
class Operation:
    """Canonical, resolved intent.

    Attributes:
        kind: query, insert, update, delete or watch
        table: Target table
        predicate: Row filter (query/update/delete/watch)
        values: Column values (insert)
        patch: Column changes (update)
        order: Sort keys (query)
        limit: Maximum rows returned (query)
        expected_revision: Optimistic-concurrency guard (update/delete)
        event: Event kind to watch (watch)
        target: Delivery target name (watch)
        operation_id: Identifier carried into results and errors
    """

    kind: OpKind
    table: str
    predicate: Predicate | None = None
    values: Mapping[str, Any] | None = None
    patch: Mapping[str, Any] | None = None
    order: tuple[OrderBy, ...] = ()
    limit: int | None = None
    expected_revision: int | None = None
    event: EventKind | None = None
    target: str | None = None
    operation_id: str = field(default_factory=new_operation_id)

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", _readonly(self.values))
        object.__setattr__(self, "patch", _readonly(self.patch))
        object.__setattr__(self, "order", tuple(OrderBy.parse(o) for o in self.order))
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must be non-negative")

    @classmethod
    def query(cls, table: str, predicate: Predicate | None = None, **kwargs: Any) -> Operation:
        return cls(kind=OpKind.QUERY, table=table, predicate=predicate, **kwargs)

    @classmethod
    def insert(cls, table: str, values: Mapping[str, Any], **kwargs: Any) -> Operation:
        return cls(kind=OpKind.INSERT, table=table, values=values, **kwargs)

    @classmethod
    def update(
        cls,
        table: str,
        predicate: Predicate | None,
        patch: Mapping[str, Any],
        **kwargs: Any,
    ) -> Operation:
        return cls(kind=OpKind.UPDATE, table=table, predicate=predicate, patch=patch, **kwargs)

    @classmethod
    def delete(cls, table: str, predicate: Predicate | None, **kwargs: Any) -> Operation:
        return cls(kind=OpKind.DELETE, table=table, predicate=predicate, **kwargs)

    @classmethod
    def watch(
        cls,
        table: str,
        event: EventKind,
        predicate: Predicate | None = None,
        target: str | None = None,
        **kwargs: Any,
    ) -> Operation:
        return cls(
            kind=OpKind.WATCH, table=table, event=event, predicate=predicate, target=target, **kwargs
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary (audit logs, tests)."""
        return {
            "operation_id": self.operation_id,
            "kind": self.kind.value,
            "table": self.table,
            "predicate": self.predicate.to_dict() if self.predicate else None,
            "values": dict(self.values) if self.values is not None else None,
            "patch": dict(self.patch) if self.patch is not None else None,
            "order": [o.to_dict() for o in self.order],
            "limit": self.limit,
            "expected_revision": self.expected_revision,
            "event": self.event.value if self.event else None,
            "target": self.target,
        }
