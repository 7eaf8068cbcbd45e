"""
Query executor for AgentDB.

The QueryExecutor applies canonical Operations against the hot tier,
asking the TierManager to promote warm/cold rows first when an operation
needs them. It ensures:
- Schema inference on first write and validation afterwards
- Per-row optimistic concurrency for guarded updates and deletes
- One hot-store transaction per operation
- Notification before acknowledgement: events are published after the
  write commits and before the ResultSet is returned

Invariants:
    - A row's revision grows by exactly one per mutation
    - Every mutation takes the next table seq, in the order rows are written
    - Deleted rows are tombstoned (values kept) until compaction
    - Rows matching nothing is success with an empty ResultSet
    - Watch operations are never executed here

How to change safely:
    - Keep publish() between commit and return
    - New operation kinds need a handler and a notifier event (if mutating)
    - Test revision monotonicity with interleaved update/delete sequences
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from ..errors import AgentDbError, ConcurrentModification, SchemaViolation
from ..model.operation import Operation, OrderBy
from ..model.predicate import Predicate
from ..model.schema import TableSchema
from ..model.types import EventKind, OpKind, Record, ResultSet, Tier
from ..storage.hot_store import HotStore, TableCounters
from ..storage.tier_manager import TierManager

if TYPE_CHECKING:
    from ..notify.notifier import ChangeNotifier

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def system_clock_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


def _sort_key(value: Any) -> tuple[int, Any]:
    # Group by kind so mixed columns never compare across types.
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (0, value)
    if isinstance(value, str):
        return (2, value)
    return (3, json.dumps(value, sort_keys=True, default=str))


def sort_rows(rows: list[Record], order: tuple[OrderBy, ...]) -> list[Record]:
    """Stable multi-key sort; ties keep ascending revision, then seq.

    None sorts last in both directions.
    """
    result = sorted(rows, key=lambda r: (r.revision, r.seq))
    for spec in reversed(order):
        present = [r for r in result if r.get(spec.column) is not None]
        missing = [r for r in result if r.get(spec.column) is None]
        present.sort(key=lambda r: _sort_key(r.get(spec.column)), reverse=spec.descending)
        result = present + missing
    return result


class QueryExecutor:
    """Executes canonical Operations.

    Thread safety:
        Not thread-safe. Only the owning actor calls execute().

    Example:
        >>> executor = QueryExecutor(hot_store, tier_manager, notifier)
        >>> executor.load()
        >>> result = await executor.execute(Operation.insert("tasks", {"title": "Build auth"}))
        >>> result.rows[0].revision
        1
    """

    def __init__(
        self,
        hot_store: HotStore,
        tier_manager: TierManager,
        notifier: ChangeNotifier | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            hot_store: Hot-tier store
            tier_manager: Tier manager used for promotion and eviction
            notifier: Change notifier receiving committed mutations
            clock: Millisecond clock (defaults to wall time)
        """
        self.hot_store = hot_store
        self.tier_manager = tier_manager
        self.notifier = notifier
        self.clock = clock or system_clock_ms
        self._schemas: dict[str, TableSchema] = {}
        self._counters: dict[str, TableCounters] = {}
        self._executed = 0
        self._failed = 0

    def load(self) -> None:
        """Reload schemas and counters from the hot store."""
        self._schemas = self.hot_store.load_schemas()
        self._counters = self.hot_store.load_counters()

    # Read-only catalog view (used by the intent resolver)

    def tables(self) -> list[str]:
        return sorted(self._schemas)

    def schema(self, table: str) -> TableSchema | None:
        return self._schemas.get(table)

    async def execute(self, operation: Operation) -> ResultSet:
        """Execute one operation.

        Failures of the whole operation are returned in ResultSet.error,
        per-row ConcurrentModification in ResultSet.row_errors.

        Args:
            operation: Resolved operation (not a watch)

        Returns:
            ResultSet of the rows returned or affected

        Raises:
            ValueError: If given a watch operation
        """
        if operation.kind == OpKind.WATCH:
            raise ValueError("Watch operations are handled by the change notifier")

        try:
            self._check_columns(operation)
            if operation.kind == OpKind.QUERY:
                result = ResultSet(rows=await self._query(operation))
            elif operation.kind == OpKind.INSERT:
                result = await self._insert(operation)
            elif operation.kind == OpKind.UPDATE:
                result = await self._mutate(operation, EventKind.UPDATE)
            else:
                result = await self._mutate(operation, EventKind.DELETE)
        except AgentDbError as e:
            self._failed += 1
            logger.info(
                "Operation failed",
                extra={
                    "operation_id": operation.operation_id,
                    "kind": operation.kind.value,
                    "table": operation.table,
                    "code": e.code,
                    "error": e.message,
                },
            )
            return ResultSet.failed(e, operation.operation_id)

        self._executed += 1
        result.operation_id = operation.operation_id
        for error in result.row_errors:
            error.with_operation(operation.operation_id)
        return result

    def _check_columns(self, operation: Operation) -> None:
        schema = self._schemas.get(operation.table)
        if schema is None:
            return
        referenced = set(operation.predicate.columns()) if operation.predicate else set()
        referenced.update(o.column for o in operation.order)
        for column in sorted(referenced):
            if not schema.has_column(column):
                raise SchemaViolation(
                    f"Unknown column '{column}' in table '{operation.table}'",
                    table=operation.table,
                    column=column,
                )

    async def _promote(self, table: str, predicate: Predicate | None) -> None:
        if self.tier_manager.has_segments(table):
            await self.tier_manager.fetch_matching(table, predicate)

    async def _query(self, operation: Operation) -> list[Record]:
        await self._promote(operation.table, operation.predicate)
        predicate = operation.predicate
        rows = [
            r for r in self.hot_store.scan(operation.table)
            if predicate is None or predicate.evaluate(r)
        ]
        rows = sort_rows(rows, operation.order)
        if operation.limit is not None:
            rows = rows[: operation.limit]
        return rows

    def _counters_for(self, table: str) -> TableCounters:
        counters = self._counters.get(table)
        return TableCounters(counters.next_key, counters.next_seq) if counters else TableCounters()

    async def _insert(self, operation: Operation) -> ResultSet:
        table = operation.table
        values = dict(operation.values or {})
        if not values:
            raise SchemaViolation("Insert requires at least one column", table=table)

        current = self._schemas.get(table)
        if current is None:
            schema = TableSchema.infer(table, values)
            schema_changed = True
        else:
            schema = TableSchema.from_dict(current.to_dict())
            schema_changed = schema.validate_write(values, full_row=True)

        counters = self._counters_for(table)
        now = self.clock()
        record = Record(
            table=table,
            key=counters.next_key,
            values=values,
            revision=1,
            seq=counters.next_seq,
            tier=Tier.HOT,
            created_at=now,
            updated_at=now,
        )
        counters = TableCounters(counters.next_key + 1, counters.next_seq + 1)

        self.hot_store.write(table, [record], counters, schema if schema_changed else None)
        self._counters[table] = counters
        if schema_changed:
            self._schemas[table] = schema

        return ResultSet(rows=await self._after_commit(table, EventKind.INSERT, [record]))

    async def _mutate(self, operation: Operation, event: EventKind) -> ResultSet:
        table = operation.table
        current = self._schemas.get(table)
        if current is None:
            return ResultSet()

        schema = TableSchema.from_dict(current.to_dict())
        patch = dict(operation.patch or {})
        schema_changed = False
        if event == EventKind.UPDATE:
            if not patch:
                raise SchemaViolation("Update requires a non-empty patch", table=table)
            schema_changed = schema.validate_write(patch, full_row=False)

        await self._promote(table, operation.predicate)
        predicate = operation.predicate
        targets = [
            r for r in self.hot_store.scan(table)
            if predicate is None or predicate.evaluate(r)
        ]
        if not targets:
            return ResultSet()

        counters = self._counters_for(table)
        seq = counters.next_seq
        now = self.clock()
        written: list[Record] = []
        row_errors: list[ConcurrentModification] = []
        for row in targets:
            expected = operation.expected_revision
            if expected is not None and row.revision != expected:
                row_errors.append(
                    ConcurrentModification(table, row.key, expected, row.revision)
                )
                continue
            if event == EventKind.UPDATE:
                changed = replace(row, values={**row.values, **patch})
            else:
                changed = replace(row, deleted=True)
            written.append(
                replace(changed, revision=row.revision + 1, seq=seq, updated_at=now, tier=Tier.HOT)
            )
            seq += 1

        if not written:
            return ResultSet(row_errors=row_errors)

        counters = TableCounters(counters.next_key, seq)
        self.hot_store.write(table, written, counters, schema if schema_changed else None)
        self._counters[table] = counters
        if schema_changed:
            self._schemas[table] = schema

        rows = await self._after_commit(table, event, written)
        return ResultSet(rows=rows, row_errors=row_errors)

    async def _after_commit(
        self, table: str, event: EventKind, written: list[Record]
    ) -> list[Record]:
        """Publish committed rows in seq order, then apply the tier policy."""
        if self.notifier is not None:
            for record in written:
                self.notifier.publish(table, event, record)

        logger.debug(
            "Committed mutation",
            extra={
                "table": table,
                "event": event.value,
                "rows": len(written),
                "seq_hi": written[-1].seq,
            },
        )

        moved = await self.tier_manager.record_write(table, written)
        return [r.with_tier(moved[r.key]) if r.key in moved else r for r in written]

    def get_stats(self) -> dict[str, int]:
        return {
            "executed": self._executed,
            "failed": self._failed,
            "tables": len(self._schemas),
        }
