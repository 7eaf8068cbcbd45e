"""
Data model for AgentDB - records, schemas, predicates and operations.

Invariants:
    - Operations are immutable once built
    - Schemas are frozen after the first write of a table
    - Predicates never raise while evaluating a record

How to change safely:
    - Persisted shapes (Record, TableSchema, Predicate) must stay readable
      by older code; add fields, never rename them
"""

from .operation import Operation, OrderBy, new_operation_id
from .predicate import (
    Comparison,
    Conjunction,
    Negation,
    Predicate,
    and_,
    eq,
    gt,
    gte,
    in_,
    is_,
    lt,
    lte,
    neq,
    not_,
    or_,
)
from .schema import ColumnDef, ColumnKind, TableSchema, kind_of
from .types import (
    PSEUDO_COLUMNS,
    BlobRef,
    EventKind,
    OpKind,
    Record,
    ResultSet,
    Tier,
    values_size,
)

__all__ = [
    # Types
    "Tier",
    "OpKind",
    "EventKind",
    "BlobRef",
    "Record",
    "ResultSet",
    "PSEUDO_COLUMNS",
    "values_size",
    # Schema
    "ColumnKind",
    "ColumnDef",
    "TableSchema",
    "kind_of",
    # Predicates
    "Predicate",
    "Comparison",
    "Conjunction",
    "Negation",
    "eq",
    "neq",
    "gt",
    "gte",
    "lt",
    "lte",
    "in_",
    "is_",
    "and_",
    "or_",
    "not_",
    # Operations
    "Operation",
    "OrderBy",
    "new_operation_id",
]
