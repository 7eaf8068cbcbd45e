"""
Table schema inference and validation for AgentDB.

A table's schema is inferred from its first write and frozen afterwards:
- ColumnKind: Supported column value kinds
- ColumnDef: One column (name, kind, nullable)
- TableSchema: All columns of a table, plus validation and coercion

Invariants:
    - A column's kind never changes once bound
    - A column first seen as None is nullable and binds its kind once,
      on its first non-null value
    - No column can be added after the first write
    - Pseudo-columns (id, revision, created_at, updated_at) are never written
    - bool is never accepted where int is expected

How to change safely:
    - New kinds must be added to kind_of() and to coerce_literal()
    - Keep to_dict()/from_dict() backward compatible; schemas are persisted
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import SchemaViolation
from .types import PSEUDO_COLUMNS, BlobRef


class ColumnKind(Enum):
    """Supported column kinds."""

    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    BLOB = "blob"  # BlobRef
    JSON = "json"  # dict or list
    UNKNOWN = "unknown"  # first seen as None, not bound yet

    @classmethod
    def from_str(cls, value: str) -> ColumnKind:
        """Convert string representation to ColumnKind.

        Raises:
            ValueError: If value is not a valid column kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid column kind '{value}'. Valid kinds: {valid}")


def kind_of(value: Any) -> ColumnKind:
    """Infer the column kind of a non-null value.

    Raises:
        SchemaViolation: If the value has no storable kind
    """
    # bool first: bool is a subclass of int
    if isinstance(value, bool):
        return ColumnKind.BOOLEAN
    if isinstance(value, int):
        return ColumnKind.INTEGER
    if isinstance(value, float):
        return ColumnKind.FLOAT
    if isinstance(value, str):
        return ColumnKind.STRING
    if isinstance(value, BlobRef):
        return ColumnKind.BLOB
    if isinstance(value, (dict, list)):
        return ColumnKind.JSON
    raise SchemaViolation(f"Unsupported value type: {type(value).__name__}")


def _fits(kind: ColumnKind, value: Any) -> bool:
    actual = kind_of(value)
    if actual == kind:
        return True
    return kind == ColumnKind.FLOAT and actual == ColumnKind.INTEGER


@dataclass
class ColumnDef:
    """Definition of a single column.

    Attributes:
        name: Column name
        kind: Value kind
        nullable: Whether None (or omission on insert) is allowed
    """

    name: str
    kind: ColumnKind
    nullable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "kind": self.kind.value, "nullable": self.nullable}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ColumnDef:
        return cls(
            name=data["name"],
            kind=ColumnKind.from_str(data["kind"]),
            nullable=data.get("nullable", False),
        )


@dataclass
class TableSchema:
    """Frozen schema of one table.

    Example:
        >>> schema = TableSchema.infer("tasks", {"title": "Build auth", "due_at": None})
        >>> schema.columns["title"].kind
        <ColumnKind.STRING: 'str'>
        >>> schema.columns["due_at"].nullable
        True
    """

    table: str
    columns: dict[str, ColumnDef] = field(default_factory=dict)

    @classmethod
    def infer(cls, table: str, values: dict[str, Any]) -> TableSchema:
        """Infer a schema from a table's first write."""
        columns: dict[str, ColumnDef] = {}
        for name, value in values.items():
            _check_column_name(table, name)
            if value is None:
                columns[name] = ColumnDef(name, ColumnKind.UNKNOWN, nullable=True)
            else:
                columns[name] = ColumnDef(name, kind_of(value))
        return cls(table=table, columns=columns)

    def has_column(self, name: str) -> bool:
        return name in self.columns or name in PSEUDO_COLUMNS

    def validate_write(self, values: dict[str, Any], full_row: bool) -> bool:
        """Check a write against the schema, binding unknown kinds.

        Args:
            values: Column values being written
            full_row: True for inserts (non-nullable columns must be present)

        Returns:
            True if a previously unknown column kind was bound (schema changed)

        Raises:
            SchemaViolation: If the write does not fit the schema
        """
        for name in values:
            if name in PSEUDO_COLUMNS:
                raise SchemaViolation(
                    f"Column '{name}' is managed by the database",
                    table=self.table,
                    column=name,
                )
            if name not in self.columns:
                raise SchemaViolation(
                    f"Unknown column '{name}' in table '{self.table}'",
                    table=self.table,
                    column=name,
                )

        if full_row:
            for col in self.columns.values():
                if not col.nullable and values.get(col.name) is None:
                    raise SchemaViolation(
                        f"Column '{col.name}' is required",
                        table=self.table,
                        column=col.name,
                    )

        bound = False
        for name, value in values.items():
            col = self.columns.get(name)
            if col is None:
                continue
            if value is None:
                if not col.nullable:
                    raise SchemaViolation(
                        f"Column '{name}' is not nullable",
                        table=self.table,
                        column=name,
                    )
                continue
            if col.kind == ColumnKind.UNKNOWN:
                col.kind = kind_of(value)
                bound = True
                continue
            if not _fits(col.kind, value):
                raise SchemaViolation(
                    f"Column '{name}' expects {col.kind.value}, got {kind_of(value).value}",
                    table=self.table,
                    column=name,
                )
        return bound

    def coerce_literal(self, column: str, value: Any) -> Any:
        """Coerce a filter literal to the column's kind.

        Raises:
            SchemaViolation: If the column is unknown or the literal cannot be coerced
        """
        if column in PSEUDO_COLUMNS:
            return _coerce(self.table, column, ColumnKind.INTEGER, value)
        col = self.columns.get(column)
        if col is None:
            raise SchemaViolation(
                f"Unknown column '{column}' in table '{self.table}'",
                table=self.table,
                column=column,
            )
        return _coerce(self.table, column, col.kind, value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "columns": [c.to_dict() for c in self.columns.values()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TableSchema:
        columns = [ColumnDef.from_dict(c) for c in data.get("columns", [])]
        return cls(table=data["table"], columns={c.name: c for c in columns})


def _check_column_name(table: str, name: str) -> None:
    if not isinstance(name, str) or not name or name.startswith("$"):
        raise SchemaViolation(f"Invalid column name: {name!r}", table=table, column=str(name))
    if name in PSEUDO_COLUMNS:
        raise SchemaViolation(
            f"Column '{name}' is managed by the database", table=table, column=name
        )


def _coerce(table: str, column: str, kind: ColumnKind, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (list, tuple)) and kind != ColumnKind.JSON:
        return [_coerce(table, column, kind, v) for v in value]

    try:
        if kind == ColumnKind.INTEGER:
            if isinstance(value, bool):
                raise ValueError("bool is not an int")
            if isinstance(value, float):
                if not value.is_integer():
                    raise ValueError("not integral")
                return int(value)
            return int(value)
        if kind == ColumnKind.FLOAT:
            if isinstance(value, bool):
                raise ValueError("bool is not a float")
            return float(value)
        if kind == ColumnKind.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.lower() in ("true", "false"):
                return value.lower() == "true"
            raise ValueError("not a boolean")
        if kind == ColumnKind.STRING:
            if isinstance(value, (dict, list, BlobRef)):
                raise ValueError("not a scalar")
            if isinstance(value, bool):
                return "true" if value else "false"
            return str(value)
        if kind == ColumnKind.BLOB:
            return value if isinstance(value, BlobRef) else BlobRef(str(value))
    except (TypeError, ValueError) as e:
        raise SchemaViolation(
            f"Cannot coerce {value!r} for column '{column}' ({kind.value}): {e}",
            table=table,
            column=column,
        )
    return value
