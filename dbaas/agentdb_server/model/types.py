"""
Core value types for AgentDB.

This module defines the data carried between every component:
- Tier: Physical residency of a record (hot, warm, cold)
- OpKind / EventKind: Operation and notification kinds
- BlobRef: Opaque reference to blob bytes held elsewhere
- Record: One row of a table, with revision, seq and tier markers
- ResultSet: Canonical result of executing an operation

Invariants:
    - Record.key is assigned once per table and never reused
    - Record.revision starts at 1 and grows by one per mutation
    - Record.seq is the table-wide commit sequence of the last mutation
    - Tombstoned records keep their last values until compaction

How to change safely:
    - New record attributes need a default and must round-trip through to_dict()
    - Never change the "$blob" encoding; it is persisted in every tier
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..errors import AgentDbError, ConcurrentModification

# Columns every record exposes without them being part of the table schema.
PSEUDO_COLUMNS = ("id", "revision", "created_at", "updated_at")


class Tier(Enum):
    """Storage tiers, fastest first."""

    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


class OpKind(Enum):
    """Kinds of canonical operations."""

    QUERY = "query"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    WATCH = "watch"

    @property
    def is_mutation(self) -> bool:
        return self in (OpKind.INSERT, OpKind.UPDATE, OpKind.DELETE)


class EventKind(Enum):
    """Kinds of change events delivered to subscribers."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class BlobRef:
    """Opaque reference to blob bytes stored by a collaborator.

    Attributes:
        ref: Reference string understood by the blob collaborator
    """

    ref: str

    def to_json(self) -> dict[str, str]:
        return {"$blob": self.ref}


def encode_value(value: Any) -> Any:
    """Encode a column value into its JSON form."""
    if isinstance(value, BlobRef):
        return value.to_json()
    if isinstance(value, list):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any) -> Any:
    """Decode a column value from its JSON form."""
    if isinstance(value, dict) and set(value) == {"$blob"}:
        return BlobRef(value["$blob"])
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


def encode_values(values: dict[str, Any]) -> dict[str, Any]:
    return {k: encode_value(v) for k, v in values.items()}


def decode_values(values: dict[str, Any]) -> dict[str, Any]:
    return {k: decode_value(v) for k, v in values.items()}


def values_size(values: dict[str, Any]) -> int:
    """Byte size of a record's values as stored."""
    return len(json.dumps(encode_values(values), separators=(",", ":"), sort_keys=True).encode("utf-8"))


@dataclass
class Record:
    """A row of a table.

    Attributes:
        table: Owning table name
        key: Primary key (per-table counter, never reused)
        values: Column name to value
        revision: Per-row version, starts at 1
        seq: Table-wide commit sequence of the last mutation
        tier: Tier currently holding the row
        deleted: Tombstone flag
        created_at: Creation timestamp (Unix ms)
        updated_at: Last mutation timestamp (Unix ms)
    """

    table: str
    key: int
    values: dict[str, Any]
    revision: int
    seq: int
    tier: Tier = Tier.HOT
    deleted: bool = False
    created_at: int = 0
    updated_at: int = 0

    def get(self, column: str) -> Any:
        """Read a column, resolving pseudo-columns first."""
        if column == "id":
            return self.key
        if column == "revision":
            return self.revision
        if column == "created_at":
            return self.created_at
        if column == "updated_at":
            return self.updated_at
        return self.values.get(column)

    @property
    def size(self) -> int:
        return values_size(self.values)

    def with_tier(self, tier: Tier) -> Record:
        return replace(self, tier=tier)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "table": self.table,
            "key": self.key,
            "values": encode_values(self.values),
            "revision": self.revision,
            "seq": self.seq,
            "tier": self.tier.value,
            "deleted": self.deleted,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Record:
        """Create from dictionary representation."""
        return cls(
            table=data["table"],
            key=data["key"],
            values=decode_values(data.get("values", {})),
            revision=data["revision"],
            seq=data["seq"],
            tier=Tier(data.get("tier", Tier.HOT.value)),
            deleted=bool(data.get("deleted", False)),
            created_at=data.get("created_at", 0),
            updated_at=data.get("updated_at", 0),
        )


@dataclass
class ResultSet:
    """Result of executing an operation.

    Attributes:
        rows: Records returned or affected
        operation_id: Identifier of the operation (or pipeline step)
        error: Failure of the whole operation, if any
        row_errors: Per-row failures that did not abort the operation
        subscription_id: Set for watch operations
    """

    rows: list[Record] = field(default_factory=list)
    operation_id: str | None = None
    error: AgentDbError | None = None
    row_errors: list[ConcurrentModification] = field(default_factory=list)
    subscription_id: str | None = None

    @property
    def count(self) -> int:
        return len(self.rows)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, error: AgentDbError, operation_id: str | None = None) -> ResultSet:
        error.with_operation(operation_id)
        return cls(operation_id=operation_id or error.operation_id, error=error)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the inbound call surface's response shape."""
        data: dict[str, Any] = {
            "rows": [r.to_dict() for r in self.rows],
            "count": self.count,
            "operation_id": self.operation_id,
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.row_errors:
            data["row_errors"] = [e.to_dict() for e in self.row_errors]
        if self.subscription_id is not None:
            data["subscription_id"] = self.subscription_id
        return data
