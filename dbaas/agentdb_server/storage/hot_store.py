"""
Hot-tier SQLite store for AgentDB.

This module manages the per-instance SQLite database that stores:
- Hot records (including tombstones awaiting compaction)
- Frozen table schemas
- Per-table key and seq counters
- Tier pointers
- Subscriptions

Together these form the persisted state of an instance: after a restart
the actor reloads schemas, counters, pointers and subscriptions from here,
and warm/cold rows are found again through the tier pointers.

The hot tier is addressed through a synchronous key-range interface; every
call runs on the actor's own turn, so no locking is needed.

Invariants:
    - One SQLite file per instance
    - A mutation's rows, counters and schema change commit in one transaction
    - Migrations persist the tier pointer and move rows in one transaction

How to change safely:
    - Schema migrations must be backward compatible
    - Use transactions for all multi-statement writes
    - Bump SCHEMA_VERSION and add an upgrade step for table changes

Table schema:
    records:
        - table_name TEXT
        - key INTEGER
        - revision INTEGER
        - seq INTEGER
        - deleted INTEGER (0/1)
        - values_json TEXT
        - size INTEGER (value bytes)
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (table_name, key)

    table_schemas:
        - table_name TEXT PRIMARY KEY
        - schema_json TEXT

    table_counters:
        - table_name TEXT PRIMARY KEY
        - next_key INTEGER
        - next_seq INTEGER

    tier_pointers:
        - table_name TEXT PRIMARY KEY
        - pointer_json TEXT
        - updated_at INTEGER

    subscriptions:
        - subscription_id TEXT PRIMARY KEY
        - table_name TEXT
        - event TEXT
        - predicate_json TEXT
        - target TEXT
        - created_at INTEGER
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..model.schema import TableSchema
from ..model.types import Record, Tier, decode_values, encode_values, values_size
from .tier_pointer import TierPointer

logger = logging.getLogger(__name__)


@dataclass
class StoredSubscription:
    """Persisted form of a subscription.

    Attributes:
        subscription_id: Subscription identifier
        table: Watched table
        event: Watched event kind value
        predicate: Predicate JSON or None
        target: Delivery target name
        created_at: Registration timestamp (Unix ms)
    """

    subscription_id: str
    table: str
    event: str
    predicate: dict[str, Any] | None
    target: str | None
    created_at: int


@dataclass
class TableCounters:
    """Next key and next seq of a table."""

    next_key: int = 1
    next_seq: int = 1


class HotStore:
    """Per-instance SQLite store for hot rows and instance metadata.

    Thread safety:
        Each database connection is created per-operation. Only the owning
        actor calls into the store.

    Example:
        >>> store = HotStore("/var/lib/agentdb", "agent_42")
        >>> store.initialize()
        >>> store.write("tasks", [record], counters=TableCounters(2, 2))
        >>> [r.key for r in store.scan("tasks")]
        [1]
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        instance_name: str = "default",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the hot store.

        Args:
            data_dir: Directory for the SQLite database file
            instance_name: Instance name, part of the file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.instance_name = instance_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @property
    def db_path(self) -> Path:
        # Sanitize instance name to prevent path traversal
        safe = "".join(c for c in self.instance_name if c.isalnum() or c in "-_")
        return self.data_dir / f"instance_{safe}.db"

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection for this instance."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS records (
                    table_name TEXT NOT NULL,
                    key INTEGER NOT NULL,
                    revision INTEGER NOT NULL,
                    seq INTEGER NOT NULL,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    values_json TEXT NOT NULL DEFAULT '{}',
                    size INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY (table_name, key)
                );

                CREATE INDEX IF NOT EXISTS idx_records_seq ON records(table_name, seq);

                CREATE TABLE IF NOT EXISTS table_schemas (
                    table_name TEXT PRIMARY KEY,
                    schema_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS table_counters (
                    table_name TEXT PRIMARY KEY,
                    next_key INTEGER NOT NULL,
                    next_seq INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tier_pointers (
                    table_name TEXT PRIMARY KEY,
                    pointer_json TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS subscriptions (
                    subscription_id TEXT PRIMARY KEY,
                    table_name TEXT NOT NULL,
                    event TEXT NOT NULL,
                    predicate_json TEXT,
                    target TEXT,
                    created_at INTEGER NOT NULL
                );

                INSERT OR IGNORE INTO schema_version (version, applied_at)
                VALUES (1, strftime('%s', 'now') * 1000);
            """)
        logger.info("Initialized hot store", extra={"path": str(self.db_path)})

    # Records

    @staticmethod
    def _row_to_record(table: str, row: sqlite3.Row) -> Record:
        return Record(
            table=table,
            key=row["key"],
            values=decode_values(json.loads(row["values_json"])),
            revision=row["revision"],
            seq=row["seq"],
            tier=Tier.HOT,
            deleted=bool(row["deleted"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _upsert(conn: sqlite3.Connection, records: Iterable[Record]) -> None:
        for record in records:
            conn.execute(
                """
                INSERT OR REPLACE INTO records
                    (table_name, key, revision, seq, deleted, values_json, size,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.table,
                    record.key,
                    record.revision,
                    record.seq,
                    1 if record.deleted else 0,
                    json.dumps(encode_values(record.values)),
                    values_size(record.values),
                    record.created_at,
                    record.updated_at,
                ),
            )

    def write(
        self,
        table: str,
        records: list[Record],
        counters: TableCounters | None = None,
        schema: TableSchema | None = None,
    ) -> None:
        """Commit a mutation's rows, counters and schema in one transaction.

        Args:
            table: Table name
            records: Rows to insert or replace (all in the hot tier)
            counters: New counters for the table
            schema: Schema to persist (first write or bound column kinds)
        """
        with self._transaction() as conn:
            self._upsert(conn, records)
            if counters is not None:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO table_counters (table_name, next_key, next_seq)
                    VALUES (?, ?, ?)
                    """,
                    (table, counters.next_key, counters.next_seq),
                )
            if schema is not None:
                conn.execute(
                    "INSERT OR REPLACE INTO table_schemas (table_name, schema_json) VALUES (?, ?)",
                    (table, json.dumps(schema.to_dict())),
                )

        logger.debug("Wrote hot records", extra={"table": table, "rows": len(records)})

    def get(self, table: str, key: int) -> Record | None:
        """Get a hot record by key (tombstones included)."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE table_name = ? AND key = ?",
                (table, key),
            ).fetchone()
            return self._row_to_record(table, row) if row else None

    def scan(self, table: str, include_deleted: bool = False) -> list[Record]:
        """All hot records of a table in seq order."""
        query = "SELECT * FROM records WHERE table_name = ?"
        if not include_deleted:
            query += " AND deleted = 0"
        query += " ORDER BY seq"
        with self._get_connection() as conn:
            return [self._row_to_record(table, row) for row in conn.execute(query, (table,))]

    def read_range(self, table: str, lo: int, hi: int) -> list[Record]:
        """Hot records (tombstones included) with lo <= seq <= hi, in seq order."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM records
                WHERE table_name = ? AND seq >= ? AND seq <= ?
                ORDER BY seq
                """,
                (table, lo, hi),
            )
            return [self._row_to_record(table, row) for row in cursor]

    def oldest(self, table: str, limit: int) -> list[Record]:
        """The oldest-seq hot records (tombstones included)."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM records WHERE table_name = ? ORDER BY seq LIMIT ?",
                (table, limit),
            )
            return [self._row_to_record(table, row) for row in cursor]

    def usage(self, table: str) -> tuple[int, int]:
        """Hot (rows, value bytes) of a table, tombstones included."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(size), 0) FROM records WHERE table_name = ?",
                (table,),
            ).fetchone()
            return row[0], row[1]

    def keys(self, table: str) -> set[int]:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT key FROM records WHERE table_name = ?", (table,))
            return {row[0] for row in cursor}

    def purge_tombstones(self, table: str) -> int:
        """Physically remove tombstoned hot rows. Returns rows removed."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE table_name = ? AND deleted = 1",
                (table,),
            )
            return cursor.rowcount

    # Migrations

    def migrate_out(self, pointer: TierPointer, keys: Iterable[int]) -> None:
        """Persist a pointer and drop the rows it now places in warm/cold."""
        with self._transaction() as conn:
            self._put_pointer(conn, pointer)
            conn.executemany(
                "DELETE FROM records WHERE table_name = ? AND key = ?",
                [(pointer.table, key) for key in keys],
            )

    def migrate_in(self, pointer: TierPointer, records: list[Record]) -> None:
        """Persist a pointer and store the rows it no longer places in warm/cold."""
        with self._transaction() as conn:
            self._put_pointer(conn, pointer)
            self._upsert(conn, records)

    # Metadata

    def load_schemas(self) -> dict[str, TableSchema]:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT table_name, schema_json FROM table_schemas")
            return {
                row["table_name"]: TableSchema.from_dict(json.loads(row["schema_json"]))
                for row in cursor
            }

    def load_counters(self) -> dict[str, TableCounters]:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM table_counters")
            return {
                row["table_name"]: TableCounters(row["next_key"], row["next_seq"])
                for row in cursor
            }

    @staticmethod
    def _put_pointer(conn: sqlite3.Connection, pointer: TierPointer) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO tier_pointers (table_name, pointer_json, updated_at)
            VALUES (?, ?, ?)
            """,
            (pointer.table, json.dumps(pointer.to_dict()), int(time.time() * 1000)),
        )

    def put_pointer(self, pointer: TierPointer) -> None:
        with self._get_connection() as conn:
            self._put_pointer(conn, pointer)

    def load_pointers(self) -> dict[str, TierPointer]:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT pointer_json FROM tier_pointers")
            pointers = [TierPointer.from_dict(json.loads(row[0])) for row in cursor]
            return {p.table: p for p in pointers}

    def add_subscription(self, sub: StoredSubscription) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO subscriptions
                    (subscription_id, table_name, event, predicate_json, target, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    sub.subscription_id,
                    sub.table,
                    sub.event,
                    json.dumps(sub.predicate) if sub.predicate is not None else None,
                    sub.target,
                    sub.created_at,
                ),
            )

    def remove_subscription(self, subscription_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM subscriptions WHERE subscription_id = ?",
                (subscription_id,),
            )
            return cursor.rowcount > 0

    def load_subscriptions(self) -> list[StoredSubscription]:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM subscriptions ORDER BY created_at")
            return [
                StoredSubscription(
                    subscription_id=row["subscription_id"],
                    table=row["table_name"],
                    event=row["event"],
                    predicate=json.loads(row["predicate_json"]) if row["predicate_json"] else None,
                    target=row["target"],
                    created_at=row["created_at"],
                )
                for row in cursor
            ]

    def get_stats(self) -> dict[str, int]:
        """Get statistics for the instance."""
        with self._get_connection() as conn:
            stats = {}
            stats["hot_rows"] = conn.execute(
                "SELECT COUNT(*) FROM records WHERE deleted = 0"
            ).fetchone()[0]
            stats["tombstones"] = conn.execute(
                "SELECT COUNT(*) FROM records WHERE deleted = 1"
            ).fetchone()[0]
            stats["tables"] = conn.execute("SELECT COUNT(*) FROM table_schemas").fetchone()[0]
            stats["subscriptions"] = conn.execute(
                "SELECT COUNT(*) FROM subscriptions"
            ).fetchone()[0]
            return stats
