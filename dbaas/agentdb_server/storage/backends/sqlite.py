"""
SQLite segment backend for the warm tier.

Warm segments live in a separate SQLite file beside the hot store, one row
per segment holding the JSONL-encoded records. SQLite calls run in a worker
thread so the actor's event loop is not blocked while a segment loads.

Invariants:
    - One SQLite file per instance for warm segments
    - A segment is written and read as a whole
    - Content checksums are verified on every read

How to change safely:
    - Keep the table layout backward compatible; segments outlive releases
    - Test with large segments before changing the encoding
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ...model.types import Record
from .base import BackendUnavailable, SegmentNotFound, compute_checksum, decode_rows, encode_rows

logger = logging.getLogger(__name__)


class SqliteSegmentBackend:
    """Local-disk segment store.

    Example:
        >>> backend = SqliteSegmentBackend("/var/lib/agentdb", "agent_42")
        >>> await backend.put("tasks", "s1", rows)
    """

    def __init__(
        self,
        data_dir: str,
        instance_name: str = "default",
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the backend.

        Args:
            data_dir: Directory for the SQLite file
            instance_name: Instance name, part of the file name
            busy_timeout_ms: SQLite busy timeout
        """
        self.name = "sqlite"
        self.data_dir = Path(data_dir)
        self.instance_name = instance_name
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False
        self._reads = 0
        self._writes = 0

    @property
    def db_path(self) -> Path:
        safe = "".join(c for c in self.instance_name if c.isalnum() or c in "-_")
        return self.data_dir / f"warm_{safe}.db"

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if not self._initialized:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS segments (
                        table_name TEXT NOT NULL,
                        segment_id TEXT NOT NULL,
                        content BLOB NOT NULL,
                        checksum TEXT NOT NULL,
                        created_at INTEGER NOT NULL,
                        PRIMARY KEY (table_name, segment_id)
                    )
                """)
                self._initialized = True
            yield conn
        finally:
            conn.close()

    async def _run(self, fn: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Warm store error: {e}")

    def _put_sync(self, table: str, segment_id: str, content: bytes) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO segments (table_name, segment_id, content, checksum, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (table, segment_id, content, compute_checksum(content), int(time.time() * 1000)),
            )

    def _get_sync(self, table: str, segment_id: str) -> tuple[bytes, str] | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT content, checksum FROM segments WHERE table_name = ? AND segment_id = ?",
                (table, segment_id),
            ).fetchone()
            return (bytes(row[0]), row[1]) if row else None

    def _delete_sync(self, table: str, segment_id: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "DELETE FROM segments WHERE table_name = ? AND segment_id = ?",
                (table, segment_id),
            )

    def _list_sync(self, table: str) -> list[str]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT segment_id FROM segments WHERE table_name = ? ORDER BY segment_id",
                (table,),
            )
            return [row[0] for row in cursor]

    async def put(self, table: str, segment_id: str, rows: list[Record]) -> None:
        await self._run(self._put_sync, table, segment_id, encode_rows(rows))
        self._writes += 1
        logger.debug(
            "Stored warm segment",
            extra={"table": table, "segment_id": segment_id, "rows": len(rows)},
        )

    async def get(self, table: str, segment_id: str) -> list[Record]:
        found = await self._run(self._get_sync, table, segment_id)
        if found is None:
            raise SegmentNotFound(f"Warm segment {table}/{segment_id} not found")
        content, checksum = found
        if compute_checksum(content) != checksum:
            raise BackendUnavailable(f"Checksum mismatch for warm segment {table}/{segment_id}")
        self._reads += 1
        return decode_rows(content)

    async def delete(self, table: str, segment_id: str) -> None:
        await self._run(self._delete_sync, table, segment_id)

    async def list(self, table: str) -> list[str]:
        return await self._run(self._list_sync, table)

    async def close(self) -> None:
        pass

    @property
    def stats(self) -> dict[str, Any]:
        return {"reads": self._reads, "writes": self._writes}
