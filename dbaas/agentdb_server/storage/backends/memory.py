"""
In-memory segment backend for testing.

This module provides a simple in-memory warm/cold backend for:
- Unit tests
- Integration tests
- Local development without external dependencies

Invariants:
    - All data is lost on process exit
    - Stored rows are copied, callers cannot mutate a stored segment
    - Behaves like the durable backends, including failures on demand

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the SegmentBackend protocol
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

from ...model.types import Record
from .base import BackendUnavailable, SegmentNotFound, decode_rows, encode_rows

logger = logging.getLogger(__name__)


class InMemorySegmentBackend:
    """In-memory implementation of SegmentBackend for testing.

    Attributes:
        name: Backend name used in logs
        available: When False every call raises BackendUnavailable
        latency: Simulated latency per call in seconds

    Example:
        >>> backend = InMemorySegmentBackend("warm")
        >>> await backend.put("tasks", "s1", rows)
        >>> backend.available = False
        >>> await backend.get("tasks", "s1")  # raises BackendUnavailable
    """

    def __init__(self, name: str = "memory", latency: float = 0.0) -> None:
        self.name = name
        self.latency = latency
        self.available = True
        self._segments: dict[str, dict[str, bytes]] = defaultdict(dict)
        self._fail_next: list[str] = []
        self._calls: dict[str, int] = defaultdict(int)

    async def _enter(self, call: str) -> None:
        self._calls[call] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.available:
            raise BackendUnavailable(f"{self.name} backend unavailable")
        if call in self._fail_next:
            self._fail_next.remove(call)
            raise BackendUnavailable(f"{self.name} backend injected failure on {call}")

    async def put(self, table: str, segment_id: str, rows: list[Record]) -> None:
        await self._enter("put")
        self._segments[table][segment_id] = encode_rows(rows)
        logger.debug(
            "Stored segment",
            extra={"backend": self.name, "table": table, "segment_id": segment_id, "rows": len(rows)},
        )

    async def get(self, table: str, segment_id: str) -> list[Record]:
        await self._enter("get")
        content = self._segments.get(table, {}).get(segment_id)
        if content is None:
            raise SegmentNotFound(f"Segment {table}/{segment_id} not found in {self.name}")
        return decode_rows(content)

    async def delete(self, table: str, segment_id: str) -> None:
        await self._enter("delete")
        self._segments.get(table, {}).pop(segment_id, None)

    async def list(self, table: str) -> list[str]:
        await self._enter("list")
        return sorted(self._segments.get(table, {}))

    async def close(self) -> None:
        self._segments.clear()

    # Testing helpers

    def fail_next(self, call: str) -> None:
        """Make the next call of the given kind ("put", "get", ...) fail once."""
        self._fail_next.append(call)

    def call_count(self, call: str) -> int:
        return self._calls[call]

    def segment_count(self, table: str) -> int:
        return len(self._segments.get(table, {}))

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "segments": sum(len(t) for t in self._segments.values()),
            "calls": dict(self._calls),
        }
