"""
Base protocol and types for warm/cold segment backends.

Warm and cold tiers are addressed through an asynchronous get/put/list
interface keyed by table and segment. A segment is an immutable batch of
rows covering one seq range of a table; the TierPointer records which
segment holds which keys.

Invariants:
    - put() returns only after the segment is durably stored
    - get() returns exactly the rows given to put(), in the same order
    - Segments are never modified in place; a changed segment is a new one
    - Every backend failure surfaces as BackendUnavailable

How to change safely:
    - Protocol changes require updating all implementations
    - Test new backends against the shared behaviour in tests/unit/test_backends.py
"""

from __future__ import annotations

import hashlib
import json
from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable

from ...model.types import Record


class BackendUnavailable(Exception):
    """A segment backend could not be reached or returned an error."""

    pass


class SegmentNotFound(BackendUnavailable):
    """A segment listed in a tier pointer is missing from its backend."""

    pass


def encode_rows(rows: list[Record]) -> bytes:
    """Serialize rows to JSONL, one record per line."""
    lines = [json.dumps(r.to_dict(), separators=(",", ":")) + "\n" for r in rows]
    return "".join(lines).encode("utf-8")


def decode_rows(content: bytes) -> list[Record]:
    """Parse rows serialized by encode_rows().

    Raises:
        BackendUnavailable: If the content is not valid JSONL
    """
    try:
        text = content.decode("utf-8")
        return [Record.from_dict(json.loads(line)) for line in text.splitlines() if line.strip()]
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError) as e:
        raise BackendUnavailable(f"Corrupt segment content: {e}")


def compute_checksum(data: bytes) -> str:
    """Compute SHA-256 checksum of data."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


@runtime_checkable
class SegmentBackend(Protocol):
    """Protocol for warm/cold segment storage.

    Durability contract:
        - put() returns only after the backend acknowledged the write
        - delete() of a missing segment is not an error

    Example:
        >>> backend = InMemorySegmentBackend()
        >>> await backend.put("tasks", "a1b2", rows)
        >>> rows == await backend.get("tasks", "a1b2")
        True
    """

    name: str

    @abstractmethod
    async def put(self, table: str, segment_id: str, rows: list[Record]) -> None:
        """Store a segment.

        Raises:
            BackendUnavailable: If the write was not acknowledged
        """
        ...

    @abstractmethod
    async def get(self, table: str, segment_id: str) -> list[Record]:
        """Fetch a segment's rows.

        Raises:
            SegmentNotFound: If the segment does not exist
            BackendUnavailable: If the backend cannot be reached
        """
        ...

    @abstractmethod
    async def delete(self, table: str, segment_id: str) -> None:
        """Remove a segment.

        Raises:
            BackendUnavailable: If the backend cannot be reached
        """
        ...

    @abstractmethod
    async def list(self, table: str) -> list[str]:
        """List segment ids stored for a table."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


def backend_stats(backend: Any) -> dict[str, Any]:
    """Stats of a backend, if it keeps any."""
    stats = getattr(backend, "stats", None)
    return dict(stats) if isinstance(stats, dict) else {}
