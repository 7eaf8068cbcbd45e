"""
In-memory message stream implementation.

Used by tests and by single-process deployments where watched and
watching instances share one event loop.

Invariants:
    - All data is lost on process exit
    - Provides the same per-key ordering as the Kafka backend
    - Committed offsets are tracked per consumer group

How to change safely:
    - Keep interface compatible with the MessageStream protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .base import StreamConnectionError, StreamMessage, StreamPos

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""

    messages: list[StreamMessage] = field(default_factory=list)


class InMemoryMessageStream:
    """In-memory implementation of MessageStream.

    Thread safety:
        Safe for concurrent coroutines on one event loop.

    Example:
        >>> stream = InMemoryMessageStream()
        >>> await stream.connect()
        >>> await stream.append("notifications", "sub-1", b"{}")
        >>> async for message in stream.subscribe("notifications", "bridge"):
        ...     print(message.key)
    """

    def __init__(self, num_partitions: int = 4) -> None:
        self.num_partitions = num_partitions
        self._topics: dict[str, list[InMemoryPartition]] = {}
        # group -> topic -> partition -> next offset
        self._committed: dict[str, dict[str, dict[int, int]]] = defaultdict(
            lambda: defaultdict(dict)
        )
        self._message_group: dict[int, str] = {}
        self._connected = False
        self._new_message = asyncio.Condition()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False
        async with self._new_message:
            self._new_message.notify_all()

    def _partitions(self, topic: str) -> list[InMemoryPartition]:
        if topic not in self._topics:
            self._topics[topic] = [InMemoryPartition() for _ in range(self.num_partitions)]
        return self._topics[topic]

    def _partition_for_key(self, key: str) -> int:
        digest = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(digest[:4], "big") % self.num_partitions

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        if not self._connected:
            raise StreamConnectionError("Not connected")

        partition = self._partition_for_key(key)
        part = self._partitions(topic)[partition]
        pos = StreamPos(topic, partition, len(part.messages), int(time.time() * 1000))
        part.messages.append(StreamMessage(key, value, pos, headers or {}))

        async with self._new_message:
            self._new_message.notify_all()

        logger.debug(
            "Message appended to in-memory stream",
            extra={"topic": topic, "key": key, "partition": partition, "offset": pos.offset},
        )
        return pos

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[StreamMessage]:
        if not self._connected:
            raise StreamConnectionError("Not connected")

        committed = self._committed[group_id][topic]
        positions = {p: committed.get(p, 0) for p in range(self.num_partitions)}

        while self._connected:
            delivered = False
            for partition, part in enumerate(self._partitions(topic)):
                while positions[partition] < len(part.messages):
                    message = part.messages[positions[partition]]
                    positions[partition] += 1
                    delivered = True
                    self._message_group[id(message)] = group_id
                    yield message
            if not delivered:
                async with self._new_message:
                    await self._new_message.wait()

    async def commit(self, message: StreamMessage) -> None:
        group_id = self._message_group.pop(id(message), "default")
        pos = message.position
        self._committed[group_id][pos.topic][pos.partition] = pos.offset + 1

    # Testing helpers

    def get_all_messages(self, topic: str) -> list[StreamMessage]:
        messages: list[StreamMessage] = []
        for part in self._topics.get(topic, []):
            messages.extend(part.messages)
        return messages

    def get_message_count(self, topic: str) -> int:
        return sum(len(p.messages) for p in self._topics.get(topic, []))
