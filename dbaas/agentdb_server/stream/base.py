"""
Base protocol and types for the message stream abstraction.

A message stream carries change notifications between instances: a
StreamTarget on the watched instance appends, a RemoteWatchBridge on the
watching instance subscribes. Instances never read each other's tables.

Invariants:
    - StreamPos uniquely identifies a position in the stream
    - Messages with the same key are delivered in append order
    - All backends provide the same ordering guarantees

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

import json
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import KafkaConfig


class StreamError(Exception):
    """Base exception for message stream operations."""

    pass


class StreamConnectionError(StreamError):
    """Connection to the stream backend failed."""

    pass


class StreamTimeoutError(StreamError):
    """Stream operation timed out."""

    pass


class StreamSerializationError(StreamError):
    """Failed to serialize/deserialize a stream message."""

    pass


@dataclass(frozen=True)
class StreamPos:
    """Position of a message in the stream.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within the partition
        timestamp_ms: When the message was written (Unix ms)
    """

    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "timestamp_ms": self.timestamp_ms,
        }

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class StreamMessage:
    """A message read from the stream.

    Attributes:
        key: Partition key (the subscription id for notifications)
        value: Payload bytes, JSON-encoded
        position: Position in the stream
        headers: Optional headers
    """

    key: str
    value: bytes
    position: StreamPos
    headers: dict[str, bytes] = field(default_factory=dict)

    def value_json(self) -> Any:
        """Parse value as JSON.

        Raises:
            StreamSerializationError: If value is not valid JSON
        """
        try:
            return json.loads(self.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StreamSerializationError(f"Failed to parse message value as JSON: {e}")


@runtime_checkable
class MessageStream(Protocol):
    """Protocol for message stream backends.

    Durability contract:
        - append() returns only after the backend acknowledged the message

    Ordering contract:
        - Messages with the same key are totally ordered

    Example:
        >>> stream = InMemoryMessageStream()
        >>> await stream.connect()
        >>> await stream.append("agentdb-notifications", "sub-1", b'{"event": "insert"}')
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            StreamConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending writes and release resources."""
        ...

    @abstractmethod
    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a message.

        Raises:
            StreamConnectionError: If not connected
            StreamTimeoutError: If the write times out
            StreamError: For other write failures
        """
        ...

    @abstractmethod
    def subscribe(self, topic: str, group_id: str) -> AsyncIterator[StreamMessage]:
        """Yield messages of a topic in order within partitions.

        The caller must call commit() to acknowledge processed messages.
        """
        ...

    @abstractmethod
    async def commit(self, message: StreamMessage) -> None:
        """Acknowledge a consumed message."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_message_stream(config: KafkaConfig) -> MessageStream:
    """Factory function to create a message stream from configuration.

    Returns a Kafka stream when enabled, else an in-process stream.
    """
    if config.enabled:
        from .kafka import KafkaMessageStream

        return KafkaMessageStream(config)

    from .memory import InMemoryMessageStream

    return InMemoryMessageStream()
