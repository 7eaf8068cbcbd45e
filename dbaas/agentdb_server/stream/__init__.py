"""
Message streams for cross-instance notification delivery.

Backends:
- InMemoryMessageStream (tests, single process)
- KafkaMessageStream (Kafka/Redpanda)
"""

from .base import (
    MessageStream,
    StreamConnectionError,
    StreamError,
    StreamMessage,
    StreamPos,
    StreamSerializationError,
    StreamTimeoutError,
    create_message_stream,
)
from .memory import InMemoryMessageStream

__all__ = [
    "MessageStream",
    "StreamMessage",
    "StreamPos",
    "StreamError",
    "StreamConnectionError",
    "StreamTimeoutError",
    "StreamSerializationError",
    "InMemoryMessageStream",
    "create_message_stream",
]
