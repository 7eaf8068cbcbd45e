"""
Kafka/Redpanda message stream implementation.

Carries change notifications between instances over any Kafka
API-compatible system (Apache Kafka, Amazon MSK, Redpanda).

Invariants:
    - Producer uses the configured acks (default 'all')
    - Idempotent producer prevents duplicate writes on retry
    - Consumer commits manually, after the message reached the watcher's inbox

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Keep the subscription id as message key; per-subscriber ordering relies on it
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from ..config import KafkaConfig
from .base import (
    StreamConnectionError,
    StreamError,
    StreamMessage,
    StreamPos,
    StreamTimeoutError,
)

logger = logging.getLogger(__name__)



def _to_message(record: Any) -> StreamMessage:
    """Convert an aiokafka ConsumerRecord to a StreamMessage."""
    return StreamMessage(
        key=record.key.decode("utf-8") if record.key else "",
        value=record.value,
        position=StreamPos(
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            timestamp_ms=record.timestamp or int(time.time() * 1000),
        ),
        headers=dict(record.headers) if record.headers else {},
    )


class KafkaMessageStream:
    """Kafka implementation of the MessageStream protocol.

    One producer per stream; subscribe() replaces the consumer, so a
    stream serves a single consuming bridge.

    Example:
        >>> stream = KafkaMessageStream(KafkaConfig(enabled=True, brokers="localhost:9092"))
        >>> await stream.connect()
        >>> pos = await stream.append("agentdb-notifications", "sub-1", b'{"event": "insert"}')
    """

    def __init__(self, config: KafkaConfig) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None

    @property
    def is_connected(self) -> bool:
        return self._producer is not None

    def _security_settings(self) -> dict[str, Any]:
        settings: dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            settings["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            settings["sasl_mechanism"] = self.config.sasl_mechanism
            settings["sasl_plain_username"] = self.config.sasl_username
            settings["sasl_plain_password"] = self.config.sasl_password
        if self.config.ssl_cafile:
            settings["ssl_cafile"] = self.config.ssl_cafile
        return settings

    def _client_settings(self) -> dict[str, Any]:
        return {"bootstrap_servers": self.config.brokers, **self._security_settings()}

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            StreamConnectionError: If the brokers cannot be reached
        """
        if self._producer is not None:
            return

        producer = AIOKafkaProducer(
            acks=self.config.acks,
            enable_idempotence=self.config.enable_idempotence,
            linger_ms=5,
            request_timeout_ms=30000,
            retry_backoff_ms=100,
            **self._client_settings(),
        )
        try:
            await producer.start()
        except KafkaError as e:
            raise StreamConnectionError(f"Failed to connect to Kafka: {e}") from e

        self._producer = producer
        logger.info(
            "Notification producer connected",
            extra={"brokers": self.config.brokers, "acks": self.config.acks},
        )

    async def close(self) -> None:
        """Stop the consumer and the producer (flushing pending sends)."""
        for name, client in (("consumer", self._consumer), ("producer", self._producer)):
            if client is None:
                continue
            try:
                await client.stop()
            except KafkaError as e:
                logger.warning("Error stopping Kafka client", extra={"client": name, "error": str(e)})
        self._consumer = None
        self._producer = None
        logger.info("Notification stream closed")

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Send one notification and wait for the broker acknowledgment.

        Raises:
            StreamConnectionError: If not connected or the connection dropped
            StreamTimeoutError: If the broker did not acknowledge in time
            StreamError: For any other send failure
        """
        if self._producer is None:
            raise StreamConnectionError("Not connected to Kafka")

        try:
            metadata = await self._producer.send_and_wait(
                topic,
                value=value,
                key=key.encode("utf-8"),
                headers=list(headers.items()) if headers else None,
            )
        except KafkaTimeoutError as e:
            raise StreamTimeoutError(f"Notification send timed out: {e}") from e
        except KafkaConnectionError as e:
            await self.close()
            raise StreamConnectionError(f"Lost connection while sending: {e}") from e
        except KafkaError as e:
            raise StreamError(f"Notification send failed: {e}") from e

        return StreamPos(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            timestamp_ms=metadata.timestamp if metadata.timestamp > 0 else int(time.time() * 1000),
        )

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[StreamMessage]:
        """Consume a topic as group_id; positions are committed by commit()."""
        if self._consumer is not None:
            await self._consumer.stop()

        self._consumer = AIOKafkaConsumer(
            topic,
            group_id=group_id,
            auto_offset_reset=self.config.auto_offset_reset,
            enable_auto_commit=False,
            max_poll_records=100,
            **self._client_settings(),
        )
        try:
            await self._consumer.start()
            logger.info("Consuming notifications", extra={"topic": topic, "group_id": group_id})
            async for record in self._consumer:
                yield _to_message(record)
        except KafkaConnectionError as e:
            raise StreamConnectionError(f"Failed to consume '{topic}': {e}") from e
        except KafkaError as e:
            raise StreamError(f"Consumer error on '{topic}': {e}") from e

    async def commit(self, message: StreamMessage) -> None:
        """Commit the position after message for its partition."""
        if self._consumer is None:
            raise StreamError("No active consumer to commit")

        pos = message.position
        offsets = {TopicPartition(pos.topic, pos.partition): OffsetAndMetadata(pos.offset + 1, "")}
        try:
            await self._consumer.commit(offsets)
        except KafkaError as e:
            raise StreamError(f"Failed to commit {pos.topic}/{pos.partition}@{pos.offset}: {e}") from e
