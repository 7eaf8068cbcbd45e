"""
Delivery targets for change notifications.

Targets implement the outward delivery surface
deliver(event, record, subscription_id). Reaching the final recipient is
the target's job; retries and deduplication are not done here.

Targets:
- CallbackTarget: calls a function (sync or async)
- QueueTarget: puts Notifications on an asyncio.Queue
- WebhookTarget: POSTs JSON to a URL (httpx)
- StreamTarget: appends JSON to a message stream, keyed by subscription id
- ActorTarget: posts into another instance actor's inbox

TargetRegistry maps names to targets so persisted subscriptions can be
re-bound after a restart.

Invariants:
    - A target raises on failure; the notifier turns that into DeliveryFailure
    - Payloads use Notification.to_dict()

How to change safely:
    - Keep the JSON payload backward compatible; remote consumers parse it
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx

from ..model.types import EventKind, Record
from ..stream.base import MessageStream
from .notifier import DeliveryTarget, Notification

logger = logging.getLogger(__name__)


class CallbackTarget:
    """Delivers by calling a function with the Notification.

    Example:
        >>> received = []
        >>> target = CallbackTarget(received.append)
    """

    def __init__(self, callback: Callable[[Notification], Awaitable[None] | None]) -> None:
        self.callback = callback

    async def deliver(self, event: EventKind, record: Record, subscription_id: str) -> None:
        result = self.callback(Notification(subscription_id, record.table, event, record))
        if inspect.isawaitable(result):
            await result


class QueueTarget:
    """Delivers onto an asyncio.Queue the caller consumes."""

    def __init__(self, queue: asyncio.Queue[Notification] | None = None) -> None:
        self.queue: asyncio.Queue[Notification] = queue if queue is not None else asyncio.Queue()

    async def deliver(self, event: EventKind, record: Record, subscription_id: str) -> None:
        await self.queue.put(Notification(subscription_id, record.table, event, record))


class WebhookTarget:
    """POSTs each notification as JSON.

    Non-2xx responses and transport errors raise, and are reported as
    delivery failures.

    Example:
        >>> target = WebhookTarget("https://agents.example.com/hooks/tasks")
        >>> await target.close()
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the webhook target.

        Args:
            url: Endpoint receiving the POSTs
            timeout: Request timeout in seconds
            headers: Extra request headers
            client: Shared client (created and owned here when omitted)
        """
        self.url = url
        self.headers = headers or {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def deliver(self, event: EventKind, record: Record, subscription_id: str) -> None:
        payload = Notification(subscription_id, record.table, event, record).to_dict()
        response = await self._client.post(self.url, json=payload, headers=self.headers)
        response.raise_for_status()
        logger.debug(
            "Delivered webhook",
            extra={"subscription_id": subscription_id, "url": self.url, "status": response.status_code},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class StreamTarget:
    """Appends notifications to a message stream for another instance."""

    def __init__(self, stream: MessageStream, topic: str) -> None:
        self.stream = stream
        self.topic = topic

    async def deliver(self, event: EventKind, record: Record, subscription_id: str) -> None:
        payload = Notification(subscription_id, record.table, event, record).to_dict()
        await self.stream.append(
            self.topic,
            subscription_id,
            json.dumps(payload, separators=(",", ":")).encode("utf-8"),
            headers={"event": event.value.encode("utf-8")},
        )


class NotificationSink(Protocol):
    async def receive(self, notification: Notification) -> None: ...


class ActorTarget:
    """Posts notifications into another actor's inbox (message passing)."""

    def __init__(self, actor: NotificationSink) -> None:
        self.actor = actor

    async def deliver(self, event: EventKind, record: Record, subscription_id: str) -> None:
        await self.actor.receive(Notification(subscription_id, record.table, event, record))


class TargetRegistry:
    """Named delivery targets, used to re-bind persisted subscriptions."""

    def __init__(self) -> None:
        self._targets: dict[str, DeliveryTarget] = {}

    def register(self, name: str, target: DeliveryTarget) -> None:
        self._targets[name] = target

    def unregister(self, name: str) -> None:
        self._targets.pop(name, None)

    def resolve(self, name: str | None) -> DeliveryTarget | None:
        if name is None:
            return None
        return self._targets.get(name)

    def names(self) -> list[str]:
        return sorted(self._targets)

    async def close(self) -> None:
        for target in self._targets.values():
            close: Any = getattr(target, "close", None)
            if close is not None:
                await close()
