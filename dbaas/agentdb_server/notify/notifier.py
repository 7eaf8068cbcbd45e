"""
Change notifier for AgentDB.

The ChangeNotifier matches committed mutations against registered
subscriptions and delivers them to each subscriber's target:
- publish() is synchronous: it only enqueues, so the executor can call it
  between commit and acknowledgement
- Each subscription has its own FIFO queue and dispatcher task, so
  one slow or unreachable subscriber never delays another
- Delivery is attempted once; failures are reported, never retried here

Invariants:
    - A subscriber receives matching events in commit (seq) order
    - Predicates are evaluated against the post-mutation record
    - A failed delivery never cancels the subscription
    - cancel() is idempotent and takes effect before the next dispatch

How to change safely:
    - Never await inside publish(); it runs inside the executor's commit path
    - Test ordering with interleaved insert/update/delete sequences
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from ..errors import DeliveryFailure
from ..model.predicate import Predicate
from ..model.types import EventKind, Record
from ..storage.hot_store import StoredSubscription

logger = logging.getLogger(__name__)


def new_subscription_id() -> str:
    return f"sub-{uuid.uuid4().hex[:12]}"


@dataclass
class Notification:
    """One event delivered to one subscriber.

    Attributes:
        subscription_id: Receiving subscription
        table: Table of the mutated record
        event: insert, update or delete
        record: Post-mutation record (last values for deletes)
    """

    subscription_id: str
    table: str
    event: EventKind
    record: Record

    @property
    def seq(self) -> int:
        return self.record.seq

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "table": self.table,
            "event": self.event.value,
            "record": self.record.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Notification:
        return cls(
            subscription_id=data["subscription_id"],
            table=data["table"],
            event=EventKind(data["event"]),
            record=Record.from_dict(data["record"]),
        )


class DeliveryTarget(Protocol):
    """Outward delivery surface: reaches a human, agent or webhook."""

    async def deliver(self, event: EventKind, record: Record, subscription_id: str) -> None: ...


@dataclass
class Subscription:
    """A standing registration for change notifications.

    Attributes:
        table: Watched table
        event: Watched event kind (None watches all kinds)
        predicate: Filter on the post-mutation record
        target: Delivery target (None until bound)
        target_name: Registry name of the target, persisted for restarts
        subscription_id: Identifier
        created_at: Registration time (Unix ms)
    """

    table: str
    event: EventKind | None
    predicate: Predicate | None = None
    target: DeliveryTarget | None = None
    target_name: str | None = None
    subscription_id: str = field(default_factory=new_subscription_id)
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def matches(self, table: str, event: EventKind, record: Record) -> bool:
        if table != self.table:
            return False
        if self.event is not None and event != self.event:
            return False
        return self.predicate is None or self.predicate.evaluate(record)

    def to_stored(self) -> StoredSubscription:
        return StoredSubscription(
            subscription_id=self.subscription_id,
            table=self.table,
            event=self.event.value if self.event else "*",
            predicate=self.predicate.to_dict() if self.predicate else None,
            target=self.target_name,
            created_at=self.created_at,
        )

    @classmethod
    def from_stored(cls, stored: StoredSubscription) -> Subscription:
        return cls(
            table=stored.table,
            event=None if stored.event == "*" else EventKind(stored.event),
            predicate=Predicate.from_dict(stored.predicate) if stored.predicate else None,
            target_name=stored.target,
            subscription_id=stored.subscription_id,
            created_at=stored.created_at,
        )


@dataclass
class _Dispatcher:
    subscription: Subscription
    queue: asyncio.Queue[Notification | None]
    task: asyncio.Task[None] | None = None


class ChangeNotifier:
    """Fans committed mutations out to subscribers.

    Example:
        >>> notifier = ChangeNotifier()
        >>> sub_id = notifier.register_watch(Subscription("tasks", EventKind.UPDATE, target=target))
        >>> notifier.publish("tasks", EventKind.UPDATE, record)
        >>> await notifier.drain()
        >>> notifier.cancel(sub_id)
        True
    """

    def __init__(
        self,
        queue_size: int = 0,
        on_failure: Callable[[DeliveryFailure], None] | None = None,
    ) -> None:
        """Initialize the notifier.

        Args:
            queue_size: Pending deliveries allowed per subscriber (0 = unbounded)
            on_failure: Called with every DeliveryFailure
        """
        self.queue_size = queue_size
        self.on_failure = on_failure
        self.failures: list[DeliveryFailure] = []
        self._dispatchers: dict[str, _Dispatcher] = {}
        self._published = 0
        self._delivered = 0
        self._failed = 0

    def register_watch(self, subscription: Subscription) -> str:
        """Register a subscription and start its dispatcher.

        Returns:
            The subscription id
        """
        sub_id = subscription.subscription_id
        if sub_id in self._dispatchers:
            raise ValueError(f"Subscription {sub_id} already registered")

        dispatcher = _Dispatcher(subscription, asyncio.Queue(maxsize=self.queue_size))
        dispatcher.task = asyncio.create_task(self._dispatch(dispatcher), name=f"notify-{sub_id}")
        self._dispatchers[sub_id] = dispatcher

        logger.info(
            "Registered subscription",
            extra={
                "subscription_id": sub_id,
                "table": subscription.table,
                "event": subscription.event.value if subscription.event else "*",
                "target": subscription.target_name,
            },
        )
        return sub_id

    def cancel(self, subscription_id: str) -> bool:
        """Cancel a subscription. Cancelling an unknown id is a no-op.

        Queued, undelivered notifications are dropped.

        Returns:
            True if the subscription was active
        """
        dispatcher = self._dispatchers.pop(subscription_id, None)
        if dispatcher is None:
            return False

        queue = dispatcher.queue
        while not queue.empty():
            queue.get_nowait()
            queue.task_done()
        queue.put_nowait(None)

        logger.info("Cancelled subscription", extra={"subscription_id": subscription_id})
        return True

    def bind(self, subscription_id: str, target: DeliveryTarget) -> None:
        """Attach a delivery target to a registered subscription."""
        self._dispatchers[subscription_id].subscription.target = target

    def get(self, subscription_id: str) -> Subscription | None:
        dispatcher = self._dispatchers.get(subscription_id)
        return dispatcher.subscription if dispatcher else None

    def subscriptions(self, table: str | None = None) -> list[Subscription]:
        return [
            d.subscription
            for d in self._dispatchers.values()
            if table is None or d.subscription.table == table
        ]

    def publish(self, table: str, event: EventKind, record: Record) -> int:
        """Enqueue a committed mutation for every matching subscriber.

        Returns:
            Number of subscribers the event was enqueued for
        """
        self._published += 1
        snapshot = replace(record, values=dict(record.values))
        enqueued = 0
        for sub_id, dispatcher in list(self._dispatchers.items()):
            if not dispatcher.subscription.matches(table, event, snapshot):
                continue
            notification = Notification(sub_id, table, event, snapshot)
            try:
                dispatcher.queue.put_nowait(notification)
                enqueued += 1
            except asyncio.QueueFull:
                self._report(DeliveryFailure(sub_id, snapshot.seq, "subscriber queue full"))
        return enqueued

    async def _dispatch(self, dispatcher: _Dispatcher) -> None:
        sub = dispatcher.subscription
        queue = dispatcher.queue
        while True:
            notification = await queue.get()
            try:
                if notification is None or sub.subscription_id not in self._dispatchers:
                    return
                await self._deliver(sub, notification)
            finally:
                queue.task_done()

    async def _deliver(self, sub: Subscription, notification: Notification) -> None:
        if sub.target is None:
            self._report(
                DeliveryFailure(sub.subscription_id, notification.seq, "no delivery target bound")
            )
            return
        try:
            await sub.target.deliver(notification.event, notification.record, sub.subscription_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._report(DeliveryFailure(sub.subscription_id, notification.seq, str(e)))
            return
        self._delivered += 1

    def _report(self, failure: DeliveryFailure) -> None:
        self._failed += 1
        self.failures.append(failure)
        logger.warning(
            "Notification delivery failed",
            extra={
                "subscription_id": failure.subscription_id,
                "seq": failure.seq,
                "reason": failure.reason,
            },
        )
        if self.on_failure is not None:
            self.on_failure(failure)

    async def drain(self) -> None:
        """Wait until every queued notification has been attempted."""
        for dispatcher in list(self._dispatchers.values()):
            await dispatcher.queue.join()

    async def close(self) -> None:
        """Stop all dispatchers; queued notifications are dropped."""
        dispatchers = list(self._dispatchers.values())
        self._dispatchers.clear()
        for dispatcher in dispatchers:
            if dispatcher.task is not None:
                dispatcher.task.cancel()
        for dispatcher in dispatchers:
            if dispatcher.task is not None:
                try:
                    await dispatcher.task
                except asyncio.CancelledError:
                    pass

    def get_stats(self) -> dict[str, int]:
        return {
            "subscriptions": len(self._dispatchers),
            "published": self._published,
            "delivered": self._delivered,
            "failed": self._failed,
        }
