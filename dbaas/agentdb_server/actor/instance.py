"""
Instance actor for AgentDB.

The InstanceActor is the single-threaded owner of one agent's database
state. Every request (calls, phrases, pipelines, watch registrations,
inbound notifications, maintenance) is a message on one inbox, and one
worker task handles the messages strictly one at a time in arrival order.

Message flow:
    caller ──submit()──▶ inbox ──▶ worker ──▶ resolver ──▶ executor / notifier
                          ▲                                      │
    remote instances ─────┘  (receive(): notifications)          ▼
                                                            subscribers

Suspension points inside a turn (tier promotion, notification enqueue)
never let another message interleave: the worker does not dequeue the next
message until the current one finishes.

Invariants:
    - At most one message is being handled at any time
    - A queued message can be cancelled; a started message runs to completion
    - Resolution and execution errors come back in ResultSet.error
    - Programming errors propagate to the awaiting caller

How to change safely:
    - New message kinds need a MessageKind, a handler branch and a test
    - Never touch hot_store, tier_manager or notifier outside the worker
    - Keep stop() draining the inbox before closing components
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Union

from ..config import InstanceConfig
from ..errors import (
    ActorStopped,
    AgentDbError,
    CyclicDependency,
    InternalError,
    InvalidPipeline,
    OperationCancelled,
)
from ..execute.executor import Clock, QueryExecutor, system_clock_ms
from ..intent.calls import Phrase, StructuredCall
from ..intent.classifier import IntentClassifier
from ..intent.resolver import IntentResolver
from ..model.operation import Operation
from ..model.predicate import Predicate
from ..model.types import EventKind, OpKind, ResultSet, Tier
from ..notify.notifier import (
    ChangeNotifier,
    DeliveryTarget,
    Notification,
    Subscription,
    new_subscription_id,
)
from ..notify.targets import TargetRegistry
from ..pipeline.coordinator import PipelineCoordinator, PipelineStep, StepResult
from ..storage.backends import SegmentBackend, create_segment_backend
from ..storage.hot_store import HotStore
from ..storage.tier_manager import TierManager

logger = logging.getLogger(__name__)

Request = Union[StructuredCall, Phrase, Operation, Mapping[str, Any]]
NotificationHandler = Callable[[Notification], Union[Awaitable[None], None]]


class MessageKind(Enum):
    """Kinds of inbox messages."""

    CALL = "call"
    PIPELINE = "pipeline"
    WATCH = "watch"
    CANCEL_WATCH = "cancel_watch"
    NOTIFICATION = "notification"
    COMPACT = "compact"
    DEMOTE = "demote"


@dataclass
class _Message:
    message_id: str
    kind: MessageKind
    payload: Any
    future: asyncio.Future[Any]
    started: bool = False


class Ticket:
    """Handle for a queued inbox message.

    Awaiting the ticket yields the message's result. cancel() only succeeds
    while the message is still queued; the awaiter then gets
    OperationCancelled.

    Example:
        >>> ticket = actor.submit({"table": "tasks", "op": "query"})
        >>> result = await ticket
    """

    def __init__(self, message: _Message, operation_id: str | None = None) -> None:
        self._message = message
        self.operation_id = operation_id

    @property
    def message_id(self) -> str:
        return self._message.message_id

    @property
    def started(self) -> bool:
        return self._message.started

    def done(self) -> bool:
        return self._message.future.done()

    def cancel(self) -> bool:
        """Cancel the message if it has not been dequeued yet.

        Returns:
            True if the message will not run
        """
        message = self._message
        if message.started or message.future.done():
            return False
        message.future.set_exception(
            OperationCancelled(
                f"Message {message.message_id} cancelled before execution",
                operation_id=self.operation_id or message.message_id,
            )
        )
        return True

    def __await__(self) -> Generator[Any, None, Any]:
        return self._message.future.__await__()


def _request_operation_id(request: Any) -> str | None:
    if isinstance(request, (Operation, StructuredCall, Phrase)):
        return request.operation_id
    if isinstance(request, Mapping):
        return request.get("operation_id")
    return None


@dataclass
class ActorStats:
    """Inbox counters."""

    processed: int = 0
    cancelled: int = 0
    errors: int = 0
    notifications_received: int = 0
    by_kind: dict[str, int] = field(default_factory=dict)


class InstanceActor:
    """Single-threaded owner of one instance's tables.

    Attributes:
        name: Instance name
        hot_store: Hot tier and persisted state
        tier_manager: Warm/cold tiering
        executor: Query executor
        notifier: Change notifier
        resolver: Intent resolver
        targets: Named delivery targets (for watch calls and restarts)

    Example:
        >>> actor = await open_actor(InstanceConfig.from_env())
        >>> result = await actor.call({"table": "tasks", "op": "insert",
        ...                            "values": {"title": "Build auth"}})
        >>> result.rows[0].revision
        1
        >>> await actor.stop()
    """

    def __init__(
        self,
        name: str,
        hot_store: HotStore,
        tier_manager: TierManager,
        executor: QueryExecutor,
        notifier: ChangeNotifier,
        resolver: IntentResolver,
        targets: TargetRegistry | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the actor. Call restore() and start() before use."""
        self.name = name
        self.hot_store = hot_store
        self.tier_manager = tier_manager
        self.executor = executor
        self.notifier = notifier
        self.resolver = resolver
        self.targets = targets or TargetRegistry()
        self.clock = clock or system_clock_ms
        self.coordinator = PipelineCoordinator(resolver, self.dispatch)
        self.stats = ActorStats()

        self._inbox: asyncio.Queue[_Message | None] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._running = False
        self._ids = itertools.count(1)
        self._handlers: list[NotificationHandler] = []

    @property
    def is_running(self) -> bool:
        return self._running

    # Lifecycle

    def restore(self) -> int:
        """Reload schemas, counters, pointers and subscriptions from the hot store.

        Returns:
            Number of subscriptions re-registered
        """
        self.executor.load()
        self.tier_manager.load()

        restored = 0
        for stored in self.hot_store.load_subscriptions():
            subscription = Subscription.from_stored(stored)
            subscription.target = self.targets.resolve(subscription.target_name)
            if subscription.target is None:
                logger.warning(
                    "Restored subscription has no bound target",
                    extra={
                        "instance": self.name,
                        "subscription_id": subscription.subscription_id,
                        "target": subscription.target_name,
                    },
                )
            self.notifier.register_watch(subscription)
            restored += 1

        logger.info(
            "Restored instance state",
            extra={
                "instance": self.name,
                "tables": len(self.tables()),
                "subscriptions": restored,
            },
        )
        return restored

    async def start(self) -> None:
        """Start the inbox worker."""
        if self._running:
            logger.warning("Actor already running", extra={"instance": self.name})
            return
        self._running = True
        self._worker = asyncio.create_task(self._run(), name=f"actor-{self.name}")
        logger.info("Started instance actor", extra={"instance": self.name})

    async def stop(self) -> None:
        """Stop accepting messages, finish queued ones, then close components."""
        if not self._running:
            return
        self._running = False
        self._inbox.put_nowait(None)
        if self._worker is not None:
            await self._worker
            self._worker = None

        await self.notifier.drain()
        await self.notifier.close()
        await self.tier_manager.close()
        await self.targets.close()
        logger.info("Stopped instance actor", extra={"instance": self.name, **self.get_stats()})

    # Inbox

    def _post(self, kind: MessageKind, payload: Any, operation_id: str | None = None) -> Ticket:
        if not self._running:
            raise ActorStopped(f"Instance actor '{self.name}' is not running", operation_id=operation_id)
        message = _Message(
            message_id=f"{self.name}-{next(self._ids)}",
            kind=kind,
            payload=payload,
            future=asyncio.get_running_loop().create_future(),
        )
        self._inbox.put_nowait(message)
        return Ticket(message, operation_id)

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                if message is None:
                    return
                if message.future.done():
                    self.stats.cancelled += 1
                    continue
                await self._process(message)
            finally:
                self._inbox.task_done()

    async def _process(self, message: _Message) -> None:
        message.started = True
        kind = message.kind.value
        self.stats.by_kind[kind] = self.stats.by_kind.get(kind, 0) + 1
        try:
            result = await self._handle(message.kind, message.payload)
        except Exception as e:
            self.stats.errors += 1
            logger.error(
                "Actor message failed",
                extra={"instance": self.name, "message_id": message.message_id, "kind": kind},
                exc_info=not isinstance(e, AgentDbError),
            )
            if not message.future.done():
                message.future.set_exception(e)
            return
        self.stats.processed += 1
        if not message.future.done():
            message.future.set_result(result)

    async def _handle(self, kind: MessageKind, payload: Any) -> Any:
        if kind == MessageKind.CALL:
            return await self._handle_call(payload)
        if kind == MessageKind.PIPELINE:
            return await self._handle_pipeline(payload)
        if kind == MessageKind.WATCH:
            request, target = payload
            return self._handle_watch(request, target)
        if kind == MessageKind.CANCEL_WATCH:
            return self._handle_cancel_watch(payload)
        if kind == MessageKind.NOTIFICATION:
            return await self._handle_notification(payload)
        if kind == MessageKind.COMPACT:
            return await self.tier_manager.compact(payload)
        if kind == MessageKind.DEMOTE:
            table, lo, hi, tier = payload
            return await self.tier_manager.demote(table, lo, hi, tier)
        raise ValueError(f"Unknown message kind: {kind}")

    # Handlers (run inside the worker)

    async def _handle_call(self, request: Request) -> ResultSet:
        try:
            operation = self.resolver.resolve(request)
        except AgentDbError as e:
            logger.info(
                "Resolution failed",
                extra={"instance": self.name, "code": e.code, "error": e.message},
            )
            return ResultSet.failed(e, e.operation_id)
        except Exception as e:
            logger.error("Resolution raised", extra={"instance": self.name}, exc_info=True)
            error = InternalError(f"{type(e).__name__}: {e}")
            error.__cause__ = e
            return ResultSet.failed(error)
        return await self.dispatch(operation)

    async def dispatch(self, operation: Operation, target: DeliveryTarget | None = None) -> ResultSet:
        """Route a resolved operation: watches to the notifier, the rest to the executor.

        Only call from inside an actor turn.
        """
        if operation.kind == OpKind.WATCH:
            return self._register(operation, target)
        return await self.executor.execute(operation)

    async def _handle_pipeline(self, steps: list[PipelineStep]) -> list[StepResult]:
        try:
            return await self.coordinator.run(steps)
        except (CyclicDependency, InvalidPipeline) as e:
            logger.info(
                "Pipeline rejected",
                extra={"instance": self.name, "code": e.code, "error": e.message},
            )
            return [
                StepResult(step.step_id, ResultSet(operation_id=step.step_id, error=e), skipped=True)
                for step in steps
            ]

    def _handle_watch(self, request: Request, target: DeliveryTarget | None) -> ResultSet:
        try:
            operation = self.resolver.resolve(request)
        except AgentDbError as e:
            return ResultSet.failed(e, e.operation_id)
        return self._register(operation, target)

    def _register(self, operation: Operation, target: DeliveryTarget | None) -> ResultSet:
        subscription = Subscription(
            table=operation.table,
            event=operation.event,
            predicate=operation.predicate,
            target=target or self.targets.resolve(operation.target),
            target_name=operation.target,
            subscription_id=new_subscription_id(),
            created_at=self.clock(),
        )
        self.hot_store.add_subscription(subscription.to_stored())
        sub_id = self.notifier.register_watch(subscription)
        return ResultSet(operation_id=operation.operation_id, subscription_id=sub_id)

    def _handle_cancel_watch(self, subscription_id: str) -> bool:
        active = self.notifier.cancel(subscription_id)
        removed = self.hot_store.remove_subscription(subscription_id)
        return active or removed

    async def _handle_notification(self, notification: Notification) -> int:
        self.stats.notifications_received += 1
        handled = 0
        for handler in list(self._handlers):
            try:
                result = handler(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.error(
                    "Notification handler failed",
                    extra={
                        "instance": self.name,
                        "subscription_id": notification.subscription_id,
                        "seq": notification.seq,
                    },
                    exc_info=True,
                )
                continue
            handled += 1
        return handled

    # Public surface

    def submit(self, request: Request) -> Ticket:
        """Queue a call or phrase.

        Raises:
            ActorStopped: If the actor is not running
        """
        return self._post(MessageKind.CALL, request, _request_operation_id(request))

    async def call(self, request: Request) -> ResultSet:
        """Submit a call or phrase and wait for its ResultSet.

        Never raises AgentDbError; failures are in ResultSet.error.
        """
        try:
            ticket = self.submit(request)
        except ActorStopped as e:
            return ResultSet.failed(e, e.operation_id)
        try:
            return await ticket
        except OperationCancelled as e:
            return ResultSet.failed(e, e.operation_id)
        except asyncio.CancelledError:
            ticket.cancel()
            raise

    async def run_pipeline(self, steps: list[PipelineStep | Mapping[str, Any]]) -> list[StepResult]:
        """Run a dependency graph of steps in one actor turn.

        Returns:
            One StepResult per step, in submission order. A cyclic or
            invalid graph fails every step with the same error and runs none.

        Raises:
            InvalidPipeline: If a step is malformed (missing step_id or call)
            ActorStopped: If the actor is not running
        """
        parsed = [s if isinstance(s, PipelineStep) else PipelineStep.from_dict(s) for s in steps]
        return await self._post(MessageKind.PIPELINE, parsed)

    async def watch(
        self,
        table: str,
        event: EventKind | str | None = None,
        predicate: Predicate | Mapping[str, Any] | None = None,
        target: DeliveryTarget | str | None = None,
    ) -> ResultSet:
        """Register a subscription on one of this instance's tables.

        Args:
            table: Watched table
            event: insert, update or delete (None watches every kind)
            predicate: Filter on the post-mutation record
            target: A DeliveryTarget, or the name of a registered one
                (only named targets are re-bound after a restart)

        Returns:
            ResultSet whose subscription_id identifies the subscription
        """
        filters = predicate.to_dict() if isinstance(predicate, Predicate) else predicate
        request = {
            "table": table,
            "op": "watch",
            "event": event.value if isinstance(event, EventKind) else event,
            "filters": dict(filters) if filters is not None else None,
            "target": target if isinstance(target, str) else None,
        }
        bound = None if isinstance(target, str) else target
        try:
            return await self._post(MessageKind.WATCH, (request, bound))
        except ActorStopped as e:
            return ResultSet.failed(e)

    async def cancel_watch(self, subscription_id: str) -> bool:
        """Cancel a subscription. Cancelling twice is a no-op.

        Returns:
            True if the subscription existed
        """
        return await self._post(MessageKind.CANCEL_WATCH, subscription_id)

    async def receive(self, notification: Notification) -> None:
        """Accept a notification from another instance as an inbox message.

        Does not wait for the notification to be handled.

        Raises:
            ActorStopped: If the actor is not running
        """
        self._post(MessageKind.NOTIFICATION, notification)

    def on_notification(self, handler: NotificationHandler) -> None:
        """Add a handler for notifications received from other instances."""
        self._handlers.append(handler)

    async def compact(self, table: str) -> int:
        """Purge tombstones of a table from every tier.

        Returns:
            Number of tombstones removed
        """
        return await self._post(MessageKind.COMPACT, table)

    async def demote(self, table: str, lo: int, hi: int, tier: Tier = Tier.WARM) -> int:
        """Move rows with seq in [lo, hi] to a slower tier.

        Returns:
            Number of rows moved
        """
        return await self._post(MessageKind.DEMOTE, (table, lo, hi, tier))

    async def idle(self) -> None:
        """Wait until the inbox is empty and every queued delivery was attempted."""
        await self._inbox.join()
        await self.notifier.drain()

    def tables(self) -> list[str]:
        return sorted(set(self.executor.tables()) | set(self.tier_manager.tables()))

    def get_stats(self) -> dict[str, Any]:
        return {
            "processed": self.stats.processed,
            "cancelled": self.stats.cancelled,
            "errors": self.stats.errors,
            "notifications_received": self.stats.notifications_received,
            "inbox": self._inbox.qsize(),
            "by_kind": dict(self.stats.by_kind),
        }


async def open_actor(
    config: InstanceConfig,
    classifier: IntentClassifier | None = None,
    targets: TargetRegistry | None = None,
    warm: SegmentBackend | None = None,
    cold: SegmentBackend | None = None,
    clock: Clock | None = None,
) -> InstanceActor:
    """Build, restore and start an instance actor from configuration.

    Args:
        config: Instance configuration
        classifier: Phrase classifier (phrases are rejected without one)
        targets: Named delivery targets, needed to re-bind persisted watches
        warm: Warm backend override (defaults to config.tiers.warm_backend)
        cold: Cold backend override (defaults to config.tiers.cold_backend)
        clock: Millisecond clock (defaults to wall time)

    Returns:
        A running InstanceActor
    """
    Path(config.storage.data_dir).mkdir(parents=True, exist_ok=True)
    clock = clock or system_clock_ms

    hot_store = HotStore(
        data_dir=config.storage.data_dir,
        instance_name=config.storage.instance_name,
        wal_mode=config.storage.wal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
    )
    hot_store.initialize()

    tier_manager = TierManager(
        hot_store,
        warm=warm or create_segment_backend(config.tiers.warm_backend, config),
        cold=cold or create_segment_backend(config.tiers.cold_backend, config),
        hot_max_rows=config.tiers.hot_max_rows,
        hot_max_size=config.tiers.hot_max_size,
        warm_max_rows=config.tiers.warm_max_rows,
    )
    notifier = ChangeNotifier(queue_size=config.notifier.queue_size)
    executor = QueryExecutor(hot_store, tier_manager, notifier, clock=clock)
    resolver = IntentResolver(executor, classifier, config.resolver, clock=clock)

    actor = InstanceActor(
        config.storage.instance_name,
        hot_store,
        tier_manager,
        executor,
        notifier,
        resolver,
        targets=targets,
        clock=clock,
    )
    actor.restore()
    await actor.start()
    return actor
