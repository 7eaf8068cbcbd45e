"""
Cross-instance watch delivery.

An agent watching another agent's table registers the subscription on the
*target* instance with a StreamTarget. The RemoteWatchBridge runs next to
the watcher's actor, consumes the notification topic and posts every
notification into the watcher's inbox as a message.

    instance A (watched)                         instance B (watcher)
    notifier ─▶ StreamTarget ─▶ topic ─▶ RemoteWatchBridge ─▶ actor.receive()

Invariants:
    - The stream position is committed only after the notification is queued
    - Malformed messages are logged, counted and skipped (their position is
      committed so the bridge does not stall)

How to change safely:
    - Keep the payload format in sync with Notification.to_dict()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..notify.notifier import Notification
from ..notify.targets import NotificationSink
from ..stream.base import MessageStream, StreamSerializationError

logger = logging.getLogger(__name__)


class RemoteWatchBridge:
    """Consumes notifications from a stream and hands them to an actor.

    Example:
        >>> bridge = RemoteWatchBridge(stream, "agentdb-notifications", "agent-b", actor_b)
        >>> task = asyncio.create_task(bridge.start())
        >>> await bridge.stop()
    """

    def __init__(
        self,
        stream: MessageStream,
        topic: str,
        group_id: str,
        actor: NotificationSink,
        subscription_ids: set[str] | None = None,
    ) -> None:
        """Initialize the bridge.

        Args:
            stream: Message stream carrying notifications
            topic: Topic to consume
            group_id: Consumer group (one per watcher instance)
            actor: Receiving actor
            subscription_ids: Only forward these subscriptions (None forwards all)
        """
        self.stream = stream
        self.topic = topic
        self.group_id = group_id
        self.actor = actor
        self.subscription_ids = subscription_ids

        self._running = False
        self._forwarded = 0
        self._skipped = 0
        self._errors = 0

    async def start(self) -> None:
        """Run the consume loop until stop() is called."""
        if self._running:
            logger.warning("Remote watch bridge already running")
            return

        self._running = True
        logger.info(
            "Starting remote watch bridge",
            extra={"topic": self.topic, "group_id": self.group_id},
        )

        try:
            async for message in self.stream.subscribe(self.topic, self.group_id):
                if not self._running:
                    break

                try:
                    notification = Notification.from_dict(message.value_json())
                except (StreamSerializationError, KeyError, TypeError, ValueError) as e:
                    self._errors += 1
                    logger.error(
                        "Malformed notification message",
                        extra={"key": message.key, "position": str(message.position), "error": str(e)},
                    )
                    await self.stream.commit(message)
                    continue

                if self.subscription_ids is None or notification.subscription_id in self.subscription_ids:
                    await self.actor.receive(notification)
                    self._forwarded += 1
                else:
                    self._skipped += 1

                await self.stream.commit(message)

        except asyncio.CancelledError:
            logger.info("Remote watch bridge cancelled")
        except Exception as e:
            logger.error(f"Remote watch bridge error: {e}", exc_info=True)
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        logger.info("Stopping remote watch bridge")

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "forwarded": self._forwarded,
            "skipped": self._skipped,
            "errors": self._errors,
        }
