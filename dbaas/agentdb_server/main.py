"""
AgentDB Server - Main entry point.

This module runs one instance actor with its background components:
- Instance actor (inbox worker)
- Remote watch bridge (notification topic -> actor inbox), when Kafka is enabled
- Compactor loop (tombstone purge), when maintenance is enabled

Usage:
    python -m dbaas.agentdb_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The actor is restored from the hot store before it accepts messages
    - Graceful shutdown finishes queued messages before closing storage

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .actor import InstanceActor, RemoteWatchBridge, open_actor
from .config import InstanceConfig
from .maintenance import Compactor
from .notify import StreamTarget, TargetRegistry
from .stream import MessageStream, create_message_stream

logger = logging.getLogger(__name__)


def setup_logging(config: InstanceConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Instance configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


class Server:
    """AgentDB instance orchestrator.

    Attributes:
        config: Instance configuration
        stream: Notification stream (Kafka or in-memory)
        targets: Named delivery targets shared with the actor
        actor: The instance actor

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: InstanceConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional configuration (loaded from env if not provided)
        """
        self.config = config or InstanceConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.stream: MessageStream | None = None
        self.targets = TargetRegistry()
        self.actor: InstanceActor | None = None
        self.bridge: RemoteWatchBridge | None = None
        self.compactor: Compactor | None = None

        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start all components and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting AgentDB instance", extra={"instance": self.config.storage.instance_name})
        self.config.log_config()

        try:
            self.stream = create_message_stream(self.config.kafka)
            await self.stream.connect()
            self.targets.register("stream", StreamTarget(self.stream, self.config.kafka.topic))

            self.actor = await open_actor(self.config, targets=self.targets)

            if self.config.kafka.enabled:
                self.bridge = RemoteWatchBridge(
                    stream=self.stream,
                    topic=self.config.kafka.topic,
                    group_id=self.config.kafka.consumer_group,
                    actor=self.actor,
                )
                self._tasks.append(asyncio.create_task(self.bridge.start()))

            if self.config.maintenance.enabled:
                self.compactor = Compactor(
                    self.actor,
                    interval_seconds=self.config.maintenance.compaction_interval_seconds,
                )
                self._tasks.append(asyncio.create_task(self.compactor.start()))

            self._running = True
            logger.info("AgentDB instance started")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping AgentDB instance")

        if self.bridge:
            await self.bridge.stop()
        if self.compactor:
            await self.compactor.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.actor:
            await self.actor.stop()

        if self.stream:
            await self.stream.close()

        self._running = False
        logger.info("AgentDB instance stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = InstanceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
