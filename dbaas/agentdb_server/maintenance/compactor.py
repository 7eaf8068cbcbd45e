"""
Tombstone compaction for AgentDB.

Deleted rows stay as tombstones (they carry the last values for delete
notifications and keep revisions monotonic). The Compactor periodically
asks the actor to purge them from the hot store and to rewrite warm/cold
segments that still hold any.

Compaction runs as an ordinary actor message, so it never interleaves with
a caller's operation.

Invariants:
    - One table failing (tier unreachable) does not stop the pass
    - The loop never touches storage directly, only through the actor

How to change safely:
    - Keep each table a separate message so callers are not starved
"""

from __future__ import annotations

import asyncio
import logging

from ..actor.instance import InstanceActor
from ..errors import TierUnavailable

logger = logging.getLogger(__name__)


class Compactor:
    """Background compaction loop.

    Example:
        >>> compactor = Compactor(actor, interval_seconds=3600)
        >>> removed = await compactor.run_once()
        >>> task = asyncio.create_task(compactor.start())
    """

    def __init__(self, actor: InstanceActor, interval_seconds: int = 3600) -> None:
        """Initialize the compactor.

        Args:
            actor: Actor whose tables are compacted
            interval_seconds: Interval between passes
        """
        self.actor = actor
        self.interval_seconds = interval_seconds

        self._running = False
        self._passes = 0
        self._removed = 0
        self._failures = 0

    async def start(self) -> None:
        """Start the compaction loop."""
        if self._running:
            logger.warning("Compactor already running")
            return

        self._running = True
        logger.info("Starting compactor", extra={"interval_seconds": self.interval_seconds})

        try:
            while self._running:
                await asyncio.sleep(self.interval_seconds)
                if not self._running:
                    break
                await self.run_once()

        except asyncio.CancelledError:
            logger.info("Compactor cancelled")
        except Exception as e:
            logger.error(f"Compactor error: {e}", exc_info=True)
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the compaction loop."""
        self._running = False
        logger.info("Stopping compactor")

    async def run_once(self) -> dict[str, int]:
        """Compact every table once.

        Returns:
            Tombstones removed per table (tables that failed are left out)
        """
        removed: dict[str, int] = {}
        for table in self.actor.tables():
            try:
                removed[table] = await self.actor.compact(table)
            except TierUnavailable as e:
                self._failures += 1
                logger.warning(
                    "Compaction skipped, tier unavailable",
                    extra={"table": table, "tier": e.tier, "error": e.message},
                )

        self._passes += 1
        self._removed += sum(removed.values())
        if any(removed.values()):
            logger.info(
                "Compaction pass finished",
                extra={"tables": len(removed), "removed": sum(removed.values())},
            )
        return removed

    @property
    def stats(self) -> dict[str, int]:
        return {
            "passes": self._passes,
            "removed": self._removed,
            "failures": self._failures,
        }
