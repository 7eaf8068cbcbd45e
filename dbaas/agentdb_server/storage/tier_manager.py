"""
Storage tier manager for AgentDB.

The TierManager owns the mapping from logical rows to their physical tier
and performs every migration between tiers:
- Eviction: hot rows beyond the table thresholds move to warm, oldest
  seq first (FIFO by commit order, never by access)
- Warm overflow: warm segments beyond warm_max_rows move to cold, oldest first
- Promotion read: warm/cold rows matching a query predicate move to hot
  before the query is evaluated
- Explicit promote/demote of a seq range
- Compaction: tombstones are dropped from hot and from segments

Migration order is always: write the target, persist the pointer (together
with the hot rows it adds or removes, in one hot-store transaction), then
remove the source object. A backend failure before the pointer is persisted
leaves the pointer untouched, so a migration is all-or-nothing for its range.

Invariants:
    - A record is resident in exactly one tier at a time
    - Only this class mutates TierPointers
    - Promotion never evicts in the same call, and the segments it leaves
      behind are marked exhausted for its predicate, so a repeated
      identical query is served from hot without reading warm/cold
    - Backend failures surface as TierUnavailable

How to change safely:
    - Keep the write-target / persist-pointer / drop-source order
    - Test new policies with InMemorySegmentBackend failure injection
    - Pointer format changes must stay readable by TierPointer.from_dict()
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass

from ..errors import TierUnavailable
from ..model.predicate import Predicate
from ..model.types import Record, Tier
from .backends.base import BackendUnavailable, SegmentBackend, backend_stats
from .hot_store import HotStore
from .tier_pointer import SegmentRef, TierPointer, predicate_key

logger = logging.getLogger(__name__)


@dataclass
class TierStats:
    """Migration counters.

    Attributes:
        evictions: Hot-to-warm migrations
        rows_evicted: Rows moved out of hot
        demotions: Warm-to-cold migrations
        promotions: Segment promotions into hot
        rows_promoted: Rows moved into hot
        segment_fetches: Segments read from warm/cold backends
        failures: Migrations aborted by a backend failure
    """

    evictions: int = 0
    rows_evicted: int = 0
    demotions: int = 0
    promotions: int = 0
    rows_promoted: int = 0
    segment_fetches: int = 0
    failures: int = 0


class TierManager:
    """Tracks and migrates rows between hot, warm and cold tiers.

    Thread safety:
        Not thread-safe. All calls happen on the owning actor's turn.

    Example:
        >>> manager = TierManager(hot_store, warm, cold, hot_max_rows=1000)
        >>> manager.load()
        >>> await manager.record_write("tasks", records)
        >>> await manager.fetch_matching("tasks", eq("status", "pending"))
    """

    def __init__(
        self,
        hot_store: HotStore,
        warm: SegmentBackend,
        cold: SegmentBackend,
        hot_max_rows: int = 10_000,
        hot_max_size: int = 64 * 1024 * 1024,
        warm_max_rows: int = 1_000_000,
    ) -> None:
        """Initialize the tier manager.

        Args:
            hot_store: Hot-tier store (also persists pointers)
            warm: Backend holding warm segments
            cold: Backend holding cold segments
            hot_max_rows: Default hot row threshold for new tables
            hot_max_size: Default hot byte threshold for new tables
            warm_max_rows: Warm rows per table before demotion to cold
        """
        self.hot_store = hot_store
        self.warm = warm
        self.cold = cold
        self.hot_max_rows = hot_max_rows
        self.hot_max_size = hot_max_size
        self.warm_max_rows = warm_max_rows
        self.stats = TierStats()
        self._pointers: dict[str, TierPointer] = {}

    def load(self) -> None:
        """Reload every table's pointer from the hot store."""
        self._pointers = self.hot_store.load_pointers()
        logger.info(
            "Loaded tier pointers",
            extra={
                "tables": len(self._pointers),
                "segments": sum(len(p.segments) for p in self._pointers.values()),
            },
        )

    async def close(self) -> None:
        await self.warm.close()
        await self.cold.close()

    def pointer(self, table: str) -> TierPointer | None:
        return self._pointers.get(table)

    def _ensure_pointer(self, table: str) -> TierPointer:
        pointer = self._pointers.get(table)
        if pointer is None:
            pointer = TierPointer(table, self.hot_max_rows, self.hot_max_size)
            self.hot_store.put_pointer(pointer)
            self._pointers[table] = pointer
        return pointer

    def _backend(self, tier: Tier) -> SegmentBackend:
        if tier == Tier.WARM:
            return self.warm
        if tier == Tier.COLD:
            return self.cold
        raise ValueError(f"No segment backend for tier {tier.value}")

    def locate(self, table: str, key: int) -> Tier | None:
        """Return the tier holding a row, or None if the row does not exist."""
        if self.hot_store.get(table, key) is not None:
            return Tier.HOT
        pointer = self._pointers.get(table)
        if pointer is None:
            return None
        segment = pointer.segment_for_key(key)
        return segment.tier if segment else None

    def has_segments(self, table: str) -> bool:
        pointer = self._pointers.get(table)
        return pointer is not None and bool(pointer.segments)

    # Segment I/O

    async def _put_segment(self, table: str, tier: Tier, rows: list[Record]) -> SegmentRef:
        tagged = [r.with_tier(tier) for r in rows]
        segment = SegmentRef.for_rows(tier, tagged)
        try:
            await self._backend(tier).put(table, segment.segment_id, tagged)
        except BackendUnavailable as e:
            self.stats.failures += 1
            raise TierUnavailable(
                f"Cannot write {tier.value} segment for '{table}': {e}",
                table=table,
                tier=tier.value,
            )
        return segment

    async def _fetch_segment(self, table: str, segment: SegmentRef) -> list[Record]:
        try:
            rows = await self._backend(segment.tier).get(table, segment.segment_id)
        except BackendUnavailable as e:
            self.stats.failures += 1
            raise TierUnavailable(
                f"Cannot read {segment.tier.value} segment {segment.segment_id} of '{table}': {e}",
                table=table,
                tier=segment.tier.value,
            )
        self.stats.segment_fetches += 1
        return rows

    async def _discard(self, table: str, segments: Iterable[SegmentRef]) -> None:
        """Delete source objects once the pointer no longer lists them."""
        for segment in segments:
            try:
                await self._backend(segment.tier).delete(table, segment.segment_id)
            except BackendUnavailable as e:
                # The pointer already moved on; an orphaned object is harmless.
                logger.warning(
                    "Failed to delete replaced segment",
                    extra={"table": table, "segment_id": segment.segment_id, "error": str(e)},
                )

    async def _split(
        self,
        table: str,
        segment: SegmentRef,
        rows: list[Record],
        selected: set[int],
        target: Tier,
        exhausted: str | None = None,
    ) -> list[Record]:
        """Move the selected rows of a segment to another tier.

        The rest of the segment is rewritten as a new segment of its own tier.
        New segments inherit the source's exhausted predicates; the rest
        segment is also marked with exhausted when given.

        Returns:
            The moved rows, tagged with their new tier
        """
        chosen = [r.with_tier(target) for r in rows if r.key in selected]
        rest = [r for r in rows if r.key not in selected]

        written: list[SegmentRef] = []
        try:
            if rest:
                remainder = await self._put_segment(table, segment.tier, rest)
                remainder.mark_exhausted(segment.exhausted)
                if exhausted is not None:
                    remainder.mark_exhausted([exhausted])
                written.append(remainder)
            if chosen and target != Tier.HOT:
                moved = await self._put_segment(table, target, chosen)
                moved.mark_exhausted(segment.exhausted)
                written.append(moved)
        except TierUnavailable:
            await self._discard(table, written)
            raise

        updated = self._pointers[table].copy()
        updated.replace(segment, written)
        if target == Tier.HOT:
            self.hot_store.migrate_in(updated, chosen)
        else:
            self.hot_store.put_pointer(updated)
        self._pointers[table] = updated

        await self._discard(table, [segment])
        return chosen

    async def _evict(self, table: str, rows: list[Record], tier: Tier) -> SegmentRef:
        """Move hot rows into one new segment of the given tier."""
        segment = await self._put_segment(table, tier, rows)
        updated = self._ensure_pointer(table).copy()
        updated.add(segment)
        try:
            self.hot_store.migrate_out(updated, [r.key for r in rows])
        except Exception:
            await self._discard(table, [segment])
            raise
        self._pointers[table] = updated
        return segment

    # Write path

    async def record_write(self, table: str, records: list[Record]) -> dict[int, Tier]:
        """Account for committed hot writes and evict past the thresholds.

        Evicts the oldest-seq hot rows (tombstones included) until the
        table is back under both hot_max_rows and hot_max_size, as one
        warm segment, then demotes warm overflow to cold. A backend failure
        is logged and left for the next write; the committed write stands.

        Args:
            table: Table that was written
            records: Rows the write committed

        Returns:
            New tier of every row moved out of hot (empty when none was)
        """
        pointer = self._ensure_pointer(table)
        rows, size = self.hot_store.usage(table)
        if rows <= pointer.hot_max_rows and size <= pointer.hot_max_size:
            return {}

        evict: list[Record] = []
        for record in self.hot_store.oldest(table, rows):
            if rows <= pointer.hot_max_rows and size <= pointer.hot_max_size:
                break
            evict.append(record)
            rows -= 1
            size -= record.size

        try:
            segment = await self._evict(table, evict, Tier.WARM)
        except TierUnavailable as e:
            logger.warning(
                "Eviction deferred, warm tier unavailable",
                extra={"table": table, "rows": len(evict), "error": e.message},
            )
            return {}

        self.stats.evictions += 1
        self.stats.rows_evicted += len(evict)
        logger.info(
            "Evicted hot rows to warm",
            extra={
                "table": table,
                "rows": len(evict),
                "seq_lo": segment.lo,
                "seq_hi": segment.hi,
                "written_rows": len(records),
            },
        )

        moved = {key: Tier.WARM for key in segment.keys}
        try:
            moved.update({key: Tier.COLD for key in await self._enforce_warm_limit(table)})
        except TierUnavailable as e:
            logger.warning(
                "Warm overflow demotion deferred, cold tier unavailable",
                extra={"table": table, "error": e.message},
            )
        return moved

    async def _enforce_warm_limit(self, table: str) -> list[int]:
        demoted: list[int] = []
        while True:
            pointer = self._pointers[table]
            warm_segments = pointer.segments_in(Tier.WARM)
            if pointer.rows_in(Tier.WARM) <= self.warm_max_rows or not warm_segments:
                return demoted
            oldest = warm_segments[0]
            rows = await self._fetch_segment(table, oldest)
            await self._split(table, oldest, rows, {r.key for r in rows}, Tier.COLD)
            self.stats.demotions += 1
            demoted.extend(r.key for r in rows)
            logger.info(
                "Demoted warm segment to cold",
                extra={"table": table, "rows": len(rows), "seq_lo": oldest.lo, "seq_hi": oldest.hi},
            )

    # Promotion

    async def fetch_matching(self, table: str, predicate: Predicate | None) -> list[Record]:
        """Promotion read: move live warm/cold rows matching a predicate to hot.

        Segments whose zone map rules out the predicate are not fetched,
        nor are segments already found to hold no live match for it.
        Rows in a fetched segment that do not match stay in their tier, and
        the segment left behind is marked exhausted for the predicate.

        Returns:
            The promoted rows

        Raises:
            TierUnavailable: If a candidate segment cannot be read or rewritten
        """
        pointer = self._pointers.get(table)
        if pointer is None or not pointer.segments:
            return []

        key = predicate_key(predicate)
        promoted: list[Record] = []
        for segment in [s for s in pointer.segments if s.might_match(predicate)]:
            rows = await self._fetch_segment(table, segment)
            matching = {
                r.key
                for r in rows
                if not r.deleted and (predicate is None or predicate.evaluate(r))
            }
            if not matching:
                self._mark_exhausted(table, segment, key)
                continue
            promoted.extend(
                await self._split(table, segment, rows, matching, Tier.HOT, exhausted=key)
            )
            self.stats.promotions += 1

        if promoted:
            self.stats.rows_promoted += len(promoted)
            logger.info(
                "Promoted rows to hot",
                extra={"table": table, "rows": len(promoted)},
            )
        return promoted

    def _mark_exhausted(self, table: str, segment: SegmentRef, key: str) -> None:
        updated = self._pointers[table].copy()
        for entry in updated.segments:
            if entry.segment_id == segment.segment_id:
                entry.mark_exhausted([key])
        self.hot_store.put_pointer(updated)
        self._pointers[table] = updated

    async def promote(self, table: str, lo: int, hi: int) -> list[Record]:
        """Move every warm/cold row with lo <= seq <= hi to hot.

        Raises:
            TierUnavailable: If a segment cannot be read or rewritten
        """
        pointer = self._pointers.get(table)
        if pointer is None:
            return []

        promoted: list[Record] = []
        for segment in [s for s in pointer.segments if s.overlaps(lo, hi)]:
            rows = await self._fetch_segment(table, segment)
            selected = {r.key for r in rows if lo <= r.seq <= hi}
            if selected:
                promoted.extend(await self._split(table, segment, rows, selected, Tier.HOT))
                self.stats.promotions += 1

        self.stats.rows_promoted += len(promoted)
        logger.info(
            "Promoted seq range",
            extra={"table": table, "seq_lo": lo, "seq_hi": hi, "rows": len(promoted)},
        )
        return promoted

    async def demote(self, table: str, lo: int, hi: int, tier: Tier = Tier.WARM) -> int:
        """Move rows with lo <= seq <= hi one step down to the given tier.

        Hot rows in range move to the target tier. When the target is cold,
        warm rows in range move as well.

        Returns:
            Number of rows moved

        Raises:
            ValueError: If tier is HOT
            TierUnavailable: If a backend cannot be reached
        """
        if tier == Tier.HOT:
            raise ValueError("Use promote() to move rows into the hot tier")

        moved = 0
        hot_rows = self.hot_store.read_range(table, lo, hi)
        if hot_rows:
            await self._evict(table, hot_rows, tier)
            moved += len(hot_rows)

        pointer = self._pointers.get(table)
        if tier == Tier.COLD and pointer is not None:
            for segment in [s for s in pointer.segments_in(Tier.WARM) if s.overlaps(lo, hi)]:
                rows = await self._fetch_segment(table, segment)
                selected = {r.key for r in rows if lo <= r.seq <= hi}
                if selected:
                    moved += len(await self._split(table, segment, rows, selected, Tier.COLD))

        if moved:
            self.stats.demotions += 1
        logger.info(
            "Demoted seq range",
            extra={"table": table, "seq_lo": lo, "seq_hi": hi, "tier": tier.value, "rows": moved},
        )
        return moved

    # Maintenance

    async def compact(self, table: str) -> int:
        """Physically drop tombstones from hot and from warm/cold segments.

        Returns:
            Number of tombstones removed
        """
        removed = self.hot_store.purge_tombstones(table)

        pointer = self._pointers.get(table)
        if pointer is not None:
            for segment in [s for s in pointer.segments if s.tombstones]:
                rows = await self._fetch_segment(table, segment)
                live = [r for r in rows if not r.deleted]
                replacement = [await self._put_segment(table, segment.tier, live)] if live else []
                for entry in replacement:
                    entry.mark_exhausted(segment.exhausted)
                updated = self._pointers[table].copy()
                updated.replace(segment, replacement)
                self.hot_store.put_pointer(updated)
                self._pointers[table] = updated
                await self._discard(table, [segment])
                removed += len(rows) - len(live)

        if removed:
            logger.info("Compacted table", extra={"table": table, "tombstones": removed})
        return removed

    def tables(self) -> list[str]:
        return sorted(self._pointers)

    def get_stats(self) -> dict[str, object]:
        """Migration counters, per-tier row counts and backend stats."""
        stats: dict[str, object] = dict(asdict(self.stats))
        stats["warm_rows"] = sum(p.rows_in(Tier.WARM) for p in self._pointers.values())
        stats["cold_rows"] = sum(p.rows_in(Tier.COLD) for p in self._pointers.values())
        stats["warm_backend"] = backend_stats(self.warm)
        stats["cold_backend"] = backend_stats(self.cold)
        return stats
