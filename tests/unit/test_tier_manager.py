"""
Unit tests for the storage tier manager.

Tests cover:
- FIFO eviction past row and size thresholds
- Warm overflow demotion to cold
- Promotion reads with zone-map pruning
- Segments remembered as exhausted for a predicate
- Explicit promote/demote of seq ranges
- All-or-nothing migrations when a backend fails
- Tombstone compaction
"""

import tempfile

import pytest

from dbaas.agentdb_server.errors import TierUnavailable
from dbaas.agentdb_server.model.predicate import and_, eq, not_
from dbaas.agentdb_server.model.types import Tier
from dbaas.agentdb_server.storage.backends import InMemorySegmentBackend
from dbaas.agentdb_server.storage.hot_store import HotStore
from dbaas.agentdb_server.storage.tier_manager import TierManager
from tests.helpers import make_record


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def hot_store(data_dir):
    store = HotStore(data_dir, "agent_1", wal_mode=False)
    store.initialize()
    return store


@pytest.fixture
def warm():
    return InMemorySegmentBackend("warm")


@pytest.fixture
def cold():
    return InMemorySegmentBackend("cold")


def make_manager(hot_store, warm, cold, **kwargs):
    kwargs.setdefault("hot_max_rows", 2)
    manager = TierManager(hot_store, warm, cold, **kwargs)
    manager.load()
    return manager


async def write(manager, hot_store, *records):
    hot_store.write("tasks", list(records))
    return await manager.record_write("tasks", list(records))


class TestEviction:
    """Tests for the write path."""

    @pytest.mark.asyncio
    async def test_under_threshold_stays_hot(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold)
        assert await write(manager, hot_store, make_record(1), make_record(2)) == {}
        assert manager.locate("tasks", 1) == Tier.HOT
        assert warm.segment_count("tasks") == 0

    @pytest.mark.asyncio
    async def test_oldest_seq_evicted_first(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold)
        await write(manager, hot_store, make_record(1), make_record(2))
        moved = await write(manager, hot_store, make_record(3))

        assert moved == {1: Tier.WARM}
        assert manager.locate("tasks", 1) == Tier.WARM
        assert manager.locate("tasks", 3) == Tier.HOT
        assert manager.locate("tasks", 9) is None
        assert hot_store.keys("tasks") == {2, 3}
        assert manager.stats.rows_evicted == 1

    @pytest.mark.asyncio
    async def test_eviction_ignores_access(self, hot_store, warm, cold):
        """Recently rewritten rows get a new seq and are evicted last."""
        manager = make_manager(hot_store, warm, cold)
        await write(manager, hot_store, make_record(1), make_record(2))
        await write(manager, hot_store, make_record(1, seq=3, revision=2, title="edited"))
        moved = await write(manager, hot_store, make_record(3, seq=4))
        assert moved == {2: Tier.WARM}

    @pytest.mark.asyncio
    async def test_size_threshold(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100, hot_max_size=1)
        moved = await write(manager, hot_store, make_record(1), make_record(2))
        assert moved == {1: Tier.WARM, 2: Tier.WARM}
        assert hot_store.usage("tasks") == (0, 0)
        assert warm.segment_count("tasks") == 1

    @pytest.mark.asyncio
    async def test_warm_unavailable_defers_eviction(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold)
        warm.available = False
        moved = await write(manager, hot_store, make_record(1), make_record(2), make_record(3))

        assert moved == {}
        assert hot_store.keys("tasks") == {1, 2, 3}
        assert manager.pointer("tasks").segments == []

        warm.available = True
        assert await write(manager, hot_store, make_record(4)) == {1: Tier.WARM, 2: Tier.WARM}

    @pytest.mark.asyncio
    async def test_warm_overflow_goes_cold(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=1, warm_max_rows=1)
        await write(manager, hot_store, make_record(1))
        assert await write(manager, hot_store, make_record(2)) == {1: Tier.WARM}
        moved = await write(manager, hot_store, make_record(3))

        assert moved == {2: Tier.WARM, 1: Tier.COLD}
        assert manager.locate("tasks", 1) == Tier.COLD
        assert cold.segment_count("tasks") == 1
        assert warm.segment_count("tasks") == 1
        assert manager.stats.demotions == 1


class TestPromotion:
    """Tests for promotion reads."""

    @pytest.fixture
    async def manager(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold)
        for key in range(1, 6):
            await write(manager, hot_store, make_record(key))
        return manager

    @pytest.mark.asyncio
    async def test_promotes_only_matching(self, manager, hot_store, warm):
        assert [s.row_count for s in manager.pointer("tasks").segments] == [1, 1, 1]

        promoted = await manager.fetch_matching("tasks", eq("title", "task 1"))
        assert [r.key for r in promoted] == [1]
        assert promoted[0].tier == Tier.HOT
        assert manager.locate("tasks", 1) == Tier.HOT
        assert manager.locate("tasks", 2) == Tier.WARM
        assert manager.stats.segment_fetches == 1
        assert warm.segment_count("tasks") == 2

    @pytest.mark.asyncio
    async def test_repeat_query_does_not_refetch(self, manager):
        await manager.fetch_matching("tasks", eq("title", "task 1"))
        fetches = manager.stats.segment_fetches

        assert await manager.fetch_matching("tasks", eq("title", "task 1")) == []
        assert manager.stats.segment_fetches == fetches

    @pytest.mark.asyncio
    async def test_promotion_never_evicts(self, manager, hot_store):
        await manager.fetch_matching("tasks", None)
        assert hot_store.keys("tasks") == {1, 2, 3, 4, 5}
        assert not manager.has_segments("tasks")

    @pytest.mark.asyncio
    async def test_non_matching_rows_stay(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100)
        await write(manager, hot_store, make_record(1), make_record(2), make_record(3))
        await manager.demote("tasks", 1, 3)

        promoted = await manager.fetch_matching("tasks", eq("title", "task 2"))
        assert [r.key for r in promoted] == [2]
        segments = manager.pointer("tasks").segments
        assert len(segments) == 1
        assert set(segments[0].keys) == {1, 3}
        assert warm.segment_count("tasks") == 1

    @pytest.mark.asyncio
    async def test_multi_clause_repeat_skips_remainder(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100)
        await write(
            manager,
            hot_store,
            make_record(1, status="pending", assignee="ralph"),
            make_record(2, status="pending", assignee="sam"),
            make_record(3, status="done", assignee="ralph"),
        )
        await manager.demote("tasks", 1, 3)
        predicate = and_(eq("status", "pending"), eq("assignee", "ralph"))

        promoted = await manager.fetch_matching("tasks", predicate)
        assert [r.key for r in promoted] == [1]
        fetches = manager.stats.segment_fetches

        warm.available = False
        assert await manager.fetch_matching("tasks", predicate) == []
        assert manager.stats.segment_fetches == fetches

        # A different predicate still has to read the segment.
        with pytest.raises(TierUnavailable):
            await manager.fetch_matching("tasks", eq("assignee", "sam"))

    @pytest.mark.asyncio
    async def test_segment_without_match_is_remembered(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100)
        await write(manager, hot_store, make_record(1, status="pending"), make_record(2, status="pending"))
        await manager.demote("tasks", 1, 2)
        predicate = not_(eq("status", "pending"))

        assert await manager.fetch_matching("tasks", predicate) == []
        assert manager.stats.segment_fetches == 1

        reloaded = make_manager(hot_store, warm, cold, hot_max_rows=100)
        warm.available = False
        assert await reloaded.fetch_matching("tasks", predicate) == []
        assert reloaded.stats.segment_fetches == 0

    @pytest.mark.asyncio
    async def test_tombstones_not_promoted(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100)
        await write(manager, hot_store, make_record(1, deleted=True), make_record(2))
        await manager.demote("tasks", 1, 2)

        promoted = await manager.fetch_matching("tasks", None)
        assert [r.key for r in promoted] == [2]
        assert manager.locate("tasks", 1) == Tier.WARM

    @pytest.mark.asyncio
    async def test_unavailable_leaves_pointer(self, manager, warm):
        before = manager.pointer("tasks").to_dict()
        warm.available = False

        with pytest.raises(TierUnavailable) as exc_info:
            await manager.fetch_matching("tasks", None)
        assert exc_info.value.details["tier"] == "warm"
        assert manager.pointer("tasks").to_dict() == before
        assert manager.stats.failures == 1

    @pytest.mark.asyncio
    async def test_failed_rewrite_leaves_pointer(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100)
        await write(manager, hot_store, make_record(1), make_record(2))
        await manager.demote("tasks", 1, 2)
        before = manager.pointer("tasks").to_dict()

        warm.fail_next("put")
        with pytest.raises(TierUnavailable):
            await manager.fetch_matching("tasks", eq("title", "task 1"))
        assert manager.pointer("tasks").to_dict() == before
        assert hot_store.keys("tasks") == set()


class TestExplicitMigration:
    """Tests for promote() and demote()."""

    @pytest.mark.asyncio
    async def test_demote_and_promote_range(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100)
        await write(manager, hot_store, *[make_record(k) for k in range(1, 5)])

        assert await manager.demote("tasks", 1, 2) == 2
        assert manager.locate("tasks", 1) == Tier.WARM

        assert await manager.demote("tasks", 1, 1, Tier.COLD) == 1
        assert manager.locate("tasks", 1) == Tier.COLD
        assert manager.locate("tasks", 2) == Tier.WARM

        promoted = await manager.promote("tasks", 1, 2)
        assert sorted(r.key for r in promoted) == [1, 2]
        assert hot_store.keys("tasks") == {1, 2, 3, 4}
        assert not manager.has_segments("tasks")

    @pytest.mark.asyncio
    async def test_demote_to_hot_rejected(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold)
        with pytest.raises(ValueError):
            await manager.demote("tasks", 1, 2, Tier.HOT)

    @pytest.mark.asyncio
    async def test_pointers_survive_reload(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100)
        await write(manager, hot_store, make_record(1), make_record(2))
        await manager.demote("tasks", 1, 1)

        reloaded = make_manager(hot_store, warm, cold)
        assert reloaded.locate("tasks", 1) == Tier.WARM
        assert reloaded.tables() == ["tasks"]


class TestCompaction:
    """Tests for compact()."""

    @pytest.mark.asyncio
    async def test_drops_tombstones_everywhere(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100)
        await write(manager, hot_store, make_record(1), make_record(2, deleted=True))
        await manager.demote("tasks", 1, 2)
        await write(manager, hot_store, make_record(3, deleted=True))

        assert await manager.compact("tasks") == 2
        assert hot_store.keys("tasks") == set()
        segments = manager.pointer("tasks").segments
        assert len(segments) == 1
        assert segments[0].tombstones == 0
        assert set(segments[0].keys) == {1}
        assert warm.segment_count("tasks") == 1

    @pytest.mark.asyncio
    async def test_all_dead_segment_removed(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100)
        await write(manager, hot_store, make_record(1, deleted=True))
        await manager.demote("tasks", 1, 1)

        assert await manager.compact("tasks") == 1
        assert not manager.has_segments("tasks")
        assert warm.segment_count("tasks") == 0

    @pytest.mark.asyncio
    async def test_compact_unavailable(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100)
        await write(manager, hot_store, make_record(1, deleted=True))
        await manager.demote("tasks", 1, 1)
        warm.available = False

        with pytest.raises(TierUnavailable):
            await manager.compact("tasks")
        assert manager.has_segments("tasks")

    @pytest.mark.asyncio
    async def test_stats(self, hot_store, warm, cold):
        manager = make_manager(hot_store, warm, cold, hot_max_rows=100)
        await write(manager, hot_store, make_record(1), make_record(2))
        await manager.demote("tasks", 1, 1)
        await manager.demote("tasks", 2, 2, Tier.COLD)

        stats = manager.get_stats()
        assert stats["warm_rows"] == 1
        assert stats["cold_rows"] == 1
        assert stats["warm_backend"]["segments"] == 1
