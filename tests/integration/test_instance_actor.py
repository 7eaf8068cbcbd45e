"""
Integration tests for the InstanceActor with real storage.

Tests cover:
- Insert, query, update and delete end to end
- Notification delivery order and delete events
- Tier eviction and promotion on demand
- Pipelines over the actor inbox
- Cancellation and stopped-actor handling
- Restart with persisted rows, counters and subscriptions
"""

import tempfile

import pytest

from dbaas.agentdb_server.actor import open_actor
from dbaas.agentdb_server.errors import InvalidPipeline, OperationCancelled
from dbaas.agentdb_server.intent import KeywordClassifier, Phrase
from dbaas.agentdb_server.model.predicate import eq
from dbaas.agentdb_server.model.types import EventKind, Tier
from dbaas.agentdb_server.notify import QueueTarget, TargetRegistry
from dbaas.agentdb_server.storage.backends import InMemorySegmentBackend, SqliteSegmentBackend
from tests.helpers import FakeClock, actor_config


def drain(target):
    notifications = []
    while not target.queue.empty():
        notifications.append(target.queue.get_nowait())
    return notifications


def insert(title, status="pending", assignee=None, priority="low"):
    return {
        "table": "tasks",
        "op": "insert",
        "values": {"title": title, "status": status, "assignee": assignee, "priority": priority},
    }


class TestInstanceActor:
    """End-to-end behaviour of a single instance."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def warm(self):
        return InMemorySegmentBackend("warm")

    @pytest.fixture
    def inbox(self):
        return QueueTarget()

    @pytest.fixture
    async def actor(self, data_dir, warm, inbox):
        registry = TargetRegistry()
        registry.register("inbox", inbox)
        actor = await open_actor(
            actor_config(data_dir, hot_max_rows=3),
            classifier=KeywordClassifier(),
            targets=registry,
            warm=warm,
            cold=InMemorySegmentBackend("cold"),
            clock=FakeClock(),
        )
        yield actor
        await actor.stop()

    @pytest.mark.asyncio
    async def test_insert_returns_record(self, actor):
        result = await actor.call(insert("Build auth", assignee="ralph"))

        assert result.ok
        record = result.rows[0]
        assert record.key == 1
        assert record.revision == 1
        assert record.tier == Tier.HOT
        assert record.values["title"] == "Build auth"

    @pytest.mark.asyncio
    async def test_query_filters_and_orders(self, actor):
        for title, status in [
            ("a", "pending"), ("b", "complete"), ("c", "pending"), ("d", "complete"), ("e", "pending"),
        ]:
            await actor.call(insert(title, status))

        result = await actor.call(
            {"table": "tasks", "filters": {"status": "pending"}, "order": "created_at desc"}
        )

        assert result.ok
        assert [r.values["title"] for r in result.rows] == ["e", "c", "a"]

    @pytest.mark.asyncio
    async def test_update_notifies_in_apply_order(self, actor, inbox):
        await actor.call(insert("a", assignee="ralph"))
        await actor.call(insert("b", assignee="sam"))
        await actor.call(insert("c", assignee="ralph"))
        watch = await actor.watch("tasks", EventKind.UPDATE, target="inbox")
        assert watch.subscription_id

        result = await actor.call(
            {
                "table": "tasks",
                "op": "update",
                "filters": {"assignee": "ralph", "status": "pending"},
                "patch": {"status": "complete"},
            }
        )
        await actor.idle()

        assert [(r.key, r.revision) for r in result.rows] == [(1, 2), (3, 2)]
        notifications = drain(inbox)
        assert [n.record.key for n in notifications] == [1, 3]
        assert [n.seq for n in notifications] == sorted(n.seq for n in notifications)
        assert all(n.event == EventKind.UPDATE for n in notifications)
        assert all(n.subscription_id == watch.subscription_id for n in notifications)

    @pytest.mark.asyncio
    async def test_delete_then_query(self, actor):
        target = QueueTarget()
        await actor.watch("tasks", "delete", target=target)
        await actor.call(insert("Build auth", assignee="ralph"))

        deleted = await actor.call({"table": "tasks", "op": "delete", "filters": {"id": 1}})
        remaining = await actor.call({"table": "tasks", "filters": {"title": "Build auth"}})
        await actor.idle()

        assert deleted.rows[0].deleted
        assert remaining.ok and remaining.count == 0
        events = drain(target)
        assert len(events) == 1
        assert events[0].event == EventKind.DELETE
        assert events[0].record.values["title"] == "Build auth"
        assert events[0].record.values["assignee"] == "ralph"

    @pytest.mark.asyncio
    async def test_revisions_and_guarded_update(self, actor):
        await actor.call(insert("a"))
        for status in ("started", "blocked"):
            await actor.call(
                {"table": "tasks", "op": "update", "filters": {"id": 1}, "patch": {"status": status}}
            )

        stale = await actor.call(
            {
                "table": "tasks",
                "op": "update",
                "filters": {"id": 1},
                "patch": {"status": "complete"},
                "expected_revision": 1,
            }
        )
        assert stale.ok
        assert stale.rows == []
        assert stale.row_errors[0].code == "CONCURRENT_MODIFICATION"
        assert stale.row_errors[0].details["actual_revision"] == 3

        fresh = await actor.call(
            {
                "table": "tasks",
                "op": "update",
                "filters": {"id": 1},
                "patch": {"status": "complete"},
                "expected_revision": 3,
            }
        )
        deleted = await actor.call({"table": "tasks", "op": "delete", "filters": {"id": 1}})
        assert fresh.rows[0].revision == 4
        assert deleted.rows[0].revision == 5

    @pytest.mark.asyncio
    async def test_eviction_and_promotion(self, actor, warm):
        for title in ("a", "b", "c", "d", "e"):
            await actor.call(insert(title))

        assert actor.tier_manager.locate("tasks", 1) == Tier.WARM
        assert actor.tier_manager.locate("tasks", 2) == Tier.WARM
        assert warm.segment_count("tasks") == 2

        result = await actor.call({"table": "tasks", "filters": {"title": "a"}})
        assert [r.key for r in result.rows] == [1]
        assert result.rows[0].tier == Tier.HOT
        fetches = actor.tier_manager.stats.segment_fetches

        again = await actor.call({"table": "tasks", "filters": {"title": "a"}})
        assert again.count == 1
        assert actor.tier_manager.stats.segment_fetches == fetches
        assert actor.tier_manager.locate("tasks", 2) == Tier.WARM

    @pytest.mark.asyncio
    async def test_repeat_multi_column_query_stays_hot(self, actor, warm):
        await actor.call(insert("a", assignee="ralph"))
        await actor.call(insert("b", assignee="sam"))
        await actor.call(insert("c", status="done", assignee="ralph"))
        await actor.demote("tasks", 1, 3)
        query = {"table": "tasks", "filters": {"status": "pending", "assignee": "ralph"}}

        first = await actor.call(query)
        assert [r.key for r in first.rows] == [1]

        warm.available = False
        again = await actor.call(query)
        assert again.ok, again.error
        assert [r.key for r in again.rows] == [1]
        assert again.rows[0].tier == Tier.HOT

    @pytest.mark.asyncio
    async def test_non_string_filter_column(self, actor):
        await actor.call(insert("a"))

        result = await actor.call(
            {"table": "tasks", "filters": {"op": "eq", "column": ["title"], "value": "a"}}
        )

        assert result.error.code == "SCHEMA_VIOLATION"

    @pytest.mark.asyncio
    async def test_tiers_are_transparent(self, actor):
        for title in ("a", "b", "c", "d", "e"):
            await actor.call(insert(title))
        await actor.demote("tasks", 1, 5, Tier.COLD)

        result = await actor.call({"table": "tasks", "order": "title"})

        assert [r.values["title"] for r in result.rows] == ["a", "b", "c", "d", "e"]

    @pytest.mark.asyncio
    async def test_tier_unavailable(self, actor, warm):
        for title in ("a", "b", "c", "d", "e"):
            await actor.call(insert(title))
        warm.available = False

        failed = await actor.call({"table": "tasks", "filters": {"title": "a"}, "operation_id": "q1"})
        assert failed.error.code == "TIER_UNAVAILABLE"
        assert failed.error.details["tier"] == "warm"
        assert failed.operation_id == "q1"

        # Zone maps rule out the warm segments, so no warm read is needed.
        hot = await actor.call({"table": "tasks", "filters": {"title": "e"}})
        assert hot.ok and hot.count == 1

        # The write stands while eviction is deferred.
        written = await actor.call(insert("f"))
        assert written.ok
        assert actor.tier_manager.locate("tasks", 3) == Tier.HOT

    @pytest.mark.asyncio
    async def test_pipeline_single_pass(self, actor):
        await actor.call(insert("Build auth", priority="high"))
        await actor.call(insert("Write docs"))
        await actor.call(insert("Deploy", priority="high", assignee="sam"))
        executed = actor.executor.get_stats()["executed"]

        results = await actor.run_pipeline(
            [
                {"step_id": "A", "call": {"table": "tasks", "filters": {"assignee": None, "priority": "high"}}},
                {
                    "step_id": "B",
                    "call": {
                        "table": "tasks",
                        "op": "update",
                        "filters": {"id": "$A.keys"},
                        "patch": {"assignee": "ralph"},
                    },
                },
            ]
        )

        a, b = results
        assert [r.key for r in a.result.rows] == [1]
        assert [r.key for r in b.result.rows] == [1]
        assert b.result.rows[0].values["assignee"] == "ralph"
        assert actor.executor.get_stats()["executed"] == executed + 2

    @pytest.mark.asyncio
    async def test_pipeline_cycle_is_reported_per_step(self, actor):
        await actor.call(insert("a"))

        results = await actor.run_pipeline(
            [
                {"step_id": "A", "call": {"table": "tasks", "op": "delete", "filters": {"id": "$B.keys"}}},
                {"step_id": "B", "call": {"table": "tasks", "filters": {"id": "$A.keys"}}},
            ]
        )

        assert [r.step_id for r in results] == ["A", "B"]
        assert all(r.skipped for r in results)
        assert results[0].error.code == "CYCLIC_DEPENDENCY"
        assert (await actor.call({"table": "tasks"})).count == 1

    @pytest.mark.asyncio
    async def test_malformed_pipeline_step(self, actor):
        with pytest.raises(InvalidPipeline):
            await actor.run_pipeline([{"step_id": "A"}])

    @pytest.mark.asyncio
    async def test_phrases(self, actor):
        await actor.call(insert("Build auth", assignee="ralph"))

        added = await actor.call(
            Phrase(
                text="add a task",
                params={"title": "Deploy", "status": "pending", "assignee": "sam", "priority": "low"},
            )
        )
        assert added.ok and added.rows[0].key == 2

        found = await actor.call({"text": "show the latest tasks", "params": {"limit": 1}})
        assert [r.values["title"] for r in found.rows] == ["Deploy"]

        ambiguous = await actor.call(Phrase(text="show and delete tasks", operation_id="p1"))
        assert ambiguous.error.code == "AMBIGUOUS_INTENT"
        assert ambiguous.operation_id == "p1"

        unknown = await actor.call({"text": "show everything"})
        assert unknown.error.code == "UNKNOWN_TABLE"

    @pytest.mark.asyncio
    async def test_watch_with_predicate_and_cancel(self, actor):
        target = QueueTarget()
        watch = await actor.watch("tasks", None, eq("status", "complete"), target)

        await actor.call(insert("a"))
        await actor.call(insert("b", status="complete"))
        await actor.idle()
        assert [n.record.values["title"] for n in drain(target)] == ["b"]

        assert await actor.cancel_watch(watch.subscription_id) is True
        assert await actor.cancel_watch(watch.subscription_id) is False

        await actor.call(insert("c", status="complete"))
        await actor.idle()
        assert drain(target) == []

    @pytest.mark.asyncio
    async def test_watch_rejects_unknown_column(self, actor):
        await actor.call(insert("a"))
        result = await actor.watch("tasks", "update", {"owner": "ralph"}, QueueTarget())
        assert result.error.code == "SCHEMA_VIOLATION"
        assert actor.notifier.subscriptions() == []

    @pytest.mark.asyncio
    async def test_queued_message_can_be_cancelled(self, actor):
        first = actor.submit(insert("a"))
        second = actor.submit(insert("b"))

        assert second.cancel() is True
        assert second.cancel() is False

        assert (await first).ok
        with pytest.raises(OperationCancelled):
            await second
        await actor.idle()

        assert actor.get_stats()["cancelled"] == 1
        assert (await actor.call({"table": "tasks"})).count == 1

    @pytest.mark.asyncio
    async def test_started_message_cannot_be_cancelled(self, actor):
        ticket = actor.submit(insert("a"))
        await ticket
        assert ticket.started
        assert ticket.cancel() is False

    @pytest.mark.asyncio
    async def test_stopped_actor(self, data_dir):
        actor = await open_actor(actor_config(data_dir), warm=InMemorySegmentBackend(), cold=InMemorySegmentBackend())
        await actor.stop()

        result = await actor.call(insert("a"))
        assert result.error.code == "ACTOR_STOPPED"
        assert (await actor.watch("tasks", "insert", target=QueueTarget())).error.code == "ACTOR_STOPPED"
        assert actor.is_running is False

    @pytest.mark.asyncio
    async def test_stats(self, actor):
        await actor.call(insert("a"))
        await actor.call({"table": "tasks"})
        await actor.watch("tasks", target=QueueTarget())

        stats = actor.get_stats()
        assert stats["processed"] == 3
        assert stats["by_kind"] == {"call": 2, "watch": 1}
        assert stats["inbox"] == 0


class TestRestart:
    """State survives stopping and reopening an instance."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    async def open(self, data_dir, inbox):
        registry = TargetRegistry()
        registry.register("inbox", inbox)
        return await open_actor(
            actor_config(data_dir, hot_max_rows=2),
            targets=registry,
            warm=SqliteSegmentBackend(data_dir, "agent_a"),
            cold=InMemorySegmentBackend(),
            clock=FakeClock(),
        )

    @pytest.mark.asyncio
    async def test_rows_counters_and_watches_survive(self, data_dir):
        actor = await self.open(data_dir, QueueTarget())
        for title in ("a", "b", "c", "d"):
            await actor.call(insert(title))
        await actor.call({"table": "tasks", "op": "update", "filters": {"id": 4}, "patch": {"status": "done"}})
        named = await actor.watch("tasks", "insert", target="inbox")
        await actor.watch("tasks", "insert", target=QueueTarget())
        await actor.stop()

        inbox = QueueTarget()
        reopened = await self.open(data_dir, inbox)
        try:
            assert len(reopened.notifier.subscriptions()) == 2
            assert reopened.tier_manager.locate("tasks", 1) == Tier.WARM

            rows = (await reopened.call({"table": "tasks", "order": "id"})).rows
            assert [r.values["title"] for r in rows] == ["a", "b", "c", "d"]
            assert rows[3].revision == 2

            added = await reopened.call(insert("e"))
            assert added.rows[0].key == 5
            assert added.rows[0].seq == 6
            await reopened.idle()

            events = drain(inbox)
            assert [n.subscription_id for n in events] == [named.subscription_id]
            assert reopened.notifier.get_stats()["failed"] == 1
        finally:
            await reopened.stop()

    @pytest.mark.asyncio
    async def test_cancelled_watch_stays_cancelled(self, data_dir):
        actor = await self.open(data_dir, QueueTarget())
        watch = await actor.watch("tasks", None, target="inbox")
        await actor.cancel_watch(watch.subscription_id)
        await actor.stop()

        reopened = await self.open(data_dir, QueueTarget())
        try:
            assert reopened.notifier.subscriptions() == []
        finally:
            await reopened.stop()
