"""
Unit tests for tier pointers and segment zone maps.
"""

from dbaas.agentdb_server.model.predicate import and_, eq, gt
from dbaas.agentdb_server.model.types import BlobRef, Tier
from dbaas.agentdb_server.storage.tier_pointer import (
    EXHAUSTED_LIMIT,
    ZONE_VALUES_LIMIT,
    SegmentRef,
    TierPointer,
    ZoneSummary,
    predicate_key,
)
from tests.helpers import make_record


class TestZoneSummary:
    """Tests for ZoneSummary."""

    def test_min_max_and_values(self):
        zone = ZoneSummary()
        for value in (5, 1, 9, 5):
            zone.add(value)
        assert zone.min == 1
        assert zone.max == 9
        assert zone.values == [5, 1, 9]
        assert zone.count == 4
        assert not zone.has_null

    def test_too_many_values_keeps_range(self):
        zone = ZoneSummary()
        for value in range(ZONE_VALUES_LIMIT + 5):
            zone.add(value)
        assert zone.values is None
        assert zone.may_contain(10)
        assert not zone.may_contain(ZONE_VALUES_LIMIT + 100)

    def test_mixed_kinds_disable_range(self):
        zone = ZoneSummary()
        zone.add(1)
        zone.add("one")
        assert zone.min is None
        assert zone.may_contain("one")
        assert not zone.may_contain("two")

    def test_json_values_disable_pruning(self):
        zone = ZoneSummary()
        zone.add({"a": 1})
        assert zone.values is None
        assert zone.may_contain("anything")

    def test_null_tracking(self):
        zone = ZoneSummary()
        zone.add("x")
        assert not zone.may_contain(None)
        zone.add(None)
        assert zone.may_contain(None)

    def test_round_trip(self):
        zone = ZoneSummary()
        zone.add(BlobRef("blob://a"))
        zone.add(None)
        restored = ZoneSummary.from_dict(zone.to_dict())
        assert restored.values == [BlobRef("blob://a")]
        assert restored.has_null


class TestSegmentRef:
    """Tests for SegmentRef."""

    def test_for_rows(self):
        rows = [
            make_record(1, seq=4, status="pending"),
            make_record(2, seq=7, status="blocked", deleted=True),
        ]
        segment = SegmentRef.for_rows(Tier.WARM, rows)
        assert (segment.lo, segment.hi) == (4, 7)
        assert segment.row_count == 2
        assert segment.keys == {1: 4, 2: 7}
        assert segment.tombstones == 1
        assert segment.size_bytes == sum(r.size for r in rows)

    def test_overlaps(self):
        segment = SegmentRef.for_rows(Tier.WARM, [make_record(1, seq=10), make_record(2, seq=20)])
        assert segment.overlaps(15, 30)
        assert segment.overlaps(0, 10)
        assert not segment.overlaps(21, 40)

    def test_might_match(self):
        segment = SegmentRef.for_rows(Tier.WARM, [make_record(1, priority=1), make_record(2, priority=3)])
        assert segment.might_match(None)
        assert segment.might_match(eq("priority", 3))
        assert not segment.might_match(gt("priority", 3))

    def test_round_trip(self):
        segment = SegmentRef.for_rows(Tier.COLD, [make_record(3, status="pending")])
        restored = SegmentRef.from_dict(segment.to_dict())
        assert restored.keys == {3: 3}
        assert restored.tier == Tier.COLD
        assert restored.might_match(eq("status", "pending"))
        assert not restored.might_match(eq("status", "complete"))

    def test_exhausted_predicates(self):
        segment = SegmentRef.for_rows(
            Tier.WARM, [make_record(1, status="pending", assignee="sam")]
        )
        predicate = and_(eq("status", "pending"), eq("assignee", "sam"))
        assert segment.might_match(predicate)

        segment.mark_exhausted([predicate_key(predicate)])
        assert not segment.might_match(predicate)
        assert segment.might_match(eq("status", "pending"))

        restored = SegmentRef.from_dict(segment.to_dict())
        assert not restored.might_match(predicate)

    def test_exhausted_list_is_bounded(self):
        segment = SegmentRef.for_rows(Tier.WARM, [make_record(1, priority=1)])
        segment.mark_exhausted(predicate_key(eq("priority", n)) for n in range(EXHAUSTED_LIMIT + 4))
        assert len(segment.exhausted) == EXHAUSTED_LIMIT
        assert predicate_key(eq("priority", 0)) not in segment.exhausted
        assert predicate_key(eq("priority", EXHAUSTED_LIMIT + 3)) in segment.exhausted


class TestTierPointer:
    """Tests for TierPointer."""

    def _pointer(self):
        pointer = TierPointer("tasks", hot_max_rows=10, hot_max_size=1000)
        pointer.add(SegmentRef.for_rows(Tier.COLD, [make_record(1), make_record(2)]))
        pointer.add(SegmentRef.for_rows(Tier.WARM, [make_record(5), make_record(6), make_record(7)]))
        return pointer

    def test_lookup(self):
        pointer = self._pointer()
        assert pointer.segment_for_key(6).tier == Tier.WARM
        assert pointer.segment_for_key(2).tier == Tier.COLD
        assert pointer.segment_for_key(4) is None

    def test_rows_per_tier(self):
        pointer = self._pointer()
        assert pointer.rows_in(Tier.WARM) == 3
        assert pointer.rows_in(Tier.COLD) == 2
        assert len(pointer.segments_in(Tier.WARM)) == 1

    def test_replace_keeps_seq_order(self):
        pointer = self._pointer()
        warm = pointer.segments_in(Tier.WARM)[0]
        first = SegmentRef.for_rows(Tier.WARM, [make_record(5)])
        second = SegmentRef.for_rows(Tier.WARM, [make_record(7)])
        pointer.replace(warm, [second, first])
        assert [s.lo for s in pointer.segments] == [1, 5, 7]
        assert pointer.segment_for_key(6) is None

    def test_copy_is_independent(self):
        pointer = self._pointer()
        snapshot = pointer.copy()
        pointer.replace(pointer.segments[0], [])
        assert len(snapshot.segments) == 2
        assert snapshot.segment_for_key(1) is not None
