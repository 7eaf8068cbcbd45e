"""
Tier pointer metadata.

The TierPointer records, per table, which warm/cold segments exist, which
seq range and keys each one holds, and the thresholds that trigger
migration out of the hot tier. Rows not listed in any segment are hot.

Each segment carries a zone map (per-column min/max and a bounded set of
distinct values) so a promotion read can skip segments that cannot match
a predicate without fetching them.

Each segment also remembers the predicates a promotion read already found
no live match for, so a repeated query skips it without a fetch.

Invariants:
    - A key appears in at most one segment
    - Segments are immutable; changing one means writing a new segment
      and swapping the pointer entry
    - An exhausted predicate key stays valid for every subset of the
      segment's rows, so replacement segments inherit the list
    - Only the TierManager mutates a TierPointer

How to change safely:
    - Keep to_dict()/from_dict() backward compatible; pointers are persisted
    - Raising ZONE_VALUES_LIMIT is safe; lowering it only loses pruning
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ..model.predicate import Predicate, _comparable, _equal
from ..model.types import PSEUDO_COLUMNS, BlobRef, Record, Tier, decode_value, encode_value

# Distinct values tracked per column before falling back to min/max only.
ZONE_VALUES_LIMIT = 32

# Predicates remembered per segment as having no live match left.
EXHAUSTED_LIMIT = 16


@dataclass
class ZoneSummary:
    """Summary of one column over the rows of a segment.

    Attributes:
        min: Smallest value (numbers or strings only)
        max: Largest value (numbers or strings only)
        values: Distinct non-null values, or None when there were too many
        has_null: Whether any row holds None (or lacks the column)
        count: Number of non-null values seen
    """

    min: Any = None
    max: Any = None
    values: list[Any] | None = field(default_factory=list)
    has_null: bool = False
    count: int = 0
    _mixed: bool = False

    @property
    def has_values(self) -> bool:
        return self.count > 0

    def add(self, value: Any) -> None:
        if value is None:
            self.has_null = True
            return
        self.count += 1
        if isinstance(value, (dict, list)):
            self.values = None
            self._mixed = True
            self.min = self.max = None
            return
        if self.values is not None and not any(_equal(v, value) for v in self.values):
            if len(self.values) >= ZONE_VALUES_LIMIT:
                self.values = None
            else:
                self.values.append(value)
        if self._mixed or isinstance(value, (bool, BlobRef)):
            self._mixed = True
            self.min = self.max = None
            return
        if self.min is None:
            self.min = self.max = value
        elif _comparable(self.min, value):
            self.min = min(self.min, value)
            self.max = max(self.max, value)
        else:
            self._mixed = True
            self.min = self.max = None

    def may_contain(self, value: Any) -> bool:
        if value is None:
            return self.has_null
        if self.values is not None:
            return any(_equal(v, value) for v in self.values)
        if self.min is not None and self.max is not None and _comparable(self.min, value):
            return self.min <= value <= self.max
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "min": self.min,
            "max": self.max,
            "values": [encode_value(v) for v in self.values] if self.values is not None else None,
            "has_null": self.has_null,
            "count": self.count,
            "mixed": self._mixed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ZoneSummary:
        values = data.get("values")
        return cls(
            min=data.get("min"),
            max=data.get("max"),
            values=[decode_value(v) for v in values] if values is not None else None,
            has_null=data.get("has_null", False),
            count=data.get("count", 0),
            _mixed=data.get("mixed", False),
        )


def build_zone(rows: Iterable[Record]) -> dict[str, ZoneSummary]:
    """Build the zone map of a set of rows, including pseudo-columns."""
    rows = list(rows)
    columns: set[str] = set(PSEUDO_COLUMNS)
    for row in rows:
        columns.update(row.values)
    zone = {c: ZoneSummary() for c in columns}
    for row in rows:
        for column, summary in zone.items():
            summary.add(row.get(column))
    return zone


def predicate_key(predicate: Predicate | None) -> str:
    """Stable key of a predicate, used to remember exhausted segments."""
    if predicate is None:
        return "*"
    return json.dumps(predicate.to_dict(), sort_keys=True, default=str)


def new_segment_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class SegmentRef:
    """One immutable warm/cold segment.

    Attributes:
        segment_id: Unique id of the stored object
        tier: Tier holding the segment (warm or cold)
        lo: Lowest seq of any row in the segment
        hi: Highest seq of any row in the segment
        row_count: Rows stored
        size_bytes: Sum of the rows' value sizes
        keys: Primary key to seq of each row
        zone: Column zone map
        tombstones: Deleted rows still held, dropped by compaction
        exhausted: Keys of predicates known to match no live row of the segment
    """

    segment_id: str
    tier: Tier
    lo: int
    hi: int
    row_count: int
    size_bytes: int
    keys: dict[int, int] = field(default_factory=dict)
    zone: dict[str, ZoneSummary] = field(default_factory=dict)
    tombstones: int = 0
    exhausted: list[str] = field(default_factory=list)

    @classmethod
    def for_rows(cls, tier: Tier, rows: list[Record]) -> SegmentRef:
        seqs = [r.seq for r in rows]
        return cls(
            segment_id=new_segment_id(),
            tier=tier,
            lo=min(seqs),
            hi=max(seqs),
            row_count=len(rows),
            size_bytes=sum(r.size for r in rows),
            keys={r.key: r.seq for r in rows},
            zone=build_zone(rows),
            tombstones=sum(1 for r in rows if r.deleted),
        )

    def mark_exhausted(self, keys: Iterable[str]) -> None:
        for key in keys:
            if key not in self.exhausted:
                self.exhausted.append(key)
        del self.exhausted[:-EXHAUSTED_LIMIT]

    def overlaps(self, lo: int, hi: int) -> bool:
        return self.lo <= hi and lo <= self.hi

    def might_match(self, predicate: Predicate | None) -> bool:
        if predicate_key(predicate) in self.exhausted:
            return False
        if predicate is None:
            return True
        return predicate.might_match(self.zone)

    def to_dict(self) -> dict[str, Any]:
        return {
            "segment_id": self.segment_id,
            "tier": self.tier.value,
            "lo": self.lo,
            "hi": self.hi,
            "row_count": self.row_count,
            "size_bytes": self.size_bytes,
            "keys": {str(k): v for k, v in self.keys.items()},
            "zone": {c: z.to_dict() for c, z in self.zone.items()},
            "tombstones": self.tombstones,
            "exhausted": list(self.exhausted),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SegmentRef:
        return cls(
            segment_id=data["segment_id"],
            tier=Tier(data["tier"]),
            lo=data["lo"],
            hi=data["hi"],
            row_count=data["row_count"],
            size_bytes=data["size_bytes"],
            keys={int(k): v for k, v in data.get("keys", {}).items()},
            zone={c: ZoneSummary.from_dict(z) for c, z in data.get("zone", {}).items()},
            tombstones=data.get("tombstones", 0),
            exhausted=list(data.get("exhausted", [])),
        )


@dataclass
class TierPointer:
    """Per-table tier metadata.

    Attributes:
        table: Table name
        hot_max_rows: Hot rows allowed before eviction
        hot_max_size: Hot value bytes allowed before eviction
        segments: Warm/cold segments, oldest first
    """

    table: str
    hot_max_rows: int
    hot_max_size: int
    segments: list[SegmentRef] = field(default_factory=list)

    def segment_for_key(self, key: int) -> SegmentRef | None:
        for segment in self.segments:
            if key in segment.keys:
                return segment
        return None

    def segments_in(self, tier: Tier) -> list[SegmentRef]:
        return [s for s in self.segments if s.tier == tier]

    def rows_in(self, tier: Tier) -> int:
        return sum(s.row_count for s in self.segments if s.tier == tier)

    def replace(self, old: SegmentRef, new: list[SegmentRef]) -> None:
        """Swap one segment for zero or more replacements, keeping seq order."""
        self.segments = [s for s in self.segments if s.segment_id != old.segment_id]
        self.segments.extend(new)
        self.segments.sort(key=lambda s: (s.lo, s.hi))

    def add(self, segment: SegmentRef) -> None:
        self.segments.append(segment)
        self.segments.sort(key=lambda s: (s.lo, s.hi))

    def copy(self) -> TierPointer:
        return TierPointer.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "hot_max_rows": self.hot_max_rows,
            "hot_max_size": self.hot_max_size,
            "segments": [s.to_dict() for s in self.segments],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TierPointer:
        return cls(
            table=data["table"],
            hot_max_rows=data["hot_max_rows"],
            hot_max_size=data["hot_max_size"],
            segments=[SegmentRef.from_dict(s) for s in data.get("segments", [])],
        )
