"""
Tiered storage for AgentDB.

- HotStore: per-instance SQLite file holding hot rows and all persisted state
- TierPointer: per-table index of warm/cold segments
- TierManager: eviction, promotion and demotion between tiers
- backends: warm/cold segment stores
"""

from .hot_store import HotStore, StoredSubscription, TableCounters
from .tier_manager import TierManager, TierStats
from .tier_pointer import SegmentRef, TierPointer, ZoneSummary

__all__ = [
    "HotStore",
    "StoredSubscription",
    "TableCounters",
    "TierManager",
    "TierStats",
    "SegmentRef",
    "TierPointer",
    "ZoneSummary",
]
