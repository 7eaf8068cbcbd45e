"""
AgentDB Server - per-instance database actor for agent data.

This package implements a single-writer database actor built on:
- An Intent Resolver that turns structured calls or classified phrases
  into canonical Operations
- A hot/warm/cold storage split with transparent promotion
- Ordered change notification to live subscribers
- Dependency-graph pipelines executed in one actor turn

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌─────────────────┐
    │   Caller    │────▶│   Intent     │────▶│    Pipeline     │
    │ (call/phrase)│    │   Resolver   │     │   Coordinator   │
    └─────────────┘     └──────────────┘     └────────┬────────┘
                                                      │
                                                      ▼
                        ┌─────────────────────────────────────────┐
                        │              Query Executor             │
                        └─────────────────────────────────────────┘
                                 │                        │
                                 ▼                        ▼
                        ┌─────────────────┐      ┌─────────────────┐
                        │  Tier Manager   │      │ Change Notifier │
                        └───┬────┬────┬───┘      └────────┬────────┘
                            ▼    ▼    ▼                   ▼
                          hot  warm  cold            subscribers
                       (SQLite)(SQLite)(S3)

    Everything above runs inside one InstanceActor, which drains its inbox
    one message at a time.

Invariants:
    - Exactly one actor owns a table's records, tier pointer and subscriptions
    - A record's revision strictly increases with every mutation
    - A record is resident in exactly one tier at a time
    - Subscribers observe matching events in commit order

How to change safely:
    - Never mutate storage outside an actor turn
    - Keep tier migrations ordered: write target, persist pointer, drop source
    - Add new operation kinds to the resolver, executor and tests together

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
