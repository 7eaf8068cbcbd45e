"""
Shared test helpers.
"""

import asyncio

from dbaas.agentdb_server.config import InstanceConfig, SegmentBackendKind, StorageConfig, TierConfig
from dbaas.agentdb_server.model.schema import TableSchema
from dbaas.agentdb_server.model.types import Record, Tier


class FakeClock:
    """Millisecond clock that advances by a fixed step on every read."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 1000) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now


class StaticCatalog:
    """Fixed set of table schemas, standing in for the executor's catalog."""

    def __init__(self, schemas):
        self._schemas = {s.table: s for s in schemas}

    @classmethod
    def tasks(cls):
        return cls(
            [
                TableSchema.infer(
                    "tasks",
                    {
                        "title": "Build auth",
                        "status": "pending",
                        "priority": 1,
                        "assignee": "ralph",
                        "due_at": 1_700_000_000_000,
                    },
                ),
                TableSchema.infer("notes", {"body": "hello"}),
            ]
        )

    def tables(self):
        return sorted(self._schemas)

    def schema(self, table):
        return self._schemas.get(table)


def make_record(key, seq=None, table="tasks", revision=1, deleted=False, tier=Tier.HOT, **values):
    """Build a record with sensible defaults."""
    return Record(
        table=table,
        key=key,
        values=values or {"title": f"task {key}"},
        revision=revision,
        seq=seq if seq is not None else key,
        tier=tier,
        deleted=deleted,
        created_at=1000 * key,
        updated_at=1000 * key,
    )


async def wait_for(condition, timeout=2.0):
    """Poll until condition() is true or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


def actor_config(data_dir, instance_name="agent_a", hot_max_rows=1000):
    """Instance configuration with in-memory warm and cold tiers."""
    return InstanceConfig(
        storage=StorageConfig(data_dir=data_dir, instance_name=instance_name, wal_mode=False),
        tiers=TierConfig(
            hot_max_rows=hot_max_rows,
            warm_backend=SegmentBackendKind.MEMORY,
            cold_backend=SegmentBackendKind.MEMORY,
        ),
    )
