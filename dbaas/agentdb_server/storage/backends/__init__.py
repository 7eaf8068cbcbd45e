"""
Warm/cold segment backends.

Backends:
- InMemorySegmentBackend (testing)
- SqliteSegmentBackend (local disk, default warm tier)
- S3SegmentBackend (object storage, default cold tier)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import BackendUnavailable, SegmentBackend, SegmentNotFound
from .memory import InMemorySegmentBackend
from .sqlite import SqliteSegmentBackend

if TYPE_CHECKING:
    from ...config import InstanceConfig, SegmentBackendKind

__all__ = [
    "SegmentBackend",
    "BackendUnavailable",
    "SegmentNotFound",
    "InMemorySegmentBackend",
    "SqliteSegmentBackend",
    "create_segment_backend",
]


def create_segment_backend(kind: SegmentBackendKind, config: InstanceConfig) -> SegmentBackend:
    """Factory function to create a segment backend from configuration.

    Raises:
        ValueError: If the backend kind is not supported
    """
    from ...config import SegmentBackendKind

    if kind == SegmentBackendKind.MEMORY:
        return InMemorySegmentBackend()
    if kind == SegmentBackendKind.SQLITE:
        return SqliteSegmentBackend(
            config.storage.data_dir,
            config.storage.instance_name,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
    if kind == SegmentBackendKind.S3:
        from .s3 import S3SegmentBackend

        return S3SegmentBackend(config.s3, config.storage.instance_name)
    raise ValueError(f"Unsupported segment backend: {kind}")
