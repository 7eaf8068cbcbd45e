"""
S3 segment backend for the cold tier.

Cold segments are written to S3 as compacted JSONL objects:
    s3://<bucket>/<prefix>/instance=<name>/table=<table>/<segment_id>.jsonl.gz

Each object carries its SHA-256 checksum in the object metadata, verified
on every read.

Invariants:
    - Objects are immutable once written
    - Objects contain checksums for integrity
    - Segment objects are compressed with gzip unless configured otherwise

How to change safely:
    - Object format changes require a new file extension
    - Never modify existing objects
    - Test reads of old objects before format changes
"""

from __future__ import annotations

import gzip
import io
import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ...config import S3Config
from ...model.types import Record
from .base import BackendUnavailable, SegmentNotFound, compute_checksum, decode_rows, encode_rows

logger = logging.getLogger(__name__)


class S3SegmentBackend:
    """Stores segments as S3 objects.

    Example:
        >>> backend = S3SegmentBackend(S3Config(bucket="agentdb"), "agent_42")
        >>> await backend.put("tasks", "s1", rows)
        >>> await backend.close()
    """

    def __init__(self, s3_config: S3Config, instance_name: str = "default") -> None:
        """Initialize the backend.

        Args:
            s3_config: S3 configuration
            instance_name: Instance name, part of every object key
        """
        self.name = "s3"
        self.s3_config = s3_config
        self.instance_name = instance_name
        self.compression = s3_config.compression
        self._session = None
        self._s3_ctx = None
        self._s3_client = None
        self._uploaded_bytes = 0
        self._reads = 0

    async def _client(self) -> Any:
        """Create the S3 client on first use."""
        if self._s3_client is not None:
            return self._s3_client

        self._session = get_session()
        client_kwargs: dict[str, Any] = {"region_name": self.s3_config.region}
        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url
        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()
        return self._s3_client

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    def _prefix(self, table: str) -> str:
        return (
            f"{self.s3_config.segment_prefix}/"
            f"instance={self.instance_name}/"
            f"table={table}/"
        )

    def _build_key(self, table: str, segment_id: str) -> str:
        extension = ".jsonl.gz" if self.compression == "gzip" else ".jsonl"
        return f"{self._prefix(table)}{segment_id}{extension}"

    def _serialize(self, rows: list[Record]) -> bytes:
        content = encode_rows(rows)
        if self.compression == "gzip":
            buf = io.BytesIO()
            with gzip.GzipFile(fileobj=buf, mode="wb") as gz:
                gz.write(content)
            return buf.getvalue()
        return content

    def _deserialize(self, body: bytes) -> list[Record]:
        if self.compression == "gzip":
            try:
                body = gzip.decompress(body)
            except OSError as e:
                raise BackendUnavailable(f"Corrupt cold segment: {e}")
        return decode_rows(body)

    async def put(self, table: str, segment_id: str, rows: list[Record]) -> None:
        body = self._serialize(rows)
        key = self._build_key(table, segment_id)
        try:
            s3 = await self._client()
            await s3.put_object(
                Bucket=self.s3_config.bucket,
                Key=key,
                Body=body,
                ContentType="application/x-gzip" if self.compression == "gzip" else "application/x-ndjson",
                Metadata={"checksum": compute_checksum(body), "rows": str(len(rows))},
            )
        except (BotoCoreError, ClientError) as e:
            raise BackendUnavailable(f"Failed to upload cold segment {key}: {e}")

        self._uploaded_bytes += len(body)
        logger.info(
            "Uploaded cold segment",
            extra={"table": table, "rows": len(rows), "size_bytes": len(body), "s3_key": key},
        )

    async def get(self, table: str, segment_id: str) -> list[Record]:
        key = self._build_key(table, segment_id)
        try:
            s3 = await self._client()
            response = await s3.get_object(Bucket=self.s3_config.bucket, Key=key)
            async with response["Body"] as stream:
                body = await stream.read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise SegmentNotFound(f"Cold segment {key} not found")
            raise BackendUnavailable(f"Failed to read cold segment {key}: {e}")
        except BotoCoreError as e:
            raise BackendUnavailable(f"Failed to read cold segment {key}: {e}")

        expected = response.get("Metadata", {}).get("checksum")
        if expected and compute_checksum(body) != expected:
            raise BackendUnavailable(f"Checksum mismatch for cold segment {key}")

        self._reads += 1
        return self._deserialize(body)

    async def delete(self, table: str, segment_id: str) -> None:
        key = self._build_key(table, segment_id)
        try:
            s3 = await self._client()
            await s3.delete_object(Bucket=self.s3_config.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise BackendUnavailable(f"Failed to delete cold segment {key}: {e}")

    async def list(self, table: str) -> list[str]:
        prefix = self._prefix(table)
        segment_ids = []
        try:
            s3 = await self._client()
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.s3_config.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    filename = obj["Key"][len(prefix):]
                    segment_ids.append(filename.replace(".jsonl.gz", "").replace(".jsonl", ""))
        except (BotoCoreError, ClientError) as e:
            raise BackendUnavailable(f"Failed to list cold segments under {prefix}: {e}")
        return sorted(segment_ids)

    @property
    def stats(self) -> dict[str, Any]:
        return {"uploaded_bytes": self._uploaded_bytes, "reads": self._reads}
