"""
Configuration management for AgentDB.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Tier thresholds are positive; the hot tier is always bounded
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
    - Keep from_env() and log_config() in sync with new fields
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class SegmentBackendKind(Enum):
    """Supported warm/cold segment backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"
    S3 = "s3"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return None
    return int(raw)


@dataclass(frozen=True)
class StorageConfig:
    """Local hot-store configuration.

    Attributes:
        data_dir: Directory for the instance SQLite files
        instance_name: Name of the instance (used in file names)
        wal_mode: SQLite WAL journal mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/agentdb"
    instance_name: str = "default"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/agentdb"),
            instance_name=os.getenv("INSTANCE_NAME", "default"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class TierConfig:
    """Hot/warm/cold tiering thresholds and backends.

    Attributes:
        hot_max_rows: Rows per table kept hot before FIFO eviction
        hot_max_size: Aggregate value bytes per table kept hot
        warm_max_rows: Rows per table kept warm before demotion to cold
        warm_backend: Backend holding warm segments
        cold_backend: Backend holding cold segments
    """

    hot_max_rows: int = 10_000
    hot_max_size: int = 64 * 1024 * 1024  # 64MB
    warm_max_rows: int = 1_000_000
    warm_backend: SegmentBackendKind = SegmentBackendKind.SQLITE
    cold_backend: SegmentBackendKind = SegmentBackendKind.S3

    @classmethod
    def from_env(cls) -> TierConfig:
        """Load configuration from environment variables."""
        return cls(
            hot_max_rows=int(os.getenv("HOT_MAX_ROWS", "10000")),
            hot_max_size=int(os.getenv("HOT_MAX_SIZE", str(64 * 1024 * 1024))),
            warm_max_rows=int(os.getenv("WARM_MAX_ROWS", "1000000")),
            warm_backend=SegmentBackendKind(os.getenv("WARM_BACKEND", "sqlite").lower()),
            cold_backend=SegmentBackendKind(os.getenv("COLD_BACKEND", "s3").lower()),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for the cold tier.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        segment_prefix: Prefix for cold segments
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
        compression: Segment compression (gzip, none)
    """

    bucket: str = "agentdb-storage"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    segment_prefix: str = "segments"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    compression: str = "gzip"

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "agentdb-storage"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            segment_prefix=os.getenv("S3_SEGMENT_PREFIX", "segments"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            compression=os.getenv("S3_COMPRESSION", "gzip"),
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda configuration for cross-instance notification delivery.

    Attributes:
        enabled: Whether the Kafka stream is used at all
        brokers: Comma-separated list of broker addresses
        topic: Topic carrying notifications between instances
        consumer_group: Consumer group of this instance's remote-watch bridge
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        sasl_mechanism: SASL authentication mechanism
        sasl_username: SASL username
        sasl_password: SASL password
        ssl_cafile: CA certificate file for SSL
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Idempotent producer (no duplicates on retry)
        auto_offset_reset: Where a new consumer group starts (earliest, latest)
    """

    enabled: bool = False
    brokers: str = "localhost:9092"
    topic: str = "agentdb-notifications"
    consumer_group: str = "agentdb-bridge"
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    ssl_cafile: str | None = None
    acks: str = "all"
    enable_idempotence: bool = True
    auto_offset_reset: str = "earliest"

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("KAFKA_ENABLED", "false"),
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic=os.getenv("KAFKA_TOPIC", "agentdb-notifications"),
            consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "agentdb-bridge"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=_env_bool("KAFKA_ENABLE_IDEMPOTENCE", "true"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
        )


@dataclass(frozen=True)
class ResolverConfig:
    """Intent resolution heuristics.

    Attributes:
        timestamp_column: Column "today"/"latest" phrases refer to
        due_column: Column "overdue" phrases compare against now
        ambiguity_margin: Confidence gap under which two kinds are ambiguous
        default_limit: Limit applied to queries that do not set one
    """

    timestamp_column: str = "created_at"
    due_column: str = "due_at"
    ambiguity_margin: float = 0.1
    default_limit: int | None = None

    @classmethod
    def from_env(cls) -> ResolverConfig:
        """Load configuration from environment variables."""
        return cls(
            timestamp_column=os.getenv("RESOLVER_TIMESTAMP_COLUMN", "created_at"),
            due_column=os.getenv("RESOLVER_DUE_COLUMN", "due_at"),
            ambiguity_margin=float(os.getenv("RESOLVER_AMBIGUITY_MARGIN", "0.1")),
            default_limit=_env_optional_int("RESOLVER_DEFAULT_LIMIT"),
        )


@dataclass(frozen=True)
class NotifierConfig:
    """Change notifier configuration.

    Attributes:
        queue_size: Per-subscriber pending delivery bound (0 = unbounded)
        webhook_timeout_seconds: Timeout for webhook delivery targets
    """

    queue_size: int = 0
    webhook_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> NotifierConfig:
        """Load configuration from environment variables."""
        return cls(
            queue_size=int(os.getenv("NOTIFIER_QUEUE_SIZE", "0")),
            webhook_timeout_seconds=float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10")),
        )


@dataclass(frozen=True)
class MaintenanceConfig:
    """Background compaction configuration.

    Attributes:
        enabled: Whether the compaction loop runs
        compaction_interval_seconds: Interval between compaction passes
    """

    enabled: bool = True
    compaction_interval_seconds: int = 3600

    @classmethod
    def from_env(cls) -> MaintenanceConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("COMPACTION_ENABLED", "true"),
            compaction_interval_seconds=int(os.getenv("COMPACTION_INTERVAL_SECONDS", "3600")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class InstanceConfig:
    """Complete instance configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: Hot-store configuration
        tiers: Tier thresholds and backends
        s3: S3 configuration (cold tier)
        kafka: Kafka configuration (cross-instance delivery)
        resolver: Intent resolution heuristics
        notifier: Change notifier configuration
        maintenance: Compaction loop configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    tiers: TierConfig = field(default_factory=TierConfig)
    s3: S3Config = field(default_factory=S3Config)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> InstanceConfig:
        """Load complete configuration from environment variables.

        Returns:
            InstanceConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        try:
            tiers = TierConfig.from_env()
        except ValueError as e:
            raise ValueError(f"Invalid tier backend: {e}. Must be one of: memory, sqlite, s3")

        config = cls(
            storage=StorageConfig.from_env(),
            tiers=tiers,
            s3=S3Config.from_env(),
            kafka=KafkaConfig.from_env(),
            resolver=ResolverConfig.from_env(),
            notifier=NotifierConfig.from_env(),
            maintenance=MaintenanceConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.tiers.hot_max_rows <= 0:
            raise ValueError("HOT_MAX_ROWS must be positive")
        if self.tiers.hot_max_size <= 0:
            raise ValueError("HOT_MAX_SIZE must be positive")
        if self.tiers.warm_max_rows <= 0:
            raise ValueError("WARM_MAX_ROWS must be positive")

        uses_s3 = SegmentBackendKind.S3 in (self.tiers.warm_backend, self.tiers.cold_backend)
        if uses_s3 and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when a tier uses the s3 backend")

        if self.kafka.enabled and not self.kafka.brokers:
            raise ValueError("KAFKA_BROKERS is required when KAFKA_ENABLED=true")

        if not 0.0 <= self.resolver.ambiguity_margin <= 1.0:
            raise ValueError("RESOLVER_AMBIGUITY_MARGIN must be between 0 and 1")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Instance configuration loaded",
            extra={
                "instance": self.storage.instance_name,
                "data_dir": self.storage.data_dir,
                "hot_max_rows": self.tiers.hot_max_rows,
                "hot_max_size": self.tiers.hot_max_size,
                "warm_backend": self.tiers.warm_backend.value,
                "cold_backend": self.tiers.cold_backend.value,
                "s3_bucket": self.s3.bucket,
                "kafka_brokers": self.kafka.brokers if self.kafka.enabled else None,
                "kafka_topic": self.kafka.topic if self.kafka.enabled else None,
                "compaction_enabled": self.maintenance.enabled,
                "log_level": self.observability.log_level,
            },
        )
