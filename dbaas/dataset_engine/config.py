"""
Configuration management for the dataset engine.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for the KV, bus and storage backends
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class JobBusBackend(Enum):
    """Supported job bus backends."""

    MEMORY = "memory"
    KAFKA = "kafka"


class KVBackend(Enum):
    """Supported backends for counters, barrier records and locks."""

    MEMORY = "memory"
    REDIS = "redis"


@dataclass(frozen=True)
class RepositoryConfig:
    """Relational store configuration.

    Attributes:
        sqlite_path: Path of the SQLite database file (":memory:" allowed)
        busy_timeout_ms: SQLite busy timeout in milliseconds
        wal_mode: SQLite WAL mode enabled
    """

    sqlite_path: str = "/var/lib/dataset-engine/dataset.db"
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> RepositoryConfig:
        """Load configuration from environment variables."""
        return cls(
            sqlite_path=os.getenv("SQLITE_PATH", "/var/lib/dataset-engine/dataset.db"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
        )


@dataclass(frozen=True)
class RedisConfig:
    """Redis configuration for counters, barrier records and locks.

    Attributes:
        url: Redis connection URL (may carry a password)
        key_prefix: Prefix prepended to every key
    """

    url: str = "redis://localhost:6379/0"
    key_prefix: str = "dataset-engine:"

    @classmethod
    def from_env(cls) -> RedisConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            key_prefix=os.getenv("REDIS_KEY_PREFIX", "dataset-engine:"),
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda job bus configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        job_topic: Topic carrying job-run messages
        consumer_group: Consumer group ID for job workers
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Enable idempotent producer
    """

    brokers: str = "localhost:9092"
    job_topic: str = "dataset-jobs"
    consumer_group: str = "dataset-job-worker"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    # Producer durability settings
    acks: str = "all"
    enable_idempotence: bool = True
    # Consumer settings
    auto_offset_reset: str = "earliest"

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            job_topic=os.getenv("KAFKA_JOB_TOPIC", "dataset-jobs"),
            consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "dataset-job-worker"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=_env_bool("KAFKA_ENABLE_IDEMPOTENCE", "true"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for item payloads.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        item_prefix: Prefix for item payload objects
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "dataset-engine"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    item_prefix: str = "items"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "dataset-engine"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            item_prefix=os.getenv("S3_ITEM_PREFIX", "items"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


def parse_providers(raw: str) -> tuple[tuple[str, int], ...]:
    """Parse "provider:max_size,..." into (provider, max_size) pairs.

    Raises:
        ValueError: If an entry is malformed
    """
    out = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, size = part.partition(":")
        if not sep or not name.strip():
            raise ValueError(f"Invalid ITEM_STORAGE_PROVIDERS entry '{part}', expected provider:max_size")
        out.append((name.strip(), int(size)))
    return tuple(out)


@dataclass(frozen=True)
class ItemStorageConfig:
    """Tiered item payload storage.

    Attributes:
        providers: (provider, max_size in bytes) pairs; the smallest
            max_size that fits an item wins
    """

    providers: tuple[tuple[str, int], ...] = (("rds", 64 * 1024), ("s3", 64 * 1024 * 1024))

    @classmethod
    def from_env(cls) -> ItemStorageConfig:
        """Load configuration from environment variables."""
        raw = os.getenv("ITEM_STORAGE_PROVIDERS", "rds:65536,s3:67108864")
        return cls(providers=parse_providers(raw))


@dataclass(frozen=True)
class BarrierConfig:
    """Operation barrier configuration.

    Attributes:
        op_ttl_ms: Lifetime of a barrier record
        initial_backoff_ms: First polling interval
        max_backoff_ms: Polling interval cap
        max_wait_ms: Total wait per conflicting operation kind
    """

    op_ttl_ms: int = 60_000
    initial_backoff_ms: int = 50
    max_backoff_ms: int = 10_000
    max_wait_ms: int = 60_000

    @classmethod
    def from_env(cls) -> BarrierConfig:
        """Load configuration from environment variables."""
        return cls(
            op_ttl_ms=int(os.getenv("BARRIER_OP_TTL_MS", "60000")),
            initial_backoff_ms=int(os.getenv("BARRIER_INITIAL_BACKOFF_MS", "50")),
            max_backoff_ms=int(os.getenv("BARRIER_MAX_BACKOFF_MS", "10000")),
            max_wait_ms=int(os.getenv("BARRIER_MAX_WAIT_MS", "60000")),
        )


@dataclass(frozen=True)
class SnapshotJobConfig:
    """Snapshot builder configuration.

    Attributes:
        max_retry_times: Redeliveries before the version is marked failed
        retry_interval_ms: Delay before a retried message is redelivered
        max_processing_time_ms: Lease of the per-version lock
        max_hold_ms: Longest time the per-version lock may be renewed
        page_size: Items copied per page
    """

    max_retry_times: int = 3
    retry_interval_ms: int = 10_000
    max_processing_time_ms: int = 60_000
    max_hold_ms: int = 20 * 60 * 1000
    page_size: int = 50

    @classmethod
    def from_env(cls) -> SnapshotJobConfig:
        """Load configuration from environment variables."""
        return cls(
            max_retry_times=int(os.getenv("SNAPSHOT_MAX_RETRY_TIMES", "3")),
            retry_interval_ms=int(os.getenv("SNAPSHOT_RETRY_INTERVAL_MS", "10000")),
            max_processing_time_ms=int(os.getenv("SNAPSHOT_MAX_PROCESSING_TIME_MS", "60000")),
            max_hold_ms=int(os.getenv("SNAPSHOT_MAX_HOLD_MS", str(20 * 60 * 1000))),
            page_size=int(os.getenv("SNAPSHOT_PAGE_SIZE", "50")),
        )


@dataclass(frozen=True)
class ImportConfig:
    """File import pipeline configuration.

    Attributes:
        bulk_size: Records buffered before a flush
        max_error_details: Details kept per error kind
        file_root: Root directory of the local file provider
    """

    bulk_size: int = 100
    max_error_details: int = 10
    file_root: str = "/var/lib/dataset-engine/files"

    @classmethod
    def from_env(cls) -> ImportConfig:
        """Load configuration from environment variables."""
        return cls(
            bulk_size=int(os.getenv("IMPORT_BULK_SIZE", "100")),
            max_error_details=int(os.getenv("IMPORT_MAX_ERROR_DETAILS", "10")),
            file_root=os.getenv("IMPORT_FILE_ROOT", "/var/lib/dataset-engine/files"),
        )


@dataclass(frozen=True)
class IOJobConfig:
    """IO job runner configuration.

    Attributes:
        lock_ttl_ms: Lease of the per-job lock
        lock_max_hold_ms: Longest time the per-job lock may be renewed
        retry_interval_ms: Delay before a retried job message is redelivered
    """

    lock_ttl_ms: int = 60_000
    lock_max_hold_ms: int = 30 * 60 * 1000
    retry_interval_ms: int = 10_000

    @classmethod
    def from_env(cls) -> IOJobConfig:
        """Load configuration from environment variables."""
        return cls(
            lock_ttl_ms=int(os.getenv("IO_JOB_LOCK_TTL_MS", "60000")),
            lock_max_hold_ms=int(os.getenv("IO_JOB_LOCK_MAX_HOLD_MS", str(30 * 60 * 1000))),
            retry_interval_ms=int(os.getenv("IO_JOB_RETRY_INTERVAL_MS", "10000")),
        )


@dataclass(frozen=True)
class DatasetDefaultsConfig:
    """Defaults applied to new datasets that carry no spec.

    Attributes:
        max_item_count: Item capacity (0 = unlimited)
        max_field_count: Available field limit (0 = unlimited)
        max_item_size: Payload size limit in bytes (0 = unlimited)
        edit_schema: Whether schemas stay mutable until the first version
        multi_modal: Whether image/audio/video fields are allowed
    """

    max_item_count: int = 5000
    max_field_count: int = 50
    max_item_size: int = 200 * 1024
    edit_schema: bool = True
    multi_modal: bool = False

    @classmethod
    def from_env(cls) -> DatasetDefaultsConfig:
        """Load configuration from environment variables."""
        return cls(
            max_item_count=int(os.getenv("DATASET_MAX_ITEM_COUNT", "5000")),
            max_field_count=int(os.getenv("DATASET_MAX_FIELD_COUNT", "50")),
            max_item_size=int(os.getenv("DATASET_MAX_ITEM_SIZE", str(200 * 1024))),
            edit_schema=_env_bool("DATASET_EDIT_SCHEMA", "true"),
            multi_modal=_env_bool("DATASET_MULTI_MODAL", "false"),
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


_KNOWN_PROVIDERS = {"rds", "s3", "abase"}


@dataclass
class EngineConfig:
    """Complete engine configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        job_bus_backend: Which job bus to use
        kv_backend: Which KV store to use for counters, barriers and locks
        repository: Relational store configuration
        redis: Redis configuration (if kv_backend is REDIS or abase is a provider)
        kafka: Kafka configuration (if job_bus_backend is KAFKA)
        s3: S3 configuration (if s3 is a provider)
        item_storage: Tiered payload storage
        barrier: Operation barrier
        snapshot: Snapshot builder
        importer: File import pipeline
        io_job: IO job runner
        dataset_defaults: Defaults of new datasets
        observability: Logging configuration
    """

    job_bus_backend: JobBusBackend = JobBusBackend.MEMORY
    kv_backend: KVBackend = KVBackend.MEMORY
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    s3: S3Config = field(default_factory=S3Config)
    item_storage: ItemStorageConfig = field(default_factory=ItemStorageConfig)
    barrier: BarrierConfig = field(default_factory=BarrierConfig)
    snapshot: SnapshotJobConfig = field(default_factory=SnapshotJobConfig)
    importer: ImportConfig = field(default_factory=ImportConfig)
    io_job: IOJobConfig = field(default_factory=IOJobConfig)
    dataset_defaults: DatasetDefaultsConfig = field(default_factory=DatasetDefaultsConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Returns:
            EngineConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        bus_str = os.getenv("JOB_BUS_BACKEND", "memory").lower()
        try:
            job_bus_backend = JobBusBackend(bus_str)
        except ValueError:
            raise ValueError(f"Invalid JOB_BUS_BACKEND '{bus_str}'. Must be one of: memory, kafka")

        kv_str = os.getenv("KV_BACKEND", "memory").lower()
        try:
            kv_backend = KVBackend(kv_str)
        except ValueError:
            raise ValueError(f"Invalid KV_BACKEND '{kv_str}'. Must be one of: memory, redis")

        config = cls(
            job_bus_backend=job_bus_backend,
            kv_backend=kv_backend,
            repository=RepositoryConfig.from_env(),
            redis=RedisConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            s3=S3Config.from_env(),
            item_storage=ItemStorageConfig.from_env(),
            barrier=BarrierConfig.from_env(),
            snapshot=SnapshotJobConfig.from_env(),
            importer=ImportConfig.from_env(),
            io_job=IOJobConfig.from_env(),
            dataset_defaults=DatasetDefaultsConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.job_bus_backend == JobBusBackend.KAFKA:
            if not self.kafka.brokers:
                raise ValueError("KAFKA_BROKERS is required when JOB_BUS_BACKEND=kafka")
            if not self.kafka.job_topic:
                raise ValueError("KAFKA_JOB_TOPIC is required when JOB_BUS_BACKEND=kafka")

        if self.kv_backend == KVBackend.REDIS and not self.redis.url:
            raise ValueError("REDIS_URL is required when KV_BACKEND=redis")

        if not self.item_storage.providers:
            raise ValueError("ITEM_STORAGE_PROVIDERS must name at least one provider")
        names = [name for name, _ in self.item_storage.providers]
        unknown = [n for n in names if n not in _KNOWN_PROVIDERS]
        if unknown:
            raise ValueError(f"Unknown item storage providers {unknown}. Valid: {sorted(_KNOWN_PROVIDERS)}")
        if "s3" in names and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when s3 is an item storage provider")
        if "abase" in names and not self.redis.url:
            raise ValueError("REDIS_URL is required when abase is an item storage provider")

        if self.snapshot.page_size <= 0:
            raise ValueError("SNAPSHOT_PAGE_SIZE must be positive")
        if self.importer.bulk_size <= 0:
            raise ValueError("IMPORT_BULK_SIZE must be positive")

        if self.repository.sqlite_path != ":memory:":
            parent = os.path.dirname(self.repository.sqlite_path)
            if parent and not os.path.exists(parent):
                logger.warning(
                    f"Database directory does not exist: {parent}. "
                    "It will be created on startup."
                )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "job_bus_backend": self.job_bus_backend.value,
                "kv_backend": self.kv_backend.value,
                "kafka_brokers": self.kafka.brokers
                if self.job_bus_backend == JobBusBackend.KAFKA
                else None,
                "kafka_topic": self.kafka.job_topic
                if self.job_bus_backend == JobBusBackend.KAFKA
                else None,
                "redis_configured": bool(self.redis.url) if self.kv_backend == KVBackend.REDIS else None,
                "sqlite_path": self.repository.sqlite_path,
                "item_storage": ",".join(f"{n}:{s}" for n, s in self.item_storage.providers),
                "s3_bucket": self.s3.bucket,
                "log_level": self.observability.log_level,
            },
        )
