"""
Job-run messages and the MessageBus protocol that carries them.

Background work (snapshot building, IO jobs) is triggered by job-run
messages. Producers send a message keyed by the entity it concerns so all
runs of one job land in one partition; consumers receive at-least-once
and commit after handling.

Invariants:
    - extra is a flat str -> str mapping
    - A delivery that is not committed is redelivered after restart
    - A delayed message is never delivered before its deliver-at time

How to change safely:
    - Add new message types with new handlers; never reuse a type name
    - Protocol changes require updating all implementations
"""

from __future__ import annotations

import json
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import EngineConfig

JOB_TYPE_SNAPSHOT = "dataset_snapshot_job"
JOB_TYPE_IO = "dataset_io_job"


class JobBusError(Exception):
    """Base exception for job bus operations."""


class JobBusConnectionError(JobBusError):
    """Connection to the job bus failed."""


class MessageDecodeError(JobBusError):
    """A message could not be decoded."""


@dataclass
class JobRunMessage:
    """One request to run (or resume) a background job.

    Attributes:
        type: Handler selector, e.g. "dataset_snapshot_job"
        space_id: Tenant shard key
        job_id: IO job id, if the message concerns one
        run_id: Free-form run identifier
        extra: String parameters (snapshot: version_id, retry_times)
        operator: User who triggered the job
    """

    type: str
    space_id: int = 0
    job_id: int | None = None
    run_id: int | None = None
    extra: dict[str, str] = field(default_factory=dict)
    operator: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "space_id": self.space_id,
            "job_id": self.job_id,
            "run_id": self.run_id,
            "extra": dict(self.extra),
            "operator": self.operator,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> JobRunMessage:
        """Decode a message.

        Raises:
            MessageDecodeError: If raw is not a valid message
        """
        try:
            data = json.loads(raw.decode("utf-8"))
            return cls(
                type=data["type"],
                space_id=int(data.get("space_id") or 0),
                job_id=data.get("job_id"),
                run_id=data.get("run_id"),
                extra={str(k): str(v) for k, v in (data.get("extra") or {}).items()},
                operator=data.get("operator") or "",
            )
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise MessageDecodeError(f"Failed to decode job message: {e}") from e

    def int_extra(self, name: str, default: int = 0) -> int:
        raw = self.extra.get(name)
        if raw is None or raw == "":
            return default
        return int(raw)


@dataclass
class Delivery:
    """A received message plus what the bus needs to commit it.

    Attributes:
        message: The decoded message
        key: Partition key it was sent with
        partition: Partition it was read from
        offset: Offset within the partition
        topic: Topic it was read from
        group_id: Consumer group it was delivered to
    """

    message: JobRunMessage
    key: str = ""
    partition: int = 0
    offset: int = 0
    topic: str = ""
    group_id: str = ""

    def __str__(self) -> str:
        return f"Delivery(type={self.message.type}, key={self.key}, pos={self.topic}:{self.partition}:{self.offset})"


@runtime_checkable
class MessageBus(Protocol):
    """Protocol for job-run message buses.

    Example:
        >>> await bus.send(msg, key=str(version_id), delay_ms=10_000)
        >>> async for delivery in bus.subscribe("dataset-job-worker"):
        ...     await handle(delivery.message)
        ...     await bus.commit(delivery)
    """

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def send(self, msg: JobRunMessage, key: str = "", delay_ms: int = 0) -> None:
        """Publish a message, optionally not to be delivered before delay_ms.

        Raises:
            JobBusError: If the message could not be published
        """
        ...

    @abstractmethod
    def subscribe(self, group_id: str) -> AsyncIterator[Delivery]:
        """Yield deliveries for a consumer group until the bus closes."""
        ...

    @abstractmethod
    async def commit(self, delivery: Delivery) -> None:
        """Acknowledge a delivery so it is not redelivered."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...


def create_job_bus(config: "EngineConfig") -> MessageBus:
    """Factory function to create a job bus from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import JobBusBackend

    if config.job_bus_backend == JobBusBackend.MEMORY:
        from .memory import InMemoryJobBus

        return InMemoryJobBus()
    elif config.job_bus_backend == JobBusBackend.KAFKA:
        from .kafka import KafkaJobBus

        return KafkaJobBus(config.kafka)
    else:
        raise ValueError(f"Unsupported job bus backend: {config.job_bus_backend}")
