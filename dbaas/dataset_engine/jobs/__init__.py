"""
Background job messaging.

Backends:
    - InMemoryJobBus: tests and single-process development
    - KafkaJobBus: production (Kafka, Redpanda, MSK)
"""

from .base import (
    JOB_TYPE_IO,
    JOB_TYPE_SNAPSHOT,
    Delivery,
    JobBusConnectionError,
    JobBusError,
    JobRunMessage,
    MessageBus,
    MessageDecodeError,
    create_job_bus,
)
from .memory import InMemoryJobBus
from .worker import JobHandler, JobWorker

__all__ = [
    # Messages
    "Delivery",
    "JOB_TYPE_IO",
    "JOB_TYPE_SNAPSHOT",
    "JobRunMessage",
    # Protocol
    "MessageBus",
    "create_job_bus",
    # Errors
    "JobBusConnectionError",
    "JobBusError",
    "MessageDecodeError",
    # Implementations
    "InMemoryJobBus",
    # Worker
    "JobHandler",
    "JobWorker",
]
