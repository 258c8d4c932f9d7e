"""
Kafka/Redpanda job bus.

Job-run messages go to a single topic, keyed so that all runs of one job
share a partition. Delayed delivery is carried in a "deliver_at_ms"
header; the consumer holds a delayed record until it is due before
yielding it, which also holds back the records behind it on the same
partition.

Invariants:
    - Producer uses acks=all and idempotence by default
    - Consumer commits manually, after the handler finished
    - Undecodable records are skipped and committed, never redelivered forever

How to change safely:
    - Keep the header name stable; in-flight messages carry it
    - Test delayed delivery against a real broker before deploying
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from ..config import KafkaConfig
from .base import (
    Delivery,
    JobBusConnectionError,
    JobBusError,
    JobRunMessage,
    MessageDecodeError,
)

logger = logging.getLogger(__name__)

DELIVER_AT_HEADER = "deliver_at_ms"


def _security_options(config: KafkaConfig) -> dict[str, Any]:
    options: dict[str, Any] = {}
    if config.security_protocol != "PLAINTEXT":
        options["security_protocol"] = config.security_protocol
    if config.sasl_mechanism:
        options["sasl_mechanism"] = config.sasl_mechanism
        options["sasl_plain_username"] = config.sasl_username
        options["sasl_plain_password"] = config.sasl_password
    if config.ssl_cafile:
        options["ssl_cafile"] = config.ssl_cafile
    return options


class KafkaJobBus:
    """Kafka implementation of MessageBus.

    Example:
        >>> bus = KafkaJobBus(KafkaConfig(brokers="localhost:9092"))
        >>> await bus.connect()
        >>> await bus.send(JobRunMessage(type="dataset_snapshot_job"), key="42")
    """

    def __init__(self, config: KafkaConfig) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            JobBusConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            producer_config = {
                "bootstrap_servers": self.config.brokers,
                "acks": self.config.acks,
                "enable_idempotence": self.config.enable_idempotence,
                "linger_ms": 5,
                "request_timeout_ms": 30000,
                "retry_backoff_ms": 100,
                **_security_options(self.config),
            }
            self._producer = AIOKafkaProducer(**producer_config)
            await self._producer.start()
            self._connected = True
            logger.info(
                "Connected to Kafka",
                extra={"brokers": self.config.brokers, "topic": self.config.job_topic},
            )
        except KafkaError as e:
            self._connected = False
            raise JobBusConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        if self._consumer:
            try:
                await self._consumer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing consumer: {e}")
            self._consumer = None

        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def send(self, msg: JobRunMessage, key: str = "", delay_ms: int = 0) -> None:
        if not self._producer:
            raise JobBusConnectionError("Not connected to Kafka")

        headers = None
        if delay_ms > 0:
            deliver_at = int(time.time() * 1000) + delay_ms
            headers = [(DELIVER_AT_HEADER, str(deliver_at).encode("ascii"))]

        try:
            meta = await self._producer.send_and_wait(
                self.config.job_topic,
                value=msg.to_bytes(),
                key=key.encode("utf-8") if key else None,
                headers=headers,
            )
        except KafkaTimeoutError as e:
            raise JobBusError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise JobBusConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise JobBusError(f"Kafka send failed: {e}") from e

        logger.debug(
            "Job message sent",
            extra={
                "type": msg.type,
                "key": key,
                "partition": meta.partition,
                "offset": meta.offset,
                "delay_ms": delay_ms,
            },
        )

    async def subscribe(self, group_id: str) -> AsyncIterator[Delivery]:
        try:
            if self._consumer:
                await self._consumer.stop()

            self._consumer = AIOKafkaConsumer(
                self.config.job_topic,
                bootstrap_servers=self.config.brokers,
                group_id=group_id,
                auto_offset_reset=self.config.auto_offset_reset,
                enable_auto_commit=False,
                max_poll_records=50,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000,
                **_security_options(self.config),
            )
            await self._consumer.start()
            logger.info(
                "Subscribed to Kafka topic",
                extra={"topic": self.config.job_topic, "group_id": group_id},
            )

            async for record in self._consumer:
                headers = dict(record.headers) if record.headers else {}
                key = record.key.decode("utf-8") if record.key else ""
                try:
                    message = JobRunMessage.from_bytes(record.value)
                except MessageDecodeError as e:
                    logger.error(
                        f"Skipping undecodable job message: {e}",
                        extra={"partition": record.partition, "offset": record.offset},
                    )
                    await self._commit_position(record.topic, record.partition, record.offset)
                    continue

                raw_deliver_at = headers.get(DELIVER_AT_HEADER)
                if raw_deliver_at:
                    wait_ms = int(raw_deliver_at.decode("ascii")) - int(time.time() * 1000)
                    if wait_ms > 0:
                        await asyncio.sleep(wait_ms / 1000)

                yield Delivery(
                    message=message,
                    key=key,
                    partition=record.partition,
                    offset=record.offset,
                    topic=record.topic,
                    group_id=group_id,
                )

        except KafkaConnectionError as e:
            raise JobBusConnectionError(f"Failed to subscribe: {e}") from e
        except KafkaError as e:
            raise JobBusError(f"Consumer error: {e}") from e

    async def commit(self, delivery: Delivery) -> None:
        """Commit a delivery's offset.

        Raises:
            JobBusError: If no consumer is active or the commit fails
        """
        await self._commit_position(delivery.topic, delivery.partition, delivery.offset)

    async def _commit_position(self, topic: str, partition: int, offset: int) -> None:
        if not self._consumer:
            raise JobBusError("No active consumer to commit")
        try:
            # Commit the next offset to consume
            await self._consumer.commit(
                {TopicPartition(topic, partition): OffsetAndMetadata(offset + 1, "")}
            )
        except KafkaError as e:
            raise JobBusError(f"Failed to commit: {e}") from e

        logger.debug(
            "Committed offset",
            extra={"topic": topic, "partition": partition, "offset": offset},
        )
