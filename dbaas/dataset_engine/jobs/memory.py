"""
In-memory job bus for tests and local development.

Invariants:
    - All data is lost on process exit
    - Deliveries are yielded without holding any lock, so a handler may
      send new messages while it runs
    - A fresh subscription of a group redelivers everything the group has
      not committed, like a consumer restart
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import AsyncIterator

from .base import Delivery, JobBusConnectionError, JobRunMessage

logger = logging.getLogger(__name__)

TOPIC = "memory"


@dataclass
class _Record:
    delivery: Delivery
    deliver_at: float


class InMemoryJobBus:
    """In-memory implementation of MessageBus.

    Example:
        >>> bus = InMemoryJobBus()
        >>> await bus.connect()
        >>> await bus.send(JobRunMessage(type="dataset_snapshot_job"), key="42")
    """

    def __init__(self) -> None:
        self._records: list[_Record] = []
        self._committed: dict[str, set[int]] = defaultdict(set)
        self._connected = False
        self._new_record = asyncio.Event()
        self._closed = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        self._closed.clear()
        logger.debug("InMemoryJobBus connected")

    async def close(self) -> None:
        self._connected = False
        self._closed.set()
        self._new_record.set()
        logger.debug("InMemoryJobBus closed")

    async def send(self, msg: JobRunMessage, key: str = "", delay_ms: int = 0) -> None:
        if not self._connected:
            raise JobBusConnectionError("Not connected")
        msg = dataclasses.replace(msg, extra=dict(msg.extra))
        offset = len(self._records)
        delivery = Delivery(message=msg, key=key, partition=0, offset=offset, topic=TOPIC)
        self._records.append(_Record(delivery=delivery, deliver_at=time.monotonic() + delay_ms / 1000))
        self._new_record.set()
        logger.debug(
            "Job message sent",
            extra={"type": msg.type, "key": key, "offset": offset, "delay_ms": delay_ms},
        )

    async def subscribe(self, group_id: str) -> AsyncIterator[Delivery]:
        if not self._connected:
            raise JobBusConnectionError("Not connected")

        delivered: set[int] = set()
        while self._connected:
            now = time.monotonic()
            committed = self._committed[group_id]
            ready = [
                r
                for r in self._records
                if r.deliver_at <= now
                and r.delivery.offset not in delivered
                and r.delivery.offset not in committed
            ]
            ready.sort(key=lambda r: (r.deliver_at, r.delivery.offset))

            for record in ready:
                delivered.add(record.delivery.offset)
                yield dataclasses.replace(record.delivery, group_id=group_id)
                if not self._connected:
                    return

            if ready:
                continue

            waits = [
                r.deliver_at - now
                for r in self._records
                if r.delivery.offset not in delivered and r.delivery.offset not in committed
            ]
            timeout = min([1.0, *waits])
            self._new_record.clear()
            try:
                await asyncio.wait_for(self._new_record.wait(), timeout=max(timeout, 0.001))
            except asyncio.TimeoutError:
                pass

    async def commit(self, delivery: Delivery) -> None:
        self._committed[delivery.group_id].add(delivery.offset)

    # Testing helpers

    def sent_messages(self, msg_type: str | None = None) -> list[JobRunMessage]:
        """All messages sent so far, optionally of one type."""
        return [
            r.delivery.message
            for r in self._records
            if msg_type is None or r.delivery.message.type == msg_type
        ]

    def sent_deliveries(self) -> list[Delivery]:
        return [r.delivery for r in self._records]

    async def wait_for_messages(self, count: int, timeout: float = 5.0) -> bool:
        """Wait until at least count messages were sent."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if len(self._records) >= count:
                return True
            await asyncio.sleep(0.05)
        return False
