"""
In-memory KV store for tests and local development.

Invariants:
    - All data is lost on process exit
    - Lock keys expire on a monotonic clock, like a TTL in Redis
    - Expired barrier records are removed when their kind is next touched
    - Counter updates are atomic with respect to other coroutines
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Iterable

from ..entity import DatasetOperation, DatasetOpType, now_ms

logger = logging.getLogger(__name__)


class InMemoryKV:
    """Process-local implementation of KVStore.

    No method awaits while mutating shared state, so plain dicts are
    enough for coroutine safety.

    Example:
        >>> kv = InMemoryKV()
        >>> await kv.incr_item_count(1, 5)
        5
    """

    def __init__(self) -> None:
        self._item_counts: dict[int, int] = {}
        self._version_counts: dict[int, int] = {}
        self._ops: dict[tuple[int, DatasetOpType], dict[str, DatasetOperation]] = defaultdict(dict)
        # key -> (holder, deadline on the monotonic clock)
        self._locks: dict[str, tuple[str, float]] = {}

    async def connect(self) -> None:
        logger.debug("InMemoryKV connected")

    async def close(self) -> None:
        logger.debug("InMemoryKV closed")

    # Item counters

    async def get_item_count(self, dataset_id: int) -> int:
        return self._item_counts.get(dataset_id, 0)

    async def set_item_count(self, dataset_id: int, n: int) -> None:
        self._item_counts[dataset_id] = n

    async def incr_item_count(self, dataset_id: int, delta: int) -> int:
        n = self._item_counts.get(dataset_id, 0) + delta
        self._item_counts[dataset_id] = n
        return n

    async def mget_item_count(self, dataset_ids: Iterable[int]) -> dict[int, int]:
        return {i: self._item_counts.get(i, 0) for i in dataset_ids}

    async def get_item_count_of_version(self, version_id: int) -> int | None:
        return self._version_counts.get(version_id)

    async def set_item_count_of_version(self, version_id: int, n: int) -> None:
        self._version_counts[version_id] = n

    # Barrier records

    async def add_dataset_operation(self, dataset_id: int, op: DatasetOperation) -> None:
        self._live_ops(dataset_id, op.type, now_ms())
        self._ops[(dataset_id, op.type)][op.id] = op

    async def del_dataset_operation(self, dataset_id: int, op_type: DatasetOpType, op_id: str) -> None:
        records = self._ops.get((dataset_id, op_type))
        if records is not None:
            records.pop(op_id, None)
            if not records:
                del self._ops[(dataset_id, op_type)]

    async def mget_dataset_operations(
        self,
        dataset_id: int,
        op_types: Iterable[DatasetOpType],
    ) -> dict[DatasetOpType, list[DatasetOperation]]:
        at = now_ms()
        out: dict[DatasetOpType, list[DatasetOperation]] = {}
        for op_type in op_types:
            ops = self._live_ops(dataset_id, op_type, at)
            if ops:
                out[op_type] = ops
        return out

    def _live_ops(self, dataset_id: int, op_type: DatasetOpType, at: int) -> list[DatasetOperation]:
        """Unexpired records of one kind; expired ones are dropped, as a TTL would."""
        key = (dataset_id, op_type)
        records = self._ops.get(key)
        if not records:
            self._ops.pop(key, None)
            return []
        for op_id in [i for i, op in records.items() if op.expired(at)]:
            del records[op_id]
        if not records:
            del self._ops[key]
        return list(records.values())

    def operation_count(self) -> int:
        """Barrier records currently stored, expired ones included."""
        return sum(len(records) for records in self._ops.values())

    # Lock primitives

    def _holder(self, key: str) -> str | None:
        entry = self._locks.get(key)
        if entry is None:
            return None
        holder, deadline = entry
        if time.monotonic() >= deadline:
            del self._locks[key]
            return None
        return holder

    async def try_lock(self, key: str, holder: str, ttl_ms: int) -> bool:
        if self._holder(key) is not None:
            return False
        self._locks[key] = (holder, time.monotonic() + ttl_ms / 1000)
        return True

    async def expire(self, key: str, holder: str, ttl_ms: int) -> bool:
        if self._holder(key) != holder:
            return False
        self._locks[key] = (holder, time.monotonic() + ttl_ms / 1000)
        return True

    async def unlock(self, key: str, holder: str) -> bool:
        if self._holder(key) != holder:
            return False
        del self._locks[key]
        return True

    def lock_holder(self, key: str) -> str | None:
        """Current holder of key, for tests and debugging."""
        return self._holder(key)
