"""
Operation barrier: per-dataset exclusion of conflicting mutations.

A barrier is a short-lived DatasetOperation record, not a mutex. Before
inserting its own record an operation waits until no record of a
conflicting kind is outstanding. A crashed mutator never releases its
record; the record simply expires after its TTL.

Exclusions:
    write_item      waits for create_version, update_schema
    update_schema   waits for write_item, create_version
    create_version  waits for write_item, update_schema, create_version
    clear_dataset   is recorded as write_item

Invariants:
    - Waiting uses exponential backoff (50ms doubling, capped at 10s) with
      up to max_wait_ms of waiting for each conflicting kind
    - Every acquisition inserts a record with a fresh random id
    - Releasing twice is a no-op

Example:
    >>> async with barrier.hold(dataset_id, DatasetOpType.WRITE_ITEM):
    ...     await repo.insert_items(...)
"""

from __future__ import annotations

import asyncio
import logging

from .config import BarrierConfig
from .entity import DatasetOperation, DatasetOpType
from .errors import ConcurrentDatasetOperationsError
from .kv.base import OperationStore

logger = logging.getLogger(__name__)

EXCLUSIONS: dict[DatasetOpType, tuple[DatasetOpType, ...]] = {
    DatasetOpType.WRITE_ITEM: (DatasetOpType.CREATE_VERSION, DatasetOpType.UPDATE_SCHEMA),
    DatasetOpType.UPDATE_SCHEMA: (DatasetOpType.WRITE_ITEM, DatasetOpType.CREATE_VERSION),
    DatasetOpType.CREATE_VERSION: (
        DatasetOpType.WRITE_ITEM,
        DatasetOpType.UPDATE_SCHEMA,
        DatasetOpType.CREATE_VERSION,
    ),
}

# Kinds stored under another kind's record set.
_RECORDED_AS = {DatasetOpType.CLEAR_DATASET: DatasetOpType.WRITE_ITEM}


class BarrierHandle:
    """A held barrier. Releasing deletes the record."""

    def __init__(self, store: OperationStore, dataset_id: int, op: DatasetOperation) -> None:
        self.dataset_id = dataset_id
        self.op = op
        self._store = store
        self._released = False

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await self._store.del_dataset_operation(self.dataset_id, self.op.type, self.op.id)
        except Exception as e:
            # The record still expires after its TTL.
            logger.warning(
                f"Failed to release barrier: {e}",
                extra={"dataset_id": self.dataset_id, "op": str(self.op)},
            )

    async def __aenter__(self) -> BarrierHandle:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


class OperationBarrier:
    """Waits out conflicting operations and records the caller's own."""

    def __init__(self, store: OperationStore, config: BarrierConfig | None = None) -> None:
        self.store = store
        self.config = config or BarrierConfig()

    async def acquire(self, dataset_id: int, op_type: DatasetOpType) -> BarrierHandle:
        """Wait for conflicting kinds, then insert a record of op_type.

        Raises:
            ConcurrentDatasetOperationsError: If a conflicting kind is still
                outstanding after max_wait_ms
        """
        recorded = _RECORDED_AS.get(op_type, op_type)
        for blocker in EXCLUSIONS.get(recorded, ()):
            await self._wait_none(dataset_id, recorded, blocker)

        op = DatasetOperation(type=recorded, ttl_ms=self.config.op_ttl_ms)
        await self.store.add_dataset_operation(dataset_id, op)
        logger.debug("Barrier acquired", extra={"dataset_id": dataset_id, "op": str(op)})
        return BarrierHandle(self.store, dataset_id, op)

    def hold(self, dataset_id: int, op_type: DatasetOpType) -> "_BarrierContext":
        """Async context manager around acquire()/release()."""
        return _BarrierContext(self, dataset_id, op_type)

    async def _wait_none(self, dataset_id: int, op_type: DatasetOpType, blocker: DatasetOpType) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.max_wait_ms / 1000
        backoff_ms = self.config.initial_backoff_ms
        while True:
            ops = await self.store.mget_dataset_operations(dataset_id, [blocker])
            pending = ops.get(blocker, [])
            if not pending:
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ConcurrentDatasetOperationsError(
                    f"{op_type.value} on dataset {dataset_id} blocked by "
                    f"{blocker.value} {[str(op) for op in pending]}"
                )
            logger.debug(
                "Waiting for conflicting dataset operation",
                extra={"dataset_id": dataset_id, "op_type": op_type.value, "blocker": blocker.value},
            )
            await asyncio.sleep(min(backoff_ms / 1000, remaining))
            backoff_ms = min(backoff_ms * 2, self.config.max_backoff_ms)


class _BarrierContext:
    def __init__(self, barrier: OperationBarrier, dataset_id: int, op_type: DatasetOpType) -> None:
        self._barrier = barrier
        self._dataset_id = dataset_id
        self._op_type = op_type
        self._handle: BarrierHandle | None = None

    async def __aenter__(self) -> BarrierHandle:
        self._handle = await self._barrier.acquire(self._dataset_id, self._op_type)
        return self._handle

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._handle is not None:
            await self._handle.release()
