"""
Unit tests for the operation barrier.

Tests cover:
- Exclusion table between write_item, update_schema and create_version
- Waiting until a conflicting record is released
- Timeout with ConcurrentDatasetOperationsError
- Expired records no longer block
- clear_dataset recorded as write_item
- In-memory store dropping expired and released records
"""

import asyncio

import pytest

from dbaas.dataset_engine.barrier import EXCLUSIONS, OperationBarrier
from dbaas.dataset_engine.config import BarrierConfig
from dbaas.dataset_engine.entity import DatasetOperation, DatasetOpType
from dbaas.dataset_engine.errors import ConcurrentDatasetOperationsError
from dbaas.dataset_engine.kv import InMemoryKV

DATASET_ID = 7


@pytest.fixture
def store():
    return InMemoryKV()


@pytest.fixture
def barrier(store):
    return OperationBarrier(store, BarrierConfig(initial_backoff_ms=5, max_backoff_ms=20, max_wait_ms=150))


async def outstanding(store, op_type):
    ops = await store.mget_dataset_operations(DATASET_ID, [op_type])
    return ops.get(op_type, [])


class TestExclusions:
    """Tests for the exclusion table."""

    def test_write_items_do_not_exclude_each_other(self):
        assert DatasetOpType.WRITE_ITEM not in EXCLUSIONS[DatasetOpType.WRITE_ITEM]

    def test_create_version_excludes_everything(self):
        assert set(EXCLUSIONS[DatasetOpType.CREATE_VERSION]) == {
            DatasetOpType.WRITE_ITEM,
            DatasetOpType.UPDATE_SCHEMA,
            DatasetOpType.CREATE_VERSION,
        }


class TestOperationBarrier:
    """Tests for OperationBarrier acquisition."""

    @pytest.mark.asyncio
    async def test_hold_records_and_releases(self, barrier, store):
        async with barrier.hold(DATASET_ID, DatasetOpType.WRITE_ITEM) as handle:
            ops = await outstanding(store, DatasetOpType.WRITE_ITEM)
            assert [op.id for op in ops] == [handle.op.id]
        assert await outstanding(store, DatasetOpType.WRITE_ITEM) == []

    @pytest.mark.asyncio
    async def test_concurrent_writes_allowed(self, barrier, store):
        first = await barrier.acquire(DATASET_ID, DatasetOpType.WRITE_ITEM)
        second = await barrier.acquire(DATASET_ID, DatasetOpType.WRITE_ITEM)
        assert first.op.id != second.op.id
        assert len(await outstanding(store, DatasetOpType.WRITE_ITEM)) == 2
        await first.release()
        await second.release()

    @pytest.mark.asyncio
    async def test_version_waits_for_write(self, barrier):
        write = await barrier.acquire(DATASET_ID, DatasetOpType.WRITE_ITEM)

        async def release_later():
            await asyncio.sleep(0.03)
            await write.release()

        releaser = asyncio.create_task(release_later())
        handle = await barrier.acquire(DATASET_ID, DatasetOpType.CREATE_VERSION)
        assert write._released
        await handle.release()
        await releaser

    @pytest.mark.asyncio
    async def test_timeout_raises(self, barrier, store):
        await barrier.acquire(DATASET_ID, DatasetOpType.UPDATE_SCHEMA)
        with pytest.raises(ConcurrentDatasetOperationsError):
            await barrier.acquire(DATASET_ID, DatasetOpType.WRITE_ITEM)
        # The blocked caller never inserted its own record.
        assert await outstanding(store, DatasetOpType.WRITE_ITEM) == []

    @pytest.mark.asyncio
    async def test_expired_record_ignored(self, barrier, store):
        stale = DatasetOperation(type=DatasetOpType.WRITE_ITEM, ts=0, ttl_ms=1)
        await store.add_dataset_operation(DATASET_ID, stale)
        handle = await barrier.acquire(DATASET_ID, DatasetOpType.CREATE_VERSION)
        await handle.release()

    @pytest.mark.asyncio
    async def test_other_dataset_not_blocked(self, barrier):
        await barrier.acquire(DATASET_ID, DatasetOpType.WRITE_ITEM)
        handle = await barrier.acquire(DATASET_ID + 1, DatasetOpType.CREATE_VERSION)
        await handle.release()

    @pytest.mark.asyncio
    async def test_clear_recorded_as_write(self, barrier, store):
        async with barrier.hold(DATASET_ID, DatasetOpType.CLEAR_DATASET) as handle:
            assert handle.op.type == DatasetOpType.WRITE_ITEM
            with pytest.raises(ConcurrentDatasetOperationsError):
                await barrier.acquire(DATASET_ID, DatasetOpType.UPDATE_SCHEMA)

    @pytest.mark.asyncio
    async def test_release_twice_is_noop(self, barrier, store):
        handle = await barrier.acquire(DATASET_ID, DatasetOpType.WRITE_ITEM)
        await handle.release()
        await store.add_dataset_operation(DATASET_ID, handle.op)
        await handle.release()
        assert len(await outstanding(store, DatasetOpType.WRITE_ITEM)) == 1


class TestInMemoryOperationStore:
    """Tests for barrier records in InMemoryKV."""

    @pytest.mark.asyncio
    async def test_expired_records_pruned_on_read(self, store):
        for _ in range(3):
            stale = DatasetOperation(type=DatasetOpType.WRITE_ITEM, ts=0, ttl_ms=1)
            await store.add_dataset_operation(DATASET_ID, stale)
        live = DatasetOperation(type=DatasetOpType.WRITE_ITEM)
        await store.add_dataset_operation(DATASET_ID, live)

        assert [op.id for op in await outstanding(store, DatasetOpType.WRITE_ITEM)] == [live.id]
        assert store.operation_count() == 1

    @pytest.mark.asyncio
    async def test_expired_records_pruned_on_add(self, store):
        stale = DatasetOperation(type=DatasetOpType.UPDATE_SCHEMA, ts=0, ttl_ms=1)
        await store.add_dataset_operation(DATASET_ID, stale)
        await store.add_dataset_operation(DATASET_ID, DatasetOperation(type=DatasetOpType.UPDATE_SCHEMA))
        assert store.operation_count() == 1

    @pytest.mark.asyncio
    async def test_released_records_leave_nothing(self, barrier, store):
        for _ in range(5):
            async with barrier.hold(DATASET_ID, DatasetOpType.WRITE_ITEM):
                pass
        assert store.operation_count() == 0
