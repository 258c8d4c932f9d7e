"""
Integration tests for the Engine orchestrator.

Tests cover:
- Opening the in-memory backends and building the services
- The job worker building a snapshot and running an import end to end
- Shutdown stopping the worker and closing the backends
"""

import asyncio
import json

import pytest

from dbaas.dataset_engine.config import (
    EngineConfig,
    ImportConfig,
    IOJobConfig,
    ItemStorageConfig,
    RepositoryConfig,
    SnapshotJobConfig,
)
from dbaas.dataset_engine.entity import (
    Dataset,
    DatasetIOEndpoint,
    DatasetIOFile,
    DatasetVersion,
    FieldData,
    FieldMapping,
    FieldSchema,
    IndexedItem,
    IOJob,
    Item,
    JobStatus,
    SnapshotStatus,
)
from dbaas.dataset_engine.main import Engine


async def wait_until(check, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if await check():
            return True
        await asyncio.sleep(0.02)
    return False


@pytest.fixture
def engine_config(tmp_path):
    return EngineConfig(
        repository=RepositoryConfig(sqlite_path=":memory:"),
        item_storage=ItemStorageConfig(providers=(("rds", 1 << 20),)),
        snapshot=SnapshotJobConfig(retry_interval_ms=0, page_size=2),
        importer=ImportConfig(file_root=str(tmp_path)),
        io_job=IOJobConfig(retry_interval_ms=0),
    )


class TestEngine:
    """Tests for Engine lifecycle and job processing."""

    @pytest.mark.asyncio
    async def test_open_builds_services(self, engine_config):
        engine = Engine(engine_config)
        await engine.open()
        try:
            assert engine.bus.is_connected
            assert engine.worker is not None
            assert engine.datasets is not None and engine.io_jobs is not None
        finally:
            await engine.close()
        assert not engine.bus.is_connected

    @pytest.mark.asyncio
    async def test_worker_runs_jobs(self, engine_config, tmp_path):
        engine = Engine(engine_config)
        task = asyncio.create_task(engine.start())
        try:

            async def started():
                return engine.worker is not None and engine.worker.stats()["running"]

            assert await wait_until(started)

            ds = await engine.datasets.create_dataset(
                Dataset(space_id=1, name="engine-set", created_by="alice"),
                [FieldSchema(name="input")],
            )
            rows = [IndexedItem(i, Item(data=[FieldData(name="input", content=f"row {i}")])) for i in range(5)]
            await engine.items.batch_create(ds, rows)
            version = await engine.versions.create_version(ds, DatasetVersion(version="1.0.0", created_by="alice"))

            async def snapshotted():
                v = await engine.versions.get_version(version.id)
                return v.snapshot_status == SnapshotStatus.COMPLETED

            assert await wait_until(snapshotted)
            assert (await engine.versions.get_version(version.id)).item_count == 5

            with (tmp_path / "more.jsonl").open("w") as f:
                for i in range(3):
                    f.write(json.dumps({"q": f"imported {i}"}) + "\n")
            job = await engine.io_jobs.create(
                IOJob(
                    space_id=ds.space_id,
                    dataset_id=ds.id,
                    source=DatasetIOEndpoint(file=DatasetIOFile(path="more.jsonl")),
                    field_mappings=[FieldMapping(source="q", target="input")],
                    created_by="alice",
                )
            )

            async def imported():
                return (await engine.io_jobs.get_job(job.id)).status == JobStatus.COMPLETED

            assert await wait_until(imported)
            assert await engine.kv.get_item_count(ds.id) == 8
        finally:
            engine.request_shutdown()
            await asyncio.wait_for(task, timeout=5)
            await engine.stop()

        assert engine.worker.stats()["running"] is False
