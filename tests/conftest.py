"""
Shared fixtures: an in-memory engine stack.

Every backend is process-local (SQLite ":memory:", InMemoryKV,
InMemoryJobBus, InMemoryPayloadDriver) so tests need no services.
"""

import pytest
import pytest_asyncio

from dbaas.dataset_engine.barrier import OperationBarrier
from dbaas.dataset_engine.config import (
    BarrierConfig,
    DatasetDefaultsConfig,
    ImportConfig,
    IOJobConfig,
    SnapshotJobConfig,
)
from dbaas.dataset_engine.entity import Dataset, DatasetSpec, FieldSchema, Provider
from dbaas.dataset_engine.fileio import FileSystems, LocalFS
from dbaas.dataset_engine.jobs import InMemoryJobBus
from dbaas.dataset_engine.kv import InMemoryKV, Locker
from dbaas.dataset_engine.repo import SQLiteRepository, TimeOrderedIDGenerator
from dbaas.dataset_engine.service import (
    DatasetService,
    FileImporter,
    IOJobService,
    ItemService,
    SchemaService,
    SnapshotBuilder,
    VersionService,
)
from dbaas.dataset_engine.storage import InMemoryPayloadDriver, TieredPayloadStore

SPACE_ID = 100


@pytest.fixture
def id_gen():
    return TimeOrderedIDGenerator()


@pytest.fixture
def kv():
    return InMemoryKV()


@pytest_asyncio.fixture
async def bus():
    bus = InMemoryJobBus()
    await bus.connect()
    yield bus
    await bus.close()


@pytest_asyncio.fixture
async def repo(id_gen):
    repo = SQLiteRepository(":memory:", id_gen=id_gen)
    await repo.connect()
    yield repo
    await repo.close()


@pytest.fixture
def s3_driver():
    return InMemoryPayloadDriver()


@pytest.fixture
def payload_store(s3_driver):
    """Payloads up to 1 KiB stay in the row, larger ones go to "S3"."""
    return TieredPayloadStore([("rds", 1024), ("s3", 1 << 20)], {Provider.S3: s3_driver})


@pytest.fixture
def barrier(kv):
    return OperationBarrier(kv, BarrierConfig(initial_backoff_ms=5, max_backoff_ms=20, max_wait_ms=200))


@pytest.fixture
def locker(kv):
    return Locker(kv, holder="test-worker")


@pytest.fixture
def datasets(repo, kv):
    return DatasetService(repo, kv, DatasetDefaultsConfig())


@pytest.fixture
def schemas(repo, kv, barrier):
    return SchemaService(repo, kv, barrier)


@pytest.fixture
def items(repo, kv, payload_store, barrier, id_gen):
    return ItemService(repo, kv, payload_store, barrier, id_gen)


@pytest.fixture
def versions(repo, kv, barrier, bus):
    return VersionService(repo, kv, barrier, bus)


@pytest.fixture
def snapshot_config():
    return SnapshotJobConfig(max_retry_times=3, retry_interval_ms=0, page_size=3)


@pytest.fixture
def builder(repo, locker, bus, snapshot_config):
    return SnapshotBuilder(repo, locker, bus, snapshot_config)


@pytest.fixture
def file_root(tmp_path):
    root = tmp_path / "files"
    root.mkdir()
    return root


@pytest.fixture
def import_config(file_root):
    return ImportConfig(bulk_size=100, max_error_details=3, file_root=str(file_root))


@pytest.fixture
def io_jobs(repo, datasets, items, locker, bus, file_root, import_config):
    importer = FileImporter(repo, items, FileSystems({Provider.LOCAL: LocalFS(file_root)}), import_config)
    return IOJobService(repo, datasets, importer, locker, bus, IOJobConfig(retry_interval_ms=0))


@pytest.fixture
def make_dataset(datasets):
    """Create a dataset with text fields in SPACE_ID."""

    async def make(*names, max_item_count=0, repeated=False):
        ds = Dataset(space_id=SPACE_ID, name="eval-set", created_by="alice")
        ds.spec = DatasetSpec(max_item_count=max_item_count, max_field_count=50, max_item_size=200 * 1024)
        ds.features.edit_schema = True
        ds.features.repeated_data = repeated
        fields = [FieldSchema(name=n) for n in names or ("input", "output")]
        return await datasets.create_dataset(ds, fields)

    return make
