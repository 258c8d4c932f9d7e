"""
Dataset versions: immutable named points in the history of a dataset.

Creating a version captures dataset.next_version_num as the version
number, bumps next_version_num, freezes the schema and enqueues a
snapshot job. Items stay in place; a version sees exactly the rows with
add_vn <= version_num < del_vn.

Invariants:
    - Version strings of a dataset strictly increase in SemVer order
    - The version row and the dataset bump commit in one transaction
    - The snapshot job is sent only after that transaction commits

How to change safely:
    - Never reuse a version_num; items archived at it rely on it
"""

from __future__ import annotations

import logging

from ..barrier import OperationBarrier
from ..entity import (
    DatasetOpType,
    DatasetVersion,
    DatasetWithSchema,
    SnapshotStatus,
)
from ..errors import InternalError, NotFoundError
from ..jobs import JOB_TYPE_SNAPSHOT, JobBusError, JobRunMessage, MessageBus
from ..kv import ItemCounterStore
from ..repo import ListItemsParams, RepoOptions, SQLiteRepository
from ..semver import validate_next_version

logger = logging.getLogger(__name__)

VERSION_ID_EXTRA = "version_id"


class VersionService:
    def __init__(
        self,
        repo: SQLiteRepository,
        counter: ItemCounterStore,
        barrier: OperationBarrier,
        bus: MessageBus,
    ) -> None:
        self.repo = repo
        self.counter = counter
        self.barrier = barrier
        self.bus = bus

    async def create_version(self, ds: DatasetWithSchema, version: DatasetVersion) -> DatasetVersion:
        """Create a version of the dataset's current live items.

        Raises:
            InvalidParamError: If version.version is not valid SemVer2 or
                not greater than the latest version
            ConcurrentDatasetOperationsError: If the dataset moved on
                concurrently
            InternalError: If the snapshot job cannot be sent; the version
                itself is already committed then
        """
        dataset = ds.dataset
        validate_next_version(dataset.latest_version, version.version)

        version.app_id = dataset.app_id
        version.space_id = dataset.space_id
        version.dataset_id = dataset.id
        version.schema_id = ds.schema.id
        version.version_num = dataset.next_version_num
        version.dataset_brief = dataset.brief()
        version.snapshot_status = SnapshotStatus.UNSTARTED
        version.updated_by = version.updated_by or version.created_by

        async with self.barrier.hold(ds.id, DatasetOpType.CREATE_VERSION):
            async with self.repo.transaction() as tx:
                opt = RepoOptions(tx=tx)
                await self.repo.create_version(version, opt)
                await self.repo.patch_dataset(
                    dataset.id,
                    {
                        "latest_version": version.version,
                        "next_version_num": dataset.next_version_num + 1,
                        "last_operation": DatasetOpType.CREATE_VERSION,
                        "updated_by": version.created_by,
                    },
                    where={"next_version_num": dataset.next_version_num},
                    opt=opt,
                )
                if not ds.schema.immutable:
                    await self.repo.patch_schema(
                        ds.schema.id,
                        {
                            "immutable": True,
                            "update_version": ds.schema.update_version + 1,
                            "updated_by": version.created_by,
                        },
                        where={"update_version": ds.schema.update_version},
                        opt=opt,
                    )

        logger.info(
            "Created version",
            extra={
                "dataset_id": dataset.id,
                "version_id": version.id,
                "version": version.version,
                "version_num": version.version_num,
            },
        )

        msg = JobRunMessage(
            type=JOB_TYPE_SNAPSHOT,
            space_id=dataset.space_id,
            extra={VERSION_ID_EXTRA: str(version.id)},
            operator=version.created_by,
        )
        try:
            await self.bus.send(msg, key=str(version.id))
        except JobBusError as e:
            raise InternalError(f"send snapshot job of version {version.id}: {e}") from e
        return version

    async def get_version(self, version_id: int) -> DatasetVersion:
        """A version, with item_count filled in while its snapshot runs.

        Raises:
            NotFoundError: If there is no such version
        """
        version = await self.repo.get_version(version_id)
        if version is None:
            raise NotFoundError(f"version {version_id} not found")
        if version.snapshot_status != SnapshotStatus.COMPLETED:
            version.item_count = await self.get_item_count_of_version(version)
        return version

    async def list_versions(self, dataset_id: int) -> list[DatasetVersion]:
        return await self.repo.list_versions(dataset_id)

    async def get_item_count_of_version(self, version: DatasetVersion) -> int:
        """Number of items captured by a version.

        Completed snapshots store the count. Otherwise the live rows at
        version_num are counted once and the result cached.
        """
        if version.snapshot_status == SnapshotStatus.COMPLETED:
            return version.item_count

        cached = await self.counter.get_item_count_of_version(version.id)
        if cached is not None:
            return cached

        n = await self.repo.count_items(ListItemsParams.live_at(version.dataset_id, version.version_num))
        await self.counter.set_item_count_of_version(version.id, n)
        return n
