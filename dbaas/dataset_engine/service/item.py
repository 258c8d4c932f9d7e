"""
Item service: capacity-checked, barrier-guarded item writes.

Every write runs under a write_item barrier and one repository
transaction that first touches the dataset (guarded by next_version_num)
and re-reads the schema (guarded by update_version). A concurrent
create_version or update_schema therefore either waits for the write or
makes it fail with ConcurrentDatasetOperationsError.

Invariants:
    - The item counter is incremented before rows are inserted and
      refunded for every reserved slot that did not produce a new row
    - With partial_add=False a batch over capacity reserves nothing
    - New rows get add_vn = next_version_num and del_vn = None
    - Rows added at next_version_num are deleted, older rows archived

How to change safely:
    - Pass RepoOptions(tx=tx) to every repository call inside
      ``repo.transaction()``; the repository lock is not re-entrant
    - Payloads are offloaded before the transaction; never do network
      IO while holding it
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..barrier import OperationBarrier
from ..entity import (
    DatasetOpType,
    DatasetWithSchema,
    IndexedItem,
    Item,
    ItemErrorDetail,
    ItemErrorGroup,
    ItemErrorType,
)
from ..errors import (
    ConcurrentDatasetOperationsError,
    DatasetNotEditableError,
    InternalError,
    InvalidParamError,
    NotFoundError,
)
from ..kv import ItemCounterStore
from ..repo import IDGenerationError, IDGenerator, ListItemsParams, RepoOptions, SQLiteRepository
from ..storage import TieredPayloadStore
from .sanitize import sanitize_input, sanitize_output, validate_item, validate_items

logger = logging.getLogger(__name__)

EXCEED_CAPACITY_MESSAGE = "exceed dataset capacity"


@dataclass(frozen=True)
class BatchCreateOptions:
    """Options of a batch create.

    Attributes:
        partial_add: Insert as many items as capacity allows; otherwise a
            batch over capacity inserts nothing
    """

    partial_add: bool = False


@dataclass
class BatchCreateResult:
    """Outcome of a batch create.

    Attributes:
        added: Items persisted, in input order; items that hit an existing
            item_key carry the ids of the existing rows
        error_groups: Rejected items grouped by error kind
    """

    added: list[Item] = field(default_factory=list)
    error_groups: list[ItemErrorGroup] = field(default_factory=list)


class ItemService:
    """Writes and reads dataset items.

    Example:
        >>> svc = ItemService(repo, kv, payload_store, barrier, id_gen)
        >>> result = await svc.batch_create(ds, indexed, BatchCreateOptions(partial_add=True))
        >>> len(result.added)
    """

    def __init__(
        self,
        repo: SQLiteRepository,
        counter: ItemCounterStore,
        payload_store: TieredPayloadStore,
        barrier: OperationBarrier,
        id_gen: IDGenerator,
    ) -> None:
        self.repo = repo
        self.counter = counter
        self.payload_store = payload_store
        self.barrier = barrier
        self.id_gen = id_gen

    # Writes

    async def batch_create(
        self,
        ds: DatasetWithSchema,
        items: list[IndexedItem],
        opts: BatchCreateOptions = BatchCreateOptions(),
    ) -> BatchCreateResult:
        """Sanitize, validate and insert items within the dataset capacity.

        Raises:
            DatasetNotEditableError: If the dataset is deleted or expired
            ConcurrentDatasetOperationsError: If the dataset or schema
                changed concurrently
            InternalError: If ids cannot be generated
        """
        _check_writable(ds)
        sanitize_input(ds, [ii.item for ii in items])
        for ii in items:
            ii.item.build_properties()

        good, groups = validate_items(ds, items)
        if not good:
            return BatchCreateResult(added=[], error_groups=groups)

        good.sort(key=lambda ii: ii.index)
        granted = await self._acquire_item_count(ds, len(good), opts.partial_add)
        if granted < len(good):
            rejected = good[granted:]
            groups.append(
                ItemErrorGroup(
                    type=ItemErrorType.EXCEED_DATASET_CAPACITY,
                    error_count=len(rejected),
                    details=[
                        ItemErrorDetail(
                            message=EXCEED_CAPACITY_MESSAGE,
                            start_index=rejected[0].index,
                            end_index=rejected[-1].index,
                        )
                    ],
                )
            )
        accepted = [ii.item for ii in good[:granted]]
        if not accepted:
            return BatchCreateResult(added=[], error_groups=groups)

        try:
            await self.build_new_items(ds, accepted)
            inserted = await self._mcreate(ds, accepted)
        except BaseException:
            await self._release_item_count(ds, granted)
            raise

        if inserted < granted:
            await self._release_item_count(ds, granted - inserted)
        logger.info(
            "Created items",
            extra={
                "dataset_id": ds.id,
                "requested": len(items),
                "granted": granted,
                "inserted": inserted,
            },
        )
        return BatchCreateResult(added=accepted, error_groups=groups)

    async def build_new_items(self, ds: DatasetWithSchema, items: list[Item]) -> None:
        """Assign ids and version bounds to items about to be inserted.

        Raises:
            InternalError: If ids cannot be generated
        """
        try:
            ids = await self.id_gen.gen_multi_ids(len(items))
        except IDGenerationError as e:
            raise InternalError(f"generate {len(items)} item ids: {e}") from e

        for item, item_id in zip(items, ids):
            item.id = item_id
            item.item_id = item_id
            _bind(ds, item)
            if not item.item_key:
                item.item_key = str(item.item_id)

    async def update(self, ds: DatasetWithSchema, item: Item) -> None:
        """Rewrite the payload of an item no version has captured yet.

        Raises:
            NotFoundError: If the row does not exist
            InvalidParamError: If the row is already part of a version
        """
        _check_writable(ds)
        existing = await self.get_row(ds, item.id)
        if existing.add_vn != ds.dataset.next_version_num or existing.del_vn is not None:
            raise InvalidParamError(
                f"item {item.id} is captured by a version, archive and recreate it instead"
            )
        self._prepare_single(ds, item)
        item.item_id = existing.item_id
        item.item_key = existing.item_key
        _bind(ds, item)

        async with self.barrier.hold(ds.id, DatasetOpType.WRITE_ITEM):
            await self.payload_store.save([item])
            async with self.repo.transaction() as tx:
                opt = RepoOptions(tx=tx)
                await self._touch_dataset(ds, item.updated_by, opt)
                await self._check_schema(ds, opt)
                await self.repo.update_item(item, opt)

    async def archive_and_create(self, ds: DatasetWithSchema, old_id: int, item: Item) -> Item:
        """Archive a versioned row and insert its replacement with a new id.

        The replacement keeps the logical item_id and item_key of the old
        row, so versions that captured the old row stay intact.

        Raises:
            NotFoundError: If the old row does not exist
            InvalidParamError: If the old row is not captured by a version
            ConcurrentDatasetOperationsError: If the old row was archived
                concurrently
        """
        _check_writable(ds)
        existing = await self.get_row(ds, old_id)
        next_vn = ds.dataset.next_version_num
        if existing.add_vn == next_vn:
            raise InvalidParamError(f"item {old_id} is not captured by any version, update it instead")
        self._prepare_single(ds, item)

        try:
            (new_id,) = await self.id_gen.gen_multi_ids(1)
        except IDGenerationError as e:
            raise InternalError(f"generate item id: {e}") from e
        item.id = new_id
        item.item_id = existing.item_id
        item.item_key = existing.item_key
        _bind(ds, item)

        async with self.barrier.hold(ds.id, DatasetOpType.WRITE_ITEM):
            await self.payload_store.save([item])
            async with self.repo.transaction() as tx:
                opt = RepoOptions(tx=tx)
                await self._touch_dataset(ds, item.updated_by, opt)
                await self._check_schema(ds, opt)
                if await self.repo.archive_items(ds.id, [old_id], next_vn, opt) == 0:
                    raise ConcurrentDatasetOperationsError(f"item {old_id} is already archived")
                if await self.repo.mcreate_items([item], opt) == 0:
                    raise ConcurrentDatasetOperationsError(
                        f"item {item.item_key} already exists at version num {next_vn}"
                    )
        return item

    async def batch_delete(self, ds: DatasetWithSchema, items: list[Item], operator: str = "") -> int:
        """Remove items from the working copy of a dataset.

        Returns:
            Number of rows deleted or archived
        """
        _check_writable(ds)
        next_vn = ds.dataset.next_version_num
        to_delete = [i.id for i in items if i.add_vn == next_vn]
        to_archive = [i.id for i in items if i.add_vn != next_vn]

        async with self.barrier.hold(ds.id, DatasetOpType.WRITE_ITEM):
            async with self.repo.transaction() as tx:
                opt = RepoOptions(tx=tx)
                await self._touch_dataset(ds, operator, opt)
                archived = await self.repo.archive_items(ds.id, to_archive, next_vn, opt)
                deleted = await self.repo.delete_items(ds.id, to_delete, opt)

        removed = archived + deleted
        if removed:
            await self.counter.incr_item_count(ds.id, -removed)
        logger.info(
            "Deleted items",
            extra={"dataset_id": ds.id, "archived": archived, "deleted": deleted},
        )
        return removed

    async def clear(self, ds: DatasetWithSchema, operator: str = "") -> None:
        """Remove every live item from the working copy of a dataset."""
        _check_writable(ds)
        next_vn = ds.dataset.next_version_num
        async with self.barrier.hold(ds.id, DatasetOpType.CLEAR_DATASET):
            async with self.repo.transaction() as tx:
                opt = RepoOptions(tx=tx)
                await self.repo.patch_dataset(
                    ds.id,
                    {"last_operation": DatasetOpType.CLEAR_DATASET, "updated_by": operator},
                    where={"next_version_num": next_vn},
                    opt=opt,
                )
                deleted = await self.repo.delete_items_added_at(ds.id, next_vn, opt)
                archived = await self.repo.archive_live_items(ds.id, next_vn, opt)
        await self.counter.set_item_count(ds.id, 0)
        logger.info(
            "Cleared dataset",
            extra={"dataset_id": ds.id, "archived": archived, "deleted": deleted},
        )

    # Reads

    async def get_row(self, ds: DatasetWithSchema, item_pk: int) -> Item:
        item = await self.repo.get_item(ds.id, item_pk)
        if item is None:
            raise NotFoundError(f"item {item_pk} of dataset {ds.id} not found")
        return item

    async def get(self, ds: DatasetWithSchema, item_pk: int) -> Item:
        """Item with its payload, shaped for output.

        Raises:
            NotFoundError: If the row does not exist
        """
        item = await self.get_row(ds, item_pk)
        await self.load_data([item])
        sanitize_output(ds.schema, [item])
        return item

    async def batch_get(self, ds: DatasetWithSchema, item_pks: list[int]) -> list[Item]:
        """Items with their payloads; missing ids are skipped."""
        items = await self.repo.mget_items(ds.id, item_pks)
        await self.load_data(items)
        sanitize_output(ds.schema, items)
        return items

    async def load_data(self, items: list[Item]) -> None:
        await self.payload_store.load(items)

    # Internals

    def _prepare_single(self, ds: DatasetWithSchema, item: Item) -> None:
        sanitize_input(ds, [item])
        item.build_properties()
        validate_item(ds, item)

    async def _touch_dataset(self, ds: DatasetWithSchema, operator: str, opt: RepoOptions) -> None:
        await self.repo.patch_dataset(
            ds.id,
            {"last_operation": DatasetOpType.WRITE_ITEM, "updated_by": operator},
            where={"next_version_num": ds.dataset.next_version_num},
            opt=opt,
        )

    async def _check_schema(self, ds: DatasetWithSchema, opt: RepoOptions) -> None:
        schema = await self.repo.get_schema(ds.dataset.schema_id, opt)
        if schema is None or schema.update_version != ds.schema.update_version:
            raise ConcurrentDatasetOperationsError(
                f"schema {ds.dataset.schema_id} of dataset {ds.id} changed concurrently"
            )

    async def _mcreate(self, ds: DatasetWithSchema, items: list[Item]) -> int:
        async with self.barrier.hold(ds.id, DatasetOpType.WRITE_ITEM):
            await self.payload_store.save(items)
            async with self.repo.transaction() as tx:
                opt = RepoOptions(tx=tx)
                await self._touch_dataset(ds, items[0].updated_by, opt)
                await self._check_schema(ds, opt)
                inserted = await self.repo.mcreate_items(items, opt)
                if inserted < len(items):
                    await self._reload_conflicts(ds, items, opt)
        return inserted

    async def _reload_conflicts(self, ds: DatasetWithSchema, items: list[Item], opt: RepoOptions) -> None:
        keyed = [i for i in items if i.item_key != str(i.item_id)]
        if not keyed:
            return
        keys = list(dict.fromkeys(i.item_key for i in keyed))
        page = await self.repo.list_items(
            ListItemsParams(
                dataset_id=ds.id,
                item_keys=keys,
                add_vn_eq=ds.dataset.next_version_num,
                limit=len(keys),
            ),
            opt,
        )
        existing = {row.item_key: row for row in page.items}
        for item in keyed:
            row = existing.get(item.item_key)
            if row is not None and row.id != item.id:
                item.id = row.id
                item.item_id = row.item_id

    async def _acquire_item_count(self, ds: DatasetWithSchema, want: int, partial: bool) -> int:
        total = await self.counter.incr_item_count(ds.id, want)
        max_count = ds.dataset.spec.max_item_count
        if max_count <= 0:
            return want

        debt = total - max_count
        if debt <= 0:
            return want
        debt = min(debt, want)
        if not partial:
            debt = want
        await self.counter.incr_item_count(ds.id, -debt)
        logger.info(
            "Dataset capacity reached",
            extra={"dataset_id": ds.id, "want": want, "granted": want - debt, "max_item_count": max_count},
        )
        return want - debt

    async def _release_item_count(self, ds: DatasetWithSchema, n: int) -> None:
        try:
            await self.counter.incr_item_count(ds.id, -n)
        except Exception as e:
            logger.error(
                f"Failed to refund item count: {e}",
                extra={"dataset_id": ds.id, "count": n},
            )


def _check_writable(ds: DatasetWithSchema) -> None:
    if not ds.dataset.can_write_item():
        raise DatasetNotEditableError(f"dataset {ds.id} is {ds.dataset.status.value}")


def _bind(ds: DatasetWithSchema, item: Item) -> None:
    item.app_id = ds.dataset.app_id
    item.space_id = ds.space_id
    item.dataset_id = ds.id
    item.schema_id = ds.schema.id
    item.add_vn = ds.dataset.next_version_num
    item.del_vn = None
    item.updated_by = item.updated_by or item.created_by
