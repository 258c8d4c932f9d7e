"""
Schema updates of a dataset.

A mutable schema is updated in place. An immutable one, frozen because a
version was created against it, is rotated: a new schema row is inserted
and the dataset repointed at it, so versions keep the schema they were
created with.

Invariants:
    - Keys of fields present before an update are preserved
    - Incompatible changes are only accepted on an empty dataset
"""

from __future__ import annotations

import logging

from ..barrier import OperationBarrier
from ..entity import DatasetOpType, DatasetSchema, DatasetWithSchema, FieldSchema
from ..errors import ConcurrentDatasetOperationsError, IncompatibleDatasetSchemaError
from ..kv import ItemCounterStore
from ..repo import RepoOptions, SQLiteRepository
from ..schema import compatible, merge_fields

logger = logging.getLogger(__name__)


class SchemaService:
    def __init__(
        self,
        repo: SQLiteRepository,
        counter: ItemCounterStore,
        barrier: OperationBarrier,
    ) -> None:
        self.repo = repo
        self.counter = counter
        self.barrier = barrier

    async def update_schema(
        self,
        ds: DatasetWithSchema,
        fields: list[FieldSchema],
        updated_by: str = "",
    ) -> DatasetSchema:
        """Replace the fields of a dataset.

        Returns:
            The schema now active for the dataset

        Raises:
            InvalidParamError: If the merged fields are invalid
            IncompatibleDatasetSchemaError: If the change is incompatible
                and the dataset has items
            ConcurrentDatasetOperationsError: If the schema changed since
                ds was read
        """
        pre = ds.schema
        is_compatible = compatible(pre.fields, fields)
        if not is_compatible:
            await self._ensure_empty(ds)
        merged = merge_fields(ds.dataset, pre, fields)

        async with self.barrier.hold(ds.id, DatasetOpType.UPDATE_SCHEMA):
            async with self.repo.transaction() as tx:
                opt = RepoOptions(tx=tx)
                current = await self.repo.get_schema(ds.dataset.schema_id, opt)
                if current is None or current.update_version != pre.update_version:
                    raise ConcurrentDatasetOperationsError(
                        f"schema {ds.dataset.schema_id} of dataset {ds.id} changed concurrently"
                    )

                if current.immutable:
                    if not is_compatible:
                        await self._ensure_empty(ds)
                    schema = await self._rotate(ds, current, merged, updated_by, opt)
                else:
                    schema = await self._update_in_place(ds, current, merged, updated_by, opt)

        logger.info(
            "Updated schema",
            extra={
                "dataset_id": ds.id,
                "schema_id": schema.id,
                "rotated": schema.id != pre.id,
                "compatible": is_compatible,
            },
        )
        return schema

    async def _update_in_place(
        self,
        ds: DatasetWithSchema,
        current: DatasetSchema,
        fields: list[FieldSchema],
        updated_by: str,
        opt: RepoOptions,
    ) -> DatasetSchema:
        await self.repo.patch_schema(
            current.id,
            {
                "fields": [f.to_dict() for f in fields],
                "update_version": current.update_version + 1,
                "updated_by": updated_by,
            },
            where={"update_version": current.update_version},
            opt=opt,
        )
        await self._touch_dataset(ds, {}, updated_by, opt)
        current.fields = fields
        current.update_version += 1
        current.updated_by = updated_by
        return current

    async def _rotate(
        self,
        ds: DatasetWithSchema,
        current: DatasetSchema,
        fields: list[FieldSchema],
        updated_by: str,
        opt: RepoOptions,
    ) -> DatasetSchema:
        schema = DatasetSchema(
            app_id=current.app_id,
            space_id=current.space_id,
            dataset_id=current.dataset_id,
            fields=fields,
            immutable=False,
            created_by=updated_by,
            updated_by=updated_by,
        )
        await self.repo.create_schema(schema, opt)
        await self._touch_dataset(ds, {"schema_id": schema.id}, updated_by, opt)
        return schema

    async def _touch_dataset(
        self,
        ds: DatasetWithSchema,
        patch: dict,
        updated_by: str,
        opt: RepoOptions,
    ) -> None:
        await self.repo.patch_dataset(
            ds.id,
            {**patch, "last_operation": DatasetOpType.UPDATE_SCHEMA, "updated_by": updated_by},
            where={"schema_id": ds.dataset.schema_id},
            opt=opt,
        )

    async def _ensure_empty(self, ds: DatasetWithSchema) -> None:
        n = await self.counter.get_item_count(ds.id)
        if n > 0:
            raise IncompatibleDatasetSchemaError(
                f"dataset {ds.id} has {n} items, incompatible schema changes need an empty dataset"
            )
