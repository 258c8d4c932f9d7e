"""
Dataset lifecycle: creation with a first schema, reads, edits and soft
deletion.
"""

from __future__ import annotations

import logging

from ..config import DatasetDefaultsConfig
from ..entity import (
    Dataset,
    DatasetFeatures,
    DatasetSchema,
    DatasetSpec,
    DatasetStatus,
    DatasetWithSchema,
    FieldSchema,
)
from ..errors import InternalError, InvalidParamError, NotFoundError
from ..kv import ItemCounterStore
from ..repo import MAX_BATCH_GET, RepoOptions, SQLiteRepository
from ..schema import gen_field_keys, validate_fields

logger = logging.getLogger(__name__)


class DatasetService:
    """Creates and reads datasets together with their active schema.

    Example:
        >>> svc = DatasetService(repo, kv, config.dataset_defaults)
        >>> ds = await svc.create_dataset(Dataset(space_id=1, name="qa"), [FieldSchema(name="input")])
        >>> ds.schema.fields[0].key
        'input'
    """

    def __init__(
        self,
        repo: SQLiteRepository,
        counter: ItemCounterStore,
        defaults: DatasetDefaultsConfig | None = None,
    ) -> None:
        self.repo = repo
        self.counter = counter
        self.defaults = defaults or DatasetDefaultsConfig()

    async def create_dataset(self, dataset: Dataset, fields: list[FieldSchema]) -> DatasetWithSchema:
        """Create a dataset and its first schema.

        A dataset without spec or features gets the configured defaults.

        Raises:
            InvalidParamError: If the name is empty or the fields invalid
        """
        if not dataset.name.strip():
            raise InvalidParamError("dataset name is required")

        if dataset.spec == DatasetSpec():
            dataset.spec = DatasetSpec(
                max_item_count=self.defaults.max_item_count,
                max_field_count=self.defaults.max_field_count,
                max_item_size=self.defaults.max_item_size,
            )
        if dataset.features == DatasetFeatures():
            dataset.features = DatasetFeatures(
                edit_schema=self.defaults.edit_schema,
                multi_modal=self.defaults.multi_modal,
            )
        dataset.status = DatasetStatus.AVAILABLE
        dataset.next_version_num = 1
        dataset.latest_version = ""
        dataset.updated_by = dataset.updated_by or dataset.created_by

        gen_field_keys(fields)
        validate_fields(dataset, fields)

        schema = DatasetSchema(
            fields=fields,
            immutable=not dataset.features.edit_schema,
            created_by=dataset.created_by,
            updated_by=dataset.created_by,
        )
        await self.repo.create_dataset_and_schema(dataset, schema)
        await self.counter.set_item_count(dataset.id, 0)
        return DatasetWithSchema(dataset=dataset, schema=schema)

    async def get_dataset(self, space_id: int, dataset_id: int, with_deleted: bool = False) -> DatasetWithSchema:
        """Raises NotFoundError if the dataset is missing, deleted or in another space."""
        dataset = await self.repo.get_dataset(dataset_id, RepoOptions(with_deleted=with_deleted))
        if dataset is None or dataset.space_id != space_id:
            raise NotFoundError(f"dataset {dataset_id} not found")
        return DatasetWithSchema(dataset=dataset, schema=await self._schema_of(dataset))

    async def batch_get_datasets(self, space_id: int, dataset_ids: list[int]) -> list[DatasetWithSchema]:
        if len(dataset_ids) > MAX_BATCH_GET:
            raise InvalidParamError(f"cannot get more than {MAX_BATCH_GET} datasets at once")
        datasets = await self.repo.mget_datasets(space_id, dataset_ids)
        return [DatasetWithSchema(dataset=d, schema=await self._schema_of(d)) for d in datasets]

    async def update_dataset(
        self,
        space_id: int,
        dataset_id: int,
        name: str | None = None,
        description: str | None = None,
        updated_by: str = "",
    ) -> None:
        ds = await self.get_dataset(space_id, dataset_id)
        patch: dict = {"updated_by": updated_by}
        if name is not None:
            if not name.strip():
                raise InvalidParamError("dataset name is required")
            patch["name"] = name
        if description is not None:
            patch["description"] = description
        await self.repo.patch_dataset(ds.id, patch)

    async def delete_dataset(self, space_id: int, dataset_id: int, updated_by: str = "") -> None:
        """Soft-delete a dataset. Its rows stay; reads stop returning it."""
        ds = await self.get_dataset(space_id, dataset_id)
        await self.repo.patch_dataset(
            ds.id,
            {"status": DatasetStatus.DELETED, "updated_by": updated_by},
        )
        logger.info("Deleted dataset", extra={"dataset_id": ds.id, "space_id": space_id})

    async def _schema_of(self, dataset: Dataset) -> DatasetSchema:
        schema = await self.repo.get_schema(dataset.schema_id)
        if schema is None:
            raise InternalError(f"schema {dataset.schema_id} of dataset {dataset.id} not found")
        return schema
