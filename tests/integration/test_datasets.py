"""
Integration tests for DatasetService.

Tests cover:
- Configured defaults applied to new datasets
- Field key generation on create
- Space scoping of reads
- Update and soft delete
"""

import pytest

from dbaas.dataset_engine.entity import Dataset, DatasetStatus, FieldSchema
from dbaas.dataset_engine.errors import InvalidParamError, NotFoundError


class TestDatasets:
    """Tests for dataset lifecycle."""

    @pytest.mark.asyncio
    async def test_create_applies_defaults(self, datasets, kv):
        ds = await datasets.create_dataset(
            Dataset(space_id=7, name="plain", created_by="bob"),
            [FieldSchema(name="input"), FieldSchema(name="input two")],
        )

        assert ds.dataset.status == DatasetStatus.AVAILABLE
        assert ds.dataset.next_version_num == 1
        assert ds.dataset.spec.max_item_count == 5000
        assert ds.dataset.features.edit_schema is True
        assert ds.schema.immutable is False
        assert [f.key for f in ds.schema.fields] == ["input", "key_1"]
        assert await kv.get_item_count(ds.id) == 0

        fetched = await datasets.get_dataset(7, ds.id)
        assert fetched.schema.id == ds.schema.id
        assert fetched.dataset.updated_by == "bob"

    @pytest.mark.asyncio
    async def test_name_required(self, datasets):
        with pytest.raises(InvalidParamError):
            await datasets.create_dataset(Dataset(space_id=7, name="  "), [FieldSchema(name="input")])

    @pytest.mark.asyncio
    async def test_other_space_not_found(self, make_dataset, datasets):
        ds = await make_dataset()
        with pytest.raises(NotFoundError):
            await datasets.get_dataset(ds.space_id + 1, ds.id)
        assert await datasets.batch_get_datasets(ds.space_id + 1, [ds.id]) == []

    @pytest.mark.asyncio
    async def test_update_and_delete(self, make_dataset, datasets):
        ds = await make_dataset()
        await datasets.update_dataset(ds.space_id, ds.id, name="renamed", updated_by="carol")
        assert (await datasets.get_dataset(ds.space_id, ds.id)).dataset.name == "renamed"

        await datasets.delete_dataset(ds.space_id, ds.id, updated_by="carol")

        with pytest.raises(NotFoundError):
            await datasets.get_dataset(ds.space_id, ds.id)
        deleted = await datasets.get_dataset(ds.space_id, ds.id, with_deleted=True)
        assert deleted.dataset.status == DatasetStatus.DELETED
        assert deleted.dataset.can_write_item() is False
        assert await datasets.batch_get_datasets(ds.space_id, [ds.id]) == []
