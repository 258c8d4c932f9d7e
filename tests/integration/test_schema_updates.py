"""
Integration tests for schema updates.

Tests cover:
- Compatible changes applied in place, keys preserved
- Incompatible changes rejected on a non-empty dataset
- Incompatible changes accepted on an empty dataset
- Schema rotation once a version froze the schema
- Stale reads rejected, for schema updates and item writes
"""

import pytest

from dbaas.dataset_engine.entity import (
    ContentType,
    DatasetVersion,
    FieldData,
    FieldSchema,
    FieldStatus,
    IndexedItem,
    Item,
)
from dbaas.dataset_engine.errors import ConcurrentDatasetOperationsError, IncompatibleDatasetSchemaError


def fields_of(ds):
    return [f.clone() for f in ds.schema.available_fields()]


async def reread(datasets, ds):
    return await datasets.get_dataset(ds.space_id, ds.id)


async def add_item(items, ds, key="x"):
    item = Item(data=[FieldData(key=key, content="hello")], created_by="alice")
    await items.batch_create(ds, [IndexedItem(0, item)])


class TestCompatibleUpdates:
    """Tests for in-place updates."""

    @pytest.mark.asyncio
    async def test_rename_and_add_in_place(self, make_dataset, schemas, datasets, items):
        ds = await make_dataset("x")
        await add_item(items, ds)

        fields = fields_of(ds)
        fields[0].name = "question"
        fields.append(FieldSchema(name="answer"))
        schema = await schemas.update_schema(ds, fields, updated_by="bob")

        assert schema.id == ds.schema.id
        assert schema.update_version == ds.schema.update_version + 1
        assert [(f.key, f.name) for f in schema.fields] == [("x", "question"), ("answer", "answer")]

        stored = (await reread(datasets, ds)).schema
        assert stored.field_by_key("x").name == "question"
        assert stored.updated_by == "bob"

    @pytest.mark.asyncio
    async def test_removed_field_tombstoned(self, make_dataset, schemas):
        ds = await make_dataset("input", "output")
        fields = [f for f in fields_of(ds) if f.key == "input"]
        schema = await schemas.update_schema(ds, fields)
        tomb = schema.field_by_key("output")
        assert tomb is not None
        assert tomb.status == FieldStatus.DELETED
        assert [f.key for f in schema.available_fields()] == ["input"]

    @pytest.mark.asyncio
    async def test_new_field_avoids_tombstone_key(self, make_dataset, schemas, datasets):
        ds = await make_dataset("input", "output")
        await schemas.update_schema(ds, [f for f in fields_of(ds) if f.key == "input"])
        ds = await reread(datasets, ds)

        schema = await schemas.update_schema(ds, fields_of(ds) + [FieldSchema(name="output")])
        available = [f for f in schema.fields if f.name == "output" and f.available]
        assert len(available) == 1
        assert available[0].key != "output"


class TestIncompatibleUpdates:
    """Tests for incompatible changes."""

    @pytest.mark.asyncio
    async def test_rejected_on_non_empty_dataset(self, make_dataset, schemas, items, datasets):
        ds = await make_dataset("x")
        await add_item(items, ds)

        fields = fields_of(ds)
        fields[0].content_type = ContentType.IMAGE
        with pytest.raises(IncompatibleDatasetSchemaError):
            await schemas.update_schema(ds, fields)

        stored = (await reread(datasets, ds)).schema
        assert stored.field_by_key("x").content_type == ContentType.TEXT
        assert stored.update_version == ds.schema.update_version

    @pytest.mark.asyncio
    async def test_accepted_on_empty_dataset(self, make_dataset, schemas):
        ds = await make_dataset("x")
        fields = fields_of(ds)
        fields[0].text_schema = {"type": "number"}
        schema = await schemas.update_schema(ds, fields)
        assert schema.field_by_key("x").text_schema == {"type": "number"}


class TestSchemaRotation:
    """Tests for updates of a schema frozen by a version."""

    @pytest.mark.asyncio
    async def test_rotates_after_version(self, make_dataset, schemas, versions, datasets, repo):
        ds = await make_dataset("x")
        old_schema_id = ds.schema.id
        await versions.create_version(ds, DatasetVersion(version="1.0.0", created_by="alice"))
        ds = await reread(datasets, ds)
        assert ds.schema.immutable

        fields = fields_of(ds)
        fields[0].description = "rewritten"
        schema = await schemas.update_schema(ds, fields)

        assert schema.id != old_schema_id
        assert not schema.immutable
        assert (await reread(datasets, ds)).dataset.schema_id == schema.id
        old = await repo.get_schema(old_schema_id)
        assert old.immutable
        assert old.field_by_key("x").description == ""

    @pytest.mark.asyncio
    async def test_rotation_keeps_version_schema(self, make_dataset, schemas, versions, datasets):
        ds = await make_dataset("x")
        version = await versions.create_version(ds, DatasetVersion(version="1.0.0", created_by="alice"))
        ds = await reread(datasets, ds)
        await schemas.update_schema(ds, fields_of(ds) + [FieldSchema(name="y")])
        assert (await versions.get_version(version.id)).schema_id == version.schema_id


class TestStaleReads:
    """Tests for optimistic checks against concurrent schema changes."""

    @pytest.mark.asyncio
    async def test_stale_schema_update_rejected(self, make_dataset, schemas):
        ds = await make_dataset("x")
        await schemas.update_schema(ds, fields_of(ds) + [FieldSchema(name="y")])
        with pytest.raises(ConcurrentDatasetOperationsError):
            await schemas.update_schema(ds, fields_of(ds))

    @pytest.mark.asyncio
    async def test_write_with_stale_schema_rejected(self, make_dataset, schemas, items, datasets):
        ds = await make_dataset("x")
        stale = await reread(datasets, ds)
        await schemas.update_schema(ds, fields_of(ds) + [FieldSchema(name="y")])
        with pytest.raises(ConcurrentDatasetOperationsError):
            await add_item(items, stale)
