"""
Unit tests for item sanitizing and validation against a schema.

Tests cover:
- Name to key resolution and pruning of unknown fields
- Boolean coercion and JSON Schema checks of text content
- Error grouping of invalid items
- Output shaping
"""

import pytest

from dbaas.dataset_engine.entity import (
    ContentType,
    Dataset,
    DatasetSchema,
    DatasetSpec,
    DatasetWithSchema,
    FieldData,
    FieldDisplayFormat,
    FieldSchema,
    FieldStatus,
    IndexedItem,
    Item,
    ItemData,
    ItemErrorType,
    SchemaKey,
)
from dbaas.dataset_engine.errors import ItemDataSizeExceededError, SchemaMismatchError
from dbaas.dataset_engine.schema import validate_field_data
from dbaas.dataset_engine.service import sanitize_input, sanitize_output, validate_item, validate_items


def make_ds(*fields, max_item_size=0, repeated=False):
    ds = Dataset(id=1, spec=DatasetSpec(max_item_size=max_item_size))
    ds.features.repeated_data = repeated
    return DatasetWithSchema(dataset=ds, schema=DatasetSchema(id=2, fields=list(fields)))


@pytest.fixture
def ds():
    return make_ds(
        FieldSchema(key="input", name="Input"),
        FieldSchema(key="flag", name="Flag", schema_key=SchemaKey.BOOL),
        FieldSchema(key="score", name="Score", text_schema={"type": "number"}),
        FieldSchema(key="old", name="Old", status=FieldStatus.DELETED),
    )


class TestSanitizeInput:
    """Tests for sanitize_input."""

    def test_name_resolved_to_key(self, ds):
        item = Item(data=[FieldData(name="Input", content="hello")])
        sanitize_input(ds, [item])
        assert item.data[0].key == "input"
        assert item.data[0].content_type == ContentType.TEXT

    def test_unknown_and_empty_fields_dropped(self, ds):
        item = Item(
            data=[
                FieldData(key="input", content="  "),
                FieldData(key="nope", content="x"),
                FieldData(name="Nope", content="x"),
                FieldData(key="score", content=" 1.5 "),
            ]
        )
        sanitize_input(ds, [item])
        assert [(fd.key, fd.content) for fd in item.data] == [("score", "1.5")]

    def test_boolean_content_lowercased(self, ds):
        item = Item(data=[FieldData(key="flag", content="FaLSe")])
        sanitize_input(ds, [item])
        assert item.data[0].content == "false"

    def test_idempotent(self, ds):
        item = Item(data=[FieldData(name="Input", content=" hi "), FieldData(key="flag", content="TRUE")])
        sanitize_input(ds, [item])
        once = item.clone()
        sanitize_input(ds, [item])
        assert item == once

    def test_repeated_dataset_keeps_only_rows(self):
        ds = make_ds(FieldSchema(key="turn", name="turn"), repeated=True)
        item = Item(
            data=[FieldData(key="turn", content="ignored")],
            repeated_data=[
                ItemData(data=[FieldData(key="turn", content="a")]),
                ItemData(data=[FieldData(key="turn", content="")]),
            ],
        )
        sanitize_input(ds, [item])
        assert item.data == []
        assert len(item.repeated_data) == 1
        assert item.repeated_data[0].data[0].content == "a"

    def test_multipart_keeps_one_level(self):
        ds = make_ds(FieldSchema(key="doc", name="doc", content_type=ContentType.MULTIPART))
        nested = FieldData(content_type=ContentType.MULTIPART, parts=[FieldData(content_type=ContentType.TEXT, content="deep")])
        item = Item(
            data=[
                FieldData(
                    key="doc",
                    content="dropped",
                    parts=[FieldData(content_type=ContentType.TEXT, content=" text "), nested],
                )
            ]
        )
        sanitize_input(ds, [item])
        doc = item.data[0]
        assert doc.content == ""
        assert [p.content for p in doc.parts] == ["text"]


class TestValidateFieldData:
    """Tests for validate_field_data."""

    def test_bool_accepts_lowercase_literal(self):
        f = FieldSchema(key="flag", name="flag", schema_key=SchemaKey.BOOL)
        validate_field_data(f, FieldData(key="flag", content="false"))

    def test_date_is_not_a_number_or_bool(self):
        for schema_key in (SchemaKey.BOOL, SchemaKey.FLOAT, SchemaKey.INTEGER):
            f = FieldSchema(key="x", name="x", schema_key=schema_key)
            with pytest.raises(SchemaMismatchError):
                validate_field_data(f, FieldData(key="x", content="2024-01-01"))

    def test_string_schema_accepts_any_text(self):
        f = FieldSchema(key="x", name="x", schema_key=SchemaKey.STRING)
        validate_field_data(f, FieldData(key="x", content='not "json"'))

    def test_integer_rejects_float(self):
        f = FieldSchema(key="x", name="x", schema_key=SchemaKey.INTEGER)
        validate_field_data(f, FieldData(key="x", content="42"))
        with pytest.raises(SchemaMismatchError):
            validate_field_data(f, FieldData(key="x", content="4.2"))

    def test_nan_rejected(self):
        f = FieldSchema(key="x", name="x", schema_key=SchemaKey.FLOAT)
        with pytest.raises(SchemaMismatchError):
            validate_field_data(f, FieldData(key="x", content="NaN"))

    def test_message_schema(self):
        f = FieldSchema(key="m", name="m", schema_key=SchemaKey.MESSAGE)
        validate_field_data(f, FieldData(key="m", content='{"role": "user", "content": "hi"}'))
        with pytest.raises(SchemaMismatchError):
            validate_field_data(f, FieldData(key="m", content='{"role": "user"}'))

    def test_key_mismatch(self):
        with pytest.raises(SchemaMismatchError, match="key mismatch"):
            validate_field_data(FieldSchema(key="a", name="a"), FieldData(key="b", content="x"))

    def test_file_count_limit(self):
        from dbaas.dataset_engine.entity import MultiModalSpec, ObjectStorage

        f = FieldSchema(
            key="img",
            name="img",
            content_type=ContentType.IMAGE,
            multi_modal_spec=MultiModalSpec(max_file_count=1),
        )
        data = FieldData(key="img", attachments=[ObjectStorage(uri="a"), ObjectStorage(uri="b")])
        with pytest.raises(SchemaMismatchError, match="file count"):
            validate_field_data(f, data)


class TestValidateItems:
    """Tests for validate_items and validate_item."""

    def indexed(self, ds, *contents):
        items = [
            IndexedItem(index=i, item=Item(data=[FieldData(key=key, content=value)]))
            for i, (key, value) in enumerate(contents)
        ]
        sanitize_input(ds, [ii.item for ii in items])
        return items

    def test_boolean_coercion_scenario(self, ds):
        good, groups = validate_items(ds, self.indexed(ds, ("flag", "FaLSe"), ("flag", "2024-01-01")))
        assert [ii.index for ii in good] == [0]
        assert good[0].item.data[0].content == "false"
        assert len(groups) == 1
        assert groups[0].type == ItemErrorType.MISMATCH_SCHEMA
        assert groups[0].error_count == 1
        assert groups[0].details[0].index == 1
        assert groups[0].details[0].message.startswith("field_name=Flag, msg=")

    def test_oversized_item_grouped(self):
        ds = make_ds(FieldSchema(key="input", name="input"), max_item_size=5)
        items = self.indexed(ds, ("input", "short"), ("input", "too long"))
        good, groups = validate_items(ds, items)
        assert [ii.index for ii in good] == [0]
        assert groups[0].type == ItemErrorType.EXCEED_MAX_ITEM_SIZE
        assert groups[0].details[0].message == "size of item 8 exceeds max 5"

    def test_deleted_fields_not_validated(self, ds):
        item = Item(data=[FieldData(key="old", content="anything")])
        good, groups = validate_items(ds, [IndexedItem(index=0, item=item)])
        assert len(good) == 1
        assert groups == []

    def test_validate_item_raises_mapped_error(self, ds):
        item = Item(data=[FieldData(key="score", content="high")])
        sanitize_input(ds, [item])
        with pytest.raises(SchemaMismatchError):
            validate_item(ds, item)

        big = make_ds(FieldSchema(key="input", name="input"), max_item_size=1)
        item = Item(data=[FieldData(key="input", content="abc")])
        with pytest.raises(ItemDataSizeExceededError):
            validate_item(big, item)


class TestSanitizeOutput:
    """Tests for sanitize_output."""

    def test_hides_unavailable_and_backfills(self, ds):
        ds.schema.fields[0].default_format = FieldDisplayFormat.MARKDOWN
        item = Item(data=[FieldData(key="input", content="a"), FieldData(key="old", content="b")])
        sanitize_output(ds.schema, [item])
        assert [fd.key for fd in item.data] == ["input"]
        fd = item.data[0]
        assert fd.name == "Input"
        assert fd.content_type == ContentType.TEXT
        assert fd.format == FieldDisplayFormat.MARKDOWN
