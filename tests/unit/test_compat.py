"""
Unit tests for field schema compatibility checking and merging.

Tests cover:
- Detection of breaking changes
- Detection of non-breaking changes
- Merging with tombstones and key preservation
"""

import pytest

from dbaas.dataset_engine.entity import (
    ContentType,
    Dataset,
    DatasetSchema,
    FieldSchema,
    FieldStatus,
    SchemaKey,
)
from dbaas.dataset_engine.errors import InvalidParamError
from dbaas.dataset_engine.schema import ChangeKind, check_field_compatibility, compatible, merge_fields


def field(key, name=None, **kwargs):
    return FieldSchema(key=key, name=name or key, **kwargs)


class TestCompatibilityChecking:
    """Tests for check_field_compatibility and compatible."""

    def test_no_changes(self):
        pre = [field("input"), field("output")]
        cur = [field("input"), field("output")]
        assert check_field_compatibility(pre, cur) == []
        assert compatible(pre, cur)

    def test_add_and_remove_fields_allowed(self):
        pre = [field("input"), field("output")]
        cur = [field("input"), field("context")]
        kinds = {c.kind for c in check_field_compatibility(pre, cur)}
        assert kinds == {ChangeKind.FIELD_ADDED, ChangeKind.FIELD_DELETED}
        assert compatible(pre, cur)

    def test_rename_allowed(self):
        changes = check_field_compatibility([field("input", "Input")], [field("input", "Question")])
        assert [c.kind for c in changes] == [ChangeKind.NAME_CHANGED]
        assert not changes[0].is_breaking

    def test_content_type_change_is_breaking(self):
        pre = [field("x")]
        cur = [field("x", content_type=ContentType.IMAGE)]
        assert not compatible(pre, cur)

    def test_schema_key_drop_allowed(self):
        pre = [field("x", schema_key=SchemaKey.INTEGER)]
        cur = [field("x")]
        assert compatible(pre, cur)

    @pytest.mark.parametrize(
        "pre_key,cur_key",
        [(SchemaKey.UNKNOWN, SchemaKey.INTEGER), (SchemaKey.INTEGER, SchemaKey.STRING)],
    )
    def test_schema_key_add_or_swap_is_breaking(self, pre_key, cur_key):
        assert not compatible([field("x", schema_key=pre_key)], [field("x", schema_key=cur_key)])

    def test_text_schema_added_is_breaking(self):
        assert not compatible([field("x")], [field("x", text_schema={"type": "integer"})])

    def test_text_schema_widened_allowed(self):
        pre = [field("x", text_schema={"type": "integer"})]
        cur = [field("x", text_schema={"type": ["integer", "string"]})]
        changes = check_field_compatibility(pre, cur)
        assert [c.kind for c in changes] == [ChangeKind.TEXT_SCHEMA_WIDENED]
        assert compatible(pre, cur)

    def test_text_schema_narrowed_is_breaking(self):
        pre = [field("x", text_schema={"type": ["integer", "string"]})]
        cur = [field("x", text_schema={"type": "integer"})]
        assert not compatible(pre, cur)

    def test_text_schema_removed_allowed(self):
        assert compatible([field("x", text_schema={"type": "integer"})], [field("x")])

    def test_fields_matched_by_key_not_name(self):
        pre = [field("a", "same")]
        cur = [field("b", "same", content_type=ContentType.IMAGE)]
        assert compatible(pre, cur)


class TestMergeFields:
    """Tests for merge_fields."""

    @pytest.fixture
    def dataset(self):
        return Dataset(id=1)

    @pytest.fixture
    def pre_schema(self):
        return DatasetSchema(fields=[field("input"), field("output")])

    def test_removed_field_tombstoned(self, dataset, pre_schema):
        merged = merge_fields(dataset, pre_schema, [field("input")])
        by_key = {f.key: f for f in merged}
        assert by_key["output"].status == FieldStatus.DELETED
        assert by_key["input"].status == FieldStatus.AVAILABLE
        assert [f.key for f in merged] == ["input", "output"]

    def test_new_field_gets_key(self, dataset, pre_schema):
        merged = merge_fields(dataset, pre_schema, [field("input"), field("output"), FieldSchema(name="context")])
        assert merged[2].key == "context"

    def test_new_field_avoids_tombstone_key(self, dataset, pre_schema):
        merged = merge_fields(dataset, pre_schema, [field("input"), FieldSchema(name="output")])
        keys = [f.key for f in merged]
        assert "output_1" in keys
        assert keys.count("output") == 1

    def test_input_not_mutated(self, dataset, pre_schema):
        cur = [FieldSchema(name="input2")]
        merge_fields(dataset, pre_schema, cur)
        assert cur[0].key == ""
        assert cur[0].status == FieldStatus.AVAILABLE

    def test_explicit_status_kept(self, dataset, pre_schema):
        cur = [field("input"), field("output", status=FieldStatus.DELETED), field("extra")]
        merged = merge_fields(dataset, pre_schema, cur)
        assert {f.key: f.status for f in merged}["output"] == FieldStatus.DELETED

    def test_invalid_merge_rejected(self, dataset, pre_schema):
        with pytest.raises(InvalidParamError):
            merge_fields(dataset, pre_schema, [field("input"), field("input2", "input")])
