"""
Field schema compatibility checking and merging.

A schema change is compatible when every item that was valid under the
previous fields is still valid under the new ones. Compatible changes can
be applied to a non-empty dataset; incompatible ones only to an empty one.

Rules, per field key present in both lists:
    - The content type must not change
    - A builtin schema key may be kept or dropped, never added or swapped
    - An inline text schema may not be added where none existed
    - When both sides carry an inline text schema, the declared JSON types
      of the previous schema must be a subset of the new ones

Invariants:
    - Fields are matched by key, never by name
    - Removed fields are tombstoned by merge_fields, never dropped

Example:
    >>> changes = check_field_compatibility(pre_fields, cur_fields)
    >>> breaking = [c for c in changes if c.is_breaking]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any

from ..entity import Dataset, DatasetSchema, FieldSchema, FieldStatus, SchemaKey
from .data import schema_types
from .fields import gen_field_keys, validate_fields

logger = logging.getLogger(__name__)


class ChangeKind(Enum):
    """Kinds of field changes."""

    # Non-breaking changes
    FIELD_ADDED = auto()
    FIELD_DELETED = auto()
    NAME_CHANGED = auto()
    SCHEMA_KEY_DROPPED = auto()
    TEXT_SCHEMA_WIDENED = auto()

    # Breaking changes
    CONTENT_TYPE_CHANGED = auto()
    SCHEMA_KEY_CHANGED = auto()
    TEXT_SCHEMA_ADDED = auto()
    TEXT_SCHEMA_NARROWED = auto()

    @property
    def is_breaking(self) -> bool:
        return self in {
            ChangeKind.CONTENT_TYPE_CHANGED,
            ChangeKind.SCHEMA_KEY_CHANGED,
            ChangeKind.TEXT_SCHEMA_ADDED,
            ChangeKind.TEXT_SCHEMA_NARROWED,
        }


@dataclass
class FieldChange:
    """A single difference between two field lists.

    Attributes:
        kind: The type of change
        key: Key of the changed field
        old_value: Previous value (if applicable)
        new_value: New value (if applicable)
    """

    kind: ChangeKind
    key: str
    old_value: Any = None
    new_value: Any = None

    @property
    def is_breaking(self) -> bool:
        return self.kind.is_breaking

    def __str__(self) -> str:
        status = "BREAKING" if self.is_breaking else "OK"
        return f"[{status}] {self.kind.name}: field:{self.key} {self.old_value!r} -> {self.new_value!r}"


def check_field_compatibility(
    pre_fields: list[FieldSchema],
    cur_fields: list[FieldSchema],
) -> list[FieldChange]:
    """List every change between two field lists."""
    changes: list[FieldChange] = []
    pre_by_key = {f.key: f for f in pre_fields if f.key}
    cur_keys = {f.key for f in cur_fields if f.key}

    for cur in cur_fields:
        pre = pre_by_key.get(cur.key) if cur.key else None
        if pre is None:
            changes.append(FieldChange(ChangeKind.FIELD_ADDED, cur.key, new_value=cur.name))
            continue
        changes.extend(_diff_field(pre, cur))

    for key, pre in pre_by_key.items():
        if key not in cur_keys and pre.available:
            changes.append(FieldChange(ChangeKind.FIELD_DELETED, key, old_value=pre.name))

    return changes


def _diff_field(pre: FieldSchema, cur: FieldSchema) -> list[FieldChange]:
    changes: list[FieldChange] = []
    key = cur.key

    if pre.name != cur.name:
        changes.append(FieldChange(ChangeKind.NAME_CHANGED, key, pre.name, cur.name))

    if pre.content_type != cur.content_type:
        changes.append(
            FieldChange(
                ChangeKind.CONTENT_TYPE_CHANGED,
                key,
                pre.content_type.value,
                cur.content_type.value,
            )
        )

    if pre.schema_key != cur.schema_key:
        kind = (
            ChangeKind.SCHEMA_KEY_DROPPED
            if cur.schema_key == SchemaKey.UNKNOWN
            else ChangeKind.SCHEMA_KEY_CHANGED
        )
        changes.append(FieldChange(kind, key, pre.schema_key.value, cur.schema_key.value))

    if pre.text_schema is None and cur.text_schema is not None:
        changes.append(FieldChange(ChangeKind.TEXT_SCHEMA_ADDED, key, None, cur.text_schema))
    elif pre.text_schema is not None and cur.text_schema is not None:
        pre_types = schema_types(pre.text_schema)
        cur_types = schema_types(cur.text_schema)
        if not set(pre_types) <= set(cur_types):
            changes.append(FieldChange(ChangeKind.TEXT_SCHEMA_NARROWED, key, pre_types, cur_types))
        elif set(pre_types) != set(cur_types):
            changes.append(FieldChange(ChangeKind.TEXT_SCHEMA_WIDENED, key, pre_types, cur_types))

    return changes


def compatible(pre_fields: list[FieldSchema], cur_fields: list[FieldSchema]) -> bool:
    """Whether cur_fields can replace pre_fields on a non-empty dataset."""
    breaking = [c for c in check_field_compatibility(pre_fields, cur_fields) if c.is_breaking]
    for c in breaking:
        logger.info("Incompatible field change", extra={"change": str(c)})
    return not breaking


def merge_fields(
    dataset: Dataset,
    pre_schema: DatasetSchema,
    cur_fields: list[FieldSchema],
) -> list[FieldSchema]:
    """Merge a new field list onto the previous schema.

    Incoming fields without a status become available. Previous fields
    whose keys are absent are appended as tombstones so historical items
    keep their meaning. Keys are then generated and the result validated.

    Raises:
        InvalidParamError: If the merged list is invalid
    """
    merged = [f.clone() for f in cur_fields]
    for f in merged:
        if f.status == FieldStatus.UNKNOWN:
            f.status = FieldStatus.AVAILABLE

    cur_keys = {f.key for f in merged if f.key}
    for pre in pre_schema.fields:
        if pre.key and pre.key not in cur_keys:
            tomb = pre.clone()
            tomb.status = FieldStatus.DELETED
            merged.append(tomb)

    gen_field_keys(merged)
    validate_fields(dataset, merged)
    return merged
