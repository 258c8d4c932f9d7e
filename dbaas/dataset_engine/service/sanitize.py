"""
Input and output shaping of items against a dataset schema.

Invariants:
    - sanitize_input is idempotent
    - Multipart data keeps at most one level of parts after sanitizing
    - Zero-byte fields are dropped from input
    - sanitize_output never returns fields that are not available
"""

from __future__ import annotations

import logging

from ..entity import (
    ContentType,
    DatasetSchema,
    DatasetWithSchema,
    FieldData,
    FieldDisplayFormat,
    FieldSchema,
    IndexedItem,
    Item,
    ItemErrorDetail,
    ItemErrorGroup,
    ItemErrorType,
)
from ..errors import (
    DatasetCapacityFullError,
    DatasetError,
    InvalidParamError,
    ItemDataSizeExceededError,
    SchemaMismatchError,
)
from ..schema import single_type, text_schema_of, validate_field_data

logger = logging.getLogger(__name__)


def sanitize_input(ds: DatasetWithSchema, items: list[Item]) -> None:
    """Trim and fill item data in place so it matches the schema.

    Fields given by name only get their key filled in. Fields unknown to
    the schema are dropped. Repeated datasets keep only repeated_data,
    others keep only data.
    """
    fields = {f.key: f for f in ds.schema.fields}
    name_to_key = {f.name: f.key for f in ds.schema.available_fields()}

    for item in items:
        if ds.dataset.features.repeated_data:
            item.data = []
            kept = []
            for row in item.repeated_data:
                pruned = _sanitize_row(row.data, fields, name_to_key)
                if pruned:
                    row.data = pruned
                    kept.append(row)
            item.repeated_data = kept
        else:
            item.repeated_data = []
            item.data = _sanitize_row(item.data, fields, name_to_key)


def _sanitize_row(
    data: list[FieldData],
    fields: dict[str, FieldSchema],
    name_to_key: dict[str, str],
) -> list[FieldData]:
    kept = []
    for fd in data:
        if not fd.key:
            fd.key = name_to_key.get(fd.name, "")
        schema = fields.get(fd.key)
        if schema is None:
            continue

        fd.content_type = schema.content_type
        _sanitize_field(fd, walk_level=1)
        if fd.data_bytes() == 0:
            continue
        _cast_field(schema, fd)
        kept.append(fd)
    return kept


def _sanitize_field(fd: FieldData, walk_level: int) -> None:
    ct = fd.content_type
    if ct == ContentType.TEXT:
        fd.parts = []
        fd.content = fd.content.strip()
    elif ct in (ContentType.IMAGE, ContentType.AUDIO, ContentType.VIDEO):
        fd.content = ""
        fd.parts = []
    elif ct == ContentType.MULTIPART:
        fd.content = ""
        fd.attachments = []
        if walk_level == 0:
            fd.parts = []
        for part in fd.parts:
            _sanitize_field(part, walk_level - 1)
        fd.parts = [p for p in fd.parts if p.data_bytes() > 0]
    else:
        fd.content = ""
        fd.parts = []
        fd.attachments = []


def _cast_field(schema: FieldSchema, fd: FieldData) -> None:
    if schema.content_type != ContentType.TEXT or not fd.content:
        return
    if single_type(text_schema_of(schema)) == "boolean":
        fd.content = fd.content.lower()


def validate_items(
    ds: DatasetWithSchema,
    items: list[IndexedItem],
) -> tuple[list[IndexedItem], list[ItemErrorGroup]]:
    """Split items into valid ones and per-kind error groups.

    Size is checked first; an oversized item is not validated further.
    Every field of every row is checked against its available schema
    field, so one item can contribute several mismatch details.
    """
    by_key = {f.key: f for f in ds.schema.available_fields()}
    max_size = ds.dataset.spec.max_item_size
    groups: dict[ItemErrorType, ItemErrorGroup] = {}

    def add_error(index: int, kind: ItemErrorType, message: str) -> None:
        group = groups.setdefault(kind, ItemErrorGroup(type=kind))
        group.error_count += 1
        group.details.append(ItemErrorDetail(message=message, index=index))

    good = []
    for ii in items:
        props = ii.item.get_or_build_properties()
        if max_size > 0 and props.bytes > max_size:
            add_error(
                ii.index,
                ItemErrorType.EXCEED_MAX_ITEM_SIZE,
                f"size of item {props.bytes} exceeds max {max_size}",
            )
            continue

        valid = True
        for row in ii.item.all_data():
            row_by_key = {fd.key: fd for fd in row}
            for key, field in by_key.items():
                fd = row_by_key.get(key)
                if fd is None:
                    continue
                try:
                    validate_field_data(field, fd)
                except SchemaMismatchError as e:
                    valid = False
                    add_error(
                        ii.index,
                        ItemErrorType.MISMATCH_SCHEMA,
                        f"field_name={field.name}, msg={e.message}",
                    )
        if valid:
            good.append(ii)

    return good, list(groups.values())


_ERRORS_BY_KIND: dict[ItemErrorType, type[DatasetError]] = {
    ItemErrorType.EXCEED_MAX_ITEM_SIZE: ItemDataSizeExceededError,
    ItemErrorType.MISMATCH_SCHEMA: SchemaMismatchError,
    ItemErrorType.EXCEED_DATASET_CAPACITY: DatasetCapacityFullError,
}


def validate_item(ds: DatasetWithSchema, item: Item) -> None:
    """Validate a single item, raising the error of its first problem."""
    _, bad = validate_items(ds, [IndexedItem(index=0, item=item)])
    if not bad:
        return
    group = bad[0]
    msg = f"reason={group.type.name}"
    if group.details:
        msg += f", message={group.details[0].message}"
    raise _ERRORS_BY_KIND.get(group.type, InvalidParamError)(f"invalid item, {msg}")


def sanitize_output(schema: DatasetSchema, items: list[Item]) -> None:
    """Hide unavailable fields and backfill display attributes in place."""
    by_key = {f.key: f for f in schema.available_fields()}
    for item in items:
        item.data = [fd for fd in item.data if fd.key in by_key]
        for row in item.repeated_data:
            row.data = [fd for fd in row.data if fd.key in by_key]

        for row in item.all_data():
            for fd in row:
                field = by_key[fd.key]
                fd.name = field.name
                if fd.content_type == ContentType.UNKNOWN:
                    fd.content_type = field.content_type
                if fd.format == FieldDisplayFormat.UNKNOWN:
                    fd.format = field.default_format
