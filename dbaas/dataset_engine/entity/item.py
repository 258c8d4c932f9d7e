"""
Item entities: rows of a dataset, their field data and error reports.

An item is live in version V iff add_vn <= V < del_vn. In memory a live
row carries del_vn=None; the repository stores MAX_VERSION_NUM instead.

Invariants:
    - add_vn >= 1 for every persisted row
    - del_vn is None or greater than add_vn
    - item_key defaults to str(item_id) so the unique index never sees ""
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .common import Provider, drop_empty, split_known, with_extra
from .schema import ContentType, FieldDisplayFormat


@dataclass
class ObjectStorage:
    """Reference to an attachment in object storage.

    url and thumb_url are signed on read and never persisted.
    """

    provider: str = ""
    name: str = ""
    uri: str = ""
    url: str = ""
    thumb_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return drop_empty(
            {"provider": self.provider or None, "name": self.name or None, "uri": self.uri or None}
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObjectStorage:
        return cls(provider=data.get("provider", ""), name=data.get("name", ""), uri=data.get("uri", ""))


@dataclass
class FieldData:
    """Content of one field of one item."""

    key: str = ""
    name: str = ""
    content_type: ContentType = ContentType.UNKNOWN
    format: FieldDisplayFormat = FieldDisplayFormat.UNKNOWN
    content: str = ""
    attachments: list[ObjectStorage] = field(default_factory=list)
    parts: list[FieldData] = field(default_factory=list)

    def data_bytes(self) -> int:
        n = len(self.content.encode("utf-8"))
        for att in self.attachments:
            n += len(att.name.encode("utf-8")) + len(att.uri.encode("utf-8"))
        for part in self.parts:
            n += part.data_bytes()
        return n

    def data_runes(self) -> int:
        n = len(self.content)
        for att in self.attachments:
            n += len(att.name) + len(att.uri)
        for part in self.parts:
            n += part.data_runes()
        return n

    def to_dict(self) -> dict[str, Any]:
        return drop_empty(
            {
                "key": self.key or None,
                "content_type": self.content_type.value or None,
                "format": self.format.value or None,
                "content": self.content or None,
                "attachments": [a.to_dict() for a in self.attachments] or None,
                "parts": [p.to_dict() for p in self.parts] or None,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldData:
        return cls(
            key=data.get("key", ""),
            name=data.get("name", ""),
            content_type=ContentType.from_str(data.get("content_type")),
            format=FieldDisplayFormat(data.get("format") or ""),
            content=data.get("content", ""),
            attachments=[ObjectStorage.from_dict(a) for a in data.get("attachments") or []],
            parts=[FieldData.from_dict(p) for p in data.get("parts") or []],
        )


@dataclass
class ItemData:
    """One row of a multi-turn (repeated) item."""

    id: int = 0
    data: list[FieldData] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return drop_empty({"id": self.id or None, "data": [d.to_dict() for d in self.data] or None})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ItemData:
        return cls(id=int(data.get("id") or 0), data=[FieldData.from_dict(d) for d in data.get("data") or []])


@dataclass
class ItemDataProperties:
    """Where and how the payload of an item is stored.

    Attributes:
        storage: Payload provider; RDS (or None) means inline in the row
        storage_key: Key in the external provider
        compress_format: Empty means uncompressed
        bytes: Payload size in bytes
        runes: Payload size in characters
    """

    storage: Provider | None = None
    storage_key: str = ""
    compress_format: str = ""
    bytes: int = 0
    runes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return drop_empty(
            {
                "storage": self.storage.value if self.storage else None,
                "storage_key": self.storage_key or None,
                "compress_format": self.compress_format or None,
                "bytes": self.bytes,
                "characters": self.runes,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ItemDataProperties:
        data = data or {}
        storage = data.get("storage")
        return cls(
            storage=Provider(storage) if storage else None,
            storage_key=data.get("storage_key", ""),
            compress_format=data.get("compress_format", ""),
            bytes=int(data.get("bytes") or 0),
            runes=int(data.get("characters") or 0),
        )


@dataclass
class Item:
    """One data row of a dataset."""

    id: int = 0
    app_id: int = 0
    space_id: int = 0
    dataset_id: int = 0
    schema_id: int = 0
    item_id: int = 0
    item_key: str = ""
    data: list[FieldData] = field(default_factory=list)
    repeated_data: list[ItemData] = field(default_factory=list)
    data_properties: ItemDataProperties | None = None
    add_vn: int = 0
    del_vn: int | None = None
    created_by: str = ""
    created_at: int = 0
    updated_by: str = ""
    updated_at: int = 0

    def all_data(self) -> list[list[FieldData]]:
        if self.repeated_data:
            return [row.data for row in self.repeated_data]
        return [self.data]

    def build_properties(self) -> ItemDataProperties:
        rows = self.all_data()
        props = ItemDataProperties(
            bytes=sum(fd.data_bytes() for row in rows for fd in row),
            runes=sum(fd.data_runes() for row in rows for fd in row),
        )
        self.data_properties = props
        return props

    def get_or_build_properties(self) -> ItemDataProperties:
        if self.data_properties is None:
            return self.build_properties()
        return self.data_properties

    def clear_data(self) -> None:
        self.data = []
        self.repeated_data = []

    def payload_to_dict(self) -> dict[str, Any]:
        return drop_empty(
            {
                "data": [d.to_dict() for d in self.data] or None,
                "repeated_data": [r.to_dict() for r in self.repeated_data] or None,
            }
        )

    def load_payload(self, payload: dict[str, Any]) -> None:
        self.data = [FieldData.from_dict(d) for d in payload.get("data") or []]
        self.repeated_data = [ItemData.from_dict(r) for r in payload.get("repeated_data") or []]

    def is_live_at(self, version_num: int) -> bool:
        return self.add_vn <= version_num and (self.del_vn is None or version_num < self.del_vn)

    def clone(self) -> Item:
        return copy.deepcopy(self)


@dataclass
class IndexedItem:
    """An item together with its index in the caller's input."""

    index: int
    item: Item


@dataclass
class ItemSnapshot:
    """Copy of an item bound to a version."""

    version_id: int
    snapshot: Item
    created_at: int = 0


class ItemErrorType(Enum):
    MISMATCH_SCHEMA = 1
    EMPTY_DATA = 2
    EXCEED_MAX_ITEM_SIZE = 3
    EXCEED_DATASET_CAPACITY = 4
    MALFORMED_FILE = 5
    ILLEGAL_CONTENT = 6
    INTERNAL_ERROR = 100


@dataclass
class ItemErrorDetail:
    """One error, either at a single index or over [start_index, end_index]."""

    message: str = ""
    index: int | None = None
    start_index: int | None = None
    end_index: int | None = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def span(self) -> int:
        if self.start_index is not None and self.end_index is not None:
            n = self.end_index - self.start_index + 1
            if n > 1:
                return n
        return 1

    def __str__(self) -> str:
        if self.start_index is not None or self.end_index is not None:
            return f"{self.message}, range={self.start_index or 0}-{self.end_index or 0}"
        return f"{self.message}, index={self.index or 0}"

    def to_dict(self) -> dict[str, Any]:
        return with_extra(
            drop_empty(
                {
                    "message": self.message or None,
                    "index": self.index,
                    "start_index": self.start_index,
                    "end_index": self.end_index,
                }
            ),
            self.extra,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ItemErrorDetail:
        known, extra = split_known(data, {"message", "index", "start_index", "end_index"})
        return cls(
            message=known.get("message", ""),
            index=known.get("index"),
            start_index=known.get("start_index"),
            end_index=known.get("end_index"),
            extra=extra,
        )


@dataclass
class ItemErrorGroup:
    """Errors of one kind, with a bounded list of details."""

    type: ItemErrorType
    summary: str = ""
    error_count: int = 0
    details: list[ItemErrorDetail] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return with_extra(
            drop_empty(
                {
                    "type": self.type.value,
                    "summary": self.summary or None,
                    "error_count": self.error_count,
                    "details": [d.to_dict() for d in self.details] or None,
                }
            ),
            self.extra,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ItemErrorGroup:
        known, extra = split_known(data, {"type", "summary", "error_count", "details"})
        return cls(
            type=ItemErrorType(int(known["type"])),
            summary=known.get("summary", ""),
            error_count=int(known.get("error_count") or 0),
            details=[ItemErrorDetail.from_dict(d) for d in known.get("details") or []],
            extra=extra,
        )


def merge_error_group(
    groups: dict[ItemErrorType, ItemErrorGroup],
    group: ItemErrorGroup,
    max_details: int,
) -> None:
    """Add a group into per-kind totals, keeping at most max_details details.

    Counts always accumulate; once details overflow, the summary notes
    how many errors the details stand for.
    """
    into = groups.get(group.type)
    if into is None:
        into = groups[group.type] = ItemErrorGroup(type=group.type, extra=dict(group.extra))
    into.error_count += group.error_count
    into.details.extend(group.details)
    if len(into.details) > max_details:
        into.details = into.details[:max_details]
    if into.error_count > len(into.details) and len(into.details) >= max_details:
        into.summary = f"{into.error_count} errors happened, first {len(into.details)} detailed"
    elif group.summary and not into.summary:
        into.summary = group.summary
