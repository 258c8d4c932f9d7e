"""
Schema entities: DatasetSchema and its FieldSchema list.

A DatasetSchema is a versioned, ordered collection of fields. Field keys
are the stable identity of a column across schema revisions; names are
display labels only.

Invariants:
    - Deleted fields are tombstoned (status=deleted), never removed
    - update_version is the optimistic-lock counter of the schema row
    - An immutable schema is never edited in place; a new row replaces it

How to change safely:
    - Add new FieldSchema attributes with defaults and keep them in to_dict()
    - Never reorder enum values persisted in the database
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .common import drop_empty, split_known, with_extra


class ContentType(Enum):
    """Content type of a field."""

    UNKNOWN = ""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    MULTIPART = "multipart"

    @property
    def is_multi_modal(self) -> bool:
        return self in (ContentType.IMAGE, ContentType.AUDIO, ContentType.VIDEO, ContentType.MULTIPART)

    @classmethod
    def from_str(cls, value: str | None) -> ContentType:
        """Convert string representation to ContentType.

        Raises:
            ValueError: If value is not a valid content type
        """
        for kind in cls:
            if kind.value == (value or ""):
                return kind
        valid = [k.value for k in cls if k.value]
        raise ValueError(f"Invalid content type '{value}'. Valid types: {valid}")


class FieldDisplayFormat(Enum):
    UNKNOWN = ""
    PLAIN_TEXT = "plain-text"
    MARKDOWN = "markdown"
    JSON = "json"
    YAML = "yaml"
    CODE = "code"


class SchemaKey(Enum):
    """Builtin text schemas selectable by key."""

    UNKNOWN = ""
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOL = "bool"
    MESSAGE = "message"


class FieldStatus(Enum):
    UNKNOWN = ""
    AVAILABLE = "available"
    DELETED = "deleted"


@dataclass
class MultiModalSpec:
    """Limits for image/audio/video fields."""

    max_file_count: int = 0
    max_file_size: int = 0
    supported_formats: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_file_count": self.max_file_count,
            "max_file_size": self.max_file_size,
            "supported_formats": list(self.supported_formats),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MultiModalSpec:
        return cls(
            max_file_count=int(data.get("max_file_count") or 0),
            max_file_size=int(data.get("max_file_size") or 0),
            supported_formats=list(data.get("supported_formats") or []),
        )


_FIELD_KEYS = {
    "key",
    "name",
    "description",
    "content_type",
    "default_format",
    "schema_key",
    "text_schema",
    "multi_modal_spec",
    "status",
    "hidden",
}


@dataclass
class FieldSchema:
    """One column of a dataset.

    Attributes:
        key: Stable identity, unique across schema revisions
        name: Display name, unique among available fields
        description: Free text
        content_type: Kind of content stored in the field
        default_format: Display format used when data carries none
        schema_key: Builtin text schema selector
        text_schema: Inline JSON Schema for text content
        multi_modal_spec: Limits for multi-modal content
        status: available or deleted (tombstone)
        hidden: Not shown to users
    """

    key: str = ""
    name: str = ""
    description: str = ""
    content_type: ContentType = ContentType.TEXT
    default_format: FieldDisplayFormat = FieldDisplayFormat.UNKNOWN
    schema_key: SchemaKey = SchemaKey.UNKNOWN
    text_schema: dict[str, Any] | None = None
    multi_modal_spec: MultiModalSpec | None = None
    status: FieldStatus = FieldStatus.AVAILABLE
    hidden: bool = False
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def available(self) -> bool:
        return self.status in (FieldStatus.AVAILABLE, FieldStatus.UNKNOWN)

    def to_dict(self) -> dict[str, Any]:
        base = drop_empty(
            {
                "key": self.key,
                "name": self.name,
                "description": self.description or None,
                "content_type": self.content_type.value,
                "default_format": self.default_format.value or None,
                "schema_key": self.schema_key.value or None,
                "text_schema": self.text_schema,
                "multi_modal_spec": self.multi_modal_spec.to_dict() if self.multi_modal_spec else None,
                "status": self.status.value or None,
                "hidden": self.hidden,
            }
        )
        return with_extra(base, self.extra)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldSchema:
        known, extra = split_known(data, _FIELD_KEYS)
        spec = known.get("multi_modal_spec")
        return cls(
            key=known.get("key") or "",
            name=known.get("name") or "",
            description=known.get("description") or "",
            content_type=ContentType.from_str(known.get("content_type")),
            default_format=FieldDisplayFormat(known.get("default_format") or ""),
            schema_key=SchemaKey(known.get("schema_key") or ""),
            text_schema=known.get("text_schema"),
            multi_modal_spec=MultiModalSpec.from_dict(spec) if spec else None,
            status=FieldStatus(known.get("status") or ""),
            hidden=bool(known.get("hidden", False)),
            extra=extra,
        )

    def clone(self) -> FieldSchema:
        return copy.deepcopy(self)


@dataclass
class DatasetSchema:
    """Versioned field list of a dataset.

    Attributes:
        id: Schema row id
        space_id: Tenant shard key
        dataset_id: Owning dataset
        fields: Ordered fields, including tombstones
        immutable: Set once a version has been created against the schema
        update_version: Optimistic-lock counter
    """

    id: int = 0
    app_id: int = 0
    space_id: int = 0
    dataset_id: int = 0
    fields: list[FieldSchema] = field(default_factory=list)
    immutable: bool = False
    created_by: str = ""
    created_at: int = 0
    updated_by: str = ""
    updated_at: int = 0
    update_version: int = 0

    def available_fields(self) -> list[FieldSchema]:
        return [f for f in self.fields if f.available]

    def field_by_key(self, key: str) -> FieldSchema | None:
        for f in self.fields:
            if f.key == key:
                return f
        return None

    def fields_to_json(self) -> list[dict[str, Any]]:
        return [f.to_dict() for f in self.fields]

    @staticmethod
    def fields_from_json(data: list[dict[str, Any]] | None) -> list[FieldSchema]:
        return [FieldSchema.from_dict(d) for d in data or []]
