"""
Dataset entities.

A Dataset is the top-level container. It owns its schemas, versions,
items, snapshots and IO jobs; deleting it only flips its status.

Invariants:
    - Exactly one active schema_id at any time
    - next_version_num starts at 1 and never decreases
    - status in {deleted, expired} forbids item writes
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .common import now_ms, split_known, with_extra
from .schema import DatasetSchema


class DatasetStatus(Enum):
    AVAILABLE = "available"
    DELETED = "deleted"
    EXPIRED = "expired"
    IMPORTING = "importing"
    EXPORTING = "exporting"
    INDEXING = "indexing"


class DatasetOpType(Enum):
    """Kinds of dataset mutations tracked by the operation barrier."""

    CREATE_DATASET = "create_dataset"
    IMPORT = "import"
    CREATE_VERSION = "create_version"
    UPDATE_SCHEMA = "update_schema"
    WRITE_ITEM = "write_item"
    CLEAR_DATASET = "clear_dataset"


@dataclass
class DatasetSpec:
    """Limits of a dataset. Zero means unlimited."""

    max_item_count: int = 0
    max_field_count: int = 0
    max_item_size: int = 0
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return with_extra(
            {
                "max_item_count": self.max_item_count,
                "max_field_count": self.max_field_count,
                "max_item_size": self.max_item_size,
            },
            self.extra,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DatasetSpec:
        known, extra = split_known(data, {"max_item_count", "max_field_count", "max_item_size"})
        return cls(
            max_item_count=int(known.get("max_item_count") or 0),
            max_field_count=int(known.get("max_field_count") or 0),
            max_item_size=int(known.get("max_item_size") or 0),
            extra=extra,
        )


@dataclass
class DatasetFeatures:
    edit_schema: bool = False
    repeated_data: bool = False
    multi_modal: bool = False
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return with_extra(
            {
                "edit_schema": self.edit_schema,
                "repeated_data": self.repeated_data,
                "multi_modal": self.multi_modal,
            },
            self.extra,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DatasetFeatures:
        known, extra = split_known(data, {"edit_schema", "repeated_data", "multi_modal"})
        return cls(
            edit_schema=bool(known.get("edit_schema", False)),
            repeated_data=bool(known.get("repeated_data", False)),
            multi_modal=bool(known.get("multi_modal", False)),
            extra=extra,
        )


@dataclass
class Dataset:
    """Top-level dataset container.

    Attributes:
        id: Dataset id
        space_id: Tenant shard key
        spec: Capacity limits
        features: Feature switches
        schema_id: Currently active schema
        latest_version: Version string of the newest version ("" if none)
        next_version_num: Version number the next version will capture
        last_operation: Last mutation kind applied
    """

    id: int = 0
    app_id: int = 0
    space_id: int = 0
    name: str = ""
    description: str = ""
    category: str = "general"
    biz_category: str = ""
    status: DatasetStatus = DatasetStatus.AVAILABLE
    security_level: str = "L1"
    visibility: str = "public"
    spec: DatasetSpec = field(default_factory=DatasetSpec)
    features: DatasetFeatures = field(default_factory=DatasetFeatures)
    schema_id: int = 0
    latest_version: str = ""
    next_version_num: int = 1
    last_operation: DatasetOpType | None = None
    created_by: str = ""
    created_at: int = 0
    updated_by: str = ""
    updated_at: int = 0
    expired_at: int | None = None

    def can_write_item(self) -> bool:
        return self.status not in (DatasetStatus.DELETED, DatasetStatus.EXPIRED)

    def brief(self) -> dict[str, Any]:
        """JSON copy stored on a version at creation time."""
        return {
            "id": self.id,
            "space_id": self.space_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "biz_category": self.biz_category,
            "status": self.status.value,
            "security_level": self.security_level,
            "visibility": self.visibility,
            "spec": self.spec.to_dict(),
            "features": self.features.to_dict(),
            "schema_id": self.schema_id,
            "latest_version": self.latest_version,
            "next_version_num": self.next_version_num,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at,
        }


@dataclass
class DatasetWithSchema:
    """A dataset together with its active schema, as read by services."""

    dataset: Dataset
    schema: DatasetSchema

    @property
    def id(self) -> int:
        return self.dataset.id

    @property
    def space_id(self) -> int:
        return self.dataset.space_id


@dataclass
class DatasetOperation:
    """Short-lived barrier record of an in-flight mutation.

    Attributes:
        id: Random id, unique per acquisition
        type: Operation kind
        ts: Creation time (ms)
        ttl_ms: Lifetime after which readers ignore the record
    """

    type: DatasetOpType
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    ts: int = field(default_factory=now_ms)
    ttl_ms: int = 60_000

    def expired(self, at_ms: int | None = None) -> bool:
        return (at_ms if at_ms is not None else now_ms()) >= self.ts + self.ttl_ms

    def to_dict(self) -> dict[str, Any]:
        return {"ts": self.ts, "ttl": self.ttl_ms}

    @classmethod
    def from_dict(cls, op_id: str, op_type: DatasetOpType, data: dict[str, Any]) -> DatasetOperation:
        return cls(type=op_type, id=op_id, ts=int(data.get("ts", 0)), ttl_ms=int(data.get("ttl", 0)))

    def __str__(self) -> str:
        return f"{{id={self.id}, type={self.type.value}, ts={self.ts}, ttl={self.ttl_ms}}}"
