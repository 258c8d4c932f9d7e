"""Dataset version entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .common import split_known, with_extra


class SnapshotStatus(Enum):
    UNSTARTED = "unstarted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (SnapshotStatus.COMPLETED, SnapshotStatus.FAILED)


@dataclass
class SnapshotProgress:
    """Opaque resume cursor of the snapshot builder."""

    cursor: str = ""
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return with_extra({"cursor": self.cursor}, self.extra)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SnapshotProgress:
        known, extra = split_known(data, {"cursor"})
        return cls(cursor=known.get("cursor") or "", extra=extra)


@dataclass
class DatasetVersion:
    """Immutable named point in the history of a dataset.

    Attributes:
        version: SemVer2 string, strictly increasing per dataset
        version_num: dataset.next_version_num captured at creation
        item_count: Number of snapshotted items once completed
        snapshot_status: Progress of the background snapshot
        snapshot_progress: Resume cursor of the snapshot
        update_version: Optimistic-lock counter
        dataset_brief: JSON copy of the dataset at creation time
    """

    id: int = 0
    app_id: int = 0
    space_id: int = 0
    dataset_id: int = 0
    schema_id: int = 0
    version: str = ""
    version_num: int = 0
    description: str = ""
    item_count: int = 0
    snapshot_status: SnapshotStatus = SnapshotStatus.UNSTARTED
    snapshot_progress: SnapshotProgress = field(default_factory=SnapshotProgress)
    update_version: int = 0
    dataset_brief: dict[str, Any] = field(default_factory=dict)
    disabled_at: int | None = None
    created_by: str = ""
    created_at: int = 0
    updated_by: str = ""
    updated_at: int = 0
