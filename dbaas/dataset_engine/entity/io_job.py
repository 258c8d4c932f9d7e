"""
IO job entities: units of background import/export work.

Endpoints, field mappings, options, sub-progresses and errors are stored
as JSON blobs; unknown keys are preserved through ``extra``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .common import Provider, drop_empty, split_known, with_extra
from .item import ItemErrorGroup


class JobType(Enum):
    IMPORT_FROM_FILE = "import_from_file"
    EXPORT_TO_FILE = "export_to_file"
    EXPORT_TO_DATASET = "export_to_dataset"


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class FileFormat(Enum):
    CSV = "csv"
    JSONL = "jsonl"
    PARQUET = "parquet"

    @classmethod
    def from_path(cls, path: str) -> FileFormat | None:
        lower = path.lower()
        for fmt in cls:
            if lower.endswith("." + fmt.value):
                return fmt
        return None


_FILE_KEYS = {"provider", "path", "format", "compress_format", "files"}


@dataclass
class DatasetIOFile:
    """A file (or directory of files) under one provider."""

    provider: Provider = Provider.LOCAL
    path: str = ""
    format: FileFormat | None = None
    compress_format: str = ""
    files: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        base = drop_empty(
            {
                "provider": self.provider.value,
                "path": self.path,
                "format": self.format.value if self.format else None,
                "compress_format": self.compress_format or None,
                "files": list(self.files) or None,
            }
        )
        return with_extra(base, self.extra)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DatasetIOFile:
        known, extra = split_known(data, _FILE_KEYS)
        fmt = known.get("format")
        return cls(
            provider=Provider(known.get("provider") or Provider.LOCAL.value),
            path=known.get("path", ""),
            format=FileFormat(fmt) if fmt else None,
            compress_format=known.get("compress_format", ""),
            files=list(known.get("files") or []),
            extra=extra,
        )


@dataclass
class DatasetIODataset:
    space_id: int = 0
    dataset_id: int = 0
    version_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return drop_empty(
            {"space_id": self.space_id, "dataset_id": self.dataset_id, "version_id": self.version_id}
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DatasetIODataset:
        return cls(
            space_id=int(data.get("space_id") or 0),
            dataset_id=int(data.get("dataset_id") or 0),
            version_id=data.get("version_id"),
        )


@dataclass
class DatasetIOEndpoint:
    file: DatasetIOFile | None = None
    dataset: DatasetIODataset | None = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        base = drop_empty(
            {
                "file": self.file.to_dict() if self.file else None,
                "dataset": self.dataset.to_dict() if self.dataset else None,
            }
        )
        return with_extra(base, self.extra)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DatasetIOEndpoint:
        known, extra = split_known(data, {"file", "dataset"})
        return cls(
            file=DatasetIOFile.from_dict(known["file"]) if known.get("file") else None,
            dataset=DatasetIODataset.from_dict(known["dataset"]) if known.get("dataset") else None,
            extra=extra,
        )


@dataclass
class FieldMapping:
    """Maps a source column to a target field name."""

    source: str
    target: str
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return with_extra({"source": self.source, "target": self.target}, self.extra)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldMapping:
        known, extra = split_known(data, {"source", "target"})
        return cls(source=known.get("source", ""), target=known.get("target", ""), extra=extra)


@dataclass
class IOJobOption:
    overwrite_dataset: bool = False
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return with_extra({"overwrite_dataset": self.overwrite_dataset}, self.extra)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> IOJobOption:
        known, extra = split_known(data, {"overwrite_dataset"})
        return cls(overwrite_dataset=bool(known.get("overwrite_dataset", False)), extra=extra)


@dataclass
class SubProgress:
    """Progress of one file inside a multi-file job."""

    name: str
    total: int | None = None
    processed: int = 0
    added: int = 0
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return with_extra(
            drop_empty({"name": self.name, "total": self.total, "processed": self.processed, "added": self.added}),
            self.extra,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubProgress:
        known, extra = split_known(data, {"name", "total", "processed", "added"})
        return cls(
            name=known.get("name", ""),
            total=known.get("total"),
            processed=int(known.get("processed") or 0),
            added=int(known.get("added") or 0),
            extra=extra,
        )


@dataclass
class IOJobProgress:
    total: int | None = None
    processed: int = 0
    added: int = 0
    sub_progresses: list[SubProgress] = field(default_factory=list)


@dataclass
class IOJob:
    """Background import/export job.

    Attributes:
        job_type: What the job does
        source: Where records come from
        target: Where records go
        field_mappings: Source column to target field name, many-to-many
        option: Job options
        status: Lifecycle state
        progress: Absolute progress counters
        errors: Grouped item errors, details capped per kind
    """

    id: int = 0
    app_id: int = 0
    space_id: int = 0
    dataset_id: int = 0
    job_type: JobType = JobType.IMPORT_FROM_FILE
    source: DatasetIOEndpoint = field(default_factory=DatasetIOEndpoint)
    target: DatasetIOEndpoint = field(default_factory=DatasetIOEndpoint)
    field_mappings: list[FieldMapping] = field(default_factory=list)
    option: IOJobOption = field(default_factory=IOJobOption)
    status: JobStatus = JobStatus.PENDING
    progress: IOJobProgress = field(default_factory=IOJobProgress)
    errors: list[ItemErrorGroup] = field(default_factory=list)
    created_by: str = ""
    created_at: int = 0
    updated_by: str = ""
    updated_at: int = 0
    started_at: int | None = None
    ended_at: int | None = None


@dataclass
class DeltaIOJob:
    """Changes to apply to an IO job row since the last commit.

    The repository turns the deltas into absolute totals, guarded by
    pre_processed matching the stored processed count.

    Attributes:
        status: New status, if any
        total: New absolute total, if any
        pre_processed: Expected stored processed count before this delta
        delta_processed: Records processed since the last commit
        delta_added: Items added since the last commit
        sub_progresses: Replaces stored sub-progresses when non-empty
        errors: Replaces stored errors when non-empty
        started_at: Start time, if set now
        ended_at: End time, if set now
    """

    status: JobStatus | None = None
    total: int | None = None
    pre_processed: int | None = None
    delta_processed: int = 0
    delta_added: int = 0
    sub_progresses: list[SubProgress] = field(default_factory=list)
    errors: list[ItemErrorGroup] = field(default_factory=list)
    started_at: int | None = None
    ended_at: int | None = None
