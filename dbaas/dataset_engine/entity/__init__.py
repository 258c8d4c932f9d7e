"""
Entity types of the dataset engine.

Datasets own schemas, versions, items, snapshots and IO jobs. Everything
here is a plain dataclass; persistence lives in ``repo``.
"""

from .common import MAX_VERSION_NUM, Provider, now_ms
from .dataset import (
    Dataset,
    DatasetFeatures,
    DatasetOperation,
    DatasetOpType,
    DatasetSpec,
    DatasetStatus,
    DatasetWithSchema,
)
from .io_job import (
    DatasetIODataset,
    DatasetIOEndpoint,
    DatasetIOFile,
    DeltaIOJob,
    FieldMapping,
    FileFormat,
    IOJob,
    IOJobOption,
    IOJobProgress,
    JobStatus,
    JobType,
    SubProgress,
)
from .item import (
    FieldData,
    IndexedItem,
    Item,
    ItemData,
    ItemDataProperties,
    ItemErrorDetail,
    ItemErrorGroup,
    ItemErrorType,
    ItemSnapshot,
    ObjectStorage,
    merge_error_group,
)
from .schema import (
    ContentType,
    DatasetSchema,
    FieldDisplayFormat,
    FieldSchema,
    FieldStatus,
    MultiModalSpec,
    SchemaKey,
)
from .version import DatasetVersion, SnapshotProgress, SnapshotStatus

__all__ = [
    # Common
    "MAX_VERSION_NUM",
    "Provider",
    "now_ms",
    # Dataset
    "Dataset",
    "DatasetFeatures",
    "DatasetOperation",
    "DatasetOpType",
    "DatasetSpec",
    "DatasetStatus",
    "DatasetWithSchema",
    # Schema
    "ContentType",
    "DatasetSchema",
    "FieldDisplayFormat",
    "FieldSchema",
    "FieldStatus",
    "MultiModalSpec",
    "SchemaKey",
    # Item
    "FieldData",
    "IndexedItem",
    "Item",
    "ItemData",
    "ItemDataProperties",
    "ItemErrorDetail",
    "ItemErrorGroup",
    "ItemErrorType",
    "ItemSnapshot",
    "ObjectStorage",
    "merge_error_group",
    # Version
    "DatasetVersion",
    "SnapshotProgress",
    "SnapshotStatus",
    # IO job
    "DatasetIODataset",
    "DatasetIOEndpoint",
    "DatasetIOFile",
    "DeltaIOJob",
    "FieldMapping",
    "FileFormat",
    "IOJob",
    "IOJobOption",
    "IOJobProgress",
    "JobStatus",
    "JobType",
    "SubProgress",
]
