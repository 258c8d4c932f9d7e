"""
Dataset operations built on the repository, KV store and job bus.

Services:
    - DatasetService: dataset lifecycle
    - SchemaService: schema edits with compatibility checks
    - ItemService: item writes, reads and clears
    - VersionService: versions and their snapshot jobs
    - SnapshotBuilder: handler of snapshot job messages
    - IOJobService / FileImporter: file import jobs
"""

from .dataset import DatasetService
from .importer import FileImporter, import_item_key, record_to_content
from .io_job import IOJobService, io_job_lock_key
from .item import BatchCreateOptions, BatchCreateResult, ItemService
from .sanitize import sanitize_input, sanitize_output, validate_item, validate_items
from .schema import SchemaService
from .snapshot import RETRY_TIMES_EXTRA, SnapshotBuilder, snapshot_lock_key
from .version import VERSION_ID_EXTRA, VersionService

__all__ = [
    # Datasets and schemas
    "DatasetService",
    "SchemaService",
    # Items
    "BatchCreateOptions",
    "BatchCreateResult",
    "ItemService",
    "sanitize_input",
    "sanitize_output",
    "validate_item",
    "validate_items",
    # Versions
    "RETRY_TIMES_EXTRA",
    "SnapshotBuilder",
    "VERSION_ID_EXTRA",
    "VersionService",
    "snapshot_lock_key",
    # IO jobs
    "FileImporter",
    "IOJobService",
    "import_item_key",
    "io_job_lock_key",
    "record_to_content",
]
