"""
Source files for imports: read-only file systems and record readers.
"""

from .readers import (
    CSVReader,
    FileDecodeError,
    FileReadError,
    JSONLReader,
    ParquetReader,
    Record,
    RecordReader,
    open_reader,
)
from .vfs import FileSystems, LocalFS, ReadOnlyFS

__all__ = [
    # File systems
    "FileSystems",
    "LocalFS",
    "ReadOnlyFS",
    # Readers
    "CSVReader",
    "FileDecodeError",
    "FileReadError",
    "JSONLReader",
    "ParquetReader",
    "Record",
    "RecordReader",
    "open_reader",
]
