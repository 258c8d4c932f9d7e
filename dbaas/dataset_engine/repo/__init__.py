"""
Relational persistence of dataset entities.
"""

from .base import NO_OPTIONS, ListItemsParams, PageResult, RepoOptions, Transaction
from .idgen import IDGenerationError, IDGenerator, TimeOrderedIDGenerator
from .sqlite import MAX_BATCH_GET, SQLiteRepository

__all__ = [
    # Options
    "ListItemsParams",
    "NO_OPTIONS",
    "PageResult",
    "RepoOptions",
    "Transaction",
    # IDs
    "IDGenerationError",
    "IDGenerator",
    "TimeOrderedIDGenerator",
    # SQLite
    "MAX_BATCH_GET",
    "SQLiteRepository",
]
