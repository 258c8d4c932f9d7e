"""
Option and parameter types shared by repository implementations.

Every repository method takes an optional RepoOptions. Passing the
Transaction yielded by ``repo.transaction()`` makes the call part of that
transaction; methods called without one run on their own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    import sqlite3

T = TypeVar("T")


class Transaction:
    """Handle of an open repository transaction."""

    def __init__(self, conn: "sqlite3.Connection") -> None:
        self.conn = conn


@dataclass(frozen=True)
class RepoOptions:
    """Per-call repository options.

    Attributes:
        tx: Run inside this transaction
        with_master: Read from the primary; a single SQLite file has no
            replicas, so this only documents intent at call sites
        with_deleted: Include soft-deleted datasets
    """

    tx: Transaction | None = None
    with_master: bool = False
    with_deleted: bool = False


NO_OPTIONS = RepoOptions()


@dataclass
class ListItemsParams:
    """Filter and page of an item listing, ordered by id.

    Attributes:
        add_vn_lte: Only rows with add_vn <= this
        add_vn_eq: Only rows with add_vn == this
        del_vn_gt: Only rows with del_vn > this (None del_vn counts as infinite)
        live_only: Only rows that are not archived
        item_keys: Only rows with these item keys
        ids: Only rows with these primary ids
        cursor: Opaque cursor returned by the previous page
        limit: Page size
    """

    dataset_id: int
    space_id: int | None = None
    add_vn_lte: int | None = None
    add_vn_eq: int | None = None
    del_vn_gt: int | None = None
    live_only: bool = False
    item_keys: list[str] = field(default_factory=list)
    ids: list[int] = field(default_factory=list)
    cursor: str = ""
    limit: int = 100

    @classmethod
    def live_at(cls, dataset_id: int, version_num: int, cursor: str = "", limit: int = 100) -> ListItemsParams:
        """Rows live in version_num: add_vn <= vn < del_vn."""
        return cls(
            dataset_id=dataset_id,
            add_vn_lte=version_num,
            del_vn_gt=version_num,
            cursor=cursor,
            limit=limit,
        )


@dataclass
class PageResult(Generic[T]):
    """One page of a cursor listing. An empty next_cursor means last page."""

    items: list[T]
    next_cursor: str = ""
