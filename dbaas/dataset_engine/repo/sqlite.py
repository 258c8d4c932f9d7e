"""
SQLite repository for datasets, schemas, versions, items, snapshots and
IO jobs.

One connection is opened per repository and guarded by an asyncio lock.
``transaction()`` holds the lock for the whole transaction; methods given
that transaction through RepoOptions run on it without re-locking, methods
called without one take the lock for a single statement group.

Invariants:
    - JSON blob columns keep unknown keys (entities carry them in ``extra``)
    - dataset_items.del_vn stores MAX_VERSION_NUM for live rows; entities
      see None
    - (dataset_id, item_key, add_vn) is unique; inserts that hit it are
      ignored and reported through the inserted count
    - (version_id, item_id) is unique in item_snapshots; snapshot writes
      are upserts
    - patch_* with a ``where`` pre-image raises
      ConcurrentDatasetOperationsError when no row matches

How to change safely:
    - Schema changes must be additive (new columns with defaults)
    - Never call a repository method without passing the open transaction
      from inside ``transaction()``; the lock is not re-entrant

Table schema:
    datasets:           id, space_id, ..., spec, features (JSON), schema_id,
                        latest_version, next_version_num, last_operation
    dataset_schemas:    id, dataset_id, fields (JSON), immutable, update_version
    dataset_versions:   id, dataset_id, schema_id, version, version_num,
                        snapshot_status, snapshot_progress (JSON),
                        dataset_brief (JSON), update_version
    dataset_items:      id, dataset_id, item_id, item_key, data (JSON),
                        data_properties (JSON), add_vn, del_vn
    item_snapshots:     version_id, item_id, snapshot (JSON item row)
    io_jobs:            id, dataset_id, job_type, source/target/field_mappings/
                        option (JSON), status, progress_*, sub_progresses,
                        errors (JSON)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any

from ..entity import (
    MAX_VERSION_NUM,
    Dataset,
    DatasetFeatures,
    DatasetIOEndpoint,
    DatasetOpType,
    DatasetSchema,
    DatasetSpec,
    DatasetStatus,
    DatasetVersion,
    DeltaIOJob,
    FieldMapping,
    IOJob,
    IOJobOption,
    IOJobProgress,
    Item,
    ItemDataProperties,
    ItemErrorGroup,
    ItemSnapshot,
    JobStatus,
    JobType,
    SnapshotProgress,
    SnapshotStatus,
    SubProgress,
    now_ms,
)
from ..errors import ConcurrentDatasetOperationsError, InternalError, NotFoundError
from .base import NO_OPTIONS, ListItemsParams, PageResult, RepoOptions, Transaction
from .idgen import IDGenerationError, IDGenerator

logger = logging.getLogger(__name__)

MAX_BATCH_GET = 100

_DATASET_COLUMNS = {
    "app_id", "space_id", "name", "description", "category", "biz_category", "status",
    "security_level", "visibility", "spec", "features", "schema_id", "latest_version",
    "next_version_num", "last_operation", "created_by", "created_at", "updated_by",
    "updated_at", "expired_at",
}
_SCHEMA_COLUMNS = {"fields", "immutable", "update_version", "updated_by", "updated_at"}
_VERSION_COLUMNS = {
    "description", "item_count", "snapshot_status", "snapshot_progress", "update_version",
    "disabled_at", "updated_by", "updated_at",
}


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    return json.loads(raw)


def _del_vn_to_db(del_vn: int | None) -> int:
    return MAX_VERSION_NUM if del_vn is None else del_vn


def _del_vn_from_db(del_vn: int) -> int | None:
    return None if del_vn >= MAX_VERSION_NUM else del_vn


def _dataset_from_row(row: sqlite3.Row) -> Dataset:
    last_op = row["last_operation"]
    return Dataset(
        id=row["id"],
        app_id=row["app_id"],
        space_id=row["space_id"],
        name=row["name"],
        description=row["description"],
        category=row["category"],
        biz_category=row["biz_category"],
        status=DatasetStatus(row["status"]),
        security_level=row["security_level"],
        visibility=row["visibility"],
        spec=DatasetSpec.from_dict(_loads(row["spec"], {})),
        features=DatasetFeatures.from_dict(_loads(row["features"], {})),
        schema_id=row["schema_id"],
        latest_version=row["latest_version"],
        next_version_num=row["next_version_num"],
        last_operation=DatasetOpType(last_op) if last_op else None,
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_by=row["updated_by"],
        updated_at=row["updated_at"],
        expired_at=row["expired_at"],
    )


def _schema_from_row(row: sqlite3.Row) -> DatasetSchema:
    return DatasetSchema(
        id=row["id"],
        app_id=row["app_id"],
        space_id=row["space_id"],
        dataset_id=row["dataset_id"],
        fields=DatasetSchema.fields_from_json(_loads(row["fields"], [])),
        immutable=bool(row["immutable"]),
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_by=row["updated_by"],
        updated_at=row["updated_at"],
        update_version=row["update_version"],
    )


def _version_from_row(row: sqlite3.Row) -> DatasetVersion:
    return DatasetVersion(
        id=row["id"],
        app_id=row["app_id"],
        space_id=row["space_id"],
        dataset_id=row["dataset_id"],
        schema_id=row["schema_id"],
        version=row["version"],
        version_num=row["version_num"],
        description=row["description"],
        item_count=row["item_count"],
        snapshot_status=SnapshotStatus(row["snapshot_status"]),
        snapshot_progress=SnapshotProgress.from_dict(_loads(row["snapshot_progress"], {})),
        update_version=row["update_version"],
        dataset_brief=_loads(row["dataset_brief"], {}),
        disabled_at=row["disabled_at"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_by=row["updated_by"],
        updated_at=row["updated_at"],
    )


def _item_to_record(item: Item) -> dict[str, Any]:
    props = item.data_properties
    return {
        "id": item.id,
        "app_id": item.app_id,
        "space_id": item.space_id,
        "dataset_id": item.dataset_id,
        "schema_id": item.schema_id,
        "item_id": item.item_id,
        "item_key": item.item_key,
        "data": json.dumps(item.payload_to_dict(), ensure_ascii=False),
        "data_properties": json.dumps(props.to_dict() if props else {}),
        "add_vn": item.add_vn,
        "del_vn": _del_vn_to_db(item.del_vn),
        "created_by": item.created_by,
        "created_at": item.created_at,
        "updated_by": item.updated_by,
        "updated_at": item.updated_at,
    }


def _item_from_record(rec: Any) -> Item:
    props = _loads(rec["data_properties"], None)
    item = Item(
        id=rec["id"],
        app_id=rec["app_id"],
        space_id=rec["space_id"],
        dataset_id=rec["dataset_id"],
        schema_id=rec["schema_id"],
        item_id=rec["item_id"],
        item_key=rec["item_key"],
        data_properties=ItemDataProperties.from_dict(props) if props else None,
        add_vn=rec["add_vn"],
        del_vn=_del_vn_from_db(rec["del_vn"]),
        created_by=rec["created_by"],
        created_at=rec["created_at"],
        updated_by=rec["updated_by"],
        updated_at=rec["updated_at"],
    )
    item.load_payload(_loads(rec["data"], {}))
    return item


def _job_from_row(row: sqlite3.Row) -> IOJob:
    return IOJob(
        id=row["id"],
        app_id=row["app_id"],
        space_id=row["space_id"],
        dataset_id=row["dataset_id"],
        job_type=JobType(row["job_type"]),
        source=DatasetIOEndpoint.from_dict(_loads(row["source"], {})),
        target=DatasetIOEndpoint.from_dict(_loads(row["target"], {})),
        field_mappings=[FieldMapping.from_dict(m) for m in _loads(row["field_mappings"], [])],
        option=IOJobOption.from_dict(_loads(row["option"], {})),
        status=JobStatus(row["status"]),
        progress=IOJobProgress(
            total=row["progress_total"],
            processed=row["progress_processed"],
            added=row["progress_added"],
            sub_progresses=[SubProgress.from_dict(s) for s in _loads(row["sub_progresses"], [])],
        ),
        errors=[ItemErrorGroup.from_dict(e) for e in _loads(row["errors"], [])],
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_by=row["updated_by"],
        updated_at=row["updated_at"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
    )


def _placeholders(values: list[Any]) -> str:
    return ",".join("?" for _ in values)


class SQLiteRepository:
    """Transactional persistence of dataset entities in one SQLite file.

    Example:
        >>> repo = SQLiteRepository(":memory:")
        >>> await repo.connect()
        >>> async with repo.transaction() as tx:
        ...     await repo.create_dataset_and_schema(ds, schema, RepoOptions(tx=tx))
    """

    def __init__(
        self,
        path: str,
        id_gen: IDGenerator | None = None,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the repository.

        Args:
            path: SQLite database file, or ":memory:"
            id_gen: Generator of dataset/schema ids; auto-increment is
                used when absent or failing
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.path = path
        self.id_gen = id_gen
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        if self._conn is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        if self.wal_mode and self.path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        self._create_schema(conn)
        self._conn = conn
        logger.info("Repository opened", extra={"sqlite_path": self.path})

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS datasets (
                id INTEGER PRIMARY KEY,
                app_id INTEGER NOT NULL DEFAULT 0,
                space_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL DEFAULT '',
                biz_category TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                security_level TEXT NOT NULL DEFAULT '',
                visibility TEXT NOT NULL DEFAULT '',
                spec TEXT NOT NULL DEFAULT '{{}}',
                features TEXT NOT NULL DEFAULT '{{}}',
                schema_id INTEGER NOT NULL DEFAULT 0,
                latest_version TEXT NOT NULL DEFAULT '',
                next_version_num INTEGER NOT NULL DEFAULT 1,
                last_operation TEXT,
                created_by TEXT NOT NULL DEFAULT '',
                created_at INTEGER NOT NULL,
                updated_by TEXT NOT NULL DEFAULT '',
                updated_at INTEGER NOT NULL,
                expired_at INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_datasets_space ON datasets(space_id, id);

            CREATE TABLE IF NOT EXISTS dataset_schemas (
                id INTEGER PRIMARY KEY,
                app_id INTEGER NOT NULL DEFAULT 0,
                space_id INTEGER NOT NULL,
                dataset_id INTEGER NOT NULL,
                fields TEXT NOT NULL DEFAULT '[]',
                immutable INTEGER NOT NULL DEFAULT 0,
                update_version INTEGER NOT NULL DEFAULT 0,
                created_by TEXT NOT NULL DEFAULT '',
                created_at INTEGER NOT NULL,
                updated_by TEXT NOT NULL DEFAULT '',
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_schemas_dataset ON dataset_schemas(dataset_id);

            CREATE TABLE IF NOT EXISTS dataset_versions (
                id INTEGER PRIMARY KEY,
                app_id INTEGER NOT NULL DEFAULT 0,
                space_id INTEGER NOT NULL,
                dataset_id INTEGER NOT NULL,
                schema_id INTEGER NOT NULL,
                version TEXT NOT NULL,
                version_num INTEGER NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                item_count INTEGER NOT NULL DEFAULT 0,
                snapshot_status TEXT NOT NULL,
                snapshot_progress TEXT NOT NULL DEFAULT '{{}}',
                update_version INTEGER NOT NULL DEFAULT 0,
                dataset_brief TEXT NOT NULL DEFAULT '{{}}',
                disabled_at INTEGER,
                created_by TEXT NOT NULL DEFAULT '',
                created_at INTEGER NOT NULL,
                updated_by TEXT NOT NULL DEFAULT '',
                updated_at INTEGER NOT NULL,
                UNIQUE (dataset_id, version)
            );

            CREATE TABLE IF NOT EXISTS dataset_items (
                id INTEGER PRIMARY KEY,
                app_id INTEGER NOT NULL DEFAULT 0,
                space_id INTEGER NOT NULL,
                dataset_id INTEGER NOT NULL,
                schema_id INTEGER NOT NULL,
                item_id INTEGER NOT NULL,
                item_key TEXT NOT NULL,
                data TEXT NOT NULL DEFAULT '{{}}',
                data_properties TEXT NOT NULL DEFAULT '{{}}',
                add_vn INTEGER NOT NULL,
                del_vn INTEGER NOT NULL DEFAULT {MAX_VERSION_NUM},
                created_by TEXT NOT NULL DEFAULT '',
                created_at INTEGER NOT NULL,
                updated_by TEXT NOT NULL DEFAULT '',
                updated_at INTEGER NOT NULL,
                UNIQUE (dataset_id, item_key, add_vn)
            );

            CREATE INDEX IF NOT EXISTS idx_items_vn ON dataset_items(dataset_id, add_vn, del_vn);

            CREATE TABLE IF NOT EXISTS item_snapshots (
                id INTEGER PRIMARY KEY,
                version_id INTEGER NOT NULL,
                space_id INTEGER NOT NULL,
                dataset_id INTEGER NOT NULL,
                item_id INTEGER NOT NULL,
                snapshot TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                UNIQUE (version_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS io_jobs (
                id INTEGER PRIMARY KEY,
                app_id INTEGER NOT NULL DEFAULT 0,
                space_id INTEGER NOT NULL,
                dataset_id INTEGER NOT NULL,
                job_type TEXT NOT NULL,
                source TEXT NOT NULL DEFAULT '{{}}',
                target TEXT NOT NULL DEFAULT '{{}}',
                field_mappings TEXT NOT NULL DEFAULT '[]',
                option TEXT NOT NULL DEFAULT '{{}}',
                status TEXT NOT NULL,
                progress_total INTEGER,
                progress_processed INTEGER NOT NULL DEFAULT 0,
                progress_added INTEGER NOT NULL DEFAULT 0,
                sub_progresses TEXT NOT NULL DEFAULT '[]',
                errors TEXT NOT NULL DEFAULT '[]',
                created_by TEXT NOT NULL DEFAULT '',
                created_at INTEGER NOT NULL,
                updated_by TEXT NOT NULL DEFAULT '',
                updated_at INTEGER NOT NULL,
                started_at INTEGER,
                ended_at INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_io_jobs_dataset ON io_jobs(dataset_id, id);
        """)

    # Connection and transaction management

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise InternalError("repository not connected")
        return self._conn

    @asynccontextmanager
    async def transaction(self, opt: RepoOptions = NO_OPTIONS) -> AsyncIterator[Transaction]:
        """Run a block in one transaction.

        Joins opt.tx when given. Commits on normal exit, rolls back on any
        exception (cancellation included) and re-raises it.
        """
        if opt.tx is not None:
            yield opt.tx
            return

        async with self._lock:
            conn = self._require_conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(conn)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    @asynccontextmanager
    async def _session(self, opt: RepoOptions) -> AsyncIterator[sqlite3.Connection]:
        if opt.tx is not None:
            yield opt.tx.conn
            return
        async with self._lock:
            yield self._require_conn()

    async def _patch(
        self,
        table: str,
        allowed: set[str],
        row_id: int,
        patch: dict[str, Any],
        where: dict[str, Any] | None,
        opt: RepoOptions,
    ) -> None:
        unknown = (set(patch) | set(where or {})) - allowed - {"id"}
        if unknown:
            raise InternalError(f"unknown {table} columns {sorted(unknown)}")
        patch = dict(patch)
        patch.setdefault("updated_at", now_ms())

        sets = ", ".join(f"{col} = ?" for col in patch)
        params = [_encode(v) for v in patch.values()]
        conds = ["id = ?"]
        params.append(row_id)
        for col, value in (where or {}).items():
            conds.append(f"{col} = ?")
            params.append(_encode(value))

        async with self._session(opt) as conn:
            cur = conn.execute(f"UPDATE {table} SET {sets} WHERE {' AND '.join(conds)}", params)
        if cur.rowcount == 0:
            if where:
                raise ConcurrentDatasetOperationsError(f"patch {table} {row_id}, where={where}")
            raise NotFoundError(f"{table} {row_id} not found")

    # Datasets and schemas

    async def _gen_ids(self, n: int) -> list[int] | None:
        if self.id_gen is None:
            return None
        try:
            return await self.id_gen.gen_multi_ids(n)
        except IDGenerationError as e:
            logger.warning(f"ID generation failed, falling back to auto-increment: {e}")
            return None

    async def create_dataset_and_schema(
        self,
        dataset: Dataset,
        schema: DatasetSchema,
        opt: RepoOptions = NO_OPTIONS,
    ) -> None:
        """Insert a dataset with its first schema, assigning both ids."""
        ids = await self._gen_ids(2)
        now = now_ms()
        dataset.created_at = dataset.created_at or now
        dataset.updated_at = dataset.updated_at or now
        schema.created_at = schema.created_at or now
        schema.updated_at = schema.updated_at or now

        async with self.transaction(opt) as tx:
            conn = tx.conn
            if ids:
                dataset.id, schema.id = ids
                dataset.schema_id = schema.id
            cur = conn.execute(
                """
                INSERT INTO datasets (id, app_id, space_id, name, description, category,
                                      biz_category, status, security_level, visibility, spec,
                                      features, schema_id, latest_version, next_version_num,
                                      last_operation, created_by, created_at, updated_by,
                                      updated_at, expired_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    dataset.id or None,
                    dataset.app_id,
                    dataset.space_id,
                    dataset.name,
                    dataset.description,
                    dataset.category,
                    dataset.biz_category,
                    dataset.status.value,
                    dataset.security_level,
                    dataset.visibility,
                    _encode(dataset.spec.to_dict()),
                    _encode(dataset.features.to_dict()),
                    dataset.schema_id,
                    dataset.latest_version,
                    dataset.next_version_num,
                    _encode(dataset.last_operation),
                    dataset.created_by,
                    dataset.created_at,
                    dataset.updated_by,
                    dataset.updated_at,
                    dataset.expired_at,
                ),
            )
            dataset.id = cur.lastrowid
            schema.dataset_id = dataset.id
            schema.space_id = dataset.space_id
            schema.app_id = dataset.app_id
            self._insert_schema(conn, schema)

            if not ids:
                dataset.schema_id = schema.id
                conn.execute("UPDATE datasets SET schema_id = ? WHERE id = ?", (schema.id, dataset.id))

        logger.info(
            "Created dataset",
            extra={"dataset_id": dataset.id, "schema_id": schema.id, "space_id": dataset.space_id},
        )

    def _insert_schema(self, conn: sqlite3.Connection, schema: DatasetSchema) -> None:
        cur = conn.execute(
            """
            INSERT INTO dataset_schemas (id, app_id, space_id, dataset_id, fields, immutable,
                                         update_version, created_by, created_at, updated_by,
                                         updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                schema.id or None,
                schema.app_id,
                schema.space_id,
                schema.dataset_id,
                _encode(schema.fields_to_json()),
                int(schema.immutable),
                schema.update_version,
                schema.created_by,
                schema.created_at,
                schema.updated_by,
                schema.updated_at,
            ),
        )
        schema.id = cur.lastrowid

    async def get_dataset(self, dataset_id: int, opt: RepoOptions = NO_OPTIONS) -> Dataset | None:
        async with self._session(opt) as conn:
            row = conn.execute("SELECT * FROM datasets WHERE id = ?", (dataset_id,)).fetchone()
        if row is None:
            return None
        ds = _dataset_from_row(row)
        if ds.status == DatasetStatus.DELETED and not opt.with_deleted:
            return None
        return ds

    async def mget_datasets(
        self,
        space_id: int,
        dataset_ids: list[int],
        opt: RepoOptions = NO_OPTIONS,
    ) -> list[Dataset]:
        """Datasets of a space by id, at most MAX_BATCH_GET per call."""
        ids = list(dict.fromkeys(dataset_ids))[:MAX_BATCH_GET]
        if not ids:
            return []
        sql = f"SELECT * FROM datasets WHERE space_id = ? AND id IN ({_placeholders(ids)})"
        if not opt.with_deleted:
            sql += " AND status != 'deleted'"
        async with self._session(opt) as conn:
            rows = conn.execute(sql + " ORDER BY id", [space_id, *ids]).fetchall()
        return [_dataset_from_row(r) for r in rows]

    async def patch_dataset(
        self,
        dataset_id: int,
        patch: dict[str, Any],
        where: dict[str, Any] | None = None,
        opt: RepoOptions = NO_OPTIONS,
    ) -> None:
        """Update columns of a dataset, guarded by an optional pre-image.

        Raises:
            ConcurrentDatasetOperationsError: If where does not match
            NotFoundError: If there is no such dataset
        """
        await self._patch("datasets", _DATASET_COLUMNS, dataset_id, patch, where, opt)

    async def create_schema(self, schema: DatasetSchema, opt: RepoOptions = NO_OPTIONS) -> None:
        now = now_ms()
        schema.created_at = schema.created_at or now
        schema.updated_at = schema.updated_at or now
        ids = await self._gen_ids(1)
        if ids:
            schema.id = ids[0]
        async with self._session(opt) as conn:
            self._insert_schema(conn, schema)

    async def get_schema(self, schema_id: int, opt: RepoOptions = NO_OPTIONS) -> DatasetSchema | None:
        async with self._session(opt) as conn:
            row = conn.execute("SELECT * FROM dataset_schemas WHERE id = ?", (schema_id,)).fetchone()
        return _schema_from_row(row) if row else None

    async def patch_schema(
        self,
        schema_id: int,
        patch: dict[str, Any],
        where: dict[str, Any] | None = None,
        opt: RepoOptions = NO_OPTIONS,
    ) -> None:
        await self._patch("dataset_schemas", _SCHEMA_COLUMNS, schema_id, patch, where, opt)

    # Versions

    async def create_version(self, version: DatasetVersion, opt: RepoOptions = NO_OPTIONS) -> None:
        now = now_ms()
        version.created_at = version.created_at or now
        version.updated_at = version.updated_at or now
        ids = await self._gen_ids(1)
        try:
            async with self._session(opt) as conn:
                cur = conn.execute(
                    """
                    INSERT INTO dataset_versions (id, app_id, space_id, dataset_id, schema_id,
                                                  version, version_num, description, item_count,
                                                  snapshot_status, snapshot_progress,
                                                  update_version, dataset_brief, disabled_at,
                                                  created_by, created_at, updated_by, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        ids[0] if ids else None,
                        version.app_id,
                        version.space_id,
                        version.dataset_id,
                        version.schema_id,
                        version.version,
                        version.version_num,
                        version.description,
                        version.item_count,
                        version.snapshot_status.value,
                        _encode(version.snapshot_progress.to_dict()),
                        version.update_version,
                        _encode(version.dataset_brief),
                        version.disabled_at,
                        version.created_by,
                        version.created_at,
                        version.updated_by,
                        version.updated_at,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ConcurrentDatasetOperationsError(
                f"version {version.version} of dataset {version.dataset_id} already exists"
            ) from e
        version.id = cur.lastrowid

    async def get_version(self, version_id: int, opt: RepoOptions = NO_OPTIONS) -> DatasetVersion | None:
        async with self._session(opt) as conn:
            row = conn.execute("SELECT * FROM dataset_versions WHERE id = ?", (version_id,)).fetchone()
        return _version_from_row(row) if row else None

    async def list_versions(self, dataset_id: int, opt: RepoOptions = NO_OPTIONS) -> list[DatasetVersion]:
        async with self._session(opt) as conn:
            rows = conn.execute(
                "SELECT * FROM dataset_versions WHERE dataset_id = ? ORDER BY version_num",
                (dataset_id,),
            ).fetchall()
        return [_version_from_row(r) for r in rows]

    async def patch_version(
        self,
        version_id: int,
        patch: dict[str, Any],
        where: dict[str, Any] | None = None,
        opt: RepoOptions = NO_OPTIONS,
    ) -> None:
        await self._patch("dataset_versions", _VERSION_COLUMNS, version_id, patch, where, opt)

    # Items

    async def mcreate_items(self, items: list[Item], opt: RepoOptions = NO_OPTIONS) -> int:
        """Insert items, ignoring (dataset_id, item_key, add_vn) conflicts.

        Returns:
            Number of rows actually inserted
        """
        now = now_ms()
        inserted = 0
        async with self._session(opt) as conn:
            for item in items:
                item.created_at = item.created_at or now
                item.updated_at = item.updated_at or now
                rec = _item_to_record(item)
                cur = conn.execute(
                    f"INSERT OR IGNORE INTO dataset_items ({', '.join(rec)}) "
                    f"VALUES ({_placeholders(list(rec))})",
                    list(rec.values()),
                )
                inserted += cur.rowcount
        return inserted

    async def update_item(self, item: Item, opt: RepoOptions = NO_OPTIONS) -> None:
        """Rewrite the payload of an item row.

        Raises:
            NotFoundError: If the row does not exist
        """
        item.updated_at = now_ms()
        rec = _item_to_record(item)
        async with self._session(opt) as conn:
            cur = conn.execute(
                """
                UPDATE dataset_items
                SET schema_id = ?, data = ?, data_properties = ?, updated_by = ?, updated_at = ?
                WHERE id = ? AND dataset_id = ?
                """,
                (
                    rec["schema_id"],
                    rec["data"],
                    rec["data_properties"],
                    rec["updated_by"],
                    rec["updated_at"],
                    item.id,
                    item.dataset_id,
                ),
            )
        if cur.rowcount == 0:
            raise NotFoundError(f"item {item.id} of dataset {item.dataset_id} not found")

    def _item_filter(self, params: ListItemsParams) -> tuple[list[str], list[Any]]:
        conds = ["dataset_id = ?"]
        args: list[Any] = [params.dataset_id]
        if params.space_id is not None:
            conds.append("space_id = ?")
            args.append(params.space_id)
        if params.add_vn_lte is not None:
            conds.append("add_vn <= ?")
            args.append(params.add_vn_lte)
        if params.add_vn_eq is not None:
            conds.append("add_vn = ?")
            args.append(params.add_vn_eq)
        if params.del_vn_gt is not None:
            conds.append("del_vn > ?")
            args.append(params.del_vn_gt)
        if params.live_only:
            conds.append("del_vn = ?")
            args.append(MAX_VERSION_NUM)
        if params.item_keys:
            conds.append(f"item_key IN ({_placeholders(params.item_keys)})")
            args.extend(params.item_keys)
        if params.ids:
            conds.append(f"id IN ({_placeholders(params.ids)})")
            args.extend(params.ids)
        return conds, args

    async def list_items(self, params: ListItemsParams, opt: RepoOptions = NO_OPTIONS) -> PageResult[Item]:
        """One page of items ordered by id."""
        conds, args = self._item_filter(params)
        if params.cursor:
            conds.append("id > ?")
            args.append(int(params.cursor))
        args.append(params.limit + 1)
        async with self._session(opt) as conn:
            rows = conn.execute(
                f"SELECT * FROM dataset_items WHERE {' AND '.join(conds)} ORDER BY id LIMIT ?",
                args,
            ).fetchall()

        items = [_item_from_record(r) for r in rows[: params.limit]]
        next_cursor = str(items[-1].id) if len(rows) > params.limit else ""
        return PageResult(items=items, next_cursor=next_cursor)

    async def count_items(self, params: ListItemsParams, opt: RepoOptions = NO_OPTIONS) -> int:
        conds, args = self._item_filter(params)
        async with self._session(opt) as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM dataset_items WHERE {' AND '.join(conds)}",
                args,
            ).fetchone()
        return row["n"]

    async def get_item(self, dataset_id: int, item_pk: int, opt: RepoOptions = NO_OPTIONS) -> Item | None:
        page = await self.list_items(ListItemsParams(dataset_id=dataset_id, ids=[item_pk], limit=1), opt)
        return page.items[0] if page.items else None

    async def mget_items(self, dataset_id: int, item_pks: list[int], opt: RepoOptions = NO_OPTIONS) -> list[Item]:
        if not item_pks:
            return []
        page = await self.list_items(
            ListItemsParams(dataset_id=dataset_id, ids=list(item_pks), limit=len(item_pks)),
            opt,
        )
        return page.items

    async def archive_items(
        self,
        dataset_id: int,
        item_pks: list[int],
        del_vn: int,
        opt: RepoOptions = NO_OPTIONS,
    ) -> int:
        """Set del_vn on live rows. Returns the number of rows archived."""
        if not item_pks:
            return 0
        async with self._session(opt) as conn:
            cur = conn.execute(
                f"""
                UPDATE dataset_items SET del_vn = ?, updated_at = ?
                WHERE dataset_id = ? AND del_vn = ? AND id IN ({_placeholders(item_pks)})
                """,
                [del_vn, now_ms(), dataset_id, MAX_VERSION_NUM, *item_pks],
            )
        return cur.rowcount

    async def archive_live_items(self, dataset_id: int, del_vn: int, opt: RepoOptions = NO_OPTIONS) -> int:
        """Archive every live row of a dataset."""
        async with self._session(opt) as conn:
            cur = conn.execute(
                "UPDATE dataset_items SET del_vn = ?, updated_at = ? WHERE dataset_id = ? AND del_vn = ?",
                (del_vn, now_ms(), dataset_id, MAX_VERSION_NUM),
            )
        return cur.rowcount

    async def delete_items_added_at(self, dataset_id: int, add_vn: int, opt: RepoOptions = NO_OPTIONS) -> int:
        """Physically delete rows added at add_vn, which no version captures yet."""
        async with self._session(opt) as conn:
            cur = conn.execute(
                "DELETE FROM dataset_items WHERE dataset_id = ? AND add_vn = ?",
                (dataset_id, add_vn),
            )
        return cur.rowcount

    async def delete_items(self, dataset_id: int, item_pks: list[int], opt: RepoOptions = NO_OPTIONS) -> int:
        if not item_pks:
            return 0
        async with self._session(opt) as conn:
            cur = conn.execute(
                f"DELETE FROM dataset_items WHERE dataset_id = ? AND id IN ({_placeholders(item_pks)})",
                [dataset_id, *item_pks],
            )
        return cur.rowcount

    # Snapshots

    async def mupsert_item_snapshots(self, snapshots: list[ItemSnapshot], opt: RepoOptions = NO_OPTIONS) -> None:
        if not snapshots:
            return
        now = now_ms()
        async with self._session(opt) as conn:
            conn.executemany(
                """
                INSERT INTO item_snapshots (version_id, space_id, dataset_id, item_id, snapshot, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (version_id, item_id) DO UPDATE SET snapshot = excluded.snapshot
                """,
                [
                    (
                        s.version_id,
                        s.snapshot.space_id,
                        s.snapshot.dataset_id,
                        s.snapshot.item_id,
                        json.dumps(_item_to_record(s.snapshot), ensure_ascii=False),
                        s.created_at or now,
                    )
                    for s in snapshots
                ],
            )

    async def count_item_snapshots(self, version_id: int, opt: RepoOptions = NO_OPTIONS) -> int:
        async with self._session(opt) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM item_snapshots WHERE version_id = ?", (version_id,)
            ).fetchone()
        return row["n"]

    async def list_item_snapshots(
        self,
        version_id: int,
        cursor: str = "",
        limit: int = 100,
        opt: RepoOptions = NO_OPTIONS,
    ) -> PageResult[ItemSnapshot]:
        after = int(cursor) if cursor else 0
        async with self._session(opt) as conn:
            rows = conn.execute(
                "SELECT * FROM item_snapshots WHERE version_id = ? AND id > ? ORDER BY id LIMIT ?",
                (version_id, after, limit + 1),
            ).fetchall()
        page = rows[:limit]
        snapshots = [
            ItemSnapshot(
                version_id=r["version_id"],
                snapshot=_item_from_record(json.loads(r["snapshot"])),
                created_at=r["created_at"],
            )
            for r in page
        ]
        next_cursor = str(page[-1]["id"]) if len(rows) > limit else ""
        return PageResult(items=snapshots, next_cursor=next_cursor)

    # IO jobs

    async def create_io_job(self, job: IOJob, opt: RepoOptions = NO_OPTIONS) -> None:
        now = now_ms()
        job.created_at = job.created_at or now
        job.updated_at = job.updated_at or now
        ids = await self._gen_ids(1)
        async with self._session(opt) as conn:
            cur = conn.execute(
                """
                INSERT INTO io_jobs (id, app_id, space_id, dataset_id, job_type, source, target,
                                     field_mappings, option, status, progress_total,
                                     progress_processed, progress_added, sub_progresses, errors,
                                     created_by, created_at, updated_by, updated_at, started_at,
                                     ended_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ids[0] if ids else None,
                    job.app_id,
                    job.space_id,
                    job.dataset_id,
                    job.job_type.value,
                    _encode(job.source.to_dict()),
                    _encode(job.target.to_dict()),
                    _encode([m.to_dict() for m in job.field_mappings]),
                    _encode(job.option.to_dict()),
                    job.status.value,
                    job.progress.total,
                    job.progress.processed,
                    job.progress.added,
                    _encode([s.to_dict() for s in job.progress.sub_progresses]),
                    _encode([e.to_dict() for e in job.errors]),
                    job.created_by,
                    job.created_at,
                    job.updated_by,
                    job.updated_at,
                    job.started_at,
                    job.ended_at,
                ),
            )
        job.id = cur.lastrowid
        logger.info("Created io job", extra={"job_id": job.id, "dataset_id": job.dataset_id})

    async def get_io_job(self, job_id: int, opt: RepoOptions = NO_OPTIONS) -> IOJob | None:
        async with self._session(opt) as conn:
            row = conn.execute("SELECT * FROM io_jobs WHERE id = ?", (job_id,)).fetchone()
        return _job_from_row(row) if row else None

    async def list_io_jobs(
        self,
        dataset_id: int,
        statuses: list[JobStatus] | None = None,
        opt: RepoOptions = NO_OPTIONS,
    ) -> list[IOJob]:
        sql = "SELECT * FROM io_jobs WHERE dataset_id = ?"
        args: list[Any] = [dataset_id]
        if statuses:
            sql += f" AND status IN ({_placeholders(statuses)})"
            args.extend(s.value for s in statuses)
        async with self._session(opt) as conn:
            rows = conn.execute(sql + " ORDER BY id", args).fetchall()
        return [_job_from_row(r) for r in rows]

    async def update_io_job(self, job_id: int, delta: DeltaIOJob, opt: RepoOptions = NO_OPTIONS) -> None:
        """Apply a progress delta to a job row.

        Processed and added counts are incremented by the deltas. When
        delta.pre_processed is set the update only applies if the stored
        processed count still equals it. Errors and sub-progresses replace
        the stored lists when non-empty.

        Raises:
            ConcurrentDatasetOperationsError: If no row matched
        """
        sets = [
            "updated_at = ?",
            "progress_processed = progress_processed + ?",
            "progress_added = progress_added + ?",
        ]
        args: list[Any] = [now_ms(), delta.delta_processed, delta.delta_added]
        if delta.started_at is not None:
            sets.append("started_at = ?")
            args.append(delta.started_at)
        if delta.ended_at is not None:
            sets.append("ended_at = ?")
            args.append(delta.ended_at)
        if delta.status is not None:
            sets.append("status = ?")
            args.append(delta.status.value)
        if delta.total is not None:
            sets.append("progress_total = ?")
            args.append(delta.total)
        if delta.errors:
            sets.append("errors = ?")
            args.append(_encode([e.to_dict() for e in delta.errors]))
        if delta.sub_progresses:
            sets.append("sub_progresses = ?")
            args.append(_encode([s.to_dict() for s in delta.sub_progresses]))

        conds = ["id = ?"]
        args.append(job_id)
        if delta.pre_processed is not None:
            conds.append("progress_processed = ?")
            args.append(delta.pre_processed)

        async with self._session(opt) as conn:
            cur = conn.execute(f"UPDATE io_jobs SET {', '.join(sets)} WHERE {' AND '.join(conds)}", args)
        if cur.rowcount == 0:
            raise ConcurrentDatasetOperationsError(f"update io job {job_id}")
