"""
File import pipeline: reads records from files and adds them as items.

A run works through the job's files in order. Records are mapped onto
fields by the job's field mappings and buffered; every bulk_size records
the buffer is flushed:
1. batch_create(partial_add=True) adds what fits in the dataset
2. Rejected records are merged into the job's per-kind error groups
3. A delta is committed to the job row, guarded by the processed count
   the run started from

Progress is counted in reader cursor units, per file. A redelivered job
seeks each file to its committed cursor, so nothing before the last
commit is read twice. Records after it may have been inserted by a run
that crashed before committing; their deterministic item keys make the
second insert a no-op.

When the dataset fills up the job completes early. The remaining records
are then only counted, so the job's total still reflects the files.

Invariants:
    - Every state change of a run is a committed job delta
    - progress.processed == sum of sub-progress processed counts
    - Details are capped at max_error_details per error kind; counts are not

How to change safely:
    - Check the lease before every commit; a run that lost it must stop
      without writing so the new owner's deltas apply cleanly
"""

from __future__ import annotations

import json
import logging
import sqlite3
import stat
from dataclasses import dataclass, field
from typing import Any

from ..config import ImportConfig
from ..entity import (
    DatasetWithSchema,
    DeltaIOJob,
    FieldData,
    IndexedItem,
    IOJob,
    Item,
    ItemData,
    ItemErrorDetail,
    ItemErrorGroup,
    ItemErrorType,
    JobStatus,
    SubProgress,
    merge_error_group,
    now_ms,
)
from ..errors import (
    ConcurrentDatasetOperationsError,
    DatasetError,
    InternalError,
    InvalidParamError,
    RetryableError,
)
from ..fileio import FileDecodeError, FileReadError, FileSystems, ReadOnlyFS, RecordReader, open_reader
from ..kv import KVError, LockLease
from ..repo import SQLiteRepository
from .item import BatchCreateOptions, ItemService

logger = logging.getLogger(__name__)

# Failures of a flush worth redelivering the job for.
_RETRYABLE = (ConcurrentDatasetOperationsError, KVError, sqlite3.OperationalError)


def record_to_content(value: Any) -> str:
    """Field content of a file value: strings as is, other JSON compact."""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def import_item_key(job_id: int, filename: str, cursor: int) -> str:
    return f"io_job:{job_id}:{filename}:{cursor}"


@dataclass
class _ImportUnit:
    """Records buffered since the last commit."""

    items: list[IndexedItem] = field(default_factory=list)
    processed: int = 0
    added: int = 0

    def reset(self) -> None:
        self.items = []
        self.processed = 0
        self.added = 0


class FileImporter:
    """Runs import_from_file jobs.

    Example:
        >>> importer = FileImporter(repo, item_service, file_systems, config.importer)
        >>> await importer.run(job, ds, lease)
    """

    def __init__(
        self,
        repo: SQLiteRepository,
        item_service: ItemService,
        file_systems: FileSystems,
        config: ImportConfig | None = None,
    ) -> None:
        self.repo = repo
        self.item_service = item_service
        self.file_systems = file_systems
        self.config = config or ImportConfig()

    async def run(self, job: IOJob, ds: DatasetWithSchema, lease: LockLease) -> None:
        """Import (or resume importing) the files of a job.

        Raises:
            InvalidParamError: If the job has no source file
            RetryableError: If the lease was lost or a commit failed
                transiently; the job resumes from its last commit
        """
        src = job.source.file
        if src is None or not (src.path or src.files):
            raise InvalidParamError(f"io job {job.id} has no source file")
        fs = self.file_systems.get(src.provider)
        await _ImportRun(self, job, ds, fs, lease).execute()


class _ImportRun:
    def __init__(
        self,
        importer: FileImporter,
        job: IOJob,
        ds: DatasetWithSchema,
        fs: ReadOnlyFS,
        lease: LockLease,
    ) -> None:
        self.repo = importer.repo
        self.item_service = importer.item_service
        self.config = importer.config
        self.job = job
        self.ds = ds
        self.fs = fs
        self.lease = lease

        self.status = job.status
        self.started_at: int | None = None
        self.pre_processed = job.progress.processed
        self.progresses: dict[str, SubProgress] = {p.name: p for p in job.progress.sub_progresses}
        self.errors: dict[ItemErrorType, ItemErrorGroup] = {g.type: g for g in job.errors}
        self.dataset_full = False
        self.filename = ""
        self.unit = _ImportUnit()

    async def execute(self) -> None:
        if not await self._start():
            return

        try:
            files = self._workspace_files()
        except DatasetError as e:
            await self._fail(f"list source files: {e}")
            return

        for i, filename in enumerate(files):
            prog = self.progresses.get(filename)
            if prog is not None and prog.total and prog.total <= prog.processed:
                continue
            await self._import_file(filename, is_last=i == len(files) - 1)
            if self.dataset_full:
                await self._count_rest(files[i:])
                return
            if self.status != JobStatus.RUNNING:
                return

        # Every file was already done, or there were none.
        self.status = JobStatus.COMPLETED
        await self._save(force=True)

    async def _start(self) -> bool:
        if self.status == JobStatus.RUNNING:
            logger.info(
                "Resuming import",
                extra={"job_id": self.job.id, "processed": self.pre_processed},
            )
            return True

        self.started_at = now_ms()
        self.status = JobStatus.RUNNING
        if not self.job.option.overwrite_dataset:
            return True

        try:
            await self.item_service.clear(self.ds, self.job.updated_by or self.job.created_by)
        except Exception as e:
            await self._fail(f"clear dataset before import: {e}")
            return False
        return True

    async def _fail(self, reason: str) -> None:
        logger.error("Import failed", extra={"job_id": self.job.id, "dataset_id": self.ds.id, "reason": reason})
        self.status = JobStatus.FAILED
        await self.repo.update_io_job(
            self.job.id,
            DeltaIOJob(
                status=JobStatus.FAILED,
                errors=[ItemErrorGroup(type=ItemErrorType.INTERNAL_ERROR, summary=reason, error_count=1)],
                started_at=self.started_at,
                ended_at=now_ms(),
            ),
        )

    def _workspace_files(self) -> list[str]:
        src = self.job.source.file
        assert src is not None
        paths = list(src.files) or [src.path]
        files = []
        for path in paths:
            if stat.S_ISDIR(self.fs.stat(path).st_mode):
                files.extend(f"{path.rstrip('/')}/{name}" for name in self.fs.read_dir(path))
            else:
                files.append(path)
        return files

    def _open(self, filename: str) -> RecordReader:
        src = self.job.source.file
        assert src is not None
        stream = self.fs.open(filename)
        try:
            return open_reader(filename, stream, src.format)
        except FileReadError:
            stream.close()
            raise

    async def _import_file(self, filename: str, is_last: bool) -> None:
        self.filename = filename
        prog = self.progresses.setdefault(filename, SubProgress(name=filename))

        try:
            reader = self._open(filename)
            reader.seek_to_offset(prog.processed)
        except (DatasetError, FileReadError) as e:
            # An unreadable file ends with what was committed for it.
            self._append_error(
                _read_error_type(e),
                ItemErrorDetail(message=f"open {filename}: {e}", index=prog.processed),
            )
            if is_last:
                self.status = JobStatus.COMPLETED
            await self._save(file_total=prog.processed, force=True)
            return

        last = reader.cursor
        try:
            while True:
                try:
                    record = reader.next()
                except FileReadError as e:
                    self._append_error(
                        _read_error_type(e),
                        ItemErrorDetail(message=str(e), index=reader.cursor),
                    )
                    break
                if record is None:
                    break

                self.unit.items.append(IndexedItem(index=reader.cursor, item=self._to_item(record, reader.cursor)))
                if len(self.unit.items) >= self.config.bulk_size:
                    self.unit.processed = reader.cursor - last
                    last = reader.cursor
                    await self._save()
                    if self.status != JobStatus.RUNNING:
                        return

            self.unit.processed = reader.cursor - last
            if is_last:
                self.status = JobStatus.COMPLETED
            await self._save(file_total=reader.cursor, force=True)
            return
        finally:
            reader.close()

    def _to_item(self, record: dict[str, Any], cursor: int) -> Item:
        data = []
        for m in self.job.field_mappings:
            value = record.get(m.source)
            if value is None:
                continue
            data.append(FieldData(name=m.target, content=record_to_content(value)))

        item = Item(
            item_key=import_item_key(self.job.id, self.filename, cursor),
            created_by=self.job.created_by,
        )
        if self.ds.dataset.features.repeated_data:
            item.repeated_data = [ItemData(data=data)]
        else:
            item.data = data
        return item

    async def _save(self, file_total: int | None = None, force: bool = False) -> None:
        unit = self.unit
        if not unit.items and not unit.processed and not force:
            return
        if self.lease.lost:
            raise RetryableError(InternalError(f"lock {self.lease.key} lost during import"))

        if unit.items:
            await self._add_items()

        prog = self.progresses.get(self.filename) if self.filename else None
        merged = None
        if prog is not None:
            merged = SubProgress(
                name=self.filename,
                total=file_total if file_total is not None else prog.total,
                processed=prog.processed + unit.processed,
                added=prog.added + unit.added,
                extra=prog.extra,
            )
        subs = [merged if merged is not None and p.name == self.filename else p for p in self.progresses.values()]

        delta = DeltaIOJob(
            status=self.status,
            pre_processed=self.pre_processed,
            delta_processed=unit.processed,
            delta_added=unit.added,
            sub_progresses=subs,
            errors=list(self.errors.values()),
            started_at=self.started_at,
        )
        if self.status.is_terminal:
            delta.ended_at = now_ms()
            delta.total = sum(p.total if p.total is not None else p.processed for p in subs)

        try:
            await self.repo.update_io_job(self.job.id, delta)
        except _RETRYABLE as e:
            raise RetryableError(e) from e

        if merged is not None:
            self.progresses[self.filename] = merged
        self.pre_processed += unit.processed
        self.started_at = None
        unit.reset()
        logger.debug(
            "Import progress committed",
            extra={"job_id": self.job.id, "processed": self.pre_processed, "status": self.status.value},
        )

    async def _add_items(self) -> None:
        unit = self.unit
        try:
            result = await self.item_service.batch_create(
                self.ds, unit.items, BatchCreateOptions(partial_add=True)
            )
        except _RETRYABLE as e:
            raise RetryableError(e) from e
        except DatasetError as e:
            self._append_error(
                ItemErrorType.INTERNAL_ERROR,
                ItemErrorDetail(
                    message=str(e),
                    start_index=unit.items[0].index,
                    end_index=unit.items[-1].index,
                ),
            )
            return

        unit.added = len(result.added)
        for group in result.error_groups:
            merge_error_group(self.errors, group, self.config.max_error_details)
            if group.type == ItemErrorType.EXCEED_DATASET_CAPACITY:
                self.dataset_full = True
        if self.dataset_full:
            self.status = JobStatus.COMPLETED
            logger.info("Dataset full, completing import", extra={"job_id": self.job.id, "dataset_id": self.ds.id})

    def _append_error(self, kind: ItemErrorType, detail: ItemErrorDetail) -> None:
        merge_error_group(
            self.errors,
            ItemErrorGroup(type=kind, error_count=1, details=[detail]),
            self.config.max_error_details,
        )

    async def _count_rest(self, files: list[str]) -> None:
        """Count unread records so the completed job reports file totals."""
        delta_processed = 0
        try:
            for filename in files:
                prog = self.progresses.get(filename) or SubProgress(name=filename)
                reader = self._open(filename)
                try:
                    reader.seek_to_offset(prog.processed)
                    _drain(reader)
                finally:
                    reader.close()
                delta_processed += reader.cursor - prog.processed
                self.progresses[filename] = SubProgress(
                    name=filename, total=reader.cursor, processed=reader.cursor, added=prog.added, extra=prog.extra
                )

            subs = list(self.progresses.values())
            await self.repo.update_io_job(
                self.job.id,
                DeltaIOJob(
                    total=sum(p.total or 0 for p in subs),
                    delta_processed=delta_processed,
                    sub_progresses=subs,
                ),
            )
        except Exception as e:
            logger.warning(
                f"Failed to count remaining records of import: {e}",
                extra={"job_id": self.job.id},
            )


def _read_error_type(e: Exception) -> ItemErrorType:
    if isinstance(e, FileDecodeError):
        return ItemErrorType.MALFORMED_FILE
    return ItemErrorType.INTERNAL_ERROR


def _drain(reader: RecordReader) -> None:
    while True:
        before = reader.cursor
        try:
            if reader.next() is None:
                return
        except FileReadError:
            if reader.cursor == before:
                return
