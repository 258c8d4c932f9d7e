"""
Snapshot builder: copies the items of a version into item snapshots.

Triggered by ``dataset_snapshot_job`` messages carrying version_id and
retry_times. One builder at a time works on a version, serialized by the
renewable lock ``version:{id}:snapshotting``.

The copy is a loop over pages of items live at the version number:
1. Upsert the page as snapshots of the version
2. Commit the next cursor to the version row (optimistic lock)
3. On the last page, count the snapshots and mark the version completed

Invariants:
    - Snapshot rows are unique per (version_id, item_id); redoing a page
      after a crash overwrites instead of duplicating
    - Progress is only ever read from the version row, so a redelivered
      message resumes at the last committed cursor
    - Every failure other than a lost optimistic race is retried; a
      version is marked failed once retry_times exceeds the cap

How to change safely:
    - Keep every version update guarded by update_version; another
      builder that won the lock after a lease loss must win the race
"""

from __future__ import annotations

import logging

from ..config import SnapshotJobConfig
from ..entity import DatasetVersion, ItemSnapshot, SnapshotProgress, SnapshotStatus
from ..errors import (
    ConcurrentDatasetOperationsError,
    InternalError,
    InvalidParamError,
    RetryableError,
)
from ..jobs import JOB_TYPE_SNAPSHOT, JobBusError, JobRunMessage, MessageBus
from ..kv import Locker, LockLease
from ..repo import ListItemsParams, RepoOptions, SQLiteRepository
from .version import VERSION_ID_EXTRA

logger = logging.getLogger(__name__)

RETRY_TIMES_EXTRA = "retry_times"


def snapshot_lock_key(version_id: int) -> str:
    return f"version:{version_id}:snapshotting"


class SnapshotBuilder:
    """Handles snapshot job messages.

    Example:
        >>> builder = SnapshotBuilder(repo, Locker(kv), bus, config.snapshot)
        >>> worker.register(JOB_TYPE_SNAPSHOT, builder.handle)
    """

    def __init__(
        self,
        repo: SQLiteRepository,
        locker: Locker,
        bus: MessageBus,
        config: SnapshotJobConfig | None = None,
    ) -> None:
        self.repo = repo
        self.locker = locker
        self.bus = bus
        self.config = config or SnapshotJobConfig()

    async def handle(self, msg: JobRunMessage) -> None:
        """Build (or resume building) the snapshot of one version.

        Raises:
            InvalidParamError: If the message is not a valid snapshot job
            RetryableError: If the retry message cannot be sent
        """
        if msg.type != JOB_TYPE_SNAPSHOT:
            raise InvalidParamError(f"unexpected message type {msg.type}")
        try:
            version_id = msg.int_extra(VERSION_ID_EXTRA)
            retry_times = msg.int_extra(RETRY_TIMES_EXTRA)
        except ValueError as e:
            raise InvalidParamError(f"invalid snapshot job extra {msg.extra}: {e}") from e
        if version_id <= 0:
            raise InvalidParamError(f"invalid version id in snapshot job extra {msg.extra}")

        try:
            await self._run(version_id, retry_times)
        except ConcurrentDatasetOperationsError as e:
            logger.info(
                "Snapshot progressed elsewhere, stopping",
                extra={"version_id": version_id, "reason": e.message},
            )
        except Exception as e:
            logger.warning(
                f"Snapshot failed, retrying: {e}",
                extra={"version_id": version_id, "retry_times": retry_times},
            )
            await self._retry(msg, version_id, retry_times)

    async def _run(self, version_id: int, retry_times: int) -> None:
        version = await self.repo.get_version(version_id, RepoOptions(with_master=True))
        if version is None:
            logger.warning("Snapshot job for unknown version", extra={"version_id": version_id})
            return
        if version.snapshot_status.is_finished:
            logger.info(
                "Snapshot already finished",
                extra={"version_id": version_id, "status": version.snapshot_status.value},
            )
            return
        if retry_times > self.config.max_retry_times:
            await self._mark_failed(version)
            return

        lease = await self.locker.lock_backoff_with_renew(
            snapshot_lock_key(version_id),
            self.config.max_processing_time_ms,
            self.config.max_hold_ms,
        )
        if lease is None:
            logger.info("Snapshot locked by another worker", extra={"version_id": version_id})
            return

        async with lease:
            await self._copy(version, lease)

    async def _copy(self, version: DatasetVersion, lease: LockLease) -> None:
        cursor = version.snapshot_progress.cursor
        pages = 0
        while True:
            lease.raise_if_lost()
            page = await self.repo.list_items(
                ListItemsParams.live_at(
                    version.dataset_id,
                    version.version_num,
                    cursor=cursor,
                    limit=self.config.page_size,
                )
            )
            await self.repo.mupsert_item_snapshots(
                [ItemSnapshot(version_id=version.id, snapshot=item) for item in page.items]
            )
            pages += 1

            lease.raise_if_lost()
            if page.next_cursor:
                cursor = page.next_cursor
                await self._commit(
                    version,
                    {
                        "snapshot_status": SnapshotStatus.IN_PROGRESS,
                        "snapshot_progress": _progress(version, cursor),
                    },
                )
                continue

            count = await self.repo.count_item_snapshots(version.id, RepoOptions(with_master=True))
            await self._commit(
                version,
                {
                    "snapshot_status": SnapshotStatus.COMPLETED,
                    "snapshot_progress": _progress(version, ""),
                    "item_count": count,
                },
            )
            logger.info(
                "Snapshot completed",
                extra={"version_id": version.id, "item_count": count, "pages": pages},
            )
            return

    async def _commit(self, version: DatasetVersion, patch: dict) -> None:
        await self.repo.patch_version(
            version.id,
            {**patch, "update_version": version.update_version + 1},
            where={"update_version": version.update_version},
        )
        version.update_version += 1

    async def _mark_failed(self, version: DatasetVersion) -> None:
        logger.error(
            "Snapshot exceeded max retry times, marking failed",
            extra={"version_id": version.id, "max_retry_times": self.config.max_retry_times},
        )
        await self._commit(version, {"snapshot_status": SnapshotStatus.FAILED})

    async def _retry(self, msg: JobRunMessage, version_id: int, retry_times: int) -> None:
        retry_times += 1
        if retry_times > self.config.max_retry_times:
            version = await self.repo.get_version(version_id, RepoOptions(with_master=True))
            if version is not None and not version.snapshot_status.is_finished:
                try:
                    await self._mark_failed(version)
                except ConcurrentDatasetOperationsError:
                    logger.info("Snapshot version changed while marking failed", extra={"version_id": version_id})
            return

        retry = JobRunMessage(
            type=JOB_TYPE_SNAPSHOT,
            space_id=msg.space_id,
            extra={VERSION_ID_EXTRA: str(version_id), RETRY_TIMES_EXTRA: str(retry_times)},
            operator=msg.operator,
        )
        try:
            await self.bus.send(retry, key=str(version_id), delay_ms=self.config.retry_interval_ms)
        except JobBusError as e:
            raise RetryableError(InternalError(f"re-send snapshot job of version {version_id}: {e}")) from e
        logger.info(
            "Snapshot job re-sent",
            extra={"version_id": version_id, "retry_times": retry_times},
        )


def _progress(version: DatasetVersion, cursor: str) -> dict:
    return SnapshotProgress(cursor=cursor, extra=version.snapshot_progress.extra).to_dict()
