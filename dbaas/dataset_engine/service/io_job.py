"""
IO jobs: creation, dispatch and reads of background import/export work.

Creating a job persists it as pending and sends a ``dataset_io_job``
message keyed by the job id. Workers run the job under the renewable lock
``dataset_io_jobs:{id}:run`` so one worker at a time makes progress.

Invariants:
    - A terminal job is never run again
    - The job row is re-read after the lock is taken; progress committed
      by a previous owner is never overwritten
"""

from __future__ import annotations

import logging

from ..config import IOJobConfig
from ..entity import (
    DeltaIOJob,
    IOJob,
    IOJobProgress,
    ItemErrorGroup,
    ItemErrorType,
    JobStatus,
    JobType,
    now_ms,
)
from ..errors import InternalError, InvalidParamError, NotFoundError
from ..jobs import JOB_TYPE_IO, JobBusError, JobRunMessage, MessageBus
from ..kv import Locker, LockLease
from ..repo import RepoOptions, SQLiteRepository
from .dataset import DatasetService
from .importer import FileImporter

logger = logging.getLogger(__name__)

_SUPPORTED_TYPES = (JobType.IMPORT_FROM_FILE,)


def io_job_lock_key(job_id: int) -> str:
    return f"dataset_io_jobs:{job_id}:run"


class IOJobService:
    """Creates IO jobs and runs them from job messages.

    Example:
        >>> job = await io_jobs.create(IOJob(space_id=1, dataset_id=7, source=..., field_mappings=[...]))
        >>> worker.register(JOB_TYPE_IO, io_jobs.run)
    """

    def __init__(
        self,
        repo: SQLiteRepository,
        datasets: DatasetService,
        importer: FileImporter,
        locker: Locker,
        bus: MessageBus,
        config: IOJobConfig | None = None,
    ) -> None:
        self.repo = repo
        self.datasets = datasets
        self.importer = importer
        self.locker = locker
        self.bus = bus
        self.config = config or IOJobConfig()

    async def create(self, job: IOJob) -> IOJob:
        """Persist a pending job and ask a worker to run it.

        Raises:
            InvalidParamError: If the job is malformed or of an
                unsupported type
            NotFoundError: If the target dataset does not exist
            InternalError: If the run message cannot be sent; the job is
                marked failed then
        """
        if job.job_type not in _SUPPORTED_TYPES:
            raise InvalidParamError(f"io job type {job.job_type.value} not supported")
        if job.source.file is None or not (job.source.file.path or job.source.file.files):
            raise InvalidParamError("import job requires a source file")
        if not job.field_mappings:
            raise InvalidParamError("import job requires field mappings")
        await self.datasets.get_dataset(job.space_id, job.dataset_id)

        job.status = JobStatus.PENDING
        job.progress = IOJobProgress()
        job.errors = []
        job.updated_by = job.updated_by or job.created_by
        await self.repo.create_io_job(job)

        msg = JobRunMessage(type=JOB_TYPE_IO, space_id=job.space_id, job_id=job.id, operator=job.created_by)
        try:
            await self.bus.send(msg, key=str(job.id))
        except JobBusError as e:
            await self._fail_quietly(job, f"send run message: {e}")
            raise InternalError(f"send run message of io job {job.id}: {e}") from e
        return job

    async def run(self, msg: JobRunMessage) -> None:
        """Run (or resume) the job a message refers to.

        Raises:
            InvalidParamError: If the message is malformed
            RetryableError: If the run should be retried from its last commit
        """
        if msg.type != JOB_TYPE_IO or not msg.job_id:
            raise InvalidParamError(f"invalid io job message type={msg.type} job_id={msg.job_id}")

        job = await self.repo.get_io_job(msg.job_id, RepoOptions(with_master=True))
        if job is None:
            logger.warning("IO job message for unknown job", extra={"job_id": msg.job_id})
            return
        if job.status.is_terminal:
            logger.info("IO job already finished", extra={"job_id": job.id, "status": job.status.value})
            return

        lease = await self.locker.lock_backoff_with_renew(
            io_job_lock_key(job.id),
            self.config.lock_ttl_ms,
            self.config.lock_max_hold_ms,
        )
        if lease is None:
            logger.info("IO job locked by another worker, dropping message", extra={"job_id": job.id})
            return

        async with lease:
            job = await self.repo.get_io_job(job.id, RepoOptions(with_master=True))
            if job is None or job.status.is_terminal:
                return
            await self._dispatch(job, lease)

    async def _dispatch(self, job: IOJob, lease: LockLease) -> None:
        if job.job_type != JobType.IMPORT_FROM_FILE:
            # Export jobs are not implemented.
            raise InvalidParamError(f"io job type {job.job_type.value} not supported")

        try:
            ds = await self.datasets.get_dataset(job.space_id, job.dataset_id)
        except NotFoundError as e:
            await self._fail(job, str(e))
            return

        logger.info("Running import job", extra={"job_id": job.id, "dataset_id": job.dataset_id})
        await self.importer.run(job, ds, lease)

    async def get_job(self, job_id: int) -> IOJob:
        job = await self.repo.get_io_job(job_id)
        if job is None:
            raise NotFoundError(f"io job {job_id} not found")
        return job

    async def list_jobs(self, dataset_id: int, statuses: list[JobStatus] | None = None) -> list[IOJob]:
        return await self.repo.list_io_jobs(dataset_id, statuses)

    async def _fail(self, job: IOJob, reason: str) -> None:
        logger.error("IO job failed", extra={"job_id": job.id, "reason": reason})
        await self.repo.update_io_job(
            job.id,
            DeltaIOJob(
                status=JobStatus.FAILED,
                errors=[ItemErrorGroup(type=ItemErrorType.INTERNAL_ERROR, summary=reason, error_count=1)],
                ended_at=now_ms(),
            ),
        )

    async def _fail_quietly(self, job: IOJob, reason: str) -> None:
        try:
            await self._fail(job, reason)
        except Exception as e:
            logger.warning(f"Failed to mark io job failed: {e}", extra={"job_id": job.id})
