"""
Dataset engine - Main entry point.

This module starts the job-processing side of the engine:
- Repository (SQLite)
- KV store (counters, barrier records, locks)
- Tiered payload storage
- Job worker running snapshot and file import jobs

Library callers embed the services directly; Engine exposes them once
started.

Usage:
    python -m dbaas.dataset_engine.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The worker starts only after every backend is connected
    - Shutdown cancels the worker before closing the backends it uses

How to change safely:
    - Register new job types on the worker, never a second worker
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter

from .barrier import OperationBarrier
from .config import EngineConfig
from .entity import Provider
from .fileio import FileSystems, LocalFS
from .jobs import JOB_TYPE_IO, JOB_TYPE_SNAPSHOT, JobWorker, MessageBus, create_job_bus
from .kv import KVStore, Locker, create_kv_store
from .repo import SQLiteRepository, TimeOrderedIDGenerator
from .service import (
    DatasetService,
    FileImporter,
    IOJobService,
    ItemService,
    SchemaService,
    SnapshotBuilder,
    VersionService,
)
from .storage import TieredPayloadStore, create_payload_store

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.VerboseJSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


class Engine:
    """Dataset engine orchestrator.

    Owns the backends, the services built on them and the job worker.

    Attributes:
        config: Engine configuration
        repo: SQLite repository
        kv: KV store for counters, barriers and locks
        bus: Job bus
        payloads: Tiered payload store

    Example:
        >>> engine = Engine()
        >>> await engine.open()
        >>> ds = await engine.datasets.create_dataset(...)
        >>> await engine.close()
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        self.config = config or EngineConfig.from_env()
        self._running = False
        self._opened = False
        self._shutdown_event = asyncio.Event()

        # Backends (initialized in open())
        self.repo: SQLiteRepository | None = None
        self.kv: KVStore | None = None
        self.bus: MessageBus | None = None
        self.payloads: TieredPayloadStore | None = None

        # Services
        self.datasets: DatasetService | None = None
        self.schemas: SchemaService | None = None
        self.items: ItemService | None = None
        self.versions: VersionService | None = None
        self.snapshots: SnapshotBuilder | None = None
        self.io_jobs: IOJobService | None = None
        self.worker: JobWorker | None = None

        self._tasks: list[asyncio.Task] = []

    async def open(self) -> None:
        """Connect the backends and build the services. Idempotent."""
        if self._opened:
            return

        cfg = self.config
        if cfg.repository.sqlite_path != ":memory:":
            Path(cfg.repository.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

        id_gen = TimeOrderedIDGenerator()
        self.repo = SQLiteRepository(
            cfg.repository.sqlite_path,
            id_gen=id_gen,
            wal_mode=cfg.repository.wal_mode,
            busy_timeout_ms=cfg.repository.busy_timeout_ms,
        )
        await self.repo.connect()

        self.kv = create_kv_store(cfg)
        await self.kv.connect()
        logger.info("KV store connected", extra={"backend": cfg.kv_backend.value})

        self.bus = create_job_bus(cfg)
        await self.bus.connect()
        logger.info("Job bus connected", extra={"backend": cfg.job_bus_backend.value})

        self.payloads = create_payload_store(cfg)
        await self.payloads.connect()

        barrier = OperationBarrier(self.kv, cfg.barrier)
        locker = Locker(self.kv)
        file_systems = FileSystems({Provider.LOCAL: LocalFS(cfg.importer.file_root)})

        self.datasets = DatasetService(self.repo, self.kv, cfg.dataset_defaults)
        self.schemas = SchemaService(self.repo, self.kv, barrier)
        self.items = ItemService(self.repo, self.kv, self.payloads, barrier, id_gen)
        self.versions = VersionService(self.repo, self.kv, barrier, self.bus)
        self.snapshots = SnapshotBuilder(self.repo, locker, self.bus, cfg.snapshot)
        importer = FileImporter(self.repo, self.items, file_systems, cfg.importer)
        self.io_jobs = IOJobService(self.repo, self.datasets, importer, locker, self.bus, cfg.io_job)

        self.worker = JobWorker(
            self.bus,
            {
                JOB_TYPE_SNAPSHOT: self.snapshots.handle,
                JOB_TYPE_IO: self.io_jobs.run,
            },
            group_id=cfg.kafka.consumer_group,
            retry_delay_ms=cfg.io_job.retry_interval_ms,
        )
        self._opened = True

    async def start(self) -> None:
        """Open the engine, run the job worker and wait for shutdown."""
        if self._running:
            logger.warning("Engine already running")
            return

        logger.info("Starting dataset engine")
        self.config.log_config()

        try:
            await self.open()
            self._tasks.append(asyncio.create_task(self.worker.start()))

            self._running = True
            logger.info("Dataset engine started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Engine startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the worker, then close the backends."""
        if not self._running and not self._opened:
            return

        logger.info("Stopping dataset engine")

        if self.worker:
            await self.worker.stop()

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.close()
        self._running = False
        logger.info("Dataset engine stopped")

    async def close(self) -> None:
        """Close the backends opened by open()."""
        if self.bus:
            await self.bus.close()
        if self.payloads:
            await self.payloads.close()
        if self.kv:
            await self.kv.close()
        if self.repo:
            await self.repo.close()
        self._opened = False

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = EngineConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    engine = Engine(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        engine.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(engine.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(engine.stop())
        loop.close()


if __name__ == "__main__":
    main()
