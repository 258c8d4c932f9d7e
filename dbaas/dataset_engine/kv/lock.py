"""
Distributed lock with backoff acquisition and background renewal.

A LockLease is handed to long-running workers (snapshot builder, IO job
runner). While the lease is held a background task pushes the TTL forward
every max(1s, ttl - 100ms). Renewal stops, and the lease is marked lost,
when the holder changes, after three consecutive renewal errors, or when
the maximum hold time elapses.

Invariants:
    - Only the holder string that took a lock can renew or release it
    - A lost lease never becomes held again; workers must check it
      between pages/records and stop
    - release() is idempotent

Example:
    >>> locker = Locker(kv)
    >>> lease = await locker.lock_backoff_with_renew("version:7:snapshotting", 60_000, 20 * 60_000)
    >>> if lease is None:
    ...     return  # someone else holds it
    >>> async with lease:
    ...     for page in pages:
    ...         lease.raise_if_lost()
    ...         await copy(page)
"""

from __future__ import annotations

import asyncio
import logging
import socket
import uuid

from ..errors import InternalError, RetryableError
from .base import LockBackend

logger = logging.getLogger(__name__)

MIN_TTL_MS = 1000
BACKOFF_INITIAL_MS = 50
BACKOFF_MAX_MS = 300
MAX_RENEW_ERRORS = 3


def default_holder() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:12]}"


class LockLease:
    """A held lock that renews itself until released, lost or expired."""

    def __init__(self, backend: LockBackend, key: str, holder: str, ttl_ms: int, max_hold_ms: int) -> None:
        self.key = key
        self.holder = holder
        self.ttl_ms = ttl_ms
        self.max_hold_ms = max_hold_ms
        self._backend = backend
        self._lost = asyncio.Event()
        self._released = False
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._renew_loop(), name=f"lock-renew:{self.key}")

    @property
    def lost(self) -> bool:
        return self._lost.is_set()

    def raise_if_lost(self) -> None:
        """Raise RetryableError if the lease is no longer held."""
        if self.lost:
            raise RetryableError(InternalError(f"lock {self.key} is no longer held"))

    async def wait_lost(self) -> None:
        await self._lost.wait()

    async def _renew_loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = max(MIN_TTL_MS, self.ttl_ms - 100) / 1000
        deadline = loop.time() + self.max_hold_ms / 1000
        errors = 0
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.info("Lock max hold reached, releasing", extra={"lock_key": self.key})
                    await self._unlock()
                    return
                await asyncio.sleep(min(interval, remaining))
                if loop.time() >= deadline:
                    continue

                try:
                    ok = await self._backend.expire(self.key, self.holder, self.ttl_ms)
                except Exception as e:
                    errors += 1
                    logger.warning(
                        f"Lock renewal failed ({errors}/{MAX_RENEW_ERRORS}): {e}",
                        extra={"lock_key": self.key},
                    )
                    if errors >= MAX_RENEW_ERRORS:
                        logger.error("Giving up lock renewal", extra={"lock_key": self.key})
                        return
                    continue

                if not ok:
                    logger.warning("Lock taken by another holder", extra={"lock_key": self.key})
                    return
                errors = 0
        finally:
            self._lost.set()

    async def _unlock(self) -> None:
        try:
            await self._backend.unlock(self.key, self.holder)
        except Exception as e:
            logger.warning(f"Failed to unlock: {e}", extra={"lock_key": self.key})

    async def release(self) -> None:
        """Stop renewing and delete the lock if still held."""
        if self._released:
            return
        self._released = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._lost.set()
        await self._unlock()

    async def __aenter__(self) -> LockLease:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


class Locker:
    """Acquires TTL locks on a LockBackend under one holder identity.

    Attributes:
        holder: hostname plus a random suffix, unique per process
    """

    def __init__(self, backend: LockBackend, holder: str | None = None) -> None:
        self.backend = backend
        self.holder = holder or default_holder()

    async def lock(self, key: str, ttl_ms: int) -> bool:
        """Try once to take key for ttl_ms.

        Raises:
            ValueError: If ttl_ms is under one second
        """
        if ttl_ms < MIN_TTL_MS:
            raise ValueError(f"lock ttl must be at least {MIN_TTL_MS}ms, got {ttl_ms}")
        return await self.backend.try_lock(key, self.holder, ttl_ms)

    async def lock_backoff(self, key: str, ttl_ms: int, max_wait_ms: int | None = None) -> bool:
        """Retry lock() with exponential backoff.

        Waits at most max_wait_ms, ttl_ms + 1s by default, which is long
        enough for a crashed holder's lock to expire. Returns False when
        the lock is still held by someone else.
        """
        loop = asyncio.get_running_loop()
        if max_wait_ms is None:
            max_wait_ms = ttl_ms + 1000
        deadline = loop.time() + max_wait_ms / 1000
        backoff_ms = BACKOFF_INITIAL_MS
        while True:
            if await self.lock(key, ttl_ms):
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(backoff_ms / 1000, remaining))
            backoff_ms = min(backoff_ms * 2, BACKOFF_MAX_MS)

    async def lock_backoff_with_renew(
        self,
        key: str,
        ttl_ms: int,
        max_hold_ms: int,
        max_wait_ms: int | None = None,
    ) -> LockLease | None:
        """Acquire key with backoff and keep it renewed.

        Returns:
            A started LockLease, or None if the lock is held by others
        """
        if not await self.lock_backoff(key, ttl_ms, max_wait_ms):
            return None
        lease = LockLease(self.backend, key, self.holder, ttl_ms, max_hold_ms)
        lease.start()
        logger.debug("Lock acquired", extra={"lock_key": key, "holder": self.holder})
        return lease

    async def unlock(self, key: str) -> bool:
        return await self.backend.unlock(key, self.holder)
