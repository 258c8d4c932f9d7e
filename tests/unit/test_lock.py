"""
Unit tests for Locker and LockLease.

Tests cover:
- Single-holder semantics and TTL validation
- Backoff acquisition, waiting out an expiring lock
- Renewal keeping a lock past its TTL
- Lease lost when another holder takes over
- Max hold time releasing the lock
"""

import asyncio

import pytest

from dbaas.dataset_engine.errors import RetryableError
from dbaas.dataset_engine.kv import InMemoryKV, Locker

KEY = "version:1:snapshotting"


@pytest.fixture
def kv():
    return InMemoryKV()


class TestLocker:
    """Tests for one-shot and backoff acquisition."""

    @pytest.mark.asyncio
    async def test_single_holder(self, kv):
        a = Locker(kv, holder="a")
        b = Locker(kv, holder="b")
        assert await a.lock(KEY, 5000)
        assert not await b.lock(KEY, 5000)
        assert not await b.unlock(KEY)
        assert await a.unlock(KEY)
        assert await b.lock(KEY, 5000)
        assert kv.lock_holder(KEY) == "b"

    @pytest.mark.asyncio
    async def test_short_ttl_rejected(self, kv):
        with pytest.raises(ValueError):
            await Locker(kv).lock(KEY, 999)

    @pytest.mark.asyncio
    async def test_backoff_gives_up(self, kv):
        await Locker(kv, holder="a").lock(KEY, 5000)
        assert not await Locker(kv, holder="b").lock_backoff(KEY, 5000, max_wait_ms=100)

    @pytest.mark.asyncio
    async def test_backoff_waits_for_expiry(self, kv):
        await Locker(kv, holder="a").lock(KEY, 1000)
        assert await Locker(kv, holder="b").lock_backoff(KEY, 1000, max_wait_ms=2000)
        assert kv.lock_holder(KEY) == "b"

    @pytest.mark.asyncio
    async def test_default_holder_unique(self, kv):
        assert Locker(kv).holder != Locker(kv).holder


class TestLockLease:
    """Tests for renewal and loss of a lease."""

    @pytest.mark.asyncio
    async def test_renewal_outlives_ttl(self, kv):
        locker = Locker(kv, holder="a")
        lease = await locker.lock_backoff_with_renew(KEY, 1100, 60_000)
        assert lease is not None
        async with lease:
            await asyncio.sleep(1.5)
            assert not lease.lost
            assert kv.lock_holder(KEY) == "a"
        assert lease.lost
        assert kv.lock_holder(KEY) is None

    @pytest.mark.asyncio
    async def test_lost_when_taken_over(self, kv):
        lease = await Locker(kv, holder="a").lock_backoff_with_renew(KEY, 1100, 60_000)
        # Another holder takes the key, as after an expiry.
        await Locker(kv, holder="a").unlock(KEY)
        assert await Locker(kv, holder="b").lock(KEY, 60_000)
        await asyncio.wait_for(lease.wait_lost(), timeout=3)
        with pytest.raises(RetryableError):
            lease.raise_if_lost()
        await lease.release()
        # Release never deletes a lock someone else holds.
        assert kv.lock_holder(KEY) == "b"

    @pytest.mark.asyncio
    async def test_max_hold_releases(self, kv):
        lease = await Locker(kv, holder="a").lock_backoff_with_renew(KEY, 5000, 100)
        await asyncio.wait_for(lease.wait_lost(), timeout=2)
        assert kv.lock_holder(KEY) is None
        await lease.release()

    @pytest.mark.asyncio
    async def test_contended_returns_none(self, kv):
        await Locker(kv, holder="a").lock(KEY, 5000)
        lease = await Locker(kv, holder="b").lock_backoff_with_renew(KEY, 5000, 60_000, max_wait_ms=50)
        assert lease is None

    @pytest.mark.asyncio
    async def test_release_idempotent(self, kv):
        lease = await Locker(kv, holder="a").lock_backoff_with_renew(KEY, 5000, 60_000)
        await lease.release()
        await lease.release()
        assert lease.lost
