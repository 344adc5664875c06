"""
Tests for the DistributedJobLock.

Covers: one winner under a simultaneous fleet-wide trigger, TTL
requirement and expiry, token-checked release.
"""

import asyncio

import pytest

from mailgate.jobs.job_lock import DistributedJobLock


class TestAcquire:
    @pytest.mark.asyncio
    async def test_single_instance_acquires(self, redis_client, keys):
        lock = DistributedJobLock(redis_client, keys)
        assert await lock.try_acquire("digest", 3600) is True
        assert lock.holds("digest")
        assert await lock.holder("digest") is not None

    @pytest.mark.asyncio
    async def test_second_attempt_fails_while_held(self, redis_client, keys):
        lock = DistributedJobLock(redis_client, keys)
        assert await lock.try_acquire("digest", 3600) is True
        assert await lock.try_acquire("digest", 3600) is False

    @pytest.mark.asyncio
    async def test_exactly_one_winner_across_fleet(self, make_client, keys):
        fleet = [DistributedJobLock(make_client(), keys) for _ in range(10)]
        results = await asyncio.gather(*(lock.try_acquire("digest", 3600) for lock in fleet))
        assert results.count(True) == 1
        assert sum(lock.holds("digest") for lock in fleet) == 1

    @pytest.mark.asyncio
    async def test_jobs_lock_independently(self, redis_client, keys):
        lock = DistributedJobLock(redis_client, keys)
        assert await lock.try_acquire("digest", 3600) is True
        assert await lock.try_acquire("reconciliation", 600) is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -5])
    async def test_ttl_required(self, redis_client, keys, ttl):
        lock = DistributedJobLock(redis_client, keys)
        with pytest.raises(ValueError):
            await lock.try_acquire("digest", ttl)

    @pytest.mark.asyncio
    async def test_lock_carries_ttl(self, redis_client, keys):
        lock = DistributedJobLock(redis_client, keys)
        await lock.try_acquire("digest", 3600)
        ttl = await redis_client.ttl(keys.job_lock("digest"))
        assert 0 < ttl <= 3600

    @pytest.mark.asyncio
    async def test_reacquire_after_expiry(self, make_client, keys):
        first = DistributedJobLock(make_client(), keys)
        second = DistributedJobLock(make_client(), keys)
        await first.try_acquire("digest", 3600)

        await make_client().delete(keys.job_lock("digest"))  # simulate TTL expiry
        assert await second.try_acquire("digest", 3600) is True


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_frees_lock(self, redis_client, keys):
        lock = DistributedJobLock(redis_client, keys)
        await lock.try_acquire("digest", 3600)
        assert await lock.release("digest") is True
        assert await lock.holder("digest") is None
        assert not lock.holds("digest")

    @pytest.mark.asyncio
    async def test_release_without_holding_is_noop(self, redis_client, keys):
        lock = DistributedJobLock(redis_client, keys)
        assert await lock.release("digest") is False

    @pytest.mark.asyncio
    async def test_release_never_deletes_another_holders_lock(self, make_client, keys):
        first = DistributedJobLock(make_client(), keys)
        second = DistributedJobLock(make_client(), keys)
        await first.try_acquire("digest", 3600)

        # First holder's lease expires and a second instance takes over.
        await make_client().delete(keys.job_lock("digest"))
        await second.try_acquire("digest", 3600)
        token = await second.holder("digest")

        assert await first.release("digest") is False
        assert await second.holder("digest") == token
