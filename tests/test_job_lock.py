"""Tests for the distributed job lock (in-memory and Redis command shape)."""
import asyncio
import pytest
from unittest.mock import AsyncMock

from config.settings import LockConfig
from jobs.lock import (
    InMemoryJobLock, RedisJobLock, create_job_lock, new_lock_token,
)


class ManualClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


class TestInMemoryJobLock:
    @pytest.mark.asyncio
    async def test_acquire_then_busy(self):
        lock = InMemoryJobLock()
        token = await lock.acquire("webhook-retry")
        assert token and token.startswith("webhook-retry-")
        assert await lock.acquire("webhook-retry") is None
        assert await lock.is_running("webhook-retry")

    @pytest.mark.asyncio
    async def test_job_types_are_independent(self):
        lock = InMemoryJobLock()
        assert await lock.acquire("webhook-retry")
        assert await lock.acquire("scheduler-health-check")

    @pytest.mark.asyncio
    async def test_release_with_owner_token(self):
        lock = InMemoryJobLock()
        token = await lock.acquire("webhook-retry")
        assert await lock.release("webhook-retry", token) is True
        assert not await lock.is_running("webhook-retry")
        assert await lock.acquire("webhook-retry")

    @pytest.mark.asyncio
    async def test_release_with_foreign_token_is_noop(self):
        lock = InMemoryJobLock()
        token = await lock.acquire("webhook-retry")
        assert await lock.release("webhook-retry", "someone-else") is False
        assert await lock.is_running("webhook-retry")
        assert await lock.release("webhook-retry", token) is True

    @pytest.mark.asyncio
    async def test_release_unknown_is_noop(self):
        lock = InMemoryJobLock()
        assert await lock.release("never-held", "token") is False

    @pytest.mark.asyncio
    async def test_expired_lock_can_be_reacquired(self):
        clock = ManualClock()
        lock = InMemoryJobLock(clock=clock, ttl_seconds=60)
        stale = await lock.acquire("webhook-retry")
        clock.t += 61
        assert not await lock.is_running("webhook-retry")
        fresh = await lock.acquire("webhook-retry")
        assert fresh and fresh != stale
        # The crashed holder's late release must not free the new holder
        assert await lock.release("webhook-retry", stale) is False
        assert await lock.is_running("webhook-retry")

    @pytest.mark.asyncio
    async def test_concurrent_acquire_single_winner(self):
        lock = InMemoryJobLock()
        tokens = await asyncio.gather(*(lock.acquire("webhook-retry") for _ in range(20)))
        assert len([t for t in tokens if t]) == 1

    @pytest.mark.asyncio
    async def test_held_releases_on_error(self):
        lock = InMemoryJobLock()
        with pytest.raises(RuntimeError):
            async with lock.held("webhook-retry") as token:
                assert token is not None
                raise RuntimeError("boom")
        assert not await lock.is_running("webhook-retry")

    @pytest.mark.asyncio
    async def test_held_yields_none_when_busy(self):
        lock = InMemoryJobLock()
        owner = await lock.acquire("webhook-retry")
        async with lock.held("webhook-retry") as token:
            assert token is None
        # Losing the race must not release the winner's lock
        assert await lock.is_running("webhook-retry")
        await lock.release("webhook-retry", owner)

    @pytest.mark.asyncio
    async def test_extend_pushes_expiry_for_owner(self):
        clock = ManualClock()
        lock = InMemoryJobLock(clock=clock, ttl_seconds=60)
        token = await lock.acquire("followup-ticket:t1")
        clock.t += 50
        assert await lock.extend("followup-ticket:t1", token) is True
        clock.t += 50
        assert await lock.is_running("followup-ticket:t1")
        clock.t += 11
        assert not await lock.is_running("followup-ticket:t1")

    @pytest.mark.asyncio
    async def test_extend_with_foreign_token_is_refused(self):
        clock = ManualClock()
        lock = InMemoryJobLock(clock=clock, ttl_seconds=60)
        await lock.acquire("followup-ticket:t1")
        assert await lock.extend("followup-ticket:t1", "someone-else") is False
        clock.t += 61
        assert not await lock.is_running("followup-ticket:t1")

    @pytest.mark.asyncio
    async def test_extend_after_expiry_is_refused(self):
        clock = ManualClock()
        lock = InMemoryJobLock(clock=clock, ttl_seconds=60)
        token = await lock.acquire("followup-ticket:t1")
        clock.t += 61
        assert await lock.extend("followup-ticket:t1", token) is False
        assert not await lock.is_running("followup-ticket:t1")


class TestRedisJobLock:
    @pytest.fixture
    def lock(self):
        lock = RedisJobLock(redis_url="redis://localhost:6379")
        lock._redis = AsyncMock()
        return lock

    @pytest.mark.asyncio
    async def test_acquire_uses_set_nx_ex(self, lock):
        lock._redis.set.return_value = True
        token = await lock.acquire("webhook-retry")
        assert token
        lock._redis.set.assert_awaited_once_with(
            "job-lock:webhook-retry", token, nx=True, ex=3600,
        )

    @pytest.mark.asyncio
    async def test_acquire_busy_returns_none(self, lock):
        lock._redis.set.return_value = None
        assert await lock.acquire("webhook-retry") is None

    @pytest.mark.asyncio
    async def test_release_is_compare_and_delete(self, lock):
        lock._redis.eval.return_value = 1
        assert await lock.release("webhook-retry", "tok") is True
        args = lock._redis.eval.await_args.args
        assert args[1:] == (1, "job-lock:webhook-retry", "tok")
        assert 'redis.call("get", KEYS[1]) == ARGV[1]' in args[0]

    @pytest.mark.asyncio
    async def test_release_mismatch_returns_false(self, lock):
        lock._redis.eval.return_value = 0
        assert await lock.release("webhook-retry", "stale") is False

    @pytest.mark.asyncio
    async def test_extend_is_owner_only_pexpire(self, lock):
        lock._redis.eval.return_value = 1
        assert await lock.extend("followup-ticket:t1", "tok", 150) is True
        args = lock._redis.eval.await_args.args
        assert args[1:] == (1, "job-lock:followup-ticket:t1", "tok", 150000)
        assert "pexpire" in args[0]

    @pytest.mark.asyncio
    async def test_extend_lost_lock_returns_false(self, lock):
        lock._redis.eval.return_value = 0
        assert await lock.extend("followup-ticket:t1", "stale") is False

    @pytest.mark.asyncio
    async def test_store_errors_propagate(self, lock):
        lock._redis.set.side_effect = ConnectionError("redis down")
        with pytest.raises(ConnectionError):
            await lock.acquire("webhook-retry")


class TestLockFactory:
    def test_memory_backend(self):
        lock = create_job_lock(LockConfig(backend="memory"))
        assert isinstance(lock, InMemoryJobLock)
        assert lock.degraded is False

    def test_redis_backend(self):
        lock = create_job_lock(LockConfig(backend="redis", redis_url="redis://cache:6379"))
        assert isinstance(lock, RedisJobLock)

    def test_redis_without_url_is_degraded(self):
        lock = create_job_lock(LockConfig(backend="redis", redis_url="${REDIS_URL}"))
        assert isinstance(lock, InMemoryJobLock)
        assert lock.degraded is True

    def test_token_format(self):
        token = new_lock_token("webhook-retry")
        job_type, millis, suffix = token.rsplit("-", 2)
        assert job_type == "webhook-retry"
        assert millis.isdigit()
        assert len(suffix) == 8
