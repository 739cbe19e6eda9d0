"""
Distributed Job Lock — single-flight mutual exclusion keyed by job type.

Maintenance jobs are triggered by an external cron that may hit several
stateless server processes at once. Each run acquires ``job-lock:{job_type}``
first; whoever loses the race skips instead of queueing.

  acquire(job_type) → token | None      (None = another holder is active)
  release(job_type, token)              (compare-and-delete, mismatches are no-ops)
  extend(job_type, token, ttl)          (owner-only TTL refresh for long holders)

The TTL is the crash-recovery mechanism: a worker that dies while holding
the lock cannot block the job type for longer than ``ttl_seconds``.

Backends:
  RedisJobLock      SET key token NX EX ttl  +  Lua compare-and-delete
  InMemoryJobLock   dict with expiry, single process only
"""
from __future__ import annotations

import time
import uuid
import structlog
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from config.settings import LockConfig

logger = structlog.get_logger()

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
end
return 0
"""


def new_lock_token(job_type: str) -> str:
    return f"{job_type}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class JobLock(ABC):
    """Abstract single-flight lock interface."""

    def __init__(self, key_prefix: str = "job-lock:", ttl_seconds: int = 3600):
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self.degraded = False

    def _key(self, job_type: str) -> str:
        return f"{self.key_prefix}{job_type}"

    async def connect(self):
        """Establish connection to the lock store."""

    async def close(self):
        """Release connections."""

    @abstractmethod
    async def acquire(self, job_type: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """Claim the lock. Returns an owner token, or None if already held."""
        ...

    @abstractmethod
    async def release(self, job_type: str, token: str) -> bool:
        """Release if ``token`` still owns the lock. Returns whether it did."""
        ...

    @abstractmethod
    async def extend(self, job_type: str, token: str, ttl_seconds: Optional[float] = None) -> bool:
        """Reset the TTL if ``token`` still owns the lock. False once it was lost."""
        ...

    @abstractmethod
    async def is_running(self, job_type: str) -> bool:
        ...

    @asynccontextmanager
    async def held(self, job_type: str, ttl_seconds: Optional[int] = None) -> AsyncIterator[Optional[str]]:
        """
        Acquire-or-skip. Yields the token (None when someone else holds the
        lock); release always runs, even if the body raises.
        """
        token = await self.acquire(job_type, ttl_seconds)
        try:
            yield token
        finally:
            if token is not None:
                await self.release(job_type, token)


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisJobLock(JobLock):
    """Production lock backed by a Redis string key with TTL."""

    def __init__(self, redis_url: str = "redis://localhost:6379", **kwargs):
        super().__init__(**kwargs)
        self._redis_url = redis_url
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("redis_lock_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()

    async def acquire(self, job_type: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        token = new_lock_token(job_type)
        ok = await self._redis.set(
            self._key(job_type), token,
            nx=True, ex=ttl_seconds or self.ttl_seconds,
        )
        if ok:
            logger.info("job_lock_acquired", job_type=job_type, token=token)
            return token
        logger.info("job_lock_busy", job_type=job_type)
        return None

    async def release(self, job_type: str, token: str) -> bool:
        deleted = await self._redis.eval(_RELEASE_SCRIPT, 1, self._key(job_type), token)
        if deleted:
            logger.info("job_lock_released", job_type=job_type, token=token)
            return True
        logger.warning("job_lock_release_skipped", job_type=job_type, token=token)
        return False

    async def extend(self, job_type: str, token: str, ttl_seconds: Optional[float] = None) -> bool:
        ttl_ms = int((ttl_seconds or self.ttl_seconds) * 1000)
        return bool(await self._redis.eval(_EXTEND_SCRIPT, 1, self._key(job_type), token, ttl_ms))

    async def is_running(self, job_type: str) -> bool:
        return bool(await self._redis.exists(self._key(job_type)))


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryJobLock(JobLock):
    """
    Development/test lock. Single-process only.
    ``clock`` returns seconds and can be swapped in tests to force expiry.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, **kwargs):
        super().__init__(**kwargs)
        self._clock = clock
        self._held: dict[str, tuple[str, float]] = {}   # key → (token, expires_at)

    def _live(self, key: str) -> Optional[tuple[str, float]]:
        entry = self._held.get(key)
        if entry and entry[1] <= self._clock():
            del self._held[key]
            return None
        return entry

    async def acquire(self, job_type: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        key = self._key(job_type)
        # No await between the check and the set: atomic on the event loop.
        if self._live(key):
            logger.info("job_lock_busy", job_type=job_type)
            return None
        token = new_lock_token(job_type)
        self._held[key] = (token, self._clock() + (ttl_seconds or self.ttl_seconds))
        logger.info("job_lock_acquired", job_type=job_type, token=token)
        return token

    async def release(self, job_type: str, token: str) -> bool:
        key = self._key(job_type)
        entry = self._live(key)
        if entry and entry[0] == token:
            del self._held[key]
            logger.info("job_lock_released", job_type=job_type, token=token)
            return True
        logger.warning("job_lock_release_skipped", job_type=job_type, token=token)
        return False

    async def extend(self, job_type: str, token: str, ttl_seconds: Optional[float] = None) -> bool:
        key = self._key(job_type)
        entry = self._live(key)
        if not entry or entry[0] != token:
            return False
        self._held[key] = (token, self._clock() + (ttl_seconds or self.ttl_seconds))
        return True

    async def is_running(self, job_type: str) -> bool:
        return self._live(self._key(job_type)) is not None


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def _url_configured(url: str) -> bool:
    return bool(url) and "${" not in url


def create_job_lock(config: LockConfig = None) -> JobLock:
    """
    Create the configured lock backend.

    ``backend: redis`` with no usable URL falls back to the in-memory lock
    and flags it ``degraded`` so health checks can report it.
    """
    config = config or LockConfig()
    kwargs = {"key_prefix": config.key_prefix, "ttl_seconds": config.ttl_seconds}

    if config.backend == "redis":
        if _url_configured(config.redis_url):
            return RedisJobLock(redis_url=config.redis_url, **kwargs)
        logger.warning("job_lock_degraded", reason="redis_url not configured")
        lock = InMemoryJobLock(**kwargs)
        lock.degraded = True
        return lock

    return InMemoryJobLock(**kwargs)
