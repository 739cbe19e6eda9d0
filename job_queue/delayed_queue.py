"""
Delayed Job Queue — Abstract interface with Redis and in-memory backends.

Key Topology (prefix defaults to "followup"):
  {prefix}:delayed    — sorted set, job_id scored by due epoch seconds
  {prefix}:jobs       — hash, job_id → JSON body
  {prefix}:inflight   — sorted set, claimed job_id scored by visibility deadline
  {prefix}:dlq        — list of JSON bodies that exhausted their attempts

Lifecycle:
  enqueue → delayed ──claim_due──▶ inflight ──ack──▶ (gone)
                 ▲                     │
                 ├────── nack ─────────┤ (attempt + 1, exponential backoff)
                 ├── requeue_expired ──┘ (worker died before ack)
                 └─ cancel (only while still delayed)
                                       └── nack past max_attempts ──▶ dlq

Delivery is at-least-once: a job whose worker crashes is redelivered once
its visibility deadline passes, so handlers must be idempotent.

Message Schema:
  {
      "job_id":       caller-chosen id, unique per job ("followup-{id}"),
      "name":         job kind, e.g. "followup",
      "payload":      dict handed to the worker,
      "scheduled_at": ISO timestamp when the job becomes due,
      "attempt":      current attempt number (for retries),
      "max_attempts": ceiling before DLQ,
      "created_at":   ISO timestamp when the job was enqueued,
      "metadata":     arbitrary extra data,
  }
"""
from __future__ import annotations

import json
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from config.settings import QueueConfig

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse(ts: str) -> datetime:
    dt = datetime.fromisoformat(ts)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueJob:
    """A unit of work on the queue."""
    job_id: str
    name: str = "followup"
    payload: dict[str, Any] = field(default_factory=dict)
    scheduled_at: str = ""
    attempt: int = 0
    max_attempts: int = 3
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.created_at:
            self.created_at = _utcnow().isoformat()
        if not self.scheduled_at:
            self.scheduled_at = self.created_at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)  # copy
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @classmethod
    def from_json(cls, raw: str) -> QueueJob:
        return cls.from_dict(json.loads(raw))

    @property
    def due_at(self) -> datetime:
        return _parse(self.scheduled_at)

    def next_retry_job(self, backoff_seconds: int = 60, now: datetime = None) -> QueueJob:
        """Create a copy with incremented attempt and backoff delay."""
        now = now or _utcnow()
        retry_at = now + timedelta(
            seconds=backoff_seconds * (2 ** self.attempt)  # exponential backoff
        )
        return QueueJob(
            job_id=self.job_id,  # same job_id across retries for tracing
            name=self.name,
            payload=self.payload,
            scheduled_at=retry_at.isoformat(),
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            created_at=self.created_at,
            metadata={**self.metadata, "last_failure_at": now.isoformat()},
        )


@dataclass(frozen=True)
class JobHandle:
    """Reference returned by enqueue; its job_id is what callers persist."""
    job_id: str
    scheduled_at: datetime


HandleLike = Union[JobHandle, str]


def _handle_id(handle: HandleLike) -> str:
    return handle.job_id if isinstance(handle, JobHandle) else handle


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class DelayedJobQueue(ABC):
    """Abstract durable delay queue."""

    def __init__(
        self,
        key_prefix: str = "followup",
        max_attempts: int = 3,
        retry_backoff_base: int = 60,
        visibility_timeout: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.key_prefix = key_prefix
        self.max_attempts = max_attempts
        self.retry_backoff_base = retry_backoff_base
        self.visibility_timeout = visibility_timeout
        self.degraded = False
        self._clock = clock

    def _build_job(self, job_id: str, payload: dict[str, Any], delay: timedelta, name: str) -> QueueJob:
        now = self._clock()
        due = now + max(delay, timedelta(0))
        return QueueJob(
            job_id=job_id,
            name=name,
            payload=payload,
            scheduled_at=due.isoformat(),
            max_attempts=self.max_attempts,
            created_at=now.isoformat(),
        )

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def enqueue(
        self, job_id: str, payload: dict[str, Any],
        delay: timedelta = timedelta(0), name: str = "followup",
    ) -> JobHandle:
        """Schedule a job. Re-enqueueing a known job_id returns its existing handle."""
        ...

    @abstractmethod
    async def cancel(self, handle: HandleLike) -> bool:
        """Remove a job that has not been claimed yet. False if fired or unknown."""
        ...

    @abstractmethod
    async def claim_due(self, limit: int = 10, now: datetime = None) -> list[QueueJob]:
        """Atomically hand due jobs to this caller and mark them in flight."""
        ...

    @abstractmethod
    async def ack(self, job: QueueJob):
        """Acknowledge successful processing of a job."""
        ...

    @abstractmethod
    async def nack(self, job: QueueJob, error: str = ""):
        """Negative-acknowledge — route to retry or DLQ."""
        ...

    @abstractmethod
    async def requeue_expired(self, now: datetime = None) -> int:
        """Make in-flight jobs whose visibility deadline passed due again."""
        ...

    @abstractmethod
    async def length(self) -> int:
        """Number of jobs waiting (due or not) to be claimed."""
        ...

    @abstractmethod
    async def inflight_count(self) -> int:
        ...

    @abstractmethod
    async def dlq_length(self) -> int:
        ...

    @abstractmethod
    async def dead_letters(self, count: int = 10) -> list[QueueJob]:
        """Peek at dead-lettered jobs without removing them."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

_ENQUEUE_LUA = """
if redis.call("hexists", KEYS[2], ARGV[1]) == 1 then
    return 0
end
redis.call("hset", KEYS[2], ARGV[1], ARGV[2])
redis.call("zadd", KEYS[1], ARGV[3], ARGV[1])
return 1
"""

_CANCEL_LUA = """
if redis.call("zrem", KEYS[1], ARGV[1]) == 1 then
    redis.call("hdel", KEYS[2], ARGV[1])
    return 1
end
return 0
"""

_CLAIM_LUA = """
local ids = redis.call("zrangebyscore", KEYS[1], "-inf", ARGV[1], "LIMIT", 0, ARGV[2])
local out = {}
for _, id in ipairs(ids) do
    redis.call("zrem", KEYS[1], id)
    local body = redis.call("hget", KEYS[2], id)
    if body then
        redis.call("zadd", KEYS[3], ARGV[3], id)
        table.insert(out, body)
    end
end
return out
"""

_REQUEUE_LUA = """
local ids = redis.call("zrangebyscore", KEYS[1], "-inf", ARGV[1])
for _, id in ipairs(ids) do
    redis.call("zrem", KEYS[1], id)
    redis.call("zadd", KEYS[2], ARGV[1], id)
end
return #ids
"""


class RedisDelayedJobQueue(DelayedJobQueue):
    """
    Production queue backed by Redis sorted sets.

    Every state change that reads before it writes (enqueue dedupe, cancel,
    claim, requeue) is a Lua script, so concurrent workers never claim the
    same job twice and a cancel never races a claim.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", **kwargs):
        super().__init__(**kwargs)
        self._redis_url = redis_url
        self._redis = None
        self._scripts: dict[str, Any] = {}

    @property
    def _delayed_key(self) -> str:
        return f"{self.key_prefix}:delayed"

    @property
    def _jobs_key(self) -> str:
        return f"{self.key_prefix}:jobs"

    @property
    def _inflight_key(self) -> str:
        return f"{self.key_prefix}:inflight"

    @property
    def _dlq_key(self) -> str:
        return f"{self.key_prefix}:dlq"

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        self._scripts = {
            "enqueue": self._redis.register_script(_ENQUEUE_LUA),
            "cancel": self._redis.register_script(_CANCEL_LUA),
            "claim": self._redis.register_script(_CLAIM_LUA),
            "requeue": self._redis.register_script(_REQUEUE_LUA),
        }
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()

    async def enqueue(
        self, job_id: str, payload: dict[str, Any],
        delay: timedelta = timedelta(0), name: str = "followup",
    ) -> JobHandle:
        job = self._build_job(job_id, payload, delay, name)
        added = await self._scripts["enqueue"](
            keys=[self._delayed_key, self._jobs_key],
            args=[job.job_id, job.to_json(), job.due_at.timestamp()],
        )
        if not added:
            existing = await self._redis.hget(self._jobs_key, job_id)
            if existing:
                logger.info("job_already_enqueued", job_id=job_id)
                return JobHandle(job_id=job_id, scheduled_at=QueueJob.from_json(existing).due_at)
        logger.info("delayed_job_published",
                    job_id=job.job_id,
                    scheduled_at=job.scheduled_at)
        return JobHandle(job_id=job.job_id, scheduled_at=job.due_at)

    async def cancel(self, handle: HandleLike) -> bool:
        job_id = _handle_id(handle)
        removed = await self._scripts["cancel"](
            keys=[self._delayed_key, self._jobs_key], args=[job_id],
        )
        logger.info("job_cancel", job_id=job_id, removed=bool(removed))
        return bool(removed)

    async def claim_due(self, limit: int = 10, now: datetime = None) -> list[QueueJob]:
        now = now or self._clock()
        deadline = now + timedelta(seconds=self.visibility_timeout)
        bodies = await self._scripts["claim"](
            keys=[self._delayed_key, self._jobs_key, self._inflight_key],
            args=[now.timestamp(), limit, deadline.timestamp()],
        )
        jobs = [QueueJob.from_json(b) for b in bodies or []]
        if jobs:
            logger.info("jobs_claimed", count=len(jobs))
        return jobs

    async def ack(self, job: QueueJob):
        pipe = self._redis.pipeline(transaction=True)
        pipe.zrem(self._inflight_key, job.job_id)
        pipe.hdel(self._jobs_key, job.job_id)
        await pipe.execute()
        logger.debug("job_acked", job_id=job.job_id)

    async def nack(self, job: QueueJob, error: str = ""):
        pipe = self._redis.pipeline(transaction=True)
        pipe.zrem(self._inflight_key, job.job_id)
        if job.attempt + 1 >= job.max_attempts:
            # Exhausted retries → DLQ
            job.metadata["dlq_reason"] = f"Exceeded {job.max_attempts} attempts"
            job.metadata["last_error"] = error
            pipe.hdel(self._jobs_key, job.job_id)
            pipe.lpush(self._dlq_key, job.to_json())
            await pipe.execute()
            logger.warning("job_moved_to_dlq",
                           job_id=job.job_id,
                           attempts=job.attempt + 1,
                           error=error)
            return

        # Retry with exponential backoff
        retry_job = job.next_retry_job(self.retry_backoff_base, now=self._clock())
        pipe.hset(self._jobs_key, job.job_id, retry_job.to_json())
        pipe.zadd(self._delayed_key, {job.job_id: retry_job.due_at.timestamp()})
        await pipe.execute()
        logger.info("job_scheduled_for_retry",
                    job_id=job.job_id,
                    attempt=retry_job.attempt,
                    scheduled_at=retry_job.scheduled_at)

    async def requeue_expired(self, now: datetime = None) -> int:
        now = now or self._clock()
        count = await self._scripts["requeue"](
            keys=[self._inflight_key, self._delayed_key], args=[now.timestamp()],
        )
        if count:
            logger.warning("inflight_jobs_requeued", count=count)
        return int(count or 0)

    async def length(self) -> int:
        return await self._redis.zcard(self._delayed_key)

    async def inflight_count(self) -> int:
        return await self._redis.zcard(self._inflight_key)

    async def dlq_length(self) -> int:
        return await self._redis.llen(self._dlq_key)

    async def dead_letters(self, count: int = 10) -> list[QueueJob]:
        bodies = await self._redis.lrange(self._dlq_key, 0, count - 1)
        return [QueueJob.from_json(b) for b in bodies]


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryDelayedJobQueue(DelayedJobQueue):
    """
    Development/test queue with the same claim/cancel semantics.
    Single-process only — nothing survives a restart.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._jobs: dict[str, QueueJob] = {}
        self._delayed: dict[str, float] = {}     # job_id → due epoch
        self._inflight: dict[str, float] = {}    # job_id → visibility deadline
        self._dlq: list[QueueJob] = []

    async def connect(self):
        logger.info("inmemory_queue_connected", degraded=self.degraded)

    async def close(self):
        pass

    async def enqueue(
        self, job_id: str, payload: dict[str, Any],
        delay: timedelta = timedelta(0), name: str = "followup",
    ) -> JobHandle:
        existing = self._jobs.get(job_id)
        if existing:
            logger.info("job_already_enqueued", job_id=job_id)
            return JobHandle(job_id=job_id, scheduled_at=existing.due_at)

        job = self._build_job(job_id, payload, delay, name)
        self._jobs[job_id] = job
        self._delayed[job_id] = job.due_at.timestamp()
        logger.info("delayed_job_published",
                    job_id=job.job_id,
                    scheduled_at=job.scheduled_at)
        return JobHandle(job_id=job_id, scheduled_at=job.due_at)

    async def cancel(self, handle: HandleLike) -> bool:
        job_id = _handle_id(handle)
        removed = self._delayed.pop(job_id, None) is not None
        if removed:
            self._jobs.pop(job_id, None)
        logger.info("job_cancel", job_id=job_id, removed=removed)
        return removed

    async def claim_due(self, limit: int = 10, now: datetime = None) -> list[QueueJob]:
        now_ts = (now or self._clock()).timestamp()
        deadline = now_ts + self.visibility_timeout
        due = sorted(
            (ts, job_id) for job_id, ts in self._delayed.items() if ts <= now_ts
        )[:limit]

        claimed = []
        for _, job_id in due:
            del self._delayed[job_id]
            self._inflight[job_id] = deadline
            claimed.append(self._jobs[job_id])
        if claimed:
            logger.info("jobs_claimed", count=len(claimed))
        return claimed

    async def ack(self, job: QueueJob):
        self._inflight.pop(job.job_id, None)
        self._jobs.pop(job.job_id, None)

    async def nack(self, job: QueueJob, error: str = ""):
        self._inflight.pop(job.job_id, None)
        if job.attempt + 1 >= job.max_attempts:
            job.metadata["dlq_reason"] = f"Exceeded {job.max_attempts} attempts"
            job.metadata["last_error"] = error
            self._jobs.pop(job.job_id, None)
            self._dlq.append(job)
            logger.warning("job_moved_to_dlq",
                           job_id=job.job_id,
                           attempts=job.attempt + 1,
                           error=error)
            return

        retry_job = job.next_retry_job(self.retry_backoff_base, now=self._clock())
        self._jobs[job.job_id] = retry_job
        self._delayed[job.job_id] = retry_job.due_at.timestamp()
        logger.info("job_scheduled_for_retry",
                    job_id=job.job_id,
                    attempt=retry_job.attempt,
                    scheduled_at=retry_job.scheduled_at)

    async def requeue_expired(self, now: datetime = None) -> int:
        now_ts = (now or self._clock()).timestamp()
        expired = [job_id for job_id, deadline in self._inflight.items() if deadline <= now_ts]
        for job_id in expired:
            del self._inflight[job_id]
            self._delayed[job_id] = now_ts
        if expired:
            logger.warning("inflight_jobs_requeued", count=len(expired))
        return len(expired)

    async def length(self) -> int:
        return len(self._delayed)

    async def inflight_count(self) -> int:
        return len(self._inflight)

    async def dlq_length(self) -> int:
        return len(self._dlq)

    async def dead_letters(self, count: int = 10) -> list[QueueJob]:
        return list(reversed(self._dlq))[:count]


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_delayed_queue(config: QueueConfig = None, clock: Callable[[], datetime] = None) -> DelayedJobQueue:
    """
    Create the configured queue backend. No module-level singleton: the
    caller owns the instance and injects it where it is needed.

    ``backend: redis`` without a usable URL falls back to the in-memory
    queue flagged ``degraded``.
    """
    config = config or QueueConfig()
    kwargs: dict[str, Any] = {
        "key_prefix": config.key_prefix,
        "max_attempts": config.max_attempts,
        "retry_backoff_base": config.retry_backoff_base,
        "visibility_timeout": config.visibility_timeout,
    }
    if clock is not None:
        kwargs["clock"] = clock

    if config.backend == "redis":
        if config.redis_url and "${" not in config.redis_url:
            return RedisDelayedJobQueue(redis_url=config.redis_url, **kwargs)
        logger.warning("queue_degraded", reason="redis_url not configured")
        queue = InMemoryDelayedJobQueue(**kwargs)
        queue.degraded = True
        return queue

    return InMemoryDelayedJobQueue(**kwargs)
