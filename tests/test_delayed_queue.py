"""Tests for the delayed job queue."""
import asyncio
import json
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from config.settings import QueueConfig
from job_queue.delayed_queue import (
    InMemoryDelayedJobQueue, JobHandle, QueueJob, RedisDelayedJobQueue,
    create_delayed_queue,
)

PAYLOAD = {"scheduled_message_id": "m1", "ticket_id": "ticket-1", "step": 1}


class TestQueueJob:
    def test_roundtrip_through_json(self):
        job = QueueJob(job_id="followup-m1", payload=PAYLOAD, metadata={"k": "v"})
        assert QueueJob.from_json(job.to_json()) == job

    def test_from_dict_ignores_unknown_fields(self):
        job = QueueJob.from_dict({"job_id": "x", "attempt": "2", "legacy_field": 1})
        assert job.attempt == 2

    def test_next_retry_backoff_is_exponential(self, clock):
        job = QueueJob(job_id="x", attempt=2)
        retry = job.next_retry_job(backoff_seconds=60, now=clock())
        assert retry.attempt == 3
        assert retry.due_at == clock() + timedelta(seconds=240)
        assert retry.metadata["last_failure_at"] == clock().isoformat()


class TestInMemoryDelayedJobQueue:
    @pytest.mark.asyncio
    async def test_job_not_claimed_before_due(self, queue, clock):
        handle = await queue.enqueue("followup-m1", PAYLOAD, delay=timedelta(minutes=30))
        assert isinstance(handle, JobHandle)
        assert handle.scheduled_at == clock() + timedelta(minutes=30)
        assert await queue.claim_due() == []
        clock.advance(minutes=30)
        jobs = await queue.claim_due()
        assert [j.job_id for j in jobs] == ["followup-m1"]
        assert jobs[0].payload == PAYLOAD

    @pytest.mark.asyncio
    async def test_negative_delay_is_due_now(self, queue, clock):
        await queue.enqueue("followup-m1", PAYLOAD, delay=timedelta(minutes=-5))
        assert len(await queue.claim_due()) == 1

    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent_per_job_id(self, queue, clock):
        first = await queue.enqueue("followup-m1", PAYLOAD, delay=timedelta(minutes=30))
        clock.advance(minutes=1)
        second = await queue.enqueue("followup-m1", PAYLOAD, delay=timedelta(minutes=5))
        assert second.scheduled_at == first.scheduled_at
        assert await queue.length() == 1

    @pytest.mark.asyncio
    async def test_claimed_job_handed_out_once(self, queue):
        await queue.enqueue("followup-m1", PAYLOAD)
        batches = await asyncio.gather(queue.claim_due(), queue.claim_due())
        assert sum(len(b) for b in batches) == 1
        assert await queue.inflight_count() == 1

    @pytest.mark.asyncio
    async def test_claim_respects_limit_and_due_order(self, queue, clock):
        await queue.enqueue("late", PAYLOAD, delay=timedelta(minutes=2))
        await queue.enqueue("early", PAYLOAD, delay=timedelta(minutes=1))
        await queue.enqueue("latest", PAYLOAD, delay=timedelta(minutes=3))
        clock.advance(minutes=5)
        jobs = await queue.claim_due(limit=2)
        assert [j.job_id for j in jobs] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_cancel_before_fire(self, queue, clock):
        handle = await queue.enqueue("followup-m1", PAYLOAD, delay=timedelta(minutes=30))
        assert await queue.cancel(handle) is True
        clock.advance(hours=1)
        assert await queue.claim_due() == []

    @pytest.mark.asyncio
    async def test_cancel_after_claim_returns_false(self, queue):
        await queue.enqueue("followup-m1", PAYLOAD)
        await queue.claim_due()
        assert await queue.cancel("followup-m1") is False

    @pytest.mark.asyncio
    async def test_cancel_unknown_never_raises(self, queue):
        assert await queue.cancel("does-not-exist") is False

    @pytest.mark.asyncio
    async def test_ack_removes_job(self, queue):
        await queue.enqueue("followup-m1", PAYLOAD)
        [job] = await queue.claim_due()
        await queue.ack(job)
        assert await queue.inflight_count() == 0
        assert await queue.length() == 0

    @pytest.mark.asyncio
    async def test_nack_schedules_retry_with_backoff(self, queue, clock):
        await queue.enqueue("followup-m1", PAYLOAD)
        [job] = await queue.claim_due()
        await queue.nack(job, "timeout")
        assert await queue.claim_due() == []
        clock.advance(seconds=60)
        [retry] = await queue.claim_due()
        assert retry.attempt == 1

    @pytest.mark.asyncio
    async def test_nack_past_max_attempts_goes_to_dlq(self, queue, clock):
        await queue.enqueue("followup-m1", PAYLOAD)
        for _ in range(3):
            clock.advance(hours=1)
            [job] = await queue.claim_due()
            await queue.nack(job, "provider down")
        assert await queue.dlq_length() == 1
        [dead] = await queue.dead_letters()
        assert dead.metadata["last_error"] == "provider down"
        assert await queue.length() == 0

    @pytest.mark.asyncio
    async def test_unacked_job_redelivered_after_visibility_timeout(self, queue, clock):
        await queue.enqueue("followup-m1", PAYLOAD)
        [job] = await queue.claim_due()
        assert await queue.requeue_expired() == 0
        clock.advance(seconds=queue.visibility_timeout)
        assert await queue.requeue_expired() == 1
        [again] = await queue.claim_due()
        assert again.job_id == job.job_id


class TestRedisDelayedJobQueue:
    @pytest.fixture
    def queue(self, clock):
        q = RedisDelayedJobQueue(redis_url="redis://localhost:6379", clock=clock)
        q._redis = MagicMock()
        q._scripts = {name: AsyncMock() for name in ("enqueue", "cancel", "claim", "requeue")}
        return q

    @pytest.mark.asyncio
    async def test_enqueue_scores_by_due_time(self, queue, clock):
        queue._scripts["enqueue"].return_value = 1
        await queue.enqueue("followup-m1", PAYLOAD, delay=timedelta(minutes=30))
        kwargs = queue._scripts["enqueue"].await_args.kwargs
        assert kwargs["keys"] == ["followup:delayed", "followup:jobs"]
        job_id, body, score = kwargs["args"]
        assert job_id == "followup-m1"
        assert json.loads(body)["payload"] == PAYLOAD
        assert score == (clock() + timedelta(minutes=30)).timestamp()

    @pytest.mark.asyncio
    async def test_enqueue_duplicate_returns_existing_handle(self, queue, clock):
        queue._scripts["enqueue"].return_value = 0
        existing = QueueJob(job_id="followup-m1", scheduled_at=clock().isoformat())
        queue._redis.hget = AsyncMock(return_value=existing.to_json())
        handle = await queue.enqueue("followup-m1", PAYLOAD, delay=timedelta(hours=2))
        assert handle.scheduled_at == clock()

    @pytest.mark.asyncio
    async def test_cancel_runs_atomic_script(self, queue):
        queue._scripts["cancel"].return_value = 0
        assert await queue.cancel(JobHandle("followup-m1", None)) is False
        assert queue._scripts["cancel"].await_args.kwargs["args"] == ["followup-m1"]

    @pytest.mark.asyncio
    async def test_claim_moves_into_inflight_with_deadline(self, queue, clock):
        job = QueueJob(job_id="followup-m1", payload=PAYLOAD)
        queue._scripts["claim"].return_value = [job.to_json()]
        jobs = await queue.claim_due(limit=5)
        assert [j.job_id for j in jobs] == ["followup-m1"]
        kwargs = queue._scripts["claim"].await_args.kwargs
        assert kwargs["keys"] == ["followup:delayed", "followup:jobs", "followup:inflight"]
        now_ts, limit, deadline = kwargs["args"]
        assert limit == 5
        assert deadline - now_ts == queue.visibility_timeout

    @pytest.mark.asyncio
    async def test_nack_exhausted_pushes_to_dlq(self, queue):
        pipe = MagicMock()
        pipe.execute = AsyncMock()
        queue._redis.pipeline.return_value = pipe
        job = QueueJob(job_id="followup-m1", attempt=2, max_attempts=3)
        await queue.nack(job, "boom")
        pipe.lpush.assert_called_once()
        assert pipe.lpush.call_args.args[0] == "followup:dlq"
        pipe.zadd.assert_not_called()


class TestQueueFactory:
    def test_memory_backend(self):
        q = create_delayed_queue(QueueConfig(backend="memory"))
        assert isinstance(q, InMemoryDelayedJobQueue)
        assert q.degraded is False

    def test_redis_backend(self):
        q = create_delayed_queue(QueueConfig(backend="redis", redis_url="redis://cache:6379"))
        assert isinstance(q, RedisDelayedJobQueue)

    def test_redis_without_url_is_degraded(self):
        q = create_delayed_queue(QueueConfig(backend="redis", redis_url=""))
        assert isinstance(q, InMemoryDelayedJobQueue)
        assert q.degraded is True

    def test_settings_flow_through(self):
        q = create_delayed_queue(QueueConfig(max_attempts=7, key_prefix="fu"))
        assert q.max_attempts == 7
        assert q.key_prefix == "fu"
