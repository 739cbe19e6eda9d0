"""
Queue Consumer — Claims due follow-up jobs and drives delivery.

Runs as a background task inside each application process. Any number of
processes may poll the same Redis queue: claim_due is atomic, so each due
job goes to exactly one of them.

Topology:
  ┌───────────┐ enqueue ┌───────────────┐ claim_due ┌────────────┐
  │ Scheduler │────────▶│ delayed (zset) │──────────▶│  Consumer  │
  └───────────┘         └───────▲───────┘           │  Worker(s) │
                                │                   └─────┬──────┘
                                ├──── nack (backoff) ─────┤
                                ├── requeue_expired ──────┤ (worker died)
                                │                         │
                        ┌───────┴───────┐                 │
                        │  DLQ          │◀── exhausted ───┘
                        └───────────────┘
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

from job_queue.delayed_queue import DelayedJobQueue, QueueJob

logger = structlog.get_logger()

JobHandler = Callable[[QueueJob], Awaitable[Any]]
DeadLetterHook = Callable[[QueueJob, str], Awaitable[Any]]


class DispatchError(Exception):
    """Raised when follow-up dispatch fails and should be retried."""
    pass


class FollowUpConsumer:
    """
    Polls the delayed queue and hands each claimed job to ``handler``.

    Usage:
        consumer = FollowUpConsumer(queue, sender.handle, on_dead_letter=sender.dead_lettered)
        await consumer.start_background()   # returns immediately, runs as task
        await consumer.run_once()           # one poll cycle (tests, scripts)
        await consumer.stop()
    """

    def __init__(
        self,
        queue: DelayedJobQueue,
        handler: JobHandler,
        concurrency: int = 5,
        poll_interval: float = 5.0,
        batch_size: int = 10,
        on_dead_letter: Optional[DeadLetterHook] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.on_dead_letter = on_dead_letter
        self._semaphore = asyncio.Semaphore(concurrency)
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def run_once(self) -> int:
        """Requeue abandoned jobs, claim a batch and process it. Returns jobs processed."""
        await self.queue.requeue_expired()
        jobs = await self.queue.claim_due(limit=self.batch_size)
        if jobs:
            await asyncio.gather(*(self._handle_job(job) for job in jobs))
        return len(jobs)

    async def start(self):
        """Poll until stop() is called."""
        self._running = True
        logger.info("followup_consumer_starting",
                    concurrency=self.concurrency,
                    poll_interval=self.poll_interval)
        while self._running:
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_poll_error", error=str(e))
                processed = 0
            # A full batch means more may be due right now
            if processed < self.batch_size:
                await asyncio.sleep(self.poll_interval)

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        self._task = asyncio.create_task(self.start())
        return self._task

    async def stop(self):
        """Gracefully stop the consumer task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("followup_consumer_stopped")

    async def _handle_job(self, job: QueueJob) -> bool:
        async with self._semaphore:
            logger.info("processing_job",
                        job_id=job.job_id,
                        name=job.name,
                        attempt=job.attempt)
            try:
                result = await self.handler(job)
            except Exception as e:
                logger.error("job_processing_error",
                             job_id=job.job_id,
                             attempt=job.attempt,
                             error=str(e))
                exhausted = job.attempt + 1 >= job.max_attempts
                await self.queue.nack(job, str(e))
                if exhausted and self.on_dead_letter:
                    try:
                        await self.on_dead_letter(job, str(e))
                    except Exception as hook_error:
                        # Job is already in the DLQ; the batch must keep going
                        logger.error("dead_letter_hook_failed",
                                     job_id=job.job_id,
                                     error=str(hook_error))
                return False

            await self.queue.ack(job)
            logger.info("job_completed", job_id=job.job_id, result=getattr(result, "value", result))
            return True
