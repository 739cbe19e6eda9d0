"""
Maintenance runner — acquire-or-skip, run, release.

Every periodic job (webhook retry, health check, …) goes through
``acquire_and_run``. Losing the lock race is a normal outcome reported as
``ran=False, skipped_reason="already_running"``; it is never raised.

Triggers:
  - HTTP   POST /api/v1/jobs/{job_type}      (external cron, x-cron-secret)
  - CLI    scripts/run_job.py {job_type}
  - Loop   IntervalTrigger, one task per job type inside a long-lived process
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from jobs.lock import JobLock

logger = structlog.get_logger()

JobFn = Callable[[], Awaitable[Any]]

ALREADY_RUNNING = "already_running"


class UnknownJobError(Exception):
    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"Unknown maintenance job: {job_type!r}")


@dataclass
class JobRunResult:
    job_type: str
    ran: bool
    token: Optional[str] = None
    result: Any = None
    skipped_reason: str = ""
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        result = self.result
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        return {
            "job_type": self.job_type,
            "ran": self.ran,
            "job_id": self.token,
            "result": result,
            "skipped_reason": self.skipped_reason,
            "duration_ms": self.duration_ms,
        }


class MaintenanceRunner:
    """Registry of maintenance jobs, each run under the single-flight lock."""

    def __init__(self, lock: JobLock, ttl_seconds: Optional[int] = None):
        self.lock = lock
        self.ttl_seconds = ttl_seconds
        self._jobs: dict[str, JobFn] = {}

    def register(self, job_type: str, fn: JobFn):
        self._jobs[job_type] = fn
        logger.debug("maintenance_job_registered", job_type=job_type)

    @property
    def job_types(self) -> list[str]:
        return sorted(self._jobs)

    async def is_running(self, job_type: str) -> bool:
        return await self.lock.is_running(job_type)

    async def acquire_and_run(self, job_type: str) -> JobRunResult:
        fn = self._jobs.get(job_type)
        if fn is None:
            raise UnknownJobError(job_type)

        token = await self.lock.acquire(job_type, self.ttl_seconds)
        if token is None:
            logger.warning("maintenance_job_already_running", job_type=job_type)
            return JobRunResult(job_type=job_type, ran=False, skipped_reason=ALREADY_RUNNING)

        logger.info("maintenance_job_started", job_type=job_type, job_id=token)
        started = time.monotonic()
        try:
            result = await fn()
        except Exception as e:
            logger.error("maintenance_job_failed", job_type=job_type, job_id=token, error=str(e))
            raise
        finally:
            await self.lock.release(job_type, token)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("maintenance_job_completed",
                    job_type=job_type,
                    job_id=token,
                    duration_ms=duration_ms)
        return JobRunResult(
            job_type=job_type, ran=True, token=token, result=result, duration_ms=duration_ms,
        )


# ──────────────────────────────────────────────────────────────
#  In-process periodic trigger
# ──────────────────────────────────────────────────────────────

class IntervalTrigger:
    """
    Runs ``acquire_and_run`` for each job type on its own interval.
    Safe to start in every process: the lock keeps runs single-flight.
    """

    def __init__(self, runner: MaintenanceRunner, schedule: dict[str, float]):
        self.runner = runner
        self.schedule = dict(schedule)
        self._tasks: list[asyncio.Task] = []

    async def start_background(self) -> list[asyncio.Task]:
        for job_type, interval in self.schedule.items():
            if job_type not in self.runner.job_types:
                logger.warning("interval_job_not_registered", job_type=job_type)
                continue
            self._tasks.append(asyncio.create_task(self._run(job_type, interval)))
        return self._tasks

    async def stop(self):
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    async def _run(self, job_type: str, interval: float):
        logger.info("interval_trigger_started", job_type=job_type, interval=interval)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.runner.acquire_and_run(job_type)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("interval_trigger_error", job_type=job_type, error=str(e))
