"""Scheduler health check — queue depth, dead letters and degraded-mode flags."""
from __future__ import annotations

import structlog
from typing import Any, Iterable

from database.store_base import BaseFollowUpStore
from job_queue.delayed_queue import DelayedJobQueue
from jobs.lock import JobLock

logger = structlog.get_logger()

JOB_TYPE = "scheduler-health-check"


class SchedulerHealthCheck:

    def __init__(
        self,
        queue: DelayedJobQueue,
        lock: JobLock,
        store: BaseFollowUpStore,
        max_retries: int = 3,
        job_types: Iterable[str] = (),
        collaborators: Iterable[Any] = (),
    ):
        self.queue = queue
        self.lock = lock
        self.store = store
        self.max_retries = max_retries
        self.job_types = list(job_types)
        # Backend adapters exposing a ``degraded`` flag
        self.collaborators = list(collaborators)

    async def run(self) -> dict[str, Any]:
        degraded = {
            "queue": self.queue.degraded,
            "locks": self.lock.degraded,
            "backend": any(getattr(c, "degraded", False) for c in self.collaborators),
        }
        report: dict[str, Any] = {
            "degraded": degraded,
            "queue": {
                "waiting": await self.queue.length(),
                "inflight": await self.queue.inflight_count(),
                "dead_letters": await self.queue.dlq_length(),
            },
            "webhooks": {
                "pending_retry": await self.store.count_retryable_webhook_events(self.max_retries),
                "dead_lettered": await self.store.count_dead_letter_webhook_events(self.max_retries),
            },
            "jobs": {
                job_type: {"is_running": await self.lock.is_running(job_type)}
                for job_type in self.job_types
            },
        }

        if any(degraded.values()):
            report["status"] = "degraded"
        elif report["queue"]["dead_letters"] or report["webhooks"]["dead_lettered"]:
            report["status"] = "attention"
        else:
            report["status"] = "ok"

        log = logger.warning if report["status"] != "ok" else logger.info
        log("scheduler_health_checked",
            status=report["status"],
            queue_dead_letters=report["queue"]["dead_letters"],
            webhook_dead_letters=report["webhooks"]["dead_lettered"])
        return report
