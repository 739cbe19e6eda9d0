"""
Service container — builds and owns every long-lived collaborator.

Nothing in the package is a module-level singleton; the API, the scripts
and the tests each call ``build_services`` and pass the result around.

  store ─┬─ scheduler ── sender ── consumer (polls queue)
  queue ─┤                │
  lock ──┴─ ticket mutex  └─ deliverer (backend connector)
  lock ──── runner ─┬─ webhook-retry ── webhook handler (backend connector)
                    └─ scheduler-health-check
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.connector import RESTBackendClient, create_backend_collaborators, delivery_budget_seconds
from config.settings import Settings, get_settings
from database.session import close_db, create_engine_for, create_session_factory, init_db
from database.store_base import BaseFollowUpStore
from database.store_factory import create_store
from followup.scheduler import FollowUpScheduler
from followup.sender import FollowUpDeliverer, FollowUpSender
from job_queue.consumer import FollowUpConsumer
from job_queue.delayed_queue import DelayedJobQueue, create_delayed_queue
from jobs import health, webhook_retry
from jobs.health import SchedulerHealthCheck
from jobs.lock import JobLock, create_job_lock
from jobs.runner import IntervalTrigger, MaintenanceRunner
from jobs.webhook_retry import WebhookEventHandler, WebhookRetryProcessor

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    store: BaseFollowUpStore
    queue: DelayedJobQueue
    lock: JobLock
    scheduler: FollowUpScheduler
    sender: FollowUpSender
    consumer: FollowUpConsumer
    runner: MaintenanceRunner
    webhook_retry: WebhookRetryProcessor
    health: SchedulerHealthCheck
    trigger: IntervalTrigger
    engine: Optional[AsyncEngine] = None
    backend_client: Optional[RESTBackendClient] = None

    @property
    def degraded(self) -> bool:
        return self.queue.degraded or self.lock.degraded or self.backend_degraded

    @property
    def backend_degraded(self) -> bool:
        return self.sender.deliverer.degraded or self.webhook_retry.handler.degraded

    async def start(self, run_workers: bool = True):
        if self.engine is not None:
            await init_db(self.engine)
        await self.queue.connect()
        await self.lock.connect()
        if run_workers:
            await self.consumer.start_background()
            await self.trigger.start_background()
        logger.info("followup_core_started",
                    queue_backend=type(self.queue).__name__,
                    lock_backend=type(self.lock).__name__,
                    degraded=self.degraded,
                    workers=run_workers)

    async def stop(self):
        await self.consumer.stop()
        await self.trigger.stop()
        await self.queue.close()
        await self.lock.close()
        if self.backend_client is not None:
            await self.backend_client.close()
        if self.engine is not None:
            await close_db(self.engine)
        logger.info("followup_core_stopped")


def build_services(
    settings: Settings = None,
    *,
    store: BaseFollowUpStore = None,
    queue: DelayedJobQueue = None,
    lock: JobLock = None,
    deliverer: FollowUpDeliverer = None,
    webhook_handler: WebhookEventHandler = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Services:
    """Wire the core from settings. Explicit arguments override the configured backends."""
    settings = settings or get_settings()
    clock_kwargs = {"clock": clock} if clock is not None else {}

    budget = delivery_budget_seconds(settings.backend)
    if settings.followup.ticket_lock_ttl_seconds <= budget:
        # The ticket mutex would expire while a delivery is still in flight
        logger.error("ticket_lock_ttl_too_short",
                     ttl_seconds=settings.followup.ticket_lock_ttl_seconds,
                     delivery_budget_seconds=budget)
        raise ValueError(
            f"followup.ticket_lock_ttl_seconds ({settings.followup.ticket_lock_ttl_seconds}) "
            f"must exceed the backend delivery budget ({budget:g}s)"
        )

    engine = None
    if store is None:
        if settings.database.store_backend == "sql":
            engine = create_engine_for(settings.database.url, debug=settings.debug)
            store = create_store(settings.database, session_factory=create_session_factory(engine))
        else:
            store = create_store(settings.database)

    queue = queue or create_delayed_queue(settings.queue, clock=clock)
    lock = lock or create_job_lock(settings.locks)

    backend_client = None
    if deliverer is None or webhook_handler is None:
        default_deliverer, default_handler, backend_client = create_backend_collaborators(settings.backend)
        deliverer = deliverer or default_deliverer
        webhook_handler = webhook_handler or default_handler

    scheduler = FollowUpScheduler(
        store, queue, lock,
        settings=settings.followup,
        tz=settings.timezone,
        **clock_kwargs,
    )
    sender = FollowUpSender(store, scheduler, deliverer, **clock_kwargs)
    consumer = FollowUpConsumer(
        queue, sender.handle,
        concurrency=settings.queue.consumer_concurrency,
        poll_interval=settings.queue.poll_interval,
        batch_size=settings.queue.batch_size,
        on_dead_letter=sender.dead_lettered,
    )

    retry_cfg = settings.webhook_retry
    retry_processor = WebhookRetryProcessor(
        store, webhook_handler,
        max_retries=retry_cfg.max_retries,
        batch_size=retry_cfg.batch_size,
        backoff_minutes=retry_cfg.backoff_minutes,
        **clock_kwargs,
    )

    runner = MaintenanceRunner(lock)
    health_check = SchedulerHealthCheck(
        queue, lock, store,
        max_retries=retry_cfg.max_retries,
        job_types=[webhook_retry.JOB_TYPE, health.JOB_TYPE],
        collaborators=[deliverer, webhook_handler],
    )
    runner.register(webhook_retry.JOB_TYPE, retry_processor.run)
    runner.register(health.JOB_TYPE, health_check.run)
    trigger = IntervalTrigger(runner, settings.jobs.intervals)

    return Services(
        settings=settings,
        store=store,
        queue=queue,
        lock=lock,
        scheduler=scheduler,
        sender=sender,
        consumer=consumer,
        runner=runner,
        webhook_retry=retry_processor,
        health=health_check,
        trigger=trigger,
        engine=engine,
        backend_client=backend_client,
    )
