"""
Webhook Retry Processor — replays inbound events whose first processing failed.

Selection: processed = false AND signature_valid AND retry_count < max_retries,
oldest first, at most ``batch_size`` per run.

Backoff (measured from the event's creation, not its last retry):
  retry 1 once  5 min have passed
  retry 2 once 10 min have passed
  retry 3 once 15 min have passed

Events that reach ``max_retries`` are never selected again; they stay in
the log as dead letters until someone looks at them.
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from database.store_base import BaseFollowUpStore
from models.schemas import WebhookEvent

logger = structlog.get_logger()

JOB_TYPE = "webhook-retry"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEventHandler(abc.ABC):
    """Replays one stored webhook payload. Raise to signal failure."""

    degraded = False

    @abc.abstractmethod
    async def process(self, payload: dict[str, Any]) -> Any:
        ...


@dataclass
class WebhookRetryReport:
    found: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    dead_lettered: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class WebhookRetryProcessor:

    def __init__(
        self,
        store: BaseFollowUpStore,
        handler: WebhookEventHandler,
        max_retries: int = 3,
        batch_size: int = 50,
        backoff_minutes: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.handler = handler
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.backoff_minutes = backoff_minutes
        self._clock = clock

    def ready_for_retry(self, event: WebhookEvent, now: datetime) -> bool:
        backoff = timedelta(minutes=self.backoff_minutes * (event.retry_count + 1))
        return now - event.created_at >= backoff

    async def run(self) -> WebhookRetryReport:
        events = await self.store.list_retryable_webhook_events(self.max_retries, self.batch_size)
        report = WebhookRetryReport(found=len(events))
        if self.handler.degraded:
            # Retries are not spent while nothing can process the events
            report.skipped = report.found
            logger.warning("webhook_retry_handler_unconfigured", found=report.found)
            return report
        logger.info("webhook_retry_started", found=report.found)

        for event in events:
            now = self._clock()
            if not self.ready_for_retry(event, now):
                report.skipped += 1
                continue

            logger.info("webhook_retry_attempt",
                        event_id=event.id,
                        attempt=event.retry_count + 1,
                        max_retries=self.max_retries)
            try:
                await self.handler.process(event.payload)
            except Exception as e:
                report.failed += 1
                retry_count = await self.store.increment_webhook_retry(event.id, str(e), now)
                logger.warning("webhook_retry_failed",
                               event_id=event.id,
                               retry_count=retry_count,
                               error=str(e))
                if retry_count >= self.max_retries:
                    report.dead_lettered += 1
                    logger.error("webhook_dead_lettered",
                                 event_id=event.id,
                                 retry_count=retry_count,
                                 last_error=str(e))
                continue

            await self.store.mark_webhook_processed(event.id, self._clock())
            report.succeeded += 1

        logger.info("webhook_retry_completed", **report.to_dict())
        return report

    async def stats(self) -> dict[str, int]:
        return {
            "pending": await self.store.count_retryable_webhook_events(self.max_retries),
            "dead_lettered": await self.store.count_dead_letter_webhook_events(self.max_retries),
        }
