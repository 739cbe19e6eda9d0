"""
Follow-up Sender — handles one due ``followup-{id}`` job.

Flow:
  1. Load the ScheduledMessage named by the payload (missing → drop, no retry)
  2. Already sent or cancelled → no-op (lost a cancel race, or a redelivery)
  3. Ticket missing / disabled, config missing / inactive → cancel the row
  4. Ask the deliverer to generate and send the nudge
  5. Mark the row sent, then let the scheduler arm the next step

Steps 2–5 run under the ticket mutex so an inbound reply cannot land
between "send" and "schedule next". Delivery failures surface as
DispatchError so the consumer nacks the job into retry / DLQ.
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from database.store_base import BaseFollowUpStore
from followup.scheduler import FollowUpScheduler
from job_queue.consumer import DispatchError
from job_queue.delayed_queue import QueueJob
from models.schemas import CancelReason, ScheduledMessage

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SendOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    MISSING = "missing"


# ──────────────────────────────────────────────────────────────
#  Delivery collaborator
# ──────────────────────────────────────────────────────────────

@dataclass
class DeliveryRequest:
    """Everything the deliverer needs to write and send one nudge."""
    scheduled_message_id: str
    ticket_id: str
    organization_id: str
    step: int
    total_steps: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryReceipt:
    content: str = ""
    provider_message_id: str = ""


class DeliveryRejected(Exception):
    """The deliverer refuses this message for good (opt-out, closed window, …)."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class FollowUpDeliverer(abc.ABC):
    """
    Generates the nudge text and sends it over WhatsApp. Lives outside this
    package; raise DeliveryRejected for permanent refusals, anything else
    is treated as transient and retried by the queue.
    """

    # True when no real backend is wired; surfaced by the health check
    degraded = False

    @abc.abstractmethod
    async def deliver(self, request: DeliveryRequest) -> DeliveryReceipt:
        ...


# ──────────────────────────────────────────────────────────────
#  Sender
# ──────────────────────────────────────────────────────────────

class FollowUpSender:

    def __init__(
        self,
        store: BaseFollowUpStore,
        scheduler: FollowUpScheduler,
        deliverer: FollowUpDeliverer,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.scheduler = scheduler
        self.deliverer = deliverer
        self._clock = clock

    async def handle(self, job: QueueJob) -> SendOutcome:
        message_id = job.payload.get("scheduled_message_id")
        message = await self.store.get_scheduled_message(message_id) if message_id else None
        if message is None:
            logger.error("scheduled_message_not_found",
                         job_id=job.job_id,
                         scheduled_message_id=message_id)
            return SendOutcome.MISSING

        if not message.is_pending:
            logger.info("followup_job_stale", job_id=job.job_id, scheduled_message_id=message.id)
            return SendOutcome.SKIPPED

        async with self.scheduler.mutex.hold(message.ticket_id):
            return await self._send_locked(job, message.id)

    async def dead_lettered(self, job: QueueJob, error: str = ""):
        """The queue gave up on this job: close the row and stop the sequence."""
        message_id = job.payload.get("scheduled_message_id")
        message = await self.store.get_scheduled_message(message_id) if message_id else None
        if message is None or not message.is_pending:
            return
        async with self.scheduler.mutex.hold(message.ticket_id):
            await self._reject(message, error or "retries exhausted")

    async def _send_locked(self, job: QueueJob, message_id: str) -> SendOutcome:
        # Re-read under the mutex; a reply may have cancelled it meanwhile
        message = await self.store.get_scheduled_message(message_id)
        if message is None or not message.is_pending:
            return SendOutcome.SKIPPED

        ticket = await self.store.get_ticket(message.ticket_id)
        if ticket is None:
            return await self._cancel(message, CancelReason.TICKET_NOT_FOUND)
        if not ticket.followup_enabled:
            return await self._cancel(message, CancelReason.TICKET_DISABLED)

        config = await self.store.get_followup_config(message.organization_id)
        if config is None or not config.is_active:
            return await self._cancel(message, CancelReason.CONFIG_INACTIVE)

        request = DeliveryRequest(
            scheduled_message_id=message.id,
            ticket_id=message.ticket_id,
            organization_id=message.organization_id,
            step=message.step,
            total_steps=config.total_steps,
            metadata={"attempt": job.attempt},
        )
        try:
            receipt = await self.deliverer.deliver(request)
        except DeliveryRejected as e:
            await self._reject(message, e.reason)
            return SendOutcome.REJECTED
        except Exception as e:
            logger.warning("followup_delivery_failed",
                           scheduled_message_id=message.id,
                           ticket_id=message.ticket_id,
                           attempt=job.attempt,
                           error=str(e))
            raise DispatchError(f"Delivery failed: {e}") from e

        if not await self.store.mark_message_sent(message.id, self._clock(), receipt.content):
            logger.warning("followup_sent_row_already_terminal", scheduled_message_id=message.id)
            return SendOutcome.SKIPPED

        logger.info("followup_sent",
                    scheduled_message_id=message.id,
                    ticket_id=message.ticket_id,
                    step=message.step,
                    provider_message_id=receipt.provider_message_id)
        await self.scheduler.complete_step(message.ticket_id, message.step, hold_mutex=False)
        return SendOutcome.SENT

    async def _cancel(self, message: ScheduledMessage, reason: CancelReason) -> SendOutcome:
        await self.store.mark_message_cancelled(message.id, reason.value, self._clock())
        logger.info("followup_send_cancelled",
                    scheduled_message_id=message.id,
                    ticket_id=message.ticket_id,
                    reason=reason.value)
        return SendOutcome.CANCELLED

    async def _reject(self, message: ScheduledMessage, detail: str):
        await self.store.mark_message_cancelled(
            message.id, CancelReason.DELIVERY_REJECTED.value, self._clock(),
        )
        await self.store.update_ticket(
            message.ticket_id, followup_enabled=False, current_followup_step=None,
        )
        logger.warning("followup_delivery_rejected",
                       scheduled_message_id=message.id,
                       ticket_id=message.ticket_id,
                       detail=detail)
