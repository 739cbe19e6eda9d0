"""
Follow-up Scheduler — drives a ticket through its organization's nudge steps.

Per-ticket state:

  DISABLED ──enable──▶ STEP[1] pending ──sent──▶ STEP[2] pending ──▶ … ──▶ STEP[N] sent ──▶ DISABLED
                            │  ▲                       │
                            │  └──── cancel_on_reply ──┘  (restart from step 1)
                            └── skip_to_next_step ──▶ STEP[k+1] pending, zero delay
                                                        (or DISABLED when no step k+1)

Invariant: a ticket never has more than one pending ScheduledMessage.
Every scheduling path cancels whatever is pending before creating a row,
and every public entry point runs under a ticket-scoped mutex so a reply
and a skip cannot interleave.

Entry points return SchedulerResult; CONFLICT outcomes (already enabled,
already disabled, nothing to skip) are informational, not errors.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Optional

from tenacity import (
    AsyncRetrying, RetryError, retry_if_exception_type,
    stop_after_delay, wait_exponential,
)

from config.settings import FollowUpSettings
from database.store_base import BaseFollowUpStore
from followup.business_hours import adjust_to_business_hours
from followup.errors import FollowUpConfigError, TicketBusyError, TicketNotFoundError
from job_queue.delayed_queue import DelayedJobQueue
from jobs.lock import JobLock
from models.schemas import (
    CancelReason, FollowUpConfig, FollowUpStatus, Outcome,
    ScheduledMessage, SchedulerResult, Ticket,
)

logger = structlog.get_logger()

FOLLOWUP_JOB_NAME = "followup"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def followup_job_id(scheduled_message_id: str) -> str:
    return f"followup-{scheduled_message_id}"


class _TicketLocked(Exception):
    pass


# ──────────────────────────────────────────────────────────────
#  Ticket mutex
# ──────────────────────────────────────────────────────────────

class TicketMutex:
    """
    Serializes scheduler mutations per ticket across processes.

    Reuses the job lock with a ``followup-ticket:{id}`` key. Unlike the
    maintenance jobs, callers wait for the holder instead of skipping,
    polling with exponential backoff up to ``wait_seconds``.

    While held, the TTL is refreshed every ``ttl_seconds / 3`` so a slow
    delivery cannot outlive it. The TTL only bounds how long a crashed
    holder blocks the ticket.
    """

    def __init__(self, lock: JobLock, ttl_seconds: int = 60, wait_seconds: float = 10.0):
        self._lock = lock
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds

    @staticmethod
    def key(ticket_id: str) -> str:
        return f"followup-ticket:{ticket_id}"

    async def _acquire(self, ticket_id: str) -> str:
        retrying = AsyncRetrying(
            stop=stop_after_delay(self.wait_seconds),
            wait=wait_exponential(multiplier=0.05, max=1.0),
            retry=retry_if_exception_type(_TicketLocked),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    token = await self._lock.acquire(self.key(ticket_id), self.ttl_seconds)
                    if token is None:
                        raise _TicketLocked()
        except RetryError:
            logger.warning("ticket_mutex_timeout", ticket_id=ticket_id, waited=self.wait_seconds)
            raise TicketBusyError(ticket_id)
        return token

    async def _keep_alive(self, ticket_id: str, token: str):
        while True:
            await asyncio.sleep(self.ttl_seconds / 3)
            try:
                extended = await self._lock.extend(self.key(ticket_id), token, self.ttl_seconds)
            except Exception as e:
                logger.error("ticket_mutex_extend_error", ticket_id=ticket_id, error=str(e))
                continue
            if not extended:
                logger.error("ticket_mutex_lost", ticket_id=ticket_id, token=token)
                return

    @asynccontextmanager
    async def hold(self, ticket_id: str) -> AsyncIterator[str]:
        token = await self._acquire(ticket_id)
        heartbeat = asyncio.create_task(self._keep_alive(ticket_id, token))
        try:
            yield token
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            await self._lock.release(self.key(ticket_id), token)


# ──────────────────────────────────────────────────────────────
#  Scheduler
# ──────────────────────────────────────────────────────────────

class FollowUpScheduler:
    """
    State machine over Ticket.followup_enabled / current_followup_step.

    Collaborators are injected: the store (config, tickets, scheduled
    messages), the delayed queue, and the lock backing the ticket mutex.
    ``clock`` exists so tests can pin "now".
    """

    def __init__(
        self,
        store: BaseFollowUpStore,
        queue: DelayedJobQueue,
        lock: JobLock,
        settings: FollowUpSettings = None,
        tz: str = "UTC",
        clock: Callable[[], datetime] = _utcnow,
    ):
        settings = settings or FollowUpSettings()
        self.store = store
        self.queue = queue
        self.tz = tz
        self._clock = clock
        self.mutex = TicketMutex(
            lock,
            ttl_seconds=settings.ticket_lock_ttl_seconds,
            wait_seconds=settings.ticket_lock_wait_seconds,
        )

    # ── Public entry points ───────────────────────────────────

    async def enable(self, ticket_id: str, organization_id: str) -> SchedulerResult:
        """Start the sequence at step 1. Raises FollowUpConfigError if it cannot run."""
        async with self.mutex.hold(ticket_id):
            ticket = await self._require_ticket(ticket_id, organization_id)
            if ticket.followup_enabled:
                logger.warning("followup_enable_conflict",
                               ticket_id=ticket_id,
                               current_step=ticket.current_followup_step)
                return SchedulerResult(
                    ticket_id=ticket_id, outcome=Outcome.CONFLICT,
                    reason="already_enabled", current_step=ticket.current_followup_step,
                )

            config = await self._require_config(organization_id)
            first = config.first_step
            message = await self._schedule_step(
                ticket, config, first.order, timedelta(minutes=first.delay_minutes),
            )
            await self.store.update_ticket(ticket_id, followup_enabled=True)
            logger.info("followup_enabled",
                        ticket_id=ticket_id,
                        organization_id=organization_id,
                        scheduled_at=message.scheduled_at.isoformat())
            return SchedulerResult(
                ticket_id=ticket_id, current_step=first.order, scheduled_message=message,
            )

    async def disable(self, ticket_id: str) -> SchedulerResult:
        """Cancel everything pending and clear the ticket. Idempotent."""
        async with self.mutex.hold(ticket_id):
            ticket = await self._require_ticket(ticket_id)
            if not ticket.followup_enabled:
                logger.info("followup_disable_conflict", ticket_id=ticket_id)
                return SchedulerResult(
                    ticket_id=ticket_id, outcome=Outcome.CONFLICT, reason="already_disabled",
                )
            cancelled = await self._disable(ticket_id, CancelReason.MANUAL)
            logger.info("followup_disabled", ticket_id=ticket_id, cancelled=cancelled)
            return SchedulerResult(ticket_id=ticket_id, reason="disabled")

    async def cancel_on_reply(self, ticket_id: str) -> SchedulerResult:
        """
        The lead wrote back: cancel what is pending and restart the sequence
        from step 1. Renewed engagement is treated as a fresh countdown, not
        as a reason to stop nudging.
        """
        async with self.mutex.hold(ticket_id):
            ticket = await self._require_ticket(ticket_id)
            if not ticket.followup_enabled:
                return SchedulerResult(
                    ticket_id=ticket_id, outcome=Outcome.CONFLICT, reason="not_enabled",
                )

            cancelled = await self._cancel_pending(ticket_id, CancelReason.LEAD_REPLIED)
            config = await self.store.get_followup_config(ticket.organization_id)
            if not config or not config.first_step:
                await self._disable(ticket_id, CancelReason.MANUAL)
                logger.warning("followup_reply_without_steps",
                               ticket_id=ticket_id,
                               organization_id=ticket.organization_id)
                return SchedulerResult(ticket_id=ticket_id, reason="disabled_no_steps")

            first = config.first_step
            message = await self._schedule_step(
                ticket, config, first.order, timedelta(minutes=first.delay_minutes),
            )
            logger.info("followup_restarted_on_reply",
                        ticket_id=ticket_id,
                        cancelled=cancelled,
                        scheduled_at=message.scheduled_at.isoformat())
            return SchedulerResult(
                ticket_id=ticket_id, reason="restarted",
                current_step=first.order, scheduled_message=message,
            )

    async def skip_to_next_step(self, ticket_id: str) -> bool:
        """
        Jump to step current + 1 with zero delay (business hours still apply).
        Returns whether another step remains; past the last step the
        sequence is disabled.
        """
        async with self.mutex.hold(ticket_id):
            ticket = await self._require_ticket(ticket_id)
            if not ticket.followup_enabled or ticket.current_followup_step is None:
                logger.info("followup_skip_conflict", ticket_id=ticket_id, reason="not_enabled")
                return False

            config = await self.store.get_followup_config(ticket.organization_id)
            next_step = config.step_for(ticket.current_followup_step + 1) if config else None
            if next_step is None:
                await self._disable(ticket_id, CancelReason.MANUAL)
                logger.info("followup_sequence_exhausted",
                            ticket_id=ticket_id,
                            last_step=ticket.current_followup_step)
                return False

            message = await self._schedule_step(ticket, config, next_step.order, timedelta(0))
            logger.info("followup_step_skipped",
                        ticket_id=ticket_id,
                        step=next_step.order,
                        scheduled_at=message.scheduled_at.isoformat())
            return True

    async def complete_step(self, ticket_id: str, step: int, hold_mutex: bool = True) -> SchedulerResult:
        """
        Called after ``step`` was delivered: schedule step + 1 with its own
        delay, or disable when the sequence is finished.

        Only applies while the ticket still points at ``step``; if a reply or
        skip moved it in the meantime the call is a CONFLICT no-op.
        Pass ``hold_mutex=False`` only when the caller already holds it.
        """
        if hold_mutex:
            async with self.mutex.hold(ticket_id):
                return await self._complete_step(ticket_id, step)
        return await self._complete_step(ticket_id, step)

    async def get_status(self, ticket_id: str, organization_id: Optional[str] = None) -> FollowUpStatus:
        ticket = await self._require_ticket(ticket_id, organization_id)
        config = await self.store.get_followup_config(ticket.organization_id)
        pending = await self.store.list_pending_messages(ticket_id)
        return FollowUpStatus(
            enabled=ticket.followup_enabled,
            current_step=ticket.current_followup_step,
            total_steps=config.total_steps if config else 0,
            next_scheduled_at=pending[0].scheduled_at if pending else None,
        )

    # ── Internals (caller holds the ticket mutex) ─────────────

    async def _complete_step(self, ticket_id: str, step: int) -> SchedulerResult:
        ticket = await self._require_ticket(ticket_id)
        if not ticket.followup_enabled:
            return SchedulerResult(ticket_id=ticket_id, outcome=Outcome.CONFLICT, reason="not_enabled")
        if ticket.current_followup_step != step:
            logger.info("followup_step_moved",
                        ticket_id=ticket_id,
                        delivered_step=step,
                        current_step=ticket.current_followup_step)
            return SchedulerResult(
                ticket_id=ticket_id, outcome=Outcome.CONFLICT,
                reason="step_moved", current_step=ticket.current_followup_step,
            )

        config = await self.store.get_followup_config(ticket.organization_id)
        next_step = config.step_for(step + 1) if config else None
        if next_step is None:
            await self._disable(ticket_id, CancelReason.MANUAL)
            logger.info("followup_sequence_completed", ticket_id=ticket_id, last_step=step)
            return SchedulerResult(ticket_id=ticket_id, reason="completed")

        message = await self._schedule_step(
            ticket, config, next_step.order, timedelta(minutes=next_step.delay_minutes),
        )
        logger.info("followup_next_step_scheduled",
                    ticket_id=ticket_id,
                    step=next_step.order,
                    scheduled_at=message.scheduled_at.isoformat())
        return SchedulerResult(
            ticket_id=ticket_id, current_step=next_step.order, scheduled_message=message,
        )

    async def _schedule_step(
        self,
        ticket: Ticket,
        config: FollowUpConfig,
        step: int,
        delay: timedelta,
    ) -> ScheduledMessage:
        # One live row per ticket
        await self._cancel_pending(ticket.id, CancelReason.MANUAL)

        now = self._clock()
        scheduled_at = adjust_to_business_hours(now + delay, config, self.tz)
        message = ScheduledMessage(
            ticket_id=ticket.id,
            organization_id=ticket.organization_id,
            step=step,
            scheduled_at=scheduled_at,
        )
        await self.store.create_scheduled_message(message)

        payload = {
            "scheduled_message_id": message.id,
            "ticket_id": ticket.id,
            "organization_id": ticket.organization_id,
            "step": step,
        }
        try:
            handle = await self.queue.enqueue(
                followup_job_id(message.id), payload,
                delay=max(scheduled_at - now, timedelta(0)),
                name=FOLLOWUP_JOB_NAME,
            )
        except Exception as e:
            # Never leave a pending row that no job will ever fire
            await self.store.mark_message_cancelled(message.id, CancelReason.ENQUEUE_FAILED.value, self._clock())
            logger.error("followup_enqueue_failed",
                         ticket_id=ticket.id,
                         scheduled_message_id=message.id,
                         error=str(e))
            raise

        await self.store.update_scheduled_message(message.id, queue_job_id=handle.job_id)
        await self.store.update_ticket(ticket.id, current_followup_step=step)
        message = message.model_copy(update={"queue_job_id": handle.job_id})

        logger.info("followup_scheduled",
                    ticket_id=ticket.id,
                    step=step,
                    scheduled_message_id=message.id,
                    job_id=handle.job_id,
                    scheduled_at=scheduled_at.isoformat())
        return message

    async def _cancel_pending(self, ticket_id: str, reason: CancelReason) -> int:
        """Cancel every pending row for the ticket. Returns how many were cancelled."""
        cancelled = 0
        for msg in await self.store.list_pending_messages(ticket_id):
            # Row first: if the job fires anyway, the worker sees cancelled_at and skips
            if await self.store.mark_message_cancelled(msg.id, reason.value, self._clock()):
                cancelled += 1
            if msg.queue_job_id:
                removed = await self.queue.cancel(msg.queue_job_id)
                if not removed:
                    logger.debug("followup_job_already_fired", job_id=msg.queue_job_id)
        if cancelled:
            logger.info("followup_pending_cancelled",
                        ticket_id=ticket_id,
                        count=cancelled,
                        reason=reason.value)
        return cancelled

    async def _disable(self, ticket_id: str, reason: CancelReason) -> int:
        cancelled = await self._cancel_pending(ticket_id, reason)
        await self.store.update_ticket(ticket_id, followup_enabled=False, current_followup_step=None)
        return cancelled

    async def _require_ticket(self, ticket_id: str, organization_id: Optional[str] = None) -> Ticket:
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None or (organization_id and ticket.organization_id != organization_id):
            raise TicketNotFoundError(ticket_id)
        return ticket

    async def _require_config(self, organization_id: str) -> FollowUpConfig:
        config = await self.store.get_followup_config(organization_id)
        if config is None:
            raise FollowUpConfigError(FollowUpConfigError.NO_CONFIG, organization_id)
        if not config.is_active:
            raise FollowUpConfigError(FollowUpConfigError.CONFIG_INACTIVE, organization_id)
        if not config.steps:
            raise FollowUpConfigError(FollowUpConfigError.NO_STEPS, organization_id)
        return config
