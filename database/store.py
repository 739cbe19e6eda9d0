"""
SqlFollowUpStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Conditional terminal writes use UPDATE … WHERE sent_at IS NULL AND
cancelled_at IS NULL and read the rowcount, which every supported
dialect reports. RETURNING is avoided for MySQL compatibility.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, and_, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    FollowUpConfigRow, FollowUpStepRow, TicketRow,
    ScheduledMessageRow, WebhookEventRow,
)
from database.session import session_scope
from database.store_base import BaseFollowUpStore
from models.schemas import (
    FollowUpConfig, FollowUpStep, ScheduledMessage, Ticket, WebhookEvent,
)

logger = structlog.get_logger()


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


class SqlFollowUpStore(BaseFollowUpStore):
    """
    Persistent follow-up store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    # ── Follow-up config ───────────────────────────────────

    async def get_followup_config(self, organization_id: str) -> Optional[FollowUpConfig]:
        async with self._session() as db:
            stmt = select(FollowUpConfigRow).where(FollowUpConfigRow.organization_id == organization_id)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_config(row) if row else None

    async def save_followup_config(self, config: FollowUpConfig) -> FollowUpConfig:
        async with self._session() as db:
            stmt = select(FollowUpConfigRow).where(FollowUpConfigRow.organization_id == config.organization_id)
            existing = (await db.execute(stmt)).scalar_one_or_none()
            if existing:
                # Replace wholesale so the (config_id, order) constraint never sees both generations
                await db.delete(existing)
                await db.flush()
            db.add(FollowUpConfigRow(
                organization_id=config.organization_id,
                is_active=config.is_active,
                business_hours_only=config.business_hours_only,
                business_start_hour=config.business_start_hour,
                business_end_hour=config.business_end_hour,
                business_days=list(config.business_days),
                steps=[
                    FollowUpStepRow(order=s.order, delay_minutes=s.delay_minutes)
                    for s in config.steps
                ],
            ))
            return config

    # ── Tickets ────────────────────────────────────────────

    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        async with self._session() as db:
            row = await db.get(TicketRow, ticket_id)
            return self._row_to_ticket(row) if row else None

    async def save_ticket(self, ticket: Ticket) -> Ticket:
        async with self._session() as db:
            existing = await db.get(TicketRow, ticket.id)
            if existing:
                existing.organization_id = ticket.organization_id
                existing.followup_enabled = ticket.followup_enabled
                existing.current_followup_step = ticket.current_followup_step
            else:
                db.add(TicketRow(
                    id=ticket.id,
                    organization_id=ticket.organization_id,
                    followup_enabled=ticket.followup_enabled,
                    current_followup_step=ticket.current_followup_step,
                ))
            return ticket

    async def update_ticket(self, ticket_id: str, **kwargs: Any) -> None:
        async with self._session() as db:
            stmt = (
                update(TicketRow)
                .where(TicketRow.id == ticket_id)
                .values(**kwargs, updated_at=datetime.now(timezone.utc))
            )
            await db.execute(stmt)

    # ── Scheduled messages ─────────────────────────────────

    async def create_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        async with self._session() as db:
            db.add(ScheduledMessageRow(
                id=message.id,
                ticket_id=message.ticket_id,
                organization_id=message.organization_id,
                step=message.step,
                scheduled_at=message.scheduled_at,
                sent_at=message.sent_at,
                cancelled_at=message.cancelled_at,
                cancel_reason=message.cancel_reason,
                queue_job_id=message.queue_job_id,
                content=message.content,
                created_at=message.created_at,
            ))
            return message

    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        async with self._session() as db:
            row = await db.get(ScheduledMessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def update_scheduled_message(self, message_id: str, **kwargs: Any) -> None:
        async with self._session() as db:
            stmt = (
                update(ScheduledMessageRow)
                .where(ScheduledMessageRow.id == message_id)
                .values(**kwargs)
            )
            await db.execute(stmt)

    async def list_pending_messages(self, ticket_id: str) -> list[ScheduledMessage]:
        async with self._session() as db:
            stmt = (
                select(ScheduledMessageRow)
                .where(and_(
                    ScheduledMessageRow.ticket_id == ticket_id,
                    ScheduledMessageRow.sent_at.is_(None),
                    ScheduledMessageRow.cancelled_at.is_(None),
                ))
                .order_by(ScheduledMessageRow.scheduled_at.asc())
            )
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars()]

    async def list_messages(self, ticket_id: str) -> list[ScheduledMessage]:
        async with self._session() as db:
            stmt = (
                select(ScheduledMessageRow)
                .where(ScheduledMessageRow.ticket_id == ticket_id)
                .order_by(ScheduledMessageRow.created_at.asc())
            )
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars()]

    async def _mark_terminal(self, message_id: str, **values: Any) -> bool:
        async with self._session() as db:
            stmt = (
                update(ScheduledMessageRow)
                .where(and_(
                    ScheduledMessageRow.id == message_id,
                    ScheduledMessageRow.sent_at.is_(None),
                    ScheduledMessageRow.cancelled_at.is_(None),
                ))
                .values(**values)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def mark_message_sent(self, message_id: str, sent_at: datetime, content: str = "") -> bool:
        return await self._mark_terminal(message_id, sent_at=sent_at, content=content)

    async def mark_message_cancelled(self, message_id: str, reason: str, cancelled_at: datetime) -> bool:
        return await self._mark_terminal(message_id, cancelled_at=cancelled_at, cancel_reason=reason)

    # ── Webhook events ─────────────────────────────────────

    async def save_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        async with self._session() as db:
            await db.merge(WebhookEventRow(
                id=event.id,
                payload=event.payload,
                processed=event.processed,
                processed_at=event.processed_at,
                retry_count=event.retry_count,
                signature_valid=event.signature_valid,
                last_retry_at=event.last_retry_at,
                processing_error=event.processing_error,
                created_at=event.created_at,
            ))
            return event

    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        async with self._session() as db:
            row = await db.get(WebhookEventRow, event_id)
            return self._row_to_event(row) if row else None

    @staticmethod
    def _retryable_clause(max_retries: int):
        return and_(
            WebhookEventRow.processed.is_(False),
            WebhookEventRow.signature_valid.is_(True),
            WebhookEventRow.retry_count < max_retries,
        )

    async def list_retryable_webhook_events(self, max_retries: int, limit: int = 50) -> list[WebhookEvent]:
        async with self._session() as db:
            stmt = (
                select(WebhookEventRow)
                .where(self._retryable_clause(max_retries))
                .order_by(WebhookEventRow.created_at.asc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_event(r) for r in result.scalars()]

    async def count_retryable_webhook_events(self, max_retries: int) -> int:
        async with self._session() as db:
            stmt = select(func.count()).select_from(WebhookEventRow).where(
                self._retryable_clause(max_retries)
            )
            return (await db.execute(stmt)).scalar_one()

    async def count_dead_letter_webhook_events(self, max_retries: int) -> int:
        async with self._session() as db:
            stmt = select(func.count()).select_from(WebhookEventRow).where(and_(
                WebhookEventRow.processed.is_(False),
                WebhookEventRow.signature_valid.is_(True),
                WebhookEventRow.retry_count >= max_retries,
            ))
            return (await db.execute(stmt)).scalar_one()

    async def mark_webhook_processed(self, event_id: str, processed_at: datetime) -> None:
        async with self._session() as db:
            await db.execute(
                update(WebhookEventRow)
                .where(WebhookEventRow.id == event_id)
                .values(processed=True, processed_at=processed_at)
            )

    async def increment_webhook_retry(self, event_id: str, error: str, retried_at: datetime) -> int:
        async with self._session() as db:
            await db.execute(
                update(WebhookEventRow)
                .where(WebhookEventRow.id == event_id)
                .values(
                    retry_count=WebhookEventRow.retry_count + 1,
                    last_retry_at=retried_at,
                    processing_error=error,
                )
            )
            result = await db.execute(
                select(WebhookEventRow.retry_count).where(WebhookEventRow.id == event_id)
            )
            return result.scalar_one_or_none() or 0

    # ── Row conversion ─────────────────────────────────────

    @staticmethod
    def _row_to_config(row: FollowUpConfigRow) -> FollowUpConfig:
        return FollowUpConfig(
            organization_id=row.organization_id,
            is_active=row.is_active,
            business_hours_only=row.business_hours_only,
            business_start_hour=row.business_start_hour,
            business_end_hour=row.business_end_hour,
            business_days=list(row.business_days or []),
            steps=[FollowUpStep(order=s.order, delay_minutes=s.delay_minutes) for s in row.steps],
        )

    @staticmethod
    def _row_to_ticket(row: TicketRow) -> Ticket:
        return Ticket(
            id=row.id,
            organization_id=row.organization_id,
            followup_enabled=row.followup_enabled,
            current_followup_step=row.current_followup_step,
        )

    @staticmethod
    def _row_to_message(row: ScheduledMessageRow) -> ScheduledMessage:
        return ScheduledMessage(
            id=row.id,
            ticket_id=row.ticket_id,
            organization_id=row.organization_id,
            step=row.step,
            scheduled_at=_aware(row.scheduled_at),
            sent_at=_aware(row.sent_at),
            cancelled_at=_aware(row.cancelled_at),
            cancel_reason=row.cancel_reason,
            queue_job_id=row.queue_job_id,
            content=row.content or "",
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_event(row: WebhookEventRow) -> WebhookEvent:
        return WebhookEvent(
            id=row.id,
            payload=row.payload or {},
            processed=row.processed,
            processed_at=_aware(row.processed_at),
            retry_count=row.retry_count,
            signature_valid=row.signature_valid,
            last_retry_at=_aware(row.last_retry_at),
            processing_error=row.processing_error or "",
            created_at=_aware(row.created_at),
        )
