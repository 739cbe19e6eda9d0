"""
InMemoryFollowUpStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlFollowUpStore
  - Conditional updates are atomic on the event loop (no awaits inside)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseFollowUpStore
from models.schemas import FollowUpConfig, ScheduledMessage, Ticket, WebhookEvent

logger = structlog.get_logger()


class InMemoryFollowUpStore(BaseFollowUpStore):
    """
    Full-featured in-memory store with the same interface as SqlFollowUpStore.
    Returns copies so callers cannot mutate stored state by accident.
    """

    def __init__(self):
        self._configs: dict[str, FollowUpConfig] = {}          # organization_id → config
        self._tickets: dict[str, Ticket] = {}                  # id → ticket
        self._messages: dict[str, ScheduledMessage] = {}       # id → scheduled message
        self._webhook_events: dict[str, WebhookEvent] = {}     # id → event
        logger.info("inmemory_store_initialized")

    # ── Follow-up config ──────────────────────────────────

    async def get_followup_config(self, organization_id: str) -> Optional[FollowUpConfig]:
        config = self._configs.get(organization_id)
        return config.model_copy(deep=True) if config else None

    async def save_followup_config(self, config: FollowUpConfig) -> FollowUpConfig:
        self._configs[config.organization_id] = config.model_copy(deep=True)
        return config

    # ── Tickets ───────────────────────────────────────────

    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        ticket = self._tickets.get(ticket_id)
        return ticket.model_copy() if ticket else None

    async def save_ticket(self, ticket: Ticket) -> Ticket:
        self._tickets[ticket.id] = ticket.model_copy()
        return ticket

    async def update_ticket(self, ticket_id: str, **kwargs: Any) -> None:
        ticket = self._tickets.get(ticket_id)
        if ticket:
            self._tickets[ticket_id] = ticket.model_copy(update=kwargs)

    # ── Scheduled messages ────────────────────────────────

    async def create_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        self._messages[message.id] = message.model_copy()
        return message

    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        msg = self._messages.get(message_id)
        return msg.model_copy() if msg else None

    async def update_scheduled_message(self, message_id: str, **kwargs: Any) -> None:
        msg = self._messages.get(message_id)
        if msg:
            self._messages[message_id] = msg.model_copy(update=kwargs)

    async def list_pending_messages(self, ticket_id: str) -> list[ScheduledMessage]:
        pending = [
            m for m in self._messages.values()
            if m.ticket_id == ticket_id and m.is_pending
        ]
        pending.sort(key=lambda m: m.scheduled_at)
        return [m.model_copy() for m in pending]

    async def list_messages(self, ticket_id: str) -> list[ScheduledMessage]:
        rows = [m for m in self._messages.values() if m.ticket_id == ticket_id]
        rows.sort(key=lambda m: m.created_at)
        return [m.model_copy() for m in rows]

    async def mark_message_sent(self, message_id: str, sent_at: datetime, content: str = "") -> bool:
        msg = self._messages.get(message_id)
        if not msg or not msg.is_pending:
            return False
        self._messages[message_id] = msg.model_copy(update={"sent_at": sent_at, "content": content})
        return True

    async def mark_message_cancelled(self, message_id: str, reason: str, cancelled_at: datetime) -> bool:
        msg = self._messages.get(message_id)
        if not msg or not msg.is_pending:
            return False
        self._messages[message_id] = msg.model_copy(
            update={"cancelled_at": cancelled_at, "cancel_reason": reason}
        )
        return True

    # ── Webhook events ────────────────────────────────────

    async def save_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        self._webhook_events[event.id] = event.model_copy(deep=True)
        return event

    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        event = self._webhook_events.get(event_id)
        return event.model_copy(deep=True) if event else None

    def _retryable(self, max_retries: int) -> list[WebhookEvent]:
        return [
            e for e in self._webhook_events.values()
            if not e.processed and e.signature_valid and e.retry_count < max_retries
        ]

    async def list_retryable_webhook_events(self, max_retries: int, limit: int = 50) -> list[WebhookEvent]:
        events = sorted(self._retryable(max_retries), key=lambda e: e.created_at)[:limit]
        return [e.model_copy(deep=True) for e in events]

    async def count_retryable_webhook_events(self, max_retries: int) -> int:
        return len(self._retryable(max_retries))

    async def count_dead_letter_webhook_events(self, max_retries: int) -> int:
        return sum(
            1 for e in self._webhook_events.values()
            if not e.processed and e.signature_valid and e.retry_count >= max_retries
        )

    async def mark_webhook_processed(self, event_id: str, processed_at: datetime) -> None:
        event = self._webhook_events.get(event_id)
        if event:
            self._webhook_events[event_id] = event.model_copy(
                update={"processed": True, "processed_at": processed_at}
            )

    async def increment_webhook_retry(self, event_id: str, error: str, retried_at: datetime) -> int:
        event = self._webhook_events.get(event_id)
        if not event:
            return 0
        updated = event.model_copy(update={
            "retry_count": event.retry_count + 1,
            "last_retry_at": retried_at,
            "processing_error": error,
        })
        self._webhook_events[event_id] = updated
        return updated.retry_count
