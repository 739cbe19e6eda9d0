"""
Abstract Follow-up Store — Interface for all storage backends.

Implementations:
  - SqlFollowUpStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryFollowUpStore (dict-based, single-process, no persistence)

Terminal transitions of a ScheduledMessage (sent / cancelled) are
conditional writes: they only apply while the row is still pending and
report whether they did, so a duplicate delivery or a cancel racing a
send resolves without a read-then-write window.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import FollowUpConfig, ScheduledMessage, Ticket, WebhookEvent


class BaseFollowUpStore(ABC):
    """Interface that all follow-up store backends must implement."""

    # ── Follow-up config ──────────────────────────────────────

    @abstractmethod
    async def get_followup_config(self, organization_id: str) -> Optional[FollowUpConfig]:
        ...

    @abstractmethod
    async def save_followup_config(self, config: FollowUpConfig) -> FollowUpConfig:
        ...

    # ── Tickets ───────────────────────────────────────────────

    @abstractmethod
    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        ...

    @abstractmethod
    async def save_ticket(self, ticket: Ticket) -> Ticket:
        ...

    @abstractmethod
    async def update_ticket(self, ticket_id: str, **kwargs: Any) -> None:
        ...

    # ── Scheduled messages ────────────────────────────────────

    @abstractmethod
    async def create_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        ...

    @abstractmethod
    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        ...

    @abstractmethod
    async def update_scheduled_message(self, message_id: str, **kwargs: Any) -> None:
        ...

    @abstractmethod
    async def list_pending_messages(self, ticket_id: str) -> list[ScheduledMessage]:
        """Rows with sent_at and cancelled_at both null, oldest scheduled first."""
        ...

    @abstractmethod
    async def list_messages(self, ticket_id: str) -> list[ScheduledMessage]:
        ...

    @abstractmethod
    async def mark_message_sent(self, message_id: str, sent_at: datetime, content: str = "") -> bool:
        """Stamp sent_at if the row is still pending. False if it was not."""
        ...

    @abstractmethod
    async def mark_message_cancelled(self, message_id: str, reason: str, cancelled_at: datetime) -> bool:
        """Stamp cancelled_at if the row is still pending. False if it was not."""
        ...

    # ── Webhook events ────────────────────────────────────────

    @abstractmethod
    async def save_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        ...

    @abstractmethod
    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        ...

    @abstractmethod
    async def list_retryable_webhook_events(self, max_retries: int, limit: int = 50) -> list[WebhookEvent]:
        """processed = false AND signature_valid AND retry_count < max_retries, oldest first."""
        ...

    @abstractmethod
    async def count_retryable_webhook_events(self, max_retries: int) -> int:
        ...

    @abstractmethod
    async def count_dead_letter_webhook_events(self, max_retries: int) -> int:
        """Unprocessed, valid-signature events that used up their retries."""
        ...

    @abstractmethod
    async def mark_webhook_processed(self, event_id: str, processed_at: datetime) -> None:
        ...

    @abstractmethod
    async def increment_webhook_retry(self, event_id: str, error: str, retried_at: datetime) -> int:
        """Bump retry_count, record the error, return the new count."""
        ...
