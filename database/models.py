"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Only the columns the follow-up core reads or writes are mapped; the CRUD
layer owns the rest of these tables.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB.
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Follow-up configuration
# ──────────────────────────────────────────────────────────────

class FollowUpConfigRow(Base):
    __tablename__ = "followup_configs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    business_hours_only: Mapped[bool] = mapped_column(Boolean, default=True)
    business_start_hour: Mapped[int] = mapped_column(Integer, default=9)
    business_end_hour: Mapped[int] = mapped_column(Integer, default=18)
    business_days: Mapped[Any] = mapped_column(JSON, default=lambda: [1, 2, 3, 4, 5])

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    steps: Mapped[list["FollowUpStepRow"]] = relationship(
        back_populates="config", lazy="selectin",
        order_by="FollowUpStepRow.order", cascade="all, delete-orphan",
    )


class FollowUpStepRow(Base):
    __tablename__ = "followup_steps"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    config_id: Mapped[str] = mapped_column(String(64), ForeignKey("followup_configs.id"), nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    config: Mapped["FollowUpConfigRow"] = relationship(back_populates="steps")

    __table_args__ = (
        UniqueConstraint("config_id", "order", name="uq_followup_steps_config_order"),
    )


# ──────────────────────────────────────────────────────────────
#  Tickets
# ──────────────────────────────────────────────────────────────

class TicketRow(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    followup_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    current_followup_step: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_tickets_org", "organization_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Scheduled messages
# ──────────────────────────────────────────────────────────────

class ScheduledMessageRow(Base):
    __tablename__ = "scheduled_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    ticket_id: Mapped[str] = mapped_column(String(64), ForeignKey("tickets.id"), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    step: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    queue_job_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    content: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_scheduled_messages_pending", "ticket_id", "sent_at", "cancelled_at"),
        Index("ix_scheduled_messages_org", "organization_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Webhook events
# ──────────────────────────────────────────────────────────────

class WebhookEventRow(Base):
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=True)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_error: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_webhook_events_retry", "processed", "signature_valid", "retry_count"),
    )
