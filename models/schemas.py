"""
Core data models for the follow-up scheduling core.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Product limit enforced by the settings screen, not a structural one.
MAX_FOLLOWUP_STEPS = 5

# Weekday indices follow the CRUD layer: 0 = Sunday … 6 = Saturday.
SUNDAY, MONDAY, TUESDAY, WEDNESDAY, THURSDAY, FRIDAY, SATURDAY = range(7)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class CancelReason(str, Enum):
    MANUAL = "manual"
    LEAD_REPLIED = "lead_replied"
    TICKET_DISABLED = "ticket_disabled"
    TICKET_NOT_FOUND = "ticket_not_found"
    CONFIG_INACTIVE = "config_inactive"
    DELIVERY_REJECTED = "delivery_rejected"
    ENQUEUE_FAILED = "enqueue_failed"


class Outcome(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"


# ──────────────────────────────────────────────────────────────
#  Follow-up configuration (per organization, read-only here)
# ──────────────────────────────────────────────────────────────

class FollowUpStep(BaseModel):
    """One entry in an ordered nudge sequence."""
    order: int = Field(ge=1)
    delay_minutes: int = Field(ge=0)


class FollowUpConfig(BaseModel):
    """Organization-wide nudge sequence and its business-hours window."""
    organization_id: str
    is_active: bool = True
    business_hours_only: bool = True
    business_start_hour: int = Field(default=9, ge=0, le=23)
    business_end_hour: int = Field(default=18, ge=1, le=24)
    business_days: list[int] = Field(
        default_factory=lambda: [MONDAY, TUESDAY, WEDNESDAY, THURSDAY, FRIDAY]
    )
    steps: list[FollowUpStep] = []

    @field_validator("business_days")
    @classmethod
    def _check_days(cls, days: list[int]) -> list[int]:
        if not days:
            raise ValueError("at least one business day is required")
        for day in days:
            if day < SUNDAY or day > SATURDAY:
                raise ValueError(f"business day {day} out of range 0..6")
        return sorted(set(days))

    @field_validator("steps")
    @classmethod
    def _check_steps(cls, steps: list[FollowUpStep]) -> list[FollowUpStep]:
        if len(steps) > MAX_FOLLOWUP_STEPS:
            raise ValueError(f"maximum {MAX_FOLLOWUP_STEPS} steps allowed")
        orders = [s.order for s in steps]
        if any(b <= a for a, b in zip(orders, orders[1:])):
            raise ValueError("step orders must be unique and strictly increasing")
        return steps

    @model_validator(mode="after")
    def _check_hours(self) -> FollowUpConfig:
        if self.business_start_hour >= self.business_end_hour:
            raise ValueError("business start hour must be before end hour")
        return self

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def first_step(self) -> Optional[FollowUpStep]:
        return self.steps[0] if self.steps else None

    def step_for(self, order: int) -> Optional[FollowUpStep]:
        for step in self.steps:
            if step.order == order:
                return step
        return None


# ──────────────────────────────────────────────────────────────
#  Ticket — only the fields this core reads/writes
# ──────────────────────────────────────────────────────────────

class Ticket(BaseModel):
    id: str = Field(default_factory=_new_id)
    organization_id: str
    followup_enabled: bool = False
    current_followup_step: Optional[int] = None


# ──────────────────────────────────────────────────────────────
#  ScheduledMessage — one in-flight or historical attempt
# ──────────────────────────────────────────────────────────────

class ScheduledMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    ticket_id: str
    organization_id: str
    step: int
    scheduled_at: datetime
    sent_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    queue_job_id: Optional[str] = None
    content: str = ""
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_pending(self) -> bool:
        return self.sent_at is None and self.cancelled_at is None


# ──────────────────────────────────────────────────────────────
#  WebhookEvent — inbound event log owned by the webhook layer
# ──────────────────────────────────────────────────────────────

class WebhookEvent(BaseModel):
    id: str = Field(default_factory=_new_id)
    payload: dict[str, Any] = {}
    processed: bool = False
    processed_at: Optional[datetime] = None
    retry_count: int = 0
    signature_valid: bool = True
    last_retry_at: Optional[datetime] = None
    processing_error: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Outcomes exposed to the HTTP layer
# ──────────────────────────────────────────────────────────────

class SchedulerResult(BaseModel):
    """Result of a scheduler entry point. CONFLICT is informational."""
    ticket_id: str
    outcome: Outcome = Outcome.OK
    reason: str = ""
    current_step: Optional[int] = None
    scheduled_message: Optional[ScheduledMessage] = None

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.OK


class FollowUpStatus(BaseModel):
    enabled: bool
    current_step: Optional[int] = None
    total_steps: int = 0
    next_scheduled_at: Optional[datetime] = None
