"""Shared test fixtures for the follow-up core."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from config.settings import FollowUpSettings
from database.store_memory import InMemoryFollowUpStore
from followup.scheduler import FollowUpScheduler
from followup.sender import DeliveryReceipt, DeliveryRequest, FollowUpDeliverer
from job_queue.delayed_queue import InMemoryDelayedJobQueue
from jobs.lock import InMemoryJobLock
from models.schemas import FollowUpConfig, FollowUpStep, Ticket

# Wednesday 10 January 2024, mid-morning UTC
WEDNESDAY_10AM = datetime(2024, 1, 10, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable "now" shared by the scheduler, queue and sender."""

    def __init__(self, now: datetime = WEDNESDAY_10AM):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingDeliverer(FollowUpDeliverer):
    """Deliverer double that remembers requests and can be told to fail."""

    def __init__(self):
        self.requests: list[DeliveryRequest] = []
        self.error: Exception = None

    async def deliver(self, request: DeliveryRequest) -> DeliveryReceipt:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return DeliveryReceipt(
            content=f"nudge {request.step}/{request.total_steps}",
            provider_message_id=f"wamid.{len(self.requests)}",
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def followup_config() -> FollowUpConfig:
    """09:00–18:00, Monday to Friday, nudges after 30 min, 2 h and 1 day."""
    return FollowUpConfig(
        organization_id="org-1",
        steps=[
            FollowUpStep(order=1, delay_minutes=30),
            FollowUpStep(order=2, delay_minutes=120),
            FollowUpStep(order=3, delay_minutes=1440),
        ],
    )


@pytest.fixture
def store() -> InMemoryFollowUpStore:
    return InMemoryFollowUpStore()


@pytest.fixture
def queue(clock) -> InMemoryDelayedJobQueue:
    return InMemoryDelayedJobQueue(clock=clock, retry_backoff_base=60, max_attempts=3)


@pytest.fixture
def lock() -> InMemoryJobLock:
    return InMemoryJobLock()


@pytest.fixture
def scheduler(store, queue, lock, clock) -> FollowUpScheduler:
    return FollowUpScheduler(
        store, queue, lock,
        settings=FollowUpSettings(ticket_lock_ttl_seconds=30, ticket_lock_wait_seconds=0.5),
        clock=clock,
    )


@pytest.fixture
def deliverer() -> RecordingDeliverer:
    return RecordingDeliverer()


@pytest_asyncio.fixture
async def seeded(store, followup_config) -> dict[str, Any]:
    await store.save_followup_config(followup_config)
    ticket = Ticket(id="ticket-1", organization_id="org-1")
    await store.save_ticket(ticket)
    return {"config": followup_config, "ticket": ticket}
