"""Shared fixtures for the booking-lifecycle test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from booking_lifecycle.adapters.memory import (
    CalendarAvailability,
    InMemoryCalendar,
    InMemoryPaymentService,
    RecordingNotificationService,
    StaticPermissionService,
)
from booking_lifecycle.core.clock import SimClock
from booking_lifecycle.core.config import (
    EventBusConfig,
    RealtimeConfig,
    Settings,
    WorkflowConfig,
)
from booking_lifecycle.domain.booking import BookingAggregate
from booking_lifecycle.domain.events import DomainEvent, EventMetadata
from booking_lifecycle.infrastructure.event_bus import EventBus
from booking_lifecycle.infrastructure.event_store import InMemoryEventStore
from booking_lifecycle.main import BookingEngine, build_engine
from booking_lifecycle.workflow.commands import CreateBooking

# Monday 2024-06-03 10:00 UTC, one hour slot.
T0 = datetime(2024, 6, 3, 10, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(hours=1)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

@pytest.fixture
def sim_clock() -> SimClock:
    """Return a SimClock starting at 2024-06-01 00:00 UTC."""
    return SimClock(start=datetime(2024, 6, 1, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Store and bus
# ---------------------------------------------------------------------------

@pytest.fixture
def memory_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def bus_config() -> EventBusConfig:
    """Zero-delay retries so failure paths run instantly."""
    return EventBusConfig(max_retries=2, retry_base_delay=0.0, retry_max_delay=0.0)


@pytest.fixture
def bus(memory_store: InMemoryEventStore, bus_config: EventBusConfig, sim_clock: SimClock) -> EventBus:
    return EventBus(event_store=memory_store, config=bus_config, clock=sim_clock)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def calendar() -> InMemoryCalendar:
    return InMemoryCalendar()


@pytest.fixture
def availability(calendar: InMemoryCalendar) -> CalendarAvailability:
    return CalendarAvailability(calendar)


@pytest.fixture
def payments() -> InMemoryPaymentService:
    return InMemoryPaymentService()


@pytest.fixture
def notifications() -> RecordingNotificationService:
    return RecordingNotificationService()


@pytest.fixture
def permissions() -> StaticPermissionService:
    return StaticPermissionService()


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        event_bus=EventBusConfig(max_retries=2, retry_base_delay=0.0, retry_max_delay=0.0),
        workflow=WorkflowConfig(
            step_timeout_seconds=0.2,
            retry_max_attempts=3,
            retry_base_delay=0.0,
            retry_max_delay=0.0,
            retry_jitter=0.0,
        ),
        realtime=RealtimeConfig(send_timeout_seconds=0.1),
    )


@pytest.fixture
def engine(
    settings: Settings,
    memory_store: InMemoryEventStore,
    calendar: InMemoryCalendar,
    availability: CalendarAvailability,
    payments: InMemoryPaymentService,
    notifications: RecordingNotificationService,
    permissions: StaticPermissionService,
    sim_clock: SimClock,
) -> BookingEngine:
    """Fully wired engine over in-memory collaborators."""
    return build_engine(
        settings,
        calendar=calendar,
        availability=availability,
        payments=payments,
        notifications=notifications,
        permissions=permissions,
        store=memory_store,
        clock=sim_clock,
    )


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

@pytest.fixture
def make_create():
    """Factory for CreateBooking commands with sensible defaults."""

    def _make(booking_id: str = "bk-1", **overrides) -> CreateBooking:
        defaults = dict(
            booking_id=booking_id,
            actor_id="alice",
            organization_id="org-1",
            start=T0,
            end=T1,
            organizer_id="alice",
            participants=("bob",),
            team_member_ids=("carol",),
            requires_payment=False,
        )
        defaults.update(overrides)
        return CreateBooking(**defaults)

    return _make


@pytest.fixture
def make_created():
    """Factory for BookingCreated events as the aggregate records them."""

    def _make(booking_id: str = "bk-1", *, requires_payment: bool = False) -> DomainEvent:
        agg = BookingAggregate.new(booking_id)
        return agg.create(
            start=T0,
            end=T1,
            organizer_id="alice",
            participants=("bob",),
            team_member_ids=("carol",),
            requires_payment=requires_payment,
            metadata=EventMetadata(actor_id="alice", organization_id="org-1"),
        )

    return _make
