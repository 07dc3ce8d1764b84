"""Booking read model.

Keeps a ``BookingView`` per booking, updated from bus events and rebuildable
from ``replay_all()``.  Versions make it idempotent: an event at or below
the view's version is ignored, so a replay after live updates (or a
redelivered event) changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from booking_lifecycle.core.enums import AggregateType, BookingStatus
from booking_lifecycle.domain.booking import BookingAggregate
from booking_lifecycle.domain.conflicts import Interval
from booking_lifecycle.domain.events import BOOKING_EVENT_TYPES, DomainEvent
from booking_lifecycle.infrastructure.event_bus import EventBus
from booking_lifecycle.infrastructure.event_store import IEventStore

logger = logging.getLogger(__name__)

HANDLER_ID = "booking_projection"


@dataclass(frozen=True)
class BookingView:
    booking_id: str
    status: BookingStatus
    interval: Interval | None
    calendar_event_id: str | None
    organizer_id: str
    participants: tuple[str, ...]
    version: int


class BookingProjection:
    """In-memory ``booking_id -> BookingView`` map."""

    def __init__(self) -> None:
        self._aggregates: dict[str, BookingAggregate] = {}
        self._views: dict[str, BookingView] = {}

    def attach(self, bus: EventBus, priority: int = 10) -> None:
        for event_type in sorted(BOOKING_EVENT_TYPES, key=lambda t: t.value):
            bus.subscribe(event_type, self.handle, priority=priority, handler_id=HANDLER_ID)

    async def handle(self, event: DomainEvent) -> None:
        self.apply(event)

    def apply(self, event: DomainEvent) -> bool:
        """Fold one event.  Returns False when it was already seen."""
        if event.aggregate_type is not AggregateType.BOOKING:
            return False
        aggregate = self._aggregates.get(event.aggregate_id)
        if aggregate is None:
            aggregate = BookingAggregate.new(event.aggregate_id)
        if event.version <= aggregate.version:
            return False
        # Work on a copy so a bad event leaves the view untouched.
        updated = replace(aggregate, pending_events=[])
        updated.apply(event)
        self._aggregates[event.aggregate_id] = updated
        self._views[event.aggregate_id] = _view_of(updated)
        return True

    async def rebuild(self, store: IEventStore) -> int:
        """Replace the state with a full replay.  Returns events applied."""
        self._aggregates.clear()
        self._views.clear()
        applied = 0
        async for event in store.replay_all():
            if self.apply(event):
                applied += 1
        logger.info("Rebuilt booking projection: %d bookings, %d events", len(self._views), applied)
        return applied

    # -- Queries -----------------------------------------------------------

    def get(self, booking_id: str) -> BookingView | None:
        return self._views.get(booking_id)

    def all(self) -> list[BookingView]:
        return sorted(self._views.values(), key=lambda v: v.booking_id)

    def by_status(self, status: BookingStatus) -> list[BookingView]:
        return [v for v in self.all() if v.status is status]

    def confirmed(self) -> list[BookingView]:
        return self.by_status(BookingStatus.CONFIRMED)

    def __len__(self) -> int:
        return len(self._views)


def _view_of(aggregate: BookingAggregate) -> BookingView:
    interval = None
    if aggregate.start_time is not None and aggregate.end_time is not None:
        interval = Interval(aggregate.start_time, aggregate.end_time)
    return BookingView(
        booking_id=aggregate.id,
        status=aggregate.status,
        interval=interval,
        calendar_event_id=aggregate.calendar_event_id,
        organizer_id=aggregate.organizer_id,
        participants=aggregate.participants,
        version=aggregate.version,
    )
