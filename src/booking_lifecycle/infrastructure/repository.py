"""Booking repository: load aggregates from the store, append their events."""

from __future__ import annotations

import logging

from booking_lifecycle.domain.booking import BookingAggregate
from booking_lifecycle.domain.events import DomainEvent
from booking_lifecycle.infrastructure.event_store import IEventStore

logger = logging.getLogger(__name__)


class BookingRepository:
    """Thin persistence seam around an ``IEventStore``.

    ``save`` appends the aggregate's pending events one by one, each with
    ``expected_version`` equal to the head it extends.  A stale aggregate
    fails on its first event with ``ConcurrencyConflict`` and nothing is
    written.
    """

    def __init__(self, store: IEventStore) -> None:
        self._store = store

    @property
    def store(self) -> IEventStore:
        return self._store

    async def load_current_state(self, booking_id: str) -> BookingAggregate:
        return await BookingAggregate.load_current_state(self._store, booking_id)

    async def save(self, aggregate: BookingAggregate) -> list[DomainEvent]:
        """Append pending events.  Returns them once durable."""
        expected = aggregate.committed_version
        for event in aggregate.pending_events:
            await self._store.append(event, expected_version=expected)
            expected = event.version
        committed = aggregate.mark_committed()
        if committed:
            logger.debug(
                "Saved %d event(s) for booking %s (now v%d)",
                len(committed), aggregate.id, aggregate.version,
            )
        return committed
