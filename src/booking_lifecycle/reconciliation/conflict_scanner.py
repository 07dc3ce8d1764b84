"""Periodic comparison of confirmed bookings with external calendar entries.

Advisory only: records are logged and returned for a human or a policy to
act on.  Booking state is never changed here.
"""

from __future__ import annotations

import logging

from booking_lifecycle.adapters.interfaces import CalendarAdapter, TimeRange
from booking_lifecycle.core.clock import IClock, WallClock
from booking_lifecycle.domain.conflicts import ConflictRecord, detect_conflicts
from booking_lifecycle.projections.bookings import BookingProjection

logger = logging.getLogger(__name__)


class ConflictScanner:
    """Detect overlaps between confirmed bookings and external entries."""

    def __init__(
        self,
        projection: BookingProjection,
        calendar: CalendarAdapter,
        clock: IClock | None = None,
    ) -> None:
        self._projection = projection
        self._calendar = calendar
        self._clock = clock or WallClock()

    async def scan(self, window: TimeRange) -> list[ConflictRecord]:
        bookings = [
            view for view in self._projection.confirmed()
            if view.interval is not None and view.interval.start < window.end
            and window.start < view.interval.end
        ]
        if not bookings:
            return []

        own_entries = {v.calendar_event_id for v in bookings if v.calendar_event_id}
        entries = await self._calendar.list_events(window)
        external = [
            (entry.event_id, entry.interval())
            for entry in entries
            if entry.event_id not in own_entries and entry.booking_id is None
        ]
        records = detect_conflicts(
            [(v.booking_id, v.interval) for v in bookings],
            external,
            self._clock.now(),
        )
        for record in records:
            logger.warning(
                "Calendar conflict (%s): booking %s overlaps external %s",
                record.severity.value, record.booking_ref, record.external_event_ref,
            )
        return records
