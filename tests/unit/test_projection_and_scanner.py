"""Tests for the booking projection and the conflict scanner.

Covers:
- Projection folds bus events, ignores duplicates and workflow events.
- Rebuild from the store matches the live view.
- Scanner reports overlaps of confirmed bookings with external entries,
  skipping the bookings' own reservations and non-confirmed bookings.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from booking_lifecycle.adapters.interfaces import TimeRange
from booking_lifecycle.core.enums import BookingStatus, ConflictSeverity, EventType
from booking_lifecycle.domain.booking import BookingAggregate
from booking_lifecycle.domain.events import DomainEvent
from booking_lifecycle.projections.bookings import BookingProjection
from booking_lifecycle.reconciliation.conflict_scanner import ConflictScanner

T0 = datetime(2024, 6, 3, 10, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(hours=1)
DAY = TimeRange(start=T0 - timedelta(hours=10), end=T0 + timedelta(hours=14))


def _booking(booking_id: str, start=T0, end=T1, calendar_event_id=None, requires_payment=False):
    agg = BookingAggregate.new(booking_id)
    agg.create(
        start=start,
        end=end,
        organizer_id="alice",
        participants=("bob",),
        requires_payment=requires_payment,
        calendar_event_id=calendar_event_id,
    )
    return agg


async def _save(store, agg: BookingAggregate) -> list[DomainEvent]:
    events = list(agg.pending_events)
    for event in events:
        await store.append(event, expected_version=event.version - 1)
    agg.mark_committed()
    return events


class TestBookingProjection:
    def test_apply_builds_view(self):
        projection = BookingProjection()
        agg = _booking("bk-1", calendar_event_id="cal-1")
        for event in agg.pending_events:
            assert projection.apply(event)

        view = projection.get("bk-1")
        assert view.status is BookingStatus.CONFIRMED
        assert view.interval.start == T0
        assert view.calendar_event_id == "cal-1"
        assert view.participants == ("bob",)
        assert view.version == 1

    def test_duplicate_event_ignored(self):
        projection = BookingProjection()
        agg = _booking("bk-1")
        agg.cancel(reason="ill")
        created, cancelled = agg.pending_events
        projection.apply(created)
        projection.apply(cancelled)
        assert not projection.apply(created)
        assert not projection.apply(cancelled)
        assert projection.get("bk-1").status is BookingStatus.CANCELLED

    def test_workflow_events_ignored(self):
        event = DomainEvent(
            event_type=EventType.WORKFLOW_FAILED,
            aggregate_id="workflow:run-1",
            version=1,
            payload={},
        )
        projection = BookingProjection()
        assert not projection.apply(event)
        assert len(projection) == 0

    def test_queries(self):
        projection = BookingProjection()
        paid = _booking("bk-2", requires_payment=True)
        for event in (*_booking("bk-1").pending_events, *paid.pending_events):
            projection.apply(event)
        assert [v.booking_id for v in projection.all()] == ["bk-1", "bk-2"]
        assert [v.booking_id for v in projection.confirmed()] == ["bk-1"]
        assert [v.booking_id for v in projection.by_status(BookingStatus.PENDING_PAYMENT)] == ["bk-2"]

    @pytest.mark.asyncio
    async def test_rebuild_matches_live(self, memory_store, bus):
        live = BookingProjection()
        live.attach(bus)
        agg = _booking("bk-1")
        agg.reschedule(new_start=T0 + timedelta(days=1), new_end=T1 + timedelta(days=1))
        events = await _save(memory_store, agg)
        await _save(memory_store, _booking("bk-2"))
        for event in events:
            await bus.publish(event)
        await bus.drain()

        rebuilt = BookingProjection()
        applied = await rebuilt.rebuild(memory_store)
        assert applied == 3
        assert rebuilt.get("bk-1") == live.get("bk-1")
        assert rebuilt.get("bk-1").status is BookingStatus.RESCHEDULED
        assert len(rebuilt) == 2


class TestConflictScanner:
    @pytest.mark.asyncio
    async def test_reports_external_overlaps(self, calendar, sim_clock):
        projection = BookingProjection()
        own = await calendar.create_event(
            booking_id="bk-1", start=T0, end=T1, attendees=["alice"],
        )
        for event in _booking("bk-1", calendar_event_id=own.event_id).pending_events:
            projection.apply(event)
        inside = calendar.add_external(T0 + timedelta(minutes=15), T0 + timedelta(minutes=45))
        partial = calendar.add_external(T0 + timedelta(minutes=30), T1 + timedelta(minutes=30))
        calendar.add_external(T1, T1 + timedelta(hours=1))  # touching only

        records = await ConflictScanner(projection, calendar, sim_clock).scan(DAY)

        assert [(r.external_event_ref, r.severity) for r in records] == [
            (inside.event_id, ConflictSeverity.HIGH),
            (partial.event_id, ConflictSeverity.MEDIUM),
        ]
        assert all(r.booking_ref == "bk-1" for r in records)
        assert all(r.detected_at == sim_clock.now() for r in records)

    @pytest.mark.asyncio
    async def test_only_confirmed_bookings(self, calendar, sim_clock):
        projection = BookingProjection()
        cancelled = _booking("bk-1")
        cancelled.cancel()
        for event in (*cancelled.pending_events, *_booking("bk-2", requires_payment=True).pending_events):
            projection.apply(event)
        calendar.add_external(T0, T1)

        assert await ConflictScanner(projection, calendar, sim_clock).scan(DAY) == []

    @pytest.mark.asyncio
    async def test_other_booking_reservations_ignored(self, calendar, sim_clock):
        projection = BookingProjection()
        for event in _booking("bk-1").pending_events:
            projection.apply(event)
        await calendar.create_event(booking_id="bk-9", start=T0, end=T1, attendees=["zoe"])

        assert await ConflictScanner(projection, calendar, sim_clock).scan(DAY) == []

    @pytest.mark.asyncio
    async def test_bookings_outside_window(self, calendar, sim_clock):
        projection = BookingProjection()
        for event in _booking("bk-1", T0 + timedelta(days=3), T1 + timedelta(days=3)).pending_events:
            projection.apply(event)
        calendar.add_external(T0 + timedelta(days=3), T1 + timedelta(days=3))

        assert await ConflictScanner(projection, calendar, sim_clock).scan(DAY) == []
