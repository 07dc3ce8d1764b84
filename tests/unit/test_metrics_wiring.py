"""Tests for Prometheus metrics helper functions and their call sites.

Covers:
- record_* helpers increment the labelled series
- event store appends and stale appends are counted
"""

from __future__ import annotations

import pytest

from booking_lifecycle.core.enums import EventType
from booking_lifecycle.core.errors import ConcurrencyConflict
from booking_lifecycle.domain.events import DomainEvent
from booking_lifecycle.infrastructure.event_store import InMemoryEventStore
from booking_lifecycle.observability.metrics import (
    COMPENSATIONS,
    CONCURRENCY_CONFLICTS,
    DEAD_LETTERS,
    EVENTS_APPENDED,
    REALTIME_PUSHES,
    WORKFLOW_RUNS,
    record_compensation,
    record_dead_letter,
    record_realtime_push,
    record_step_latency,
    record_workflow,
)


class TestMetricsHelpers:
    def test_record_workflow_increments_counter(self):
        series = WORKFLOW_RUNS.labels(command="test_cmd", outcome="success")
        before = series._value.get()

        record_workflow("test_cmd", "success")

        assert series._value.get() == before + 1

    def test_record_compensation_splits_outcomes(self):
        ok = COMPENSATIONS.labels(step="test_step", outcome="ok")
        err = COMPENSATIONS.labels(step="test_step", outcome="error")
        ok_before, err_before = ok._value.get(), err._value.get()

        record_compensation("test_step", ok=True)
        record_compensation("test_step", ok=False)
        record_compensation("test_step", ok=False)

        assert ok._value.get() == ok_before + 1
        assert err._value.get() == err_before + 2

    def test_record_dead_letter_increments_counter(self):
        series = DEAD_LETTERS.labels(handler_id="test_handler")
        before = series._value.get()

        record_dead_letter("test_handler")

        assert series._value.get() == before + 1

    def test_record_realtime_push_increments_counter(self):
        series = REALTIME_PUSHES.labels(outcome="timeout")
        before = series._value.get()

        record_realtime_push("timeout")

        assert series._value.get() == before + 1

    def test_record_step_latency_does_not_raise(self):
        record_step_latency("test_step", 0.02)


class TestStoreWiring:
    @pytest.mark.asyncio
    async def test_append_and_conflict_are_counted(self):
        store = InMemoryEventStore()
        appended = EVENTS_APPENDED.labels(
            aggregate_type="booking", event_type=EventType.PAYMENT_FAILED.value,
        )
        conflicts = CONCURRENCY_CONFLICTS.labels(aggregate_type="booking")
        appended_before = appended._value.get()
        conflicts_before = conflicts._value.get()

        first = DomainEvent(
            event_type=EventType.PAYMENT_FAILED,
            aggregate_id="bk-metrics",
            version=1,
            payload={},
        )
        await store.append(first, expected_version=0)
        stale = DomainEvent(
            event_type=EventType.PAYMENT_FAILED,
            aggregate_id="bk-metrics",
            version=1,
            payload={},
        )
        with pytest.raises(ConcurrencyConflict):
            await store.append(stale, expected_version=0)

        assert appended._value.get() == appended_before + 1
        assert conflicts._value.get() == conflicts_before + 1
