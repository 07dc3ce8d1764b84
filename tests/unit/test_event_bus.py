"""Tests for the EventBus.

Covers:
- Subscription validation (unknown type, duplicate handler ids).
- Priority ordering with registration order as tie-break.
- Durability check: unpersisted events are refused.
- Isolation: a failing handler does not block the others.
- Retry with backoff, then dead-letter and HandlerFailure in the report.
- Manual reprocessing through the bus, drain and the bounded history.
- Default handler ids distinguish bound methods of different instances.
"""

from __future__ import annotations

import asyncio

import pytest

from booking_lifecycle.core.config import EventBusConfig
from booking_lifecycle.core.enums import EventType
from booking_lifecycle.core.errors import (
    EventNotPersisted,
    HandlerFailure,
    ValidationError,
)
from booking_lifecycle.infrastructure.event_bus import EventBus


async def _persist(store, event):
    await store.append(event, expected_version=event.version - 1)
    return event


class TestSubscriptions:
    def test_unknown_event_type(self, bus: EventBus):
        async def handler(event):
            pass

        with pytest.raises(ValidationError, match="Unknown event type"):
            bus.subscribe("BookingTeleported", handler)

    def test_string_type_accepted(self, bus: EventBus):
        async def handler(event):
            pass

        hid = bus.subscribe("BookingCreated", handler, handler_id="h")
        assert hid == "h"
        assert [s.handler_id for s in bus.handlers_for(EventType.BOOKING_CREATED)] == ["h"]

    def test_duplicate_subscription_rejected(self, bus: EventBus):
        async def handler(event):
            pass

        bus.subscribe(EventType.BOOKING_CREATED, handler, handler_id="h")
        with pytest.raises(ValidationError, match="already subscribed"):
            bus.subscribe(EventType.BOOKING_CREATED, handler, handler_id="h")
        # Same handler on another type is fine.
        bus.subscribe(EventType.BOOKING_CANCELLED, handler, handler_id="h")

    def test_handler_id_bound_to_other_handler(self, bus: EventBus):
        async def first(event):
            pass

        async def second(event):
            pass

        bus.subscribe(EventType.BOOKING_CREATED, first, handler_id="h")
        with pytest.raises(ValidationError, match="different handler"):
            bus.subscribe(EventType.BOOKING_CANCELLED, second, handler_id="h")

    def test_priority_then_registration_order(self, bus: EventBus):
        async def handler(event):
            pass

        bus.subscribe(EventType.BOOKING_CREATED, handler, priority=0, handler_id="a")
        bus.subscribe_all(handler, priority=-10, handler_id="wild")
        bus.subscribe(EventType.BOOKING_CREATED, handler, priority=10, handler_id="b")
        bus.subscribe(EventType.BOOKING_CREATED, handler, priority=0, handler_id="c")
        order = [s.handler_id for s in bus.handlers_for(EventType.BOOKING_CREATED)]
        assert order == ["b", "a", "c", "wild"]
        assert [s.handler_id for s in bus.handlers_for(EventType.BOOKING_CANCELLED)] == ["wild"]

    def test_unsubscribe(self, bus: EventBus):
        async def handler(event):
            pass

        bus.subscribe(EventType.BOOKING_CREATED, handler, handler_id="h")
        bus.subscribe_all(handler, handler_id="h2")
        bus.unsubscribe("h")
        assert [s.handler_id for s in bus.handlers_for(EventType.BOOKING_CREATED)] == ["h2"]


class TestPublish:
    @pytest.mark.asyncio
    async def test_unpersisted_event_refused(self, bus: EventBus, make_created):
        with pytest.raises(EventNotPersisted):
            await bus.publish(make_created())
        assert bus.get_history() == []

    @pytest.mark.asyncio
    async def test_delivers_to_matching_handlers(self, bus, memory_store, make_created):
        seen: list[str] = []

        async def created(event):
            seen.append("created")

        async def cancelled(event):
            seen.append("cancelled")

        bus.subscribe(EventType.BOOKING_CREATED, created)
        bus.subscribe(EventType.BOOKING_CANCELLED, cancelled)

        event = await _persist(memory_store, make_created())
        report = await (await bus.publish(event))

        assert report.ok
        assert seen == ["created"]
        assert report.event_id == event.event_id
        assert bus.messages_processed == 1
        assert bus.get_history(EventType.BOOKING_CREATED) == [event]
        assert bus.get_history(EventType.BOOKING_CANCELLED) == []

    @pytest.mark.asyncio
    async def test_publish_does_not_wait_for_handlers(self, bus, memory_store, make_created):
        gate = asyncio.Event()

        async def slow(event):
            await gate.wait()

        bus.subscribe(EventType.BOOKING_CREATED, slow)
        event = await _persist(memory_store, make_created())
        task = await bus.publish(event)
        assert not task.done()
        gate.set()
        assert (await task).ok

    @pytest.mark.asyncio
    async def test_bus_without_store_skips_durability_check(self, make_created):
        bus = EventBus()
        report = await (await bus.publish(make_created()))
        assert report.delivered == []


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self, bus, memory_store, make_created):
        seen: list[str] = []

        async def broken(event):
            raise RuntimeError("boom")

        async def healthy(event):
            seen.append(event.event_id)

        bus.subscribe(EventType.BOOKING_CREATED, broken, priority=10, handler_id="broken")
        bus.subscribe(EventType.BOOKING_CREATED, healthy, handler_id="healthy")

        event = await _persist(memory_store, make_created())
        report = await (await bus.publish(event))

        assert seen == [event.event_id]
        assert report.delivered == ["healthy"]
        assert not report.ok
        [failure] = report.failures
        assert isinstance(failure, HandlerFailure)
        assert failure.handler_id == "broken"
        assert failure.attempts == 3  # first try + max_retries=2
        assert isinstance(failure.error, RuntimeError)

    @pytest.mark.asyncio
    async def test_exhausted_handler_dead_lettered(self, bus, memory_store, make_created):
        async def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.BOOKING_CREATED, broken, handler_id="broken")
        event = await _persist(memory_store, make_created())
        report = await (await bus.publish(event))

        [entry] = report.dead_letters
        assert entry.event is event
        assert entry.attempts == 3
        assert bus.dead_letters.by_handler("broken") == [entry]

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, bus, memory_store, make_created):
        calls = 0

        async def flaky(event):
            nonlocal calls
            calls += 1
            if calls < 3:
                raise ConnectionError("blip")

        bus.subscribe(EventType.BOOKING_CREATED, flaky, handler_id="flaky")
        event = await _persist(memory_store, make_created())
        report = await (await bus.publish(event))

        assert report.ok
        assert calls == 3
        assert len(bus.dead_letters) == 0

    @pytest.mark.asyncio
    async def test_no_retries_configured(self, memory_store, make_created):
        bus = EventBus(event_store=memory_store, config=EventBusConfig(max_retries=0))
        calls = 0

        async def broken(event):
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        bus.subscribe(EventType.BOOKING_CREATED, broken)
        event = await _persist(memory_store, make_created())
        report = await (await bus.publish(event))
        assert calls == 1
        assert report.failures[0].attempts == 1

    @pytest.mark.asyncio
    async def test_reprocess_dead_letter(self, bus, memory_store, make_created):
        fixed = False

        async def handler(event):
            if not fixed:
                raise RuntimeError("boom")

        bus.subscribe(EventType.BOOKING_CREATED, handler, handler_id="h")
        event = await _persist(memory_store, make_created())
        report = await (await bus.publish(event))
        entry_id = report.dead_letters[0].entry_id

        fixed = True
        assert await bus.reprocess_dead_letter(entry_id) is True
        assert len(bus.dead_letters) == 0

        with pytest.raises(ValidationError):
            await bus.reprocess_dead_letter(entry_id)

    @pytest.mark.asyncio
    async def test_reprocess_after_unsubscribe(self, bus, memory_store, make_created):
        async def handler(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.BOOKING_CREATED, handler, handler_id="h")
        event = await _persist(memory_store, make_created())
        report = await (await bus.publish(event))
        bus.unsubscribe("h")
        with pytest.raises(ValidationError, match="no longer subscribed"):
            await bus.reprocess_dead_letter(report.dead_letters[0].entry_id)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_drains(self, bus, memory_store, make_created):
        done: list[str] = []

        async def slow(event):
            await asyncio.sleep(0.01)
            done.append(event.event_id)

        bus.subscribe(EventType.BOOKING_CREATED, slow)
        await bus.start()
        assert bus.running
        event = await _persist(memory_store, make_created())
        await bus.publish(event)
        await bus.stop()
        assert done == [event.event_id]
        assert not bus.running

    @pytest.mark.asyncio
    async def test_drain_follows_cascades(self, bus, memory_store, make_created):
        """A handler that publishes another event is drained too."""
        second = await _persist(memory_store, make_created("bk-2"))
        seen: list[str] = []

        async def cascade(event):
            if event.aggregate_id == "bk-1":
                await bus.publish(second)
            seen.append(event.aggregate_id)

        bus.subscribe(EventType.BOOKING_CREATED, cascade)
        first = await _persist(memory_store, make_created("bk-1"))
        await bus.publish(first)
        await bus.drain()
        assert sorted(seen) == ["bk-1", "bk-2"]

    @pytest.mark.asyncio
    async def test_clear_history(self, bus, memory_store, make_created):
        event = await _persist(memory_store, make_created())
        await (await bus.publish(event))
        bus.clear_history()
        assert bus.get_history() == []

    @pytest.mark.asyncio
    async def test_history_keeps_most_recent(self, memory_store, sim_clock, make_created):
        bus = EventBus(
            event_store=memory_store,
            config=EventBusConfig(history_size=2, retry_base_delay=0.0),
            clock=sim_clock,
        )
        events = [await _persist(memory_store, make_created(f"bk-{i}")) for i in range(5)]
        for event in events:
            await bus.publish(event)
        await bus.drain()

        assert bus.get_history() == events[-2:]


class TestDefaultHandlerIds:
    def test_bound_methods_of_two_instances(self, bus: EventBus):
        class Listener:
            async def on_event(self, event):
                pass

        first, second = Listener(), Listener()
        first_id = bus.subscribe(EventType.BOOKING_CREATED, first.on_event)
        second_id = bus.subscribe(EventType.BOOKING_CREATED, second.on_event)

        assert first_id != second_id
        assert first_id.startswith(f"{Listener.on_event.__qualname__}@")
        assert len(bus.handlers_for(EventType.BOOKING_CREATED)) == 2

    def test_same_bound_method_twice_rejected(self, bus: EventBus):
        class Listener:
            async def on_event(self, event):
                pass

        listener = Listener()
        bus.subscribe(EventType.BOOKING_CREATED, listener.on_event)
        with pytest.raises(ValidationError, match="already subscribed"):
            bus.subscribe(EventType.BOOKING_CREATED, listener.on_event)

    def test_plain_function_uses_qualname(self, bus: EventBus):
        async def handler(event):
            pass

        hid = bus.subscribe(EventType.BOOKING_CREATED, handler)
        assert hid == handler.__qualname__
