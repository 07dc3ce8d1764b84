"""Event bus: type-routed, isolated, retried dispatch of persisted events.

Design goals
------------
1.  **Explicit instance**: each ``EventBus`` owns its handler registry.
    There is no process-wide subscriber map; the bus is constructed once and
    injected wherever it is needed.
2.  **Closed routing key**: subscribers register for an ``EventType``
    member (or for every type through ``subscribe_all``).  Anything else is
    rejected at subscription time.
3.  **Durability precedes dispatch**: when an ``IEventStore`` is attached,
    ``publish()`` refuses events the store does not hold.  The bus never
    writes to the store itself.
4.  **Isolation**: matching handlers run concurrently as detached tasks.
    ``publish()`` returns the dispatch task without awaiting it.  One
    handler's failure never blocks or aborts another.
5.  **Retry, then dead-letter**: a failing handler is retried with
    exponential backoff up to ``max_retries`` times; after that the
    invocation becomes a ``DeadLetterEntry`` and shows up in the
    ``DispatchReport``.  Nothing is dropped silently.

Handlers receive immutable events.  They may read and issue new commands
but never mutate aggregate state directly.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from booking_lifecycle.core.clock import IClock
from booking_lifecycle.core.config import EventBusConfig
from booking_lifecycle.core.enums import EventType
from booking_lifecycle.core.errors import (
    EventNotPersisted,
    HandlerFailure,
    ValidationError,
)
from booking_lifecycle.domain.events import DomainEvent
from booking_lifecycle.infrastructure.dead_letter import (
    DeadLetterEntry,
    DeadLetterQueue,
)
from booking_lifecycle.infrastructure.event_store import IEventStore
from booking_lifecycle.infrastructure.retry import RetryPolicy
from booking_lifecycle.observability import metrics
from booking_lifecycle.observability.logger import bind_correlation_id, get_logger

logger = get_logger(__name__)

# Type alias for async event handlers.
EventHandler = Callable[[DomainEvent], Awaitable[None]]


# ---------------------------------------------------------------------------
# Registry entries and reports
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Subscription:
    handler_id: str
    handler: EventHandler
    priority: int
    sequence: int
    event_type: EventType | None  # None = every event type

    @property
    def sort_key(self) -> tuple[int, int]:
        # Descending priority, then registration order.
        return (-self.priority, self.sequence)


@dataclass
class DispatchReport:
    """Outcome of delivering one event to its handlers."""

    event_id: str
    event_type: EventType
    delivered: list[str] = field(default_factory=list)
    failures: list[HandlerFailure] = field(default_factory=list)
    dead_letters: list[DeadLetterEntry] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class _Delivery:
    handler_id: str
    failure: HandlerFailure | None = None
    dead_letter: DeadLetterEntry | None = None


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

def _default_handler_id(handler: EventHandler) -> str:
    """``__qualname__``, suffixed with the instance for bound methods."""
    name = getattr(handler, "__qualname__", None) or repr(handler)
    owner = getattr(handler, "__self__", None)
    if owner is not None:
        return f"{name}@{id(owner):x}"
    return name


class EventBus:
    """In-process publish/subscribe bus for ``DomainEvent``.

    Parameters
    ----------
    event_store
        Optional store.  When given, only events it contains are dispatched.
    config
        Retry settings (``max_retries``, ``retry_base_delay``,
        ``retry_max_delay``, ``dead_letter_max_reprocess``) and
        ``history_size``, the number of recent events ``get_history`` keeps.
    dead_letters
        Queue receiving exhausted invocations.  Created when omitted.
    clock
        Time source for dead-letter bookkeeping.
    """

    def __init__(
        self,
        *,
        event_store: IEventStore | None = None,
        config: EventBusConfig | None = None,
        dead_letters: DeadLetterQueue | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._config = config or EventBusConfig()
        self._event_store = event_store
        self._retry = RetryPolicy(
            max_attempts=self._config.max_retries + 1,
            base_delay=self._config.retry_base_delay,
            max_delay=self._config.retry_max_delay,
        )
        self._dead_letters = dead_letters if dead_letters is not None else DeadLetterQueue(
            max_reprocess=self._config.dead_letter_max_reprocess,
            clock=clock,
        )
        self._typed: dict[EventType, list[Subscription]] = defaultdict(list)
        self._wildcard: list[Subscription] = []
        self._by_id: dict[str, EventHandler] = {}
        self._sequence = itertools.count()
        self._inflight: set[asyncio.Task[DispatchReport]] = set()
        self._history: deque[DomainEvent] = deque(maxlen=self._config.history_size)
        self._messages_processed = 0
        self._running = False

    # -- Lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        """Wait for in-flight dispatches, then stop."""
        await self.drain()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # -- Registry ----------------------------------------------------------

    def _register(
        self,
        event_type: EventType | None,
        handler: EventHandler,
        priority: int,
        handler_id: str | None,
    ) -> str:
        hid = handler_id or _default_handler_id(handler)
        known = self._by_id.get(hid)
        if known is not None and known != handler:
            raise ValidationError(
                f"handler_id {hid!r} is already bound to a different handler"
            )
        bucket = self._wildcard if event_type is None else self._typed[event_type]
        if any(sub.handler_id == hid for sub in bucket):
            key = "all events" if event_type is None else event_type.value
            raise ValidationError(f"{hid!r} is already subscribed to {key}")

        sub = Subscription(
            handler_id=hid,
            handler=handler,
            priority=priority,
            sequence=next(self._sequence),
            event_type=event_type,
        )
        bucket.append(sub)
        bucket.sort(key=lambda s: s.sort_key)
        self._by_id[hid] = handler
        return hid

    def subscribe(
        self,
        event_type: EventType | str,
        handler: EventHandler,
        priority: int = 0,
        handler_id: str | None = None,
    ) -> str:
        """Register *handler* for *event_type*.  Returns the handler id.

        Raises
        ------
        ValidationError
            *event_type* is not an ``EventType`` variant, or the handler id
            is already subscribed to it.
        """
        try:
            key = EventType(event_type)
        except ValueError:
            raise ValidationError(f"Unknown event type: {event_type!r}") from None
        return self._register(key, handler, priority, handler_id)

    def subscribe_all(
        self,
        handler: EventHandler,
        priority: int = 0,
        handler_id: str | None = None,
    ) -> str:
        """Register *handler* for every event type."""
        return self._register(None, handler, priority, handler_id)

    def unsubscribe(self, handler_id: str) -> None:
        for bucket in [self._wildcard, *self._typed.values()]:
            bucket[:] = [s for s in bucket if s.handler_id != handler_id]
        self._by_id.pop(handler_id, None)

    def handlers_for(self, event_type: EventType) -> list[Subscription]:
        """Dispatch order for *event_type*: priority desc, then registration."""
        return sorted(
            [*self._typed.get(event_type, ()), *self._wildcard],
            key=lambda s: s.sort_key,
        )

    # -- Publish -----------------------------------------------------------

    async def publish(self, event: DomainEvent) -> asyncio.Task[DispatchReport]:
        """Dispatch a persisted *event* to its handlers.

        Returns the detached dispatch task; callers are not expected to await
        it.  Handler failures never propagate here.

        Raises
        ------
        EventNotPersisted
            A store is attached and does not hold *event*.
        """
        if self._event_store is not None and not await self._event_store.contains(event):
            raise EventNotPersisted(
                f"{event.event_type.value} v{event.version} on {event.aggregate_id} "
                "is not in the event store"
            )

        self._history.append(event)
        subs = self.handlers_for(event.event_type)
        task = asyncio.create_task(
            self._dispatch(event, subs),
            name=f"dispatch:{event.event_type.value}:{event.event_id}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _dispatch(
        self, event: DomainEvent, subs: list[Subscription],
    ) -> DispatchReport:
        bind_correlation_id(event.metadata.correlation_id)
        deliveries = await asyncio.gather(
            *(self._deliver(sub, event) for sub in subs)
        )
        report = DispatchReport(event_id=event.event_id, event_type=event.event_type)
        for delivery in deliveries:
            if delivery.failure is None:
                report.delivered.append(delivery.handler_id)
            else:
                report.failures.append(delivery.failure)
                if delivery.dead_letter is not None:
                    report.dead_letters.append(delivery.dead_letter)
        self._messages_processed += len(report.delivered)
        return report

    async def _deliver(self, sub: Subscription, event: DomainEvent) -> _Delivery:
        attempt = 0
        while True:
            attempt += 1
            try:
                await sub.handler(event)
                return _Delivery(sub.handler_id)
            except Exception as exc:
                metrics.record_handler_failure(sub.handler_id)
                if not self._retry.should_retry(attempt):
                    failure = HandlerFailure(sub.handler_id, event.event_id, attempt, exc)
                    entry = self._dead_letters.add(event, sub.handler_id, exc, attempt)
                    return _Delivery(sub.handler_id, failure, entry)
                delay = self._retry.delay(attempt)
                logger.warning(
                    "handler_retry",
                    handler_id=sub.handler_id,
                    event_type=event.event_type.value,
                    aggregate_id=event.aggregate_id,
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)

    async def drain(self) -> None:
        """Wait until no dispatch is in flight (including ones they trigger)."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # -- Dead letters ------------------------------------------------------

    @property
    def dead_letters(self) -> DeadLetterQueue:
        return self._dead_letters

    async def reprocess_dead_letter(self, entry_id: str) -> bool:
        """Retry one dead letter with the handler registered under its id."""
        entry = self._dead_letters.get(entry_id)
        if entry is None:
            raise ValidationError(f"No dead letter {entry_id!r}")
        handler = self._by_id.get(entry.handler_id)
        if handler is None:
            raise ValidationError(
                f"Handler {entry.handler_id!r} is no longer subscribed"
            )
        return await self._dead_letters.reprocess(entry_id, handler)

    # -- Observability -----------------------------------------------------

    def get_history(
        self,
        event_type: EventType | None = None,
    ) -> list[DomainEvent]:
        """Return the most recent published events, optionally filtered."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if e.event_type is event_type]

    def clear_history(self) -> None:
        """Clear the event history (testing helper)."""
        self._history.clear()

    @property
    def messages_processed(self) -> int:
        return self._messages_processed

    @property
    def event_store(self) -> IEventStore | None:
        """The attached event store, if any."""
        return self._event_store
